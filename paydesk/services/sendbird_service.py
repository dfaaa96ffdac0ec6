"""Chat platform and help-desk HTTP clients."""

import json
import time
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from paydesk.config import settings
from paydesk.logging_config import get_logger

logger = get_logger("sendbird_service")

AGENT_REPLY_PREFIX = "[Support Agent]:"


class SendbirdAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class DeskTicket:
    ticket_id: str
    channel_url: str
    status: Optional[str] = None


class SendbirdChatService:
    """Group-channel messaging for customer and ticket channels."""

    BASE_URL = "https://api-{app_id}.sendbird.com/v3"

    def __init__(self, app_id: str, api_token: str, bot_id: str = "support_bot", timeout: float = 15.0):
        self.base_url = self.BASE_URL.format(app_id=app_id)
        self.api_token = api_token
        self.bot_id = bot_id
        self.timeout = timeout

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Api-Token": self.api_token, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.HTTPError as e:
            raise SendbirdAPIError(f"Sendbird request failed: {e}") from e
        if response.status_code >= 400:
            raise SendbirdAPIError(
                f"Sendbird API error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json() if response.content else {}

    async def send_channel_message(self, channel_url: str, user_id: str, message: str, data: Optional[dict] = None) -> dict:
        payload = {"message_type": "MESG", "user_id": user_id, "message": message}
        if data:
            payload["data"] = json.dumps(data, default=str)
        return await self._request("POST", f"/group_channels/{channel_url}/messages", json=payload)

    async def send_bot_message(self, channel_url: str, message: str, data: Optional[dict] = None) -> dict:
        return await self.send_channel_message(channel_url, self.bot_id, message, data)

    async def add_members(self, channel_url: str, user_ids: List[str]) -> dict:
        return await self._request("POST", f"/group_channels/{channel_url}/members", json={"user_ids": user_ids})

    async def add_bot_to_channel(self, channel_url: str) -> dict:
        return await self.add_members(channel_url, [self.bot_id])

    async def create_user(self, user_id: str, nickname: str) -> dict:
        return await self._request("POST", "/users", json={"user_id": user_id, "nickname": nickname, "profile_url": ""})

    async def create_channel(self, channel_url: str, name: str, user_ids: List[str]) -> dict:
        return await self._request(
            "POST",
            "/group_channels",
            json={"channel_url": channel_url, "name": name, "user_ids": user_ids, "is_distinct": True},
        )

    async def get_recent_messages(self, channel_url: str, limit: int = 20) -> List[dict]:
        data = await self._request(
            "GET",
            f"/group_channels/{channel_url}/messages",
            params={"prev_limit": limit, "message_ts": int(time.time() * 1000), "include": "false"},
        )
        return data.get("messages") or []


class SendbirdDeskService:
    """Ticketing API for human handoff."""

    BASE_URL = "https://desk-api-{app_id}.sendbird.com/platform/v1"

    def __init__(self, app_id: str, api_token: str, timeout: float = 15.0):
        self.base_url = self.BASE_URL.format(app_id=app_id)
        self.api_token = api_token
        self.timeout = timeout

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"SENDBIRDDESKAPITOKEN": self.api_token, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.HTTPError as e:
            raise SendbirdAPIError(f"Desk request failed: {e}") from e
        if response.status_code >= 400:
            raise SendbirdAPIError(
                f"Desk API error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json() if response.content else {}

    async def find_or_create_customer(self, user_id: str) -> str:
        found = await self._request("GET", "/customers", params={"sendbird_id": user_id})
        results = found.get("results") or []
        if results:
            return str(results[0]["id"])
        created = await self._request("POST", "/customers", json={"sendbirdId": user_id, "displayName": user_id})
        logger.info("Desk customer created", extra={"context": {"user_id": user_id, "customer_id": created.get("id")}})
        return str(created["id"])

    async def create_ticket(self, customer_id: str, channel_name: str) -> DeskTicket:
        data = await self._request("POST", "/tickets", json={"channelName": channel_name, "customerId": customer_id})
        if not data.get("id") or not data.get("channelUrl"):
            raise SendbirdAPIError("Desk ticket response missing id or channelUrl", body=data)
        return DeskTicket(ticket_id=str(data["id"]), channel_url=data["channelUrl"], status=data.get("status"))

    async def get_ticket_status(self, ticket_id: str) -> Optional[str]:
        data = await self._request("GET", f"/tickets/{ticket_id}")
        return data.get("status2") or data.get("status")

    async def get_online_agents(self) -> List[str]:
        data = await self._request(
            "GET",
            "/agents",
            params={"connection": "ONLINE", "status": "ACTIVE", "limit": 100},
        )
        return [agent["sendbirdId"] for agent in data.get("results") or [] if agent.get("sendbirdId")]


_chat_service: Optional[SendbirdChatService] = None
_desk_service: Optional[SendbirdDeskService] = None


def get_chat_service() -> SendbirdChatService:
    global _chat_service
    if _chat_service is None:
        _chat_service = SendbirdChatService(
            app_id=settings.sendbird_app_id or "",
            api_token=settings.sendbird_api_token or "",
            bot_id=settings.support_bot_id,
        )
    return _chat_service


def get_desk_service() -> SendbirdDeskService:
    global _desk_service
    if _desk_service is None:
        _desk_service = SendbirdDeskService(
            app_id=settings.sendbird_app_id or "",
            api_token=settings.sendbird_desk_api_token or "",
        )
    return _desk_service


async def notify(channel_url: Optional[str], message: str, data: Optional[dict] = None) -> bool:
    """Best-effort bot message; failures are logged and reported as False."""
    if not channel_url:
        return False
    try:
        await get_chat_service().send_bot_message(channel_url, message, data)
        return True
    except Exception as e:
        logger.warning(
            "Bot message failed (non-fatal)",
            extra={"context": {"channel_url": channel_url, "error": str(e)}},
        )
        return False
