from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, Field

MESSAGE_SEND_CATEGORY = "group_channel:message_send"


class SendbirdSender(BaseModel):
    user_id: Optional[str] = None
    nickname: Optional[str] = None


class SendbirdChannel(BaseModel):
    channel_url: Optional[str] = None
    custom_type: Optional[str] = None


class SendbirdMessagePayload(BaseModel):
    message_id: Optional[Union[int, str]] = None
    message: Optional[str] = None
    custom_type: Optional[str] = None
    created_at: Optional[int] = None


class SendbirdWebhookPayload(BaseModel):
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("category", "event_category"))
    sender: Optional[SendbirdSender] = None
    channel: Optional[SendbirdChannel] = None
    payload: Optional[SendbirdMessagePayload] = None
    app_id: Optional[str] = None


@dataclass(frozen=True)
class MessageSendEvent:
    message_id: str
    sender_id: str
    channel_url: str
    text: str


@dataclass(frozen=True)
class IgnoredEvent:
    reason: str


ChatEvent = Union[MessageSendEvent, IgnoredEvent]


def parse_chat_event(raw: Any) -> ChatEvent:
    """Narrow an arbitrary webhook body to the one event kind we act on."""
    if not isinstance(raw, dict):
        return IgnoredEvent("not_an_object")
    try:
        body = SendbirdWebhookPayload.model_validate(raw)
    except ValueError:
        return IgnoredEvent("malformed")

    if body.category != MESSAGE_SEND_CATEGORY:
        return IgnoredEvent("category")
    sender_id = body.sender.user_id if body.sender else None
    channel_url = body.channel.channel_url if body.channel else None
    if not sender_id:
        return IgnoredEvent("no_sender")
    if not channel_url:
        return IgnoredEvent("no_channel")
    message_id = body.payload.message_id if body.payload else None
    if message_id is None or message_id == "":
        return IgnoredEvent("no_message_id")

    return MessageSendEvent(
        message_id=str(message_id),
        sender_id=sender_id,
        channel_url=channel_url,
        text=(body.payload.message or "") if body.payload else "",
    )


class WebhookAck(BaseModel):
    success: bool = True
    message: Optional[str] = None


class EscalateRequest(BaseModel):
    channel_url: str = Field(validation_alias=AliasChoices("channelUrl", "channel_url"), min_length=1)
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)


class EscalateResponse(BaseModel):
    success: bool
    message: str
    ticket_id: Optional[str] = None
