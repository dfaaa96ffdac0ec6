from typing import List, Optional

import httpx

from paydesk.logging_config import get_logger
from paydesk.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIError(Exception):
    pass


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over plain HTTP."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", timeout_seconds: float = 15.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 150,
        json_mode: bool = False,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code}")
            raise OpenAIError(f"OpenAI API error: {response.status_code} - {response.text[:200]}")

        data = response.json()
        content = ""
        if data.get("choices"):
            content = (data["choices"][0].get("message") or {}).get("content") or ""

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
