from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def input_tokens(self) -> int:
        return int((self.usage or {}).get("prompt_tokens") or 0)

    @property
    def output_tokens(self) -> int:
        return int((self.usage or {}).get("completion_tokens") or 0)


class LLMProvider(ABC):
    """Chat-completion backend used for intent classification."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 150,
        json_mode: bool = False,
    ) -> LLMResponse:
        pass
