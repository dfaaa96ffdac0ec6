import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import yaml
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.services import budget_service, feature_flags
from paydesk.services.audit_service import log_action
from paydesk.services.llm import OpenAIProvider
from paydesk.services.refund_policy import Priority

logger = get_logger("intent_service")

_FAQ_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "faq.yaml"

TXN_PATTERN = re.compile(r"\bTXN\d+\b", re.IGNORECASE)
TXN_EXACT = re.compile(r"^TXN\d+$", re.IGNORECASE)


class Intent(str, Enum):
    TRANSACTION_LOOKUP = "transaction_lookup"
    RETRY_PAYMENT = "retry_payment"
    REFUND_REQUEST = "refund_request"
    ESCALATION = "escalation"
    FAQ = "faq"
    UNKNOWN = "unknown"


class Sentiment(str, Enum):
    NEUTRAL = "neutral"
    FRUSTRATED = "frustrated"
    ANGRY = "angry"
    HAPPY = "happy"


@dataclass
class IntentResult:
    intent: Intent
    transaction_id: Optional[str] = None
    sentiment: Sentiment = Sentiment.NEUTRAL
    source: str = "rules"

    @property
    def is_upset(self) -> bool:
        return self.sentiment in (Sentiment.ANGRY, Sentiment.FRUSTRATED)


@dataclass
class SentimentResult:
    priority: Priority
    triggers: List[str] = field(default_factory=list)


# Checked in order, first hit wins.
INTENT_PATTERNS = (
    (Intent.RETRY_PAYMENT, re.compile(r"\b(retry|pay again|repay|try again)\b")),
    (Intent.REFUND_REQUEST, re.compile(r"\b(refund|money back|reimburse|return my money)\b")),
    (
        Intent.ESCALATION,
        re.compile(r"\b(human|agent|speak|talk to|connect me|escalate|real person|support team|representative)\b"),
    ),
    (Intent.FAQ, re.compile(r"\b(cancel|fee|policy|failed|why|how|what|charge|time|long|process|decline)\b")),
)

HIGH_TRIGGERS = (
    "fraud",
    "complaint",
    "legal",
    "rbi",
    "chargeback",
    "social media",
    "twitter",
    "consumer court",
    "fir",
    "police",
    "lawyer",
    "sue",
    "dispute",
    "unauthorized",
    "scam",
)
_HIGH_TRIGGER_PATTERNS = tuple((term, re.compile(rf"\b{re.escape(term)}\b")) for term in HIGH_TRIGGERS)

CLASSIFY_PROMPT = """You are a fintech support assistant.
Analyse the user message and return ONLY a JSON object:
{"intent": one of [transaction_lookup, refund_request, escalation, faq, retry_payment, unknown],
 "transaction_id": "<TXN id if mentioned, else null>",
 "sentiment": one of [neutral, frustrated, angry, happy]}

- transaction_lookup: asks about a specific payment
- refund_request: wants money back
- retry_payment: wants to redo a payment
- escalation: wants a human agent
- faq: asks about policies, fees, timelines
- sentiment is angry or frustrated when the user sounds upset or impatient"""

_llm_provider: Optional[OpenAIProvider] = None


def get_llm_provider() -> OpenAIProvider:
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key or "",
            default_model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    return _llm_provider


def extract_transaction_id(text: Optional[str]) -> Optional[str]:
    match = TXN_PATTERN.search(text or "")
    return match.group(0).upper() if match else None


def detect_sentiment(text: Optional[str]) -> SentimentResult:
    lowered = (text or "").lower()
    triggers = [term for term, pattern in _HIGH_TRIGGER_PATTERNS if pattern.search(lowered)]
    return SentimentResult(priority=Priority.HIGH if triggers else Priority.NORMAL, triggers=triggers)


def detect_intent_rule_based(text: Optional[str]) -> IntentResult:
    txn_id = extract_transaction_id(text)
    if txn_id:
        return IntentResult(intent=Intent.TRANSACTION_LOOKUP, transaction_id=txn_id)

    lowered = (text or "").lower()
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(lowered):
            return IntentResult(intent=intent)
    return IntentResult(intent=Intent.UNKNOWN)


def parse_llm_intent(content: str) -> IntentResult:
    """Raises ValueError on anything that is not a usable classification."""
    data = json.loads((content or "").strip())
    if not isinstance(data, dict):
        raise ValueError("LLM intent payload is not an object")

    intent = Intent(data.get("intent") or Intent.UNKNOWN.value)
    try:
        sentiment = Sentiment(data.get("sentiment") or Sentiment.NEUTRAL.value)
    except ValueError:
        sentiment = Sentiment.NEUTRAL

    txn_id = data.get("transaction_id")
    if not isinstance(txn_id, str) or not TXN_EXACT.match(txn_id):
        txn_id = None
    return IntentResult(
        intent=intent,
        transaction_id=txn_id.upper() if txn_id else None,
        sentiment=sentiment,
        source="llm",
    )


def is_llm_available(db: Session) -> bool:
    if not settings.openai_api_key:
        return False
    if not feature_flags.is_enabled(db, feature_flags.LLM_ENABLED):
        return False
    return budget_service.is_budget_available(db)


async def classify_intent(db: Session, text: str, user_id: Optional[str] = None) -> IntentResult:
    """LLM classification when enabled and within budget, rules otherwise."""
    if not is_llm_available(db):
        return detect_intent_rule_based(text)

    messages = [
        {"role": "system", "content": CLASSIFY_PROMPT},
        {"role": "user", "content": text or ""},
    ]
    try:
        response = await asyncio.to_thread(
            get_llm_provider().generate,
            messages,
            temperature=0.0,
            max_tokens=150,
            json_mode=True,
        )
    except Exception as e:
        logger.warning(f"LLM intent detection failed, using rules: {e}")
        return detect_intent_rule_based(text)

    budget_service.record_token_usage(db, response.input_tokens, response.output_tokens)

    try:
        result = parse_llm_intent(response.content)
    except (ValueError, TypeError) as e:
        logger.warning(f"Unparsable LLM intent, using rules: {e}")
        return detect_intent_rule_based(text)

    log_action(
        db,
        "llm_decision",
        user_id=user_id,
        details={
            "intent": result.intent.value,
            "sentiment": result.sentiment.value,
            "input_tokens": response.input_tokens,
            "output_tokens": response.output_tokens,
        },
    )
    return result


@lru_cache(maxsize=1)
def load_faq() -> list:
    if not _FAQ_PATH.exists():
        return []
    with _FAQ_PATH.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    entries = data.get("faq") if isinstance(data, dict) else None
    return [item for item in entries or [] if isinstance(item, dict)]


def query_knowledge_base(text: Optional[str]) -> Optional[str]:
    lowered = (text or "").lower()
    for entry in load_faq():
        keywords = entry.get("keywords") or []
        if any(str(keyword).lower() in lowered for keyword in keywords):
            return entry.get("answer")
    return None
