from paydesk.models.audit_log import AnalyticsEvent, AuditLog
from paydesk.models.channel_mapping import ChannelMapping
from paydesk.models.conversation import ConversationState
from paydesk.models.feature_flag import FeatureFlag
from paydesk.models.fraud_log import FraudLog
from paydesk.models.processed_event import ProcessedEvent
from paydesk.models.refund_request import RefundRequest
from paydesk.models.telegram_user import TelegramUser
from paydesk.models.token_budget import TokenBudget
from paydesk.models.transaction import Transaction
from paydesk.models.user import User

__all__ = [
    "User",
    "Transaction",
    "RefundRequest",
    "ConversationState",
    "ChannelMapping",
    "ProcessedEvent",
    "FraudLog",
    "AuditLog",
    "AnalyticsEvent",
    "FeatureFlag",
    "TokenBudget",
    "TelegramUser",
]
