from paydesk.schemas.refund import PushTokenRequest, ProcessRefundRequest, RefundActionRequest, RefundResponse
from paydesk.schemas.webhook import (
    EscalateRequest,
    EscalateResponse,
    IgnoredEvent,
    MessageSendEvent,
    SendbirdWebhookPayload,
    WebhookAck,
    parse_chat_event,
)
