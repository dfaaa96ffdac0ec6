from paydesk.services.conversation_service import (
    get_conversation_state,
    get_or_create_user,
    update_conversation_state,
)
from paydesk.services.result import Result, guarded
from paydesk.services.state_machine import (
    ExecutionPath,
    InvalidTransitionError,
    RefundStage,
    RefundStatus,
    can_transition,
    transition,
)
