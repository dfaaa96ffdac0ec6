from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paydesk.database import get_db
from paydesk.schemas.refund import PushTokenRequest
from paydesk.services.conversation_service import get_or_create_user

router = APIRouter()


@router.post("/register-push-token")
def register_push_token(request: PushTokenRequest, db: Session = Depends(get_db)):
    user = get_or_create_user(db, request.user_id)
    user.fcm_token = request.token
    db.commit()
    return {"success": True}
