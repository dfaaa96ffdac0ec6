from decimal import Decimal
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

RefundAction = Literal["refund_start", "refund_reason", "refund_accept_partial", "refund_decline"]


class RefundActionRequest(BaseModel):
    channel_url: str = Field(validation_alias=AliasChoices("channelUrl", "channel_url"), min_length=1)
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)
    txn_id: str = Field(validation_alias=AliasChoices("txnId", "txn_id"), min_length=1)
    action: RefundAction
    reason: Optional[str] = None


class ProcessRefundRequest(BaseModel):
    txn_id: str = Field(validation_alias=AliasChoices("txnId", "txn_id"), min_length=1)
    channel_url: str = Field(validation_alias=AliasChoices("channelUrl", "channel_url"), min_length=1)
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)
    amount: Optional[Decimal] = Field(default=None, gt=0)


class RefundResponse(BaseModel):
    success: bool
    decision: Optional[str] = None
    amount: Optional[Decimal] = None


class PushTokenRequest(BaseModel):
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)
    token: str = Field(validation_alias=AliasChoices("token", "fcmToken", "fcm_token"), min_length=1)
