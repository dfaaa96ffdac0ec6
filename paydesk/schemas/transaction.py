from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class TransactionListRequest(BaseModel):
    channel_url: str = Field(validation_alias=AliasChoices("channelUrl", "channel_url"), min_length=1)
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)


class TransactionRequest(TransactionListRequest):
    txn_id: str = Field(validation_alias=AliasChoices("txnId", "txn_id"), min_length=1)


class RetryPaymentResponse(BaseModel):
    paymentUrl: str
    demo: bool = False
    message: Optional[str] = None
