from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramChat(BaseModel):
    id: int


class TelegramSender(BaseModel):
    username: Optional[str] = None
    first_name: Optional[str] = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat: TelegramChat
    sender: Optional[TelegramSender] = Field(default=None, alias="from")
    text: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
