from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    content: str = ""


class FormatRequest(BaseModel):
    text: str = ""
    escape_html: Optional[bool] = None


class FormatResponse(BaseModel):
    html: str


class ModelSelectRequest(BaseModel):
    model_id: str = Field(..., min_length=1)
    device: Optional[str] = None
    force_reload: bool = False
    persist_env: bool = False


class MessageView(BaseModel):
    role: Role
    content: str
    html: str


class ConversationResponse(BaseModel):
    messages: List[MessageView]
    is_typing: bool
    sent: Optional[bool] = None
