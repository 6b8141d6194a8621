from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from schemas.user import UserSummary


class MessageCreate(BaseModel):
    content: str


class MessageResponse(BaseModel):
    id: int
    sender_id: str
    receiver_id: str
    session_id: Optional[str] = None
    content: str
    is_read: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class MarkReadResponse(BaseModel):
    success: bool
    updated: int


class ConversationResponse(BaseModel):
    other_user: UserSummary
    last_message: MessageResponse
    unread_count: int


class ConversationListResponse(BaseModel):
    conversations: List[ConversationResponse]
