from fastapi import APIRouter, Depends

from app.dependencies import current_user_id, get_messaging
from app.services.messaging import MessagingService
from schemas.chat import ConversationListResponse, ConversationResponse, MessageResponse
from schemas.user import UserSummary

router = APIRouter()


@router.get("/conversations", response_model=ConversationListResponse)
async def get_conversations(
    user_id: str = Depends(current_user_id),
    messaging: MessagingService = Depends(get_messaging),
):
    rows = await messaging.conversations(user_id)
    return ConversationListResponse(conversations=[
        ConversationResponse(
            other_user=UserSummary.model_validate(row["other_user"]),
            last_message=MessageResponse.model_validate(row["last_message"]),
            unread_count=row["unread_count"],
        ) for row in rows
    ])
