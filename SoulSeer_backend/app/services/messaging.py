import logging
from datetime import datetime

from sqlalchemy import or_, select, update

from app.errors import InvalidRequest
from app.services.metering import load_session, require_participant
from app.ws import ChannelManager
from models.chat import Message
from models.user import User
from schemas.chat import MessageResponse

logger = logging.getLogger("soulseer.messaging")


class MessagingService:
    def __init__(self, session_factory, channels: ChannelManager, *, clock=datetime.utcnow):
        self.session_factory = session_factory
        self.channels = channels
        self.clock = clock

    async def send_message(self, session_id: str, sender_id: str, content: str) -> Message:
        content = (content or "").strip()
        if not content:
            raise InvalidRequest("Message cannot be empty")
        async with self.session_factory() as db:
            session = await load_session(db, session_id)
            client_id, reader_user_id = await require_participant(db, session, sender_id)
            receiver_id = reader_user_id if sender_id == client_id else client_id
            message = Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                session_id=session_id,
                content=content,
                is_read=False,
                created_at=self.clock(),
            )
            db.add(message)
            await db.commit()
            await db.refresh(message)

        # stored before fan-out; receivers that miss the event re-fetch from history
        await self.channels.broadcast(
            session_id,
            {"type": "message", "message": MessageResponse.model_validate(message).model_dump(mode="json")},
            exclude_user_id=sender_id,
        )
        return message

    async def get_session_messages(self, session_id: str, actor_id: str) -> list[Message]:
        async with self.session_factory() as db:
            session = await load_session(db, session_id)
            await require_participant(db, session, actor_id)
            rows = await db.execute(
                select(Message)
                .where(Message.session_id == session_id)
                .order_by(Message.created_at, Message.id)
            )
            return list(rows.scalars().all())

    async def mark_read(self, session_id: str, actor_id: str) -> int:
        async with self.session_factory() as db:
            session = await load_session(db, session_id)
            await require_participant(db, session, actor_id)
            result = await db.execute(
                update(Message)
                .where(
                    Message.session_id == session_id,
                    Message.receiver_id == actor_id,
                    Message.is_read.is_(False),
                )
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def conversations(self, user_id: str) -> list[dict]:
        """Latest message and unread count per counterpart, newest first."""
        async with self.session_factory() as db:
            rows = await db.execute(
                select(Message)
                .where(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
                .order_by(Message.created_at.desc(), Message.id.desc())
            )
            latest: dict[str, Message] = {}
            unread: dict[str, int] = {}
            for msg in rows.scalars().all():
                other_id = msg.receiver_id if msg.sender_id == user_id else msg.sender_id
                latest.setdefault(other_id, msg)
                if msg.receiver_id == user_id and not msg.is_read:
                    unread[other_id] = unread.get(other_id, 0) + 1
            if not latest:
                return []
            users = await db.execute(select(User).where(User.id.in_(list(latest))))
            user_map = {u.id: u for u in users.scalars().all()}
            return [
                {
                    "other_user": user_map[other_id],
                    "last_message": msg,
                    "unread_count": unread.get(other_id, 0),
                }
                for other_id, msg in latest.items()
                if other_id in user_map
            ]
