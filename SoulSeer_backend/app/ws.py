import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

logger = logging.getLogger("soulseer.ws")


def is_connected(websocket: WebSocket) -> bool:
    return (
        getattr(websocket, "client_state", None) == WebSocketState.CONNECTED
        and getattr(websocket, "application_state", None) == WebSocketState.CONNECTED
    )


def encode_event(event: dict) -> str:
    return json.dumps(jsonable_encoder(event), ensure_ascii=False)


class ChannelManager:
    """Live connections per reading session.

    ``active`` maps session id -> connections, ``members`` maps a connection
    to the sessions it joined and the user id it joined as. Both are only
    mutated under ``_lock``; sends work on a snapshot.
    """

    def __init__(self):
        self.active: Dict[str, Set[WebSocket]] = {}
        self.members: Dict[WebSocket, Dict[str, Optional[str]]] = {}
        self._lock = asyncio.Lock()

    async def join(self, session_id: str, websocket: WebSocket, user_id: str | None = None):
        async with self._lock:
            self.active.setdefault(session_id, set()).add(websocket)
            self.members.setdefault(websocket, {})[session_id] = user_id
        logger.debug("WS_JOIN session=%s user=%s", session_id, user_id)

    async def leave(self, websocket: WebSocket) -> List[Tuple[str, Optional[str]]]:
        async with self._lock:
            left = list(self.members.pop(websocket, {}).items())
            for session_id, _ in left:
                self._discard(session_id, websocket)
        for session_id, user_id in left:
            logger.debug("WS_LEAVE session=%s user=%s", session_id, user_id)
            await self.broadcast(session_id, {"type": "typing", "userId": user_id, "isTyping": False})
        return left

    def _discard(self, session_id: str, websocket: WebSocket):
        subscribers = self.active.get(session_id)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self.active[session_id]

    async def _drop(self, session_id: str, websockets: Iterable[WebSocket]):
        async with self._lock:
            for ws in websockets:
                self._discard(session_id, ws)
                joined = self.members.get(ws)
                if joined is not None:
                    joined.pop(session_id, None)
                    if not joined:
                        del self.members[ws]

    async def _snapshot(self, session_id: str) -> List[Tuple[WebSocket, Optional[str]]]:
        async with self._lock:
            return [
                (ws, self.members.get(ws, {}).get(session_id))
                for ws in self.active.get(session_id, set())
            ]

    async def broadcast(
        self,
        session_id: str,
        event: dict,
        *,
        exclude: WebSocket | None = None,
        exclude_user_id: str | None = None,
    ) -> int:
        data = encode_event(event)
        delivered = 0
        failed = []
        for ws, user_id in await self._snapshot(session_id):
            if ws is exclude:
                continue
            if exclude_user_id is not None and user_id == exclude_user_id:
                continue
            if not is_connected(ws):
                continue
            try:
                await ws.send_text(data)
                delivered += 1
            except Exception:
                logger.warning("WS_SEND_FAIL session=%s user=%s type=%s", session_id, user_id, event.get("type"))
                failed.append(ws)
        if failed:
            await self._drop(session_id, failed)
        return delivered

    async def relay_typing(self, session_id: str, websocket: WebSocket, is_typing: bool) -> int:
        async with self._lock:
            user_id = self.members.get(websocket, {}).get(session_id)
        return await self.broadcast(
            session_id,
            {"type": "typing", "userId": user_id, "isTyping": bool(is_typing)},
            exclude=websocket,
        )

    def get_online_users(self, session_id: str) -> Set[str]:
        users = set()
        for ws in list(self.active.get(session_id, set())):
            user_id = self.members.get(ws, {}).get(session_id)
            if user_id and is_connected(ws):
                users.add(user_id)
        return users

    def is_user_connected(self, session_id: str, user_id: str) -> bool:
        return user_id in self.get_online_users(session_id)

    def subscriber_count(self, session_id: str) -> int:
        return len(self.active.get(session_id, set()))
