import json
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from app.api import admin, chat, readers, sessions, wallet
from app.config import settings
from app.database import AsyncSessionLocal, create_tables
from app.errors import ServiceError, service_error_handler
from app.security import resolve_user_id
from app.services.ledger import BalanceLedger
from app.services.messaging import MessagingService
from app.services.metering import MeteringEngine
from app.services.payments import PaymentProvider, StripePaymentProvider
from app.services.sweeper import SessionSweeper
from app.ws import ChannelManager
from models.session import STATUS_ACTIVE

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("soulseer.main")


def create_app(
    session_factory=None,
    *,
    payments: PaymentProvider | None = None,
    clock=None,
    create_schema: bool = True,
    run_sweeper: bool = True,
) -> FastAPI:
    app = FastAPI(title="SoulSeer")

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, service_error_handler)

    session_factory = session_factory or AsyncSessionLocal
    if payments is None and settings.STRIPE_SECRET_KEY:
        payments = StripePaymentProvider()
    clock_kwargs = {"clock": clock} if clock else {}

    channels = ChannelManager()
    ledger = BalanceLedger(session_factory, payments)
    engine = MeteringEngine(session_factory, ledger, channels, **clock_kwargs)
    app.state.session_factory = session_factory
    app.state.channels = channels
    app.state.ledger = ledger
    app.state.engine = engine
    app.state.messaging = MessagingService(session_factory, channels, **clock_kwargs)
    app.state.sweeper = SessionSweeper(engine, channels)

    app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(chat.router, prefix="/api/messages", tags=["messages"])
    app.include_router(wallet.router, prefix="/api/wallet", tags=["wallet"])
    app.include_router(readers.router, prefix="/api/readers", tags=["readers"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    @app.on_event("startup")
    async def startup():
        if create_schema:
            await create_tables()
        if run_sweeper:
            app.state.sweeper.start()

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.sweeper.stop()

    @app.get("/")
    async def root():
        return {"message": "SoulSeer API"}

    @app.websocket("/ws/sessions/{session_id}")
    async def session_socket(websocket: WebSocket, session_id: str):
        state = websocket.app.state
        try:
            user_id = resolve_user_id(websocket, required=False)
        except HTTPException:
            user_id = None
        if not user_id:
            await websocket.close(code=1008)
            return
        try:
            session = await state.engine.get_session(session_id, user_id)
        except ServiceError as exc:
            logger.info("WS_REJECT session=%s user=%s code=%s", session_id, user_id, exc.code)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        await state.channels.join(session_id, websocket, user_id)
        state.sweeper.cancel_disconnect_end(session_id, user_id)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(data, dict):
                    continue
                kind = data.get("type")
                if kind == "typing":
                    await state.channels.relay_typing(session_id, websocket, bool(data.get("isTyping")))
                elif kind == "message":
                    try:
                        await state.messaging.send_message(session_id, user_id, str(data.get("content") or ""))
                    except ServiceError as exc:
                        await websocket.send_json({"type": "error", "code": exc.code, "detail": exc.detail})
                elif kind == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            await state.channels.leave(websocket)
            if (
                user_id == session.client_id
                and session.status == STATUS_ACTIVE
                and not state.channels.is_user_connected(session_id, user_id)
            ):
                state.sweeper.schedule_disconnect_end(session_id, user_id)

    return app


app = create_app()
