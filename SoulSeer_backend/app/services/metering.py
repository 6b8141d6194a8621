import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    ActiveSessionExists,
    Forbidden,
    InsufficientBalance,
    InvalidRequest,
    ReaderNotFound,
    ReaderUnavailable,
    SessionNotFound,
    SettlementFailure,
)
from app.services.ledger import BalanceLedger, get_balance
from app.utils.money import billable_minutes, split_cost, to_money
from app.ws import ChannelManager
from models.reader import Reader
from models.session import (
    END_REASONS,
    SESSION_TYPES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    ReadingSession,
)
from models.user import User
from schemas.session import SessionResponse

logger = logging.getLogger("soulseer.metering")


async def load_session(db: AsyncSession, session_id: str) -> ReadingSession:
    session = (await db.execute(
        select(ReadingSession)
        .where(ReadingSession.id == session_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not session:
        raise SessionNotFound()
    return session


async def session_participants(db: AsyncSession, session: ReadingSession) -> tuple[str, str | None]:
    """Return (client user id, reader user id)."""
    reader_user_id = (await db.execute(
        select(Reader.user_id).where(Reader.id == session.reader_id)
    )).scalar_one_or_none()
    return session.client_id, reader_user_id


async def require_participant(db: AsyncSession, session: ReadingSession, user_id: str | None) -> tuple[str, str | None]:
    client_id, reader_user_id = await session_participants(db, session)
    if not user_id or user_id not in (client_id, reader_user_id):
        raise Forbidden("You are not a participant of this session")
    return client_id, reader_user_id


class MeteringEngine:
    """Starts, meters and settles reading sessions.

    All timestamps are naive UTC as produced by ``clock``.
    """

    def __init__(
        self,
        session_factory,
        ledger: BalanceLedger,
        channels: ChannelManager,
        *,
        clock=datetime.utcnow,
        min_balance_minutes: int = settings.MIN_BALANCE_MINUTES,
        reader_share: Decimal = settings.READER_SHARE,
        single_active_session: bool = settings.SINGLE_ACTIVE_SESSION,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.channels = channels
        self.clock = clock
        self.min_balance_minutes = min_balance_minutes
        self.reader_share = Decimal(str(reader_share))
        self.single_active_session = single_active_session

    async def start_session(
        self,
        client_id: str,
        reader_id: str,
        session_type: str,
        rate_per_minute=None,
    ) -> ReadingSession:
        if session_type not in SESSION_TYPES:
            raise InvalidRequest(f"Unknown session type: {session_type}")
        async with self.session_factory() as db:
            reader = await db.get(Reader, reader_id)
            if not reader or not reader.is_online or not reader.is_approved:
                raise ReaderUnavailable()
            if reader.user_id == client_id:
                raise Forbidden("You cannot book a reading with yourself")

            # the billed rate always comes from the reader record, never the caller
            rate = to_money(reader.rate_for(session_type))
            if rate_per_minute is not None and to_money(rate_per_minute) != rate:
                logger.warning(
                    "RATE_MISMATCH client=%s reader=%s type=%s claimed=%s actual=%s",
                    client_id, reader_id, session_type, rate_per_minute, rate,
                )

            balance = await get_balance(db, client_id)
            floor = rate * self.min_balance_minutes
            if balance < floor:
                raise InsufficientBalance(
                    f"Insufficient balance, at least ${floor} is needed to start this reading"
                )

            if self.single_active_session:
                active = (await db.execute(
                    select(ReadingSession.id).where(
                        ReadingSession.client_id == client_id,
                        ReadingSession.status == STATUS_ACTIVE,
                    ).limit(1)
                )).scalar_one_or_none()
                if active:
                    raise ActiveSessionExists()

            session = ReadingSession(
                client_id=client_id,
                reader_id=reader.id,
                type=session_type,
                status=STATUS_ACTIVE,
                rate_per_minute=rate,
                started_at=self.clock(),
            )
            db.add(session)
            await db.commit()
            await db.refresh(session)
        logger.info(
            "SESSION_START id=%s client=%s reader=%s type=%s rate=%s",
            session.id, client_id, reader_id, session_type, rate,
        )
        return session

    async def get_session(self, session_id: str, actor_id: str | None = None) -> ReadingSession:
        async with self.session_factory() as db:
            session = await load_session(db, session_id)
            if actor_id is not None:
                await require_participant(db, session, actor_id)
            return session

    async def end_session(
        self,
        session_id: str,
        actor_id: str | None = None,
        reason: str = "user",
    ) -> ReadingSession:
        """Complete an active session and settle it.

        Settlement runs in one transaction opened by the conditional
        ``active -> completed`` update, so a session is charged at most once.
        Ending a session that is no longer active returns it untouched.
        """
        if reason not in END_REASONS:
            raise InvalidRequest(f"Unknown end reason: {reason}")
        async with self.session_factory() as db:
            session = await load_session(db, session_id)
            if actor_id is not None:
                client_id, reader_user_id = await require_participant(db, session, actor_id)
            else:
                client_id, reader_user_id = await session_participants(db, session)
            if session.status != STATUS_ACTIVE:
                return session
            reader_id = session.reader_id
            session_type = session.type

            ended_at = self.clock()
            minutes = billable_minutes(session.started_at or ended_at, ended_at)
            rate = to_money(session.rate_per_minute)
            total_cost = rate * minutes
            reader_earnings, platform_fee = split_cost(total_cost, self.reader_share)

            try:
                transitioned = await db.execute(
                    update(ReadingSession)
                    .where(ReadingSession.id == session_id, ReadingSession.status == STATUS_ACTIVE)
                    .values(
                        status=STATUS_COMPLETED,
                        ended_at=ended_at,
                        duration=minutes,
                        total_cost=total_cost,
                        reader_earnings=reader_earnings,
                        platform_fee=platform_fee,
                        end_reason=reason,
                    )
                    .execution_options(synchronize_session=False)
                )
                if transitioned.rowcount != 1:
                    # ended concurrently; that call settled it
                    await db.rollback()
                    return await load_session(db, session_id)
                await self.ledger.debit(
                    db,
                    client_id,
                    total_cost,
                    type="session_charge",
                    description=f"{session_type} reading session",
                    reference_id=session_id,
                    reference_type="session",
                    allow_overdraft=True,
                )
                await self.ledger.accrue_payout(db, reader_id, reader_earnings, readings=1)
                if reader_user_id:
                    await self.ledger.record_earning(db, reader_user_id, reader_earnings, session_id, session_type)
                balance_after = await get_balance(db, client_id)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.exception(
                    "SETTLEMENT_FAIL id=%s client=%s reader=%s minutes=%s cost=%s",
                    session_id, client_id, reader_id, minutes, total_cost,
                )
                raise SettlementFailure() from exc

            session = await load_session(db, session_id)

        if balance_after < 0:
            logger.warning("SESSION_OVERDRAFT id=%s client=%s balance=%s", session_id, client_id, balance_after)
        logger.info(
            "SESSION_END id=%s reason=%s minutes=%s cost=%s reader_earnings=%s fee=%s",
            session_id, reason, minutes, total_cost, reader_earnings, platform_fee,
        )
        await self.channels.broadcast(session_id, {
            "type": "session_ended",
            "session": SessionResponse.model_validate(session).model_dump(mode="json"),
            "duration": minutes,
            "totalCost": str(total_cost),
            "reason": reason,
        })
        return session

    async def list_client_sessions(self, client_id: str) -> list[ReadingSession]:
        async with self.session_factory() as db:
            rows = await db.execute(
                select(ReadingSession)
                .where(ReadingSession.client_id == client_id)
                .order_by(ReadingSession.created_at.desc(), ReadingSession.started_at.desc())
            )
            return list(rows.scalars().all())

    async def list_reader_sessions(self, reader_user_id: str) -> list[ReadingSession]:
        async with self.session_factory() as db:
            reader = (await db.execute(
                select(Reader).where(Reader.user_id == reader_user_id)
            )).scalar_one_or_none()
            if not reader:
                raise ReaderNotFound("Reader profile not found")
            rows = await db.execute(
                select(ReadingSession)
                .where(ReadingSession.reader_id == reader.id)
                .order_by(ReadingSession.created_at.desc(), ReadingSession.started_at.desc())
            )
            return list(rows.scalars().all())

    def projected_cost(self, session: ReadingSession, at: datetime) -> Decimal:
        return to_money(session.rate_per_minute) * billable_minutes(session.started_at or at, at)

    async def find_exhausted_sessions(self, horizon_seconds: int) -> list[str]:
        """Active sessions whose cost by ``now + horizon`` would exceed the client's balance.

        A client's sessions are charged against the balance oldest first, so
        with several open sessions the newest ones are the ones cut off.
        """
        at = self.clock() + timedelta(seconds=horizon_seconds)
        async with self.session_factory() as db:
            rows = await db.execute(
                select(ReadingSession, User.balance)
                .join(User, User.id == ReadingSession.client_id)
                .where(ReadingSession.status == STATUS_ACTIVE)
                .order_by(ReadingSession.client_id, ReadingSession.started_at)
            )
            committed: dict[str, Decimal] = {}
            exhausted = []
            for session, balance in rows.all():
                spent = committed.get(session.client_id, Decimal("0")) + self.projected_cost(session, at)
                committed[session.client_id] = spent
                if spent > to_money(balance):
                    exhausted.append(session.id)
            return exhausted
