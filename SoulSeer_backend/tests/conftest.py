import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.websockets import WebSocketState

from app.database import create_tables
from app.services.ledger import BalanceLedger
from app.services.messaging import MessagingService
from app.services.metering import MeteringEngine
from app.services.payments import DepositConfirmation, PaymentError, PaymentProvider
from app.services.sweeper import SessionSweeper
from app.ws import ChannelManager
from models.reader import Reader
from models.user import User

START = datetime(2025, 1, 15, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeConnection:
    """Stands in for a starlette WebSocket inside ChannelManager."""

    def __init__(self, name: str = "ws", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: list[str] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    def close(self):
        self.client_state = WebSocketState.DISCONNECTED

    def events(self) -> list[dict]:
        return [json.loads(item) for item in self.sent]

    def __repr__(self):
        return f"<FakeConnection {self.name}>"


class FakePaymentProvider(PaymentProvider):
    def __init__(self):
        self.deposits: dict[str, DepositConfirmation] = {}
        self.transfers: list[tuple[str, Decimal]] = []
        self.transfer_keys: dict[str, str] = {}
        self.deposit_keys: dict[str, str] = {}
        self.enabled_accounts: set[str] = set()
        self.fail_transfers = False
        self.lose_transfer_response = False
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def paid_deposit(self, user_id: str, amount) -> str:
        session_id = self._next("cs")
        self.deposits[session_id] = DepositConfirmation(user_id=user_id, amount=Decimal(str(amount)))
        return session_id

    async def create_deposit(self, user_id, amount, idempotency_key):
        if idempotency_key not in self.deposit_keys:
            self.deposit_keys[idempotency_key] = self.paid_deposit(user_id, amount)
        return f"https://checkout.test/{self.deposit_keys[idempotency_key]}"

    async def confirm_deposit(self, provider_session_id):
        if provider_session_id not in self.deposits:
            raise PaymentError("No such checkout session")
        return self.deposits[provider_session_id]

    async def create_payout_account(self, reader_id):
        return self._next("acct")

    async def onboarding_link(self, account_id):
        return f"https://connect.test/{account_id}"

    async def payouts_enabled(self, account_id):
        return account_id in self.enabled_accounts

    async def transfer_payout(self, account_id, amount, idempotency_key):
        if idempotency_key in self.transfer_keys:
            return self.transfer_keys[idempotency_key]
        if self.fail_transfers:
            raise PaymentError("Transfer declined")
        self.transfers.append((account_id, amount))
        transfer_id = self.transfer_keys[idempotency_key] = self._next("tr")
        if self.lose_transfer_response:
            self.lose_transfer_response = False
            raise PaymentError("Request timed out")
        return transfer_id


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payments():
    return FakePaymentProvider()


@pytest.fixture
def channels():
    return ChannelManager()


@pytest.fixture
def ledger(session_factory, payments):
    return BalanceLedger(session_factory, payments)


@pytest.fixture
def engine(session_factory, ledger, channels, clock):
    return MeteringEngine(session_factory, ledger, channels, clock=clock)


@pytest.fixture
def messaging(session_factory, channels, clock):
    return MessagingService(session_factory, channels, clock=clock)


@pytest.fixture
def sweeper(engine, channels):
    return SessionSweeper(engine, channels, interval_seconds=15, disconnect_grace_seconds=0.05)


async def add_user(session_factory, user_id: str, balance="0", role="client") -> User:
    async with session_factory() as db:
        user = User(
            id=user_id,
            username=user_id,
            email=f"{user_id}@test.local",
            role=role,
            balance=Decimal(str(balance)),
        )
        db.add(user)
        await db.commit()
        return user


async def add_reader(session_factory, user_id: str, *, online=True, approved=True, **fields) -> Reader:
    await add_user(session_factory, user_id, role="reader")
    async with session_factory() as db:
        reader = Reader(user_id=user_id, display_name=user_id.title(), is_online=online, is_approved=approved, **fields)
        db.add(reader)
        await db.commit()
        await db.refresh(reader)
        return reader


async def fetch(session_factory, model, key):
    async with session_factory() as db:
        return await db.get(model, key)
