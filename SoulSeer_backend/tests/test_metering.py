import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.errors import (
    ActiveSessionExists,
    Forbidden,
    InsufficientBalance,
    InvalidRequest,
    ReaderUnavailable,
    SessionNotFound,
    SettlementFailure,
)
from app.services.ledger import BalanceLedger
from app.services.metering import MeteringEngine
from conftest import FakeConnection, add_reader, add_user, fetch
from models.reader import Reader
from models.session import ReadingSession
from models.user import User
from models.wallet import Transaction


async def test_chat_session_settles_by_the_minute(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))

    session = await engine.start_session("client", reader.id, "chat")
    assert session.status == "active"
    assert session.rate_per_minute == Decimal("3.99")
    assert session.started_at == clock.now

    clock.advance(125)
    ended = await engine.end_session(session.id, actor_id="client")

    assert ended.status == "completed"
    assert ended.duration == 3
    assert ended.total_cost == Decimal("11.97")
    assert ended.reader_earnings == Decimal("8.38")
    assert ended.platform_fee == Decimal("3.59")
    assert ended.end_reason == "user"
    assert ended.ended_at == clock.now

    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("38.03")
    reader = await fetch(session_factory, Reader, reader.id)
    assert reader.pending_payout == Decimal("8.38")
    assert reader.total_earnings == Decimal("8.38")
    assert reader.total_readings == 1


async def test_start_rejected_below_three_minute_floor(session_factory, engine):
    await add_user(session_factory, "client", balance="10.00")
    reader = await add_reader(session_factory, "reader", voice_rate=Decimal("4.99"))

    with pytest.raises(InsufficientBalance):
        await engine.start_session("client", reader.id, "voice")

    async with session_factory() as db:
        rows = (await db.execute(select(ReadingSession))).scalars().all()
    assert rows == []


async def test_start_allowed_when_balance_equals_floor(session_factory, engine):
    await add_user(session_factory, "client", balance="11.97")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))

    session = await engine.start_session("client", reader.id, "chat")
    assert session.status == "active"


async def test_rate_comes_from_reader_not_caller(session_factory, engine):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", video_rate=Decimal("5.99"))

    session = await engine.start_session("client", reader.id, "video", rate_per_minute=Decimal("0.01"))
    assert session.rate_per_minute == Decimal("5.99")


@pytest.mark.parametrize("online,approved", [(False, True), (True, False)])
async def test_unavailable_reader_rejected(session_factory, engine, online, approved):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", online=online, approved=approved)

    with pytest.raises(ReaderUnavailable):
        await engine.start_session("client", reader.id, "chat")


async def test_unknown_reader_and_type_rejected(session_factory, engine):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")

    with pytest.raises(ReaderUnavailable):
        await engine.start_session("client", "missing", "chat")
    with pytest.raises(InvalidRequest):
        await engine.start_session("client", reader.id, "smoke-signals")


async def test_reader_cannot_book_themselves(session_factory, engine):
    reader = await add_reader(session_factory, "reader")

    with pytest.raises(Forbidden):
        await engine.start_session("reader", reader.id, "chat")


async def test_second_active_session_rejected(session_factory, engine):
    await add_user(session_factory, "client", balance="100.00")
    first = await add_reader(session_factory, "reader-a")
    second = await add_reader(session_factory, "reader-b")

    await engine.start_session("client", first.id, "chat")
    with pytest.raises(ActiveSessionExists):
        await engine.start_session("client", second.id, "chat")


async def test_parallel_sessions_when_single_session_disabled(session_factory, ledger, channels, clock):
    engine = MeteringEngine(session_factory, ledger, channels, clock=clock, single_active_session=False)
    await add_user(session_factory, "client", balance="100.00")
    first = await add_reader(session_factory, "reader-a")
    second = await add_reader(session_factory, "reader-b")

    await engine.start_session("client", first.id, "chat")
    await engine.start_session("client", second.id, "chat")
    assert len(await engine.list_client_sessions("client")) == 2


async def test_short_session_bills_one_minute(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="20.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))

    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(5)
    ended = await engine.end_session(session.id, actor_id="reader")

    assert ended.duration == 1
    assert ended.total_cost == Decimal("3.99")


async def test_ending_twice_charges_once(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(60)

    first = await engine.end_session(session.id, actor_id="client")
    clock.advance(600)
    second = await engine.end_session(session.id, actor_id="client")

    assert second.id == first.id
    assert second.total_cost == first.total_cost == Decimal("3.99")
    assert second.ended_at == first.ended_at
    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("46.01")
    async with session_factory() as db:
        charges = (await db.execute(
            select(Transaction).where(Transaction.type == "session_charge")
        )).scalars().all()
    assert len(charges) == 1


async def test_concurrent_ends_settle_once(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(90)

    results = await asyncio.gather(
        engine.end_session(session.id, actor_id="client"),
        engine.end_session(session.id, actor_id="reader"),
    )

    assert {r.status for r in results} == {"completed"}
    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("42.02")
    reader = await fetch(session_factory, Reader, reader.id)
    assert reader.pending_payout == Decimal("5.59")
    assert reader.total_readings == 1


async def test_end_requires_participant(session_factory, engine):
    await add_user(session_factory, "client", balance="50.00")
    await add_user(session_factory, "stranger", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")

    with pytest.raises(Forbidden):
        await engine.end_session(session.id, actor_id="stranger")
    with pytest.raises(SessionNotFound):
        await engine.end_session("missing", actor_id="client")
    with pytest.raises(InvalidRequest):
        await engine.end_session(session.id, actor_id="client", reason="bored")


async def test_earnings_accumulate_across_sessions(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="100.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"), voice_rate=Decimal("4.99"))

    for session_type, seconds in [("chat", 125), ("voice", 200), ("chat", 30)]:
        session = await engine.start_session("client", reader.id, session_type)
        clock.advance(seconds)
        await engine.end_session(session.id, actor_id="client")

    sessions = await engine.list_reader_sessions("reader")
    assert len(sessions) == 3
    expected = sum((s.reader_earnings for s in sessions), Decimal("0"))
    reader = await fetch(session_factory, Reader, reader.id)
    # 11.97 + 19.96 + 3.99
    assert expected == Decimal("8.38") + Decimal("13.97") + Decimal("2.79")
    assert reader.pending_payout == expected
    assert reader.total_earnings == expected
    assert reader.total_readings == 3
    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("100.00") - Decimal("35.92")


async def test_settlement_overdraws_instead_of_failing(session_factory, engine, clock):
    await add_user(session_factory, "client", balance="11.97")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(5 * 60)

    ended = await engine.end_session(session.id, actor_id="client", reason="disconnect")

    assert ended.total_cost == Decimal("19.95")
    assert ended.end_reason == "disconnect"
    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("-7.98")


async def test_failed_settlement_leaves_session_active(session_factory, channels, clock):
    class BrokenLedger(BalanceLedger):
        async def accrue_payout(self, db, reader_id, amount, *, readings=0):
            raise RuntimeError("disk full")

    engine = MeteringEngine(session_factory, BrokenLedger(session_factory), channels, clock=clock)
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(60)

    with pytest.raises(SettlementFailure):
        await engine.end_session(session.id, actor_id="client")

    stored = await engine.get_session(session.id)
    assert stored.status == "active"
    client = await fetch(session_factory, User, "client")
    assert client.balance == Decimal("50.00")


async def test_end_broadcasts_session_ended(session_factory, engine, channels, clock):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    session = await engine.start_session("client", reader.id, "chat")
    client_ws, reader_ws = FakeConnection("client"), FakeConnection("reader")
    await channels.join(session.id, client_ws, "client")
    await channels.join(session.id, reader_ws, "reader")
    clock.advance(125)

    await engine.end_session(session.id, actor_id="client")

    for ws in (client_ws, reader_ws):
        [event] = ws.events()
        assert event["type"] == "session_ended"
        assert event["duration"] == 3
        assert event["totalCost"] == "11.97"
        assert event["reason"] == "user"
        assert event["session"]["status"] == "completed"
