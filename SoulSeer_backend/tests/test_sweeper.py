import asyncio
from decimal import Decimal

from app.services.metering import MeteringEngine
from app.services.sweeper import SessionSweeper
from conftest import FakeConnection, add_reader, add_user, fetch
from models.user import User


async def test_sweep_ends_session_before_balance_runs_out(session_factory, engine, sweeper, channels, clock):
    await add_user(session_factory, "client", balance="12.00")
    reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    session = await engine.start_session("client", reader.id, "chat")
    reader_ws = FakeConnection("reader")
    await channels.join(session.id, reader_ws, "reader")

    clock.advance(120)
    # 2m15s ahead still costs 3 minutes, which the balance covers
    assert await sweeper.sweep_once() == []

    clock.advance(60)
    assert await sweeper.sweep_once() == [session.id]

    stored = await engine.get_session(session.id)
    assert stored.status == "completed"
    assert stored.end_reason == "balance_exhausted"
    assert stored.total_cost == Decimal("11.97")
    assert (await fetch(session_factory, User, "client")).balance == Decimal("0.03")
    [event] = reader_ws.events()
    assert event["type"] == "session_ended"
    assert event["reason"] == "balance_exhausted"


async def test_sweep_leaves_funded_sessions_alone(session_factory, engine, sweeper, clock):
    await add_user(session_factory, "client", balance="500.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(600)

    assert await sweeper.sweep_once() == []
    assert (await engine.get_session(session.id)).status == "active"


async def test_sweep_ends_newest_of_concurrent_sessions(session_factory, ledger, channels, clock):
    engine = MeteringEngine(session_factory, ledger, channels, clock=clock, single_active_session=False)
    sweeper = SessionSweeper(engine, channels, interval_seconds=15, disconnect_grace_seconds=0)
    await add_user(session_factory, "client", balance="20.00")
    first_reader = await add_reader(session_factory, "reader", chat_rate=Decimal("3.99"))
    second_reader = await add_reader(session_factory, "healer", chat_rate=Decimal("3.99"))
    older = await engine.start_session("client", first_reader.id, "chat")
    clock.advance(60)
    newer = await engine.start_session("client", second_reader.id, "chat")

    clock.advance(120)
    # 15.96 for the older session plus 11.97 for the newer one overdraws 20.00
    assert await engine.find_exhausted_sessions(15) == [newer.id]
    assert await sweeper.sweep_once() == [newer.id]

    ended = await engine.get_session(newer.id)
    assert ended.status == "completed"
    assert ended.end_reason == "balance_exhausted"
    assert ended.total_cost == Decimal("7.98")
    assert (await engine.get_session(older.id)).status == "active"
    assert (await fetch(session_factory, User, "client")).balance == Decimal("12.02")


async def test_disconnect_grace_ends_abandoned_session(session_factory, engine, sweeper, clock):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")
    clock.advance(30)

    task = sweeper.schedule_disconnect_end(session.id, "client")
    await task

    stored = await engine.get_session(session.id)
    assert stored.status == "completed"
    assert stored.end_reason == "disconnect"
    assert stored.duration == 1


async def test_reconnect_within_grace_keeps_session(session_factory, engine, sweeper, channels):
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")

    task = sweeper.schedule_disconnect_end(session.id, "client")
    await channels.join(session.id, FakeConnection("client"), "client")
    await task

    assert (await engine.get_session(session.id)).status == "active"


async def test_stop_cancels_pending_timers(session_factory, engine, channels):
    sweeper = SessionSweeper(engine, channels, interval_seconds=3600, disconnect_grace_seconds=3600)
    sweeper.start()
    task = sweeper.schedule_disconnect_end("s1", "client")
    await asyncio.sleep(0)

    await sweeper.stop()

    assert task.cancelled()
    assert sweeper._timers == {}


async def test_second_disconnect_restarts_the_grace_period(session_factory, engine, channels):
    sweeper = SessionSweeper(engine, channels, interval_seconds=15, disconnect_grace_seconds=0.3)
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")

    first = sweeper.schedule_disconnect_end(session.id, "client")
    await asyncio.sleep(0.05)
    ws = FakeConnection("client")
    await channels.join(session.id, ws, "client")
    await asyncio.sleep(0.2)
    await channels.leave(ws)
    second = sweeper.schedule_disconnect_end(session.id, "client")

    # the first deadline passes while the client is offline again
    await asyncio.gather(first, return_exceptions=True)
    await asyncio.sleep(0.1)
    assert first.cancelled()
    assert (await engine.get_session(session.id)).status == "active"

    await second
    stored = await engine.get_session(session.id)
    assert stored.status == "completed"
    assert stored.end_reason == "disconnect"


async def test_rejoin_cancels_pending_timer(session_factory, engine, channels):
    sweeper = SessionSweeper(engine, channels, interval_seconds=15, disconnect_grace_seconds=0.1)
    await add_user(session_factory, "client", balance="50.00")
    reader = await add_reader(session_factory, "reader")
    session = await engine.start_session("client", reader.id, "chat")

    task = sweeper.schedule_disconnect_end(session.id, "client")
    ws = FakeConnection("client")
    await channels.join(session.id, ws, "client")
    assert sweeper.cancel_disconnect_end(session.id, "client") is True
    await channels.leave(ws)
    await asyncio.sleep(0.2)

    assert task.cancelled()
    assert sweeper._timers == {}
    assert (await engine.get_session(session.id)).status == "active"
    assert sweeper.cancel_disconnect_end(session.id, "client") is False
