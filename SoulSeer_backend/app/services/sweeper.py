import asyncio
import logging

from app.config import settings
from app.services.metering import MeteringEngine
from app.ws import ChannelManager

logger = logging.getLogger("soulseer.sweeper")


class SessionSweeper:
    """Server-side enforcement for sessions nobody ends explicitly.

    ``run`` force-ends sessions the client can no longer pay for; the
    disconnect timer ends a session once its client has been gone for the
    grace period.
    """

    def __init__(
        self,
        engine: MeteringEngine,
        channels: ChannelManager,
        *,
        interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS,
        disconnect_grace_seconds: int = settings.DISCONNECT_GRACE_SECONDS,
    ):
        self.engine = engine
        self.channels = channels
        self.interval_seconds = interval_seconds
        self.disconnect_grace_seconds = disconnect_grace_seconds
        self._task: asyncio.Task | None = None
        self._timers: dict[tuple[str, str], asyncio.Task] = {}

    async def sweep_once(self) -> list[str]:
        ended = []
        for session_id in await self.engine.find_exhausted_sessions(self.interval_seconds):
            try:
                await self.engine.end_session(session_id, reason="balance_exhausted")
                ended.append(session_id)
            except Exception:
                logger.exception("SWEEP_END_FAIL session=%s", session_id)
        if ended:
            logger.info("SWEEP ended=%s", len(ended))
        return ended

    async def run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("SWEEP_FAIL")

    def start(self):
        if self.interval_seconds <= 0 or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self):
        tasks = [t for t in [self._task, *self._timers.values()] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._timers.clear()

    def schedule_disconnect_end(self, session_id: str, user_id: str) -> asyncio.Task | None:
        """(Re)start the grace timer for a participant; the newest disconnect sets the deadline."""
        self.cancel_disconnect_end(session_id, user_id)
        if self.disconnect_grace_seconds <= 0:
            return None
        key = (session_id, user_id)
        task = asyncio.get_running_loop().create_task(self._end_after_grace(session_id, user_id))
        self._timers[key] = task
        task.add_done_callback(lambda done: self._forget_timer(key, done))
        return task

    def cancel_disconnect_end(self, session_id: str, user_id: str) -> bool:
        task = self._timers.pop((session_id, user_id), None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("DISCONNECT_TIMER_CANCEL session=%s user=%s", session_id, user_id)
        return True

    def _forget_timer(self, key: tuple[str, str], task: asyncio.Task):
        if self._timers.get(key) is task:
            del self._timers[key]

    async def _end_after_grace(self, session_id: str, user_id: str):
        await asyncio.sleep(self.disconnect_grace_seconds)
        if self.channels.is_user_connected(session_id, user_id):
            return
        try:
            await self.engine.end_session(session_id, reason="disconnect")
        except Exception:
            logger.exception("DISCONNECT_END_FAIL session=%s user=%s", session_id, user_id)
