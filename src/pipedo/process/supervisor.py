"""Supervision of every process spawned during a session."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Awaitable, Callable, Iterable

from .descendants import find_descendants

logger = logging.getLogger(__name__)

TRAPPED_SIGNALS: tuple[signal.Signals, ...] = (
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGQUIT,
    signal.SIGTERM,
)

# Every trapped signal is forwarded as SIGTERM: descendants started from a
# non-interactive parent often ignore SIGINT and SIGQUIT.
NORMALIZED_SIGNAL = signal.SIGTERM


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


class ProcessGroupSupervisor:
    """Deliver escalating termination signals until no descendant process remains."""

    def __init__(
        self,
        *,
        initial_backoff: float = 1.0,
        max_rounds: int = 6,
        root_pid: int | None = None,
        enumerator: Callable[[int, Iterable[int]], set[int]] = find_descendants,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._initial_backoff = initial_backoff
        self._max_rounds = max_rounds
        self._root_pid = os.getpid() if root_pid is None else root_pid
        self._enumerator = enumerator
        self._sleep = sleep
        self._groups: set[int] = set()
        self._escalating = False
        self._escalation: asyncio.Task[bool] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.received_signal: int | None = None

    @classmethod
    def from_settings(cls, settings) -> "ProcessGroupSupervisor":
        return cls(
            initial_backoff=settings.escalation_initial_backoff,
            max_rounds=settings.escalation_max_rounds,
        )

    @property
    def escalating(self) -> bool:
        return self._escalating

    def track_group(self, pgid: int) -> None:
        """Count members of process group ``pgid`` as descendants from now on."""

        self._groups.add(pgid)

    def descendants(self) -> set[int]:
        return self._enumerator(self._root_pid, frozenset(self._groups))

    def forward_signal(self, sig: int) -> int:
        """Send ``sig`` to every current descendant and return how many deliveries succeeded."""

        delivered = 0
        for pid in sorted(self.descendants()):
            try:
                os.kill(pid, sig)
            except (ProcessLookupError, PermissionError):
                continue
            delivered += 1
        return delivered

    def _force_kill(self) -> None:
        for pgid in sorted(self._groups):
            try:
                os.killpg(pgid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                continue
        try:
            self.forward_signal(signal.SIGKILL)
        except Exception as exc:
            logger.error("Cannot enumerate descendants for forced kill: %s", exc)

    async def escalate(self, sig: int = NORMALIZED_SIGNAL) -> bool:
        """Signal descendants with exponential backoff until none remain.

        Returns False when the protocol itself broke down and a forced kill
        was issued in its place.
        """

        logger.warning(
            "Terminating descendant processes with %s",
            _signal_name(sig),
            extra={"root_pid": self._root_pid, "groups": sorted(self._groups)},
        )
        self._escalating = True
        try:
            if sig == signal.SIGKILL:
                self._force_kill()
                return True
            backoff = self._initial_backoff
            rounds = 0
            try:
                self.forward_signal(sig)
                while self.descendants():
                    if rounds >= self._max_rounds:
                        logger.warning(
                            "Descendants survived %d rounds of %s; forcing kill",
                            rounds,
                            _signal_name(sig),
                        )
                        self._force_kill()
                        return True
                    await self._sleep(backoff)
                    backoff *= 2
                    rounds += 1
                    self.forward_signal(sig)
            except Exception as exc:
                logger.error("Escalation failed (%s); forcing kill", exc)
                self._force_kill()
                return False
            return True
        finally:
            self._escalating = False

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Trap interruption, hangup, quit and termination signals on ``loop``."""

        self._loop = loop or asyncio.get_running_loop()
        for sig in TRAPPED_SIGNALS:
            self._loop.add_signal_handler(sig, self._on_signal, sig)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in TRAPPED_SIGNALS:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def _on_signal(self, signum: int) -> None:
        if self.received_signal is None:
            self.received_signal = signum
        if self._escalating:
            logger.warning("Received %s during escalation; killing descendants", _signal_name(signum))
            self._force_kill()
            return
        logger.info("Received %s", _signal_name(signum))
        self._escalation = asyncio.ensure_future(self.escalate(NORMALIZED_SIGNAL), loop=self._loop)

    async def cleanup(self, *, settle_timeout: float = 5.0) -> bool:
        """Make sure no descendant outlives the session.

        Waits for an escalation already in flight, starts one when stragglers
        remain, then waits up to ``settle_timeout`` seconds for killed
        processes to disappear.
        """

        ok = True
        if self._escalation is not None:
            ok = await self._escalation
            self._escalation = None
        if self.descendants():
            ok = await self.escalate(NORMALIZED_SIGNAL) and ok

        remaining = self.descendants()
        waited = 0.0
        while remaining and waited < settle_timeout:
            await asyncio.sleep(0.05)
            waited += 0.05
            remaining = self.descendants()
        if remaining:
            logger.error("Descendant processes still alive after cleanup: %s", sorted(remaining))
            return False
        return ok


__all__ = ["NORMALIZED_SIGNAL", "ProcessGroupSupervisor", "TRAPPED_SIGNALS"]
