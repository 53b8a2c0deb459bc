"""Connectivity monitor.

Turns the platform's push-based reachability events into one boolean
signal. Point-in-time checks fail open: if the platform cannot be asked,
the device is assumed online so sends are never blocked by a broken probe.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, Union

from chat_sync.core.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
ConnectivityListener = Callable[[bool], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class NetworkState:
    """One raw reachability reading."""

    connected: bool
    internet_reachable: bool | None = None
    type: str | None = None

    @property
    def online(self) -> bool:
        # Unknown reachability counts as reachable.
        return self.connected and self.internet_reachable is not False


class ReachabilitySource(Protocol):
    """Platform reachability signal."""

    async def fetch(self) -> NetworkState: ...

    def add_listener(self, listener: Callable[[NetworkState], None]) -> Unsubscribe: ...


class ManualReachability:
    """Reachability source fed by the host application.

    Hosts forward their platform callback into :meth:`set_state`; tests call
    :meth:`set_online` directly.
    """

    def __init__(self, initial: NetworkState | bool = True) -> None:
        self._state = self._coerce(initial)
        self._listeners: list[Callable[[NetworkState], None]] = []

    @staticmethod
    def _coerce(state: NetworkState | bool) -> NetworkState:
        if isinstance(state, NetworkState):
            return state
        return NetworkState(connected=state, internet_reachable=state, type="unknown")

    async def fetch(self) -> NetworkState:
        return self._state

    def add_listener(self, listener: Callable[[NetworkState], None]) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_state(self, state: NetworkState | bool) -> None:
        self._state = self._coerce(state)
        for listener in list(self._listeners):
            listener(self._state)

    def set_online(self, online: bool) -> None:
        self.set_state(online)


class ConnectivityMonitor:
    """Subscribable online/offline signal over a :class:`ReachabilitySource`.

    Listeners are told the current state as soon as they subscribe and then
    once per transition; repeated readings of the same state are dropped.
    With ``connectivity_debounce_seconds`` set, a transition is reported only
    after the new state has held for that long.
    """

    def __init__(
        self,
        source: ReachabilitySource,
        config: Settings | None = None,
        *,
        debounce_seconds: float | None = None,
    ) -> None:
        cfg = config or default_settings
        self._source = source
        self._debounce = (
            cfg.connectivity_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self._online: bool | None = None
        self._state: NetworkState | None = None
        self._listeners: list[ConnectivityListener] = []
        self._source_unsubscribe: Unsubscribe | None = None
        self._pending: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._waiters: set[asyncio.Future[None]] = set()

    @property
    def online(self) -> bool:
        """Last reported state; ``True`` before the first reading."""
        return True if self._online is None else self._online

    async def start(self) -> None:
        """Take an initial reading and start listening to the source."""
        if self._source_unsubscribe is not None:
            return
        self._source_unsubscribe = self._source.add_listener(self._on_reading)
        try:
            state = await self._source.fetch()
        except Exception:  # noqa: BLE001
            logger.warning("Initial reachability check failed; assuming online", exc_info=True)
            self._emit(True)
            return
        self._state = state
        self._emit(state.online)

    def stop(self) -> None:
        if self._source_unsubscribe is not None:
            self._source_unsubscribe()
            self._source_unsubscribe = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    async def is_online(self) -> bool:
        """Ask the source right now; returns ``True`` if the check itself fails."""
        try:
            state = await self._source.fetch()
        except Exception:  # noqa: BLE001
            logger.debug("Reachability check failed; assuming online", exc_info=True)
            return True
        self._state = state
        return state.online

    def network_state(self) -> NetworkState | None:
        """Return the last raw reading, or ``None`` before the first one."""
        return self._state

    def subscribe(self, listener: ConnectivityListener) -> Unsubscribe:
        """Call ``listener`` now with the current state and on every transition."""
        self._listeners.append(listener)
        self._invoke(listener, self.online)
        return self._remover(listener)

    async def wait_for_online(self) -> None:
        """Return once the device is online.

        Wakes on the first online reading from the source, without waiting out
        the debounce window.
        """
        if await self.is_online():
            return
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.add(ready)
        try:
            await ready
        finally:
            self._waiters.discard(ready)

    def _wake_waiters(self) -> None:
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _remover(self, listener: ConnectivityListener) -> Unsubscribe:
        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_reading(self, state: NetworkState) -> None:
        self._state = state
        online = state.online
        if online:
            self._wake_waiters()
        if self._debounce <= 0:
            self._emit(online)
            return
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if online == self.online:
            # Flapped back before the debounce window closed.
            return
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self._debounce, self._emit, online)

    def _emit(self, online: bool) -> None:
        self._pending = None
        previous = self.online
        self._online = online
        if online:
            self._wake_waiters()
        if online == previous:
            return
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            self._invoke(listener, online)

    def _invoke(self, listener: ConnectivityListener, online: bool) -> None:
        try:
            result = listener(online)
        except Exception:  # noqa: BLE001
            logger.exception("Connectivity listener failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Connectivity listener failed", exc_info=task.exception())
