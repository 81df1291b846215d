"""
Watches link-state changes until the host has joined (or failed to join) a network.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .wifi import LinkStateSubscription, WiFiBackend

logger = logging.getLogger(__name__)


class WatcherState(str, Enum):
    IDLE = "IDLE"
    ARMED = "ARMED"
    DECIDED = "DECIDED"


def ssid_matches(target: str, observed: str | None) -> bool:
    """Substring containment in either direction.

    Platforms may report the SSID wrapped in double quotes or truncated, and
    the target may itself be a fragment.
    """
    if not target or not observed:
        return False
    observed = observed.strip().strip('"')
    if not observed:
        return False
    return target in observed or observed in target


class NetworkJoinWatcher:
    """
    Reports exactly one join decision per arm().

    The first notification after subscribing is the pre-existing link state
    and is always discarded. The first later notification that reports a
    connection decides: success if its SSID matches the target, failure
    otherwise. The subscription is closed as soon as a decision is made.
    """

    def __init__(
        self,
        backend: WiFiBackend,
        on_success: Callable[[], Any] | None = None,
        on_failure: Callable[[], Any] | None = None,
        timeout: float | None = None,
    ):
        self.backend = backend
        self.on_success = on_success
        self.on_failure = on_failure
        self.timeout = timeout

        self._state = WatcherState.IDLE
        self._target: str | None = None
        self._subscription: LinkStateSubscription | None = None
        self._task: asyncio.Task | None = None
        self._decision: asyncio.Future[bool] | None = None
        self._armed_at = 0.0

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def target(self) -> str | None:
        return self._target

    async def arm(self, target_ssid: str) -> None:
        if self._state != WatcherState.IDLE:
            raise RuntimeError(f"Join watcher already used (state: {self._state.value})")

        loop = asyncio.get_running_loop()
        self._target = target_ssid
        self._decision = loop.create_future()
        self._subscription = await self.backend.subscribe_link_state_changes()
        self._state = WatcherState.ARMED
        self._armed_at = loop.time()
        self._task = asyncio.create_task(self._watch(self._subscription))
        logger.debug(f"Join watcher armed for '{target_ssid}'")

    async def _watch(self, subscription: LinkStateSubscription) -> None:
        snapshot_seen = False
        try:
            async for event in subscription:
                if not snapshot_seen:
                    snapshot_seen = True
                    logger.debug(f"Discarding initial link state: {event}")
                    continue

                if not event.connected:
                    continue

                matched = ssid_matches(self._target or "", event.ssid_observed)
                logger.info(
                    f"Connected to '{event.ssid_observed}' "
                    f"({'matches' if matched else 'does not match'} '{self._target}')"
                )
                await self._decide(matched)
                return
        finally:
            subscription.close()

    async def _decide(self, success: bool) -> None:
        if self._state != WatcherState.ARMED:
            return
        self._state = WatcherState.DECIDED
        self._close_subscription()

        if self._decision is not None and not self._decision.done():
            self._decision.set_result(success)

        callback = self.on_success if success else self.on_failure
        if callback is None:
            return
        try:
            if inspect.iscoroutinefunction(callback):
                await callback()
            else:
                callback()
        except Exception as e:
            logger.error(f"Join watcher callback error: {e}", exc_info=True)

    async def wait(self) -> bool:
        """Wait for the decision. A timeout counts as failure."""
        if self._decision is None:
            raise RuntimeError("Join watcher was never armed")

        if self.timeout is None:
            return await asyncio.shield(self._decision)

        remaining = self.timeout - (asyncio.get_running_loop().time() - self._armed_at)
        try:
            return await asyncio.wait_for(asyncio.shield(self._decision), max(remaining, 0.0))
        except TimeoutError:
            logger.warning(f"No connection to '{self._target}' within {self.timeout}s")
            await self._decide(False)
            return self._decision.result()

    def cancel(self) -> None:
        """Abandon the watch without a decision. Safe to call at any time."""
        if self._state == WatcherState.ARMED:
            self._state = WatcherState.DECIDED
            if self._decision is not None and not self._decision.done():
                self._decision.cancel()
            logger.debug(f"Join watcher for '{self._target}' cancelled")
        self._close_subscription()

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None and not self._task.done() and self._task is not _current_task():
            self._task.cancel()


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
