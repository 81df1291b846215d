"""
WiFi collaborator interface.

The provisioning core never talks to the radio directly. It uses a
WiFiBackend for profile management and gateway lookup, and a cancellable
LinkStateSubscription for link-state change notifications.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class JoinEvent(BaseModel):
    """One link-state change notification."""

    ssid_observed: str | None = None
    connected: bool = False


class SavedProfile(BaseModel):
    """A WiFi network profile already known to the host."""

    ssid: str
    profile_id: str


class LinkStateSubscription:
    """Queue of JoinEvents for a single consumer.

    Events delivered before start() are held back, so the snapshot passed to
    start() is always the first event a consumer sees.

    close() unregisters from the hub exactly once; further calls are no-ops.
    Iteration stops after close().
    """

    def __init__(self, hub: "LinkStateHub"):
        self._hub = hub
        self._queue: asyncio.Queue[JoinEvent | None] = asyncio.Queue()
        self._pending: list[JoinEvent] | None = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, snapshot: JoinEvent) -> None:
        """Deliver the snapshot, then everything published while it was taken."""
        pending, self._pending = self._pending or [], None
        for event in (snapshot, *pending):
            self.deliver(event)

    def deliver(self, event: JoinEvent) -> None:
        if self._closed:
            return
        if self._pending is not None:
            self._pending.append(event)
        else:
            self._queue.put_nowait(event)

    async def get(self) -> JoinEvent | None:
        """Next event, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake up a pending get()
        self._queue.put_nowait(None)
        self._hub.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> JoinEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class LinkStateHub:
    """Subscriber registry for link-state notifications.

    Every new subscription first receives a snapshot of the current link
    state, then every published event.
    """

    def __init__(
        self,
        snapshot: Callable[[], Awaitable[JoinEvent]] | None = None,
        on_idle: Callable[[], None] | None = None,
    ):
        self._snapshot = snapshot
        self._on_idle = on_idle
        self._subscriptions: list[LinkStateSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self) -> LinkStateSubscription:
        subscription = LinkStateSubscription(self)
        self._subscriptions.append(subscription)

        current = JoinEvent()
        if self._snapshot is not None:
            try:
                current = await self._snapshot()
            except BaseException:
                subscription.close()
                raise
        subscription.start(current)
        logger.debug(f"Link-state subscriber added ({self.subscriber_count} active)")
        return subscription

    def unsubscribe(self, subscription: LinkStateSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Link-state subscriber removed ({self.subscriber_count} active)")
            if not self._subscriptions and self._on_idle is not None:
                self._on_idle()

    def publish(self, event: JoinEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.deliver(event)


class WiFiBackend(ABC):
    """Link-layer WiFi management used by the provisioning flow."""

    @abstractmethod
    async def add_network_profile(self, ssid: str, psk: str) -> str | None:
        """Create a WPA-PSK profile, returning its id or None if it could not be created."""

    @abstractmethod
    async def list_saved_profiles(self) -> list[SavedProfile]:
        """All profiles known to the host."""

    @abstractmethod
    async def select_and_connect(self, profile_id: str) -> None:
        """Activate a profile. Completion is reported through link-state events."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Drop the current WiFi association, if any."""

    @abstractmethod
    async def subscribe_link_state_changes(self) -> LinkStateSubscription:
        """Subscribe to link-state changes. The first event is the current state."""

    @abstractmethod
    async def current_gateway_address(self) -> int | None:
        """Gateway of the active network as a 32-bit int in host byte order."""

    async def find_saved_profile(self, ssid: str) -> str | None:
        """Id of a saved profile whose SSID contains, or is contained in, ssid."""
        for profile in await self.list_saved_profiles():
            if profile.ssid and (profile.ssid in ssid or ssid in profile.ssid):
                return profile.profile_id
        return None
