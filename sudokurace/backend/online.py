"""Online-status signal consulted before any network call."""

from __future__ import annotations

from typing import Callable, Protocol


class OnlineStatus(Protocol):
    @property
    def is_online(self) -> bool:
        """True when network calls may be attempted."""


class OnlineSignal:
    """Observable connectivity flag; a forced-offline switch overrides the network state."""

    def __init__(self, network_online: bool = True) -> None:
        self._network_online = network_online
        self._force_offline = False
        self._subscribers: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._network_online and not self._force_offline

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _update(self, change: Callable[[], None]) -> None:
        before = self.is_online
        change()
        after = self.is_online
        if before != after:
            for callback in list(self._subscribers):
                callback(after)

    def set_online(self, network_online: bool) -> None:
        self._update(lambda: setattr(self, "_network_online", network_online))

    def force_offline(self, forced: bool) -> None:
        self._update(lambda: setattr(self, "_force_offline", forced))
