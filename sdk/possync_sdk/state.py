"""
Process-scoped sync state shared by the dispatcher, the reconciler and the UI.

The dispatcher and reconciler never call each other; they communicate
through this state (connectivity, backlog size, stalled signals). The UI
reads it through SyncStatusView, which cannot write.

The state has an explicit lifecycle: init_sync_state() at startup,
reset_sync_state() at teardown (and between tests).

Example:
    >>> state = init_sync_state()
    >>> unsubscribe = state.view().subscribe_online(lambda online: print(online))
    >>> state.is_online.set(True)
    True
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Global state
_global_state: Optional[SyncState] = None
_state_lock = threading.Lock()


class ObservableValue(Generic[T]):
    """A value whose changes are pushed to subscribers.

    Subscribers are called synchronously, in subscription order, only when
    the value actually changes.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> bool:
        """Set the value.

        Returns:
            True if the value changed
        """
        with self._lock:
            if value == self._value:
                return False
            self._value = value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(value)
        return True

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a change callback.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


class SyncState:
    """Mutable sync state. Only sync components write to it.

    Attributes:
        is_online: Whether the server is reachable
        pending_outbox_count: Unconfirmed outbox entries
        outbox_stalled: Oldest unconfirmed entry is older than the threshold
        feed_stalled: The change feed has been down longer than the threshold
        stalled: outbox_stalled or feed_stalled
        feed_state: Reconciler state name
        last_flush_at: Time of the last successful flush (Unix ms)
    """

    def __init__(self) -> None:
        self.is_online: ObservableValue[bool] = ObservableValue(False)
        self.pending_outbox_count: ObservableValue[int] = ObservableValue(0)
        self.outbox_stalled: ObservableValue[bool] = ObservableValue(False)
        self.feed_stalled: ObservableValue[bool] = ObservableValue(False)
        self.stalled: ObservableValue[bool] = ObservableValue(False)
        self.feed_state: ObservableValue[str] = ObservableValue("DISCONNECTED")
        self.last_flush_at: ObservableValue[Optional[int]] = ObservableValue(None)

        self.outbox_stalled.subscribe(lambda _: self._update_stalled())
        self.feed_stalled.subscribe(lambda _: self._update_stalled())

    def _update_stalled(self) -> None:
        self.stalled.set(self.outbox_stalled.value or self.feed_stalled.value)

    def view(self) -> SyncStatusView:
        return SyncStatusView(self)


class SyncStatusView:
    """Read-only view of SyncState for the application."""

    def __init__(self, state: SyncState) -> None:
        self._state = state

    @property
    def is_online(self) -> bool:
        return self._state.is_online.value

    @property
    def pending_outbox_count(self) -> int:
        return self._state.pending_outbox_count.value

    @property
    def stalled(self) -> bool:
        return self._state.stalled.value

    @property
    def feed_state(self) -> str:
        return self._state.feed_state.value

    @property
    def last_flush_at(self) -> Optional[int]:
        return self._state.last_flush_at.value

    def subscribe_online(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self._state.is_online.subscribe(callback)

    def subscribe_pending(self, callback: Callable[[int], None]) -> Callable[[], None]:
        return self._state.pending_outbox_count.subscribe(callback)

    def subscribe_stalled(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self._state.stalled.subscribe(callback)

    def to_dict(self) -> dict[str, object]:
        return {
            "is_online": self.is_online,
            "pending_outbox_count": self.pending_outbox_count,
            "stalled": self.stalled,
            "feed_state": self.feed_state,
            "last_flush_at": self.last_flush_at,
        }


def init_sync_state() -> SyncState:
    """Create the process-wide sync state if it doesn't exist yet."""
    global _global_state
    with _state_lock:
        if _global_state is None:
            _global_state = SyncState()
        return _global_state


def get_sync_state() -> SyncState:
    """Get the process-wide sync state.

    Raises:
        RuntimeError: If init_sync_state() was not called
    """
    with _state_lock:
        if _global_state is None:
            raise RuntimeError("Sync state is not initialized; call init_sync_state() first")
        return _global_state


def reset_sync_state() -> None:
    """Drop the process-wide sync state (teardown and tests)."""
    global _global_state
    with _state_lock:
        _global_state = None
