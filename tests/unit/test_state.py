"""
Unit tests for the shared sync state.
"""

import pytest

from possync_sdk.state import (
    ObservableValue,
    SyncState,
    get_sync_state,
    init_sync_state,
    reset_sync_state,
)


class TestObservableValue:
    """Tests for ObservableValue."""

    def test_notifies_only_on_change(self):
        value = ObservableValue(0)
        seen = []
        value.subscribe(seen.append)

        assert value.set(1) is True
        assert value.set(1) is False
        value.set(2)

        assert seen == [1, 2]

    def test_unsubscribe(self):
        value = ObservableValue(False)
        seen = []
        unsubscribe = value.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        value.set(True)

        assert seen == []


class TestSyncState:
    """Tests for SyncState and its read-only view."""

    def test_stalled_follows_either_source(self):
        state = SyncState()

        state.outbox_stalled.set(True)
        assert state.stalled.value is True
        state.feed_stalled.set(True)
        state.outbox_stalled.set(False)
        assert state.stalled.value is True
        state.feed_stalled.set(False)
        assert state.stalled.value is False

    def test_view_reflects_state(self):
        state = SyncState()
        view = state.view()
        pending = []
        view.subscribe_pending(pending.append)

        state.pending_outbox_count.set(3)
        state.is_online.set(True)

        assert view.pending_outbox_count == 3
        assert view.is_online is True
        assert pending == [3]
        assert view.to_dict()["feed_state"] == "DISCONNECTED"

    def test_global_lifecycle(self):
        """init/get/reset manage one process-wide instance."""
        with pytest.raises(RuntimeError):
            get_sync_state()

        state = init_sync_state()
        assert init_sync_state() is state
        assert get_sync_state() is state

        reset_sync_state()
        with pytest.raises(RuntimeError):
            get_sync_state()
