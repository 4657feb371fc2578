"""
Unit tests for mutation effects and the in-memory local store.

Tests cover:
- Create/update/delete semantics and tombstones
- Stock adjustments and party payments
- Conflicts and missing targets
- InMemoryLocalStore optimistic application
"""

import pytest

from possync_sdk.effects import EntityState, apply_effect
from possync_sdk.errors import MissingDependencyError, PermanentApplicationError
from possync_sdk.local import InMemoryLocalStore


class TestApplyEffect:
    """Tests for apply_effect()."""

    def test_create_from_nothing(self):
        state = apply_effect("item", "create", "I1", None, {"name": "Soap", "stock": 10})

        assert state.data == {"name": "Soap", "stock": 10}
        assert state.deleted is False

    def test_create_existing_is_rejected(self):
        current = EntityState(data={"name": "Soap"})

        with pytest.raises(PermanentApplicationError):
            apply_effect("item", "create", "I1", current, {"name": "Soap"})

    def test_create_over_tombstone_is_allowed(self):
        current = EntityState(data={"name": "Old"}, deleted=True)

        state = apply_effect("item", "create", "I1", current, {"name": "New"})
        assert state.data == {"name": "New"}
        assert state.deleted is False

    def test_transaction_create_records_kind(self):
        state = apply_effect(
            "transaction", "create_expense", "T1", None, {"amount": 5.0, "mode": "CASH"}
        )

        assert state.data["type"] == "EXPENSE"

    def test_adjust_applies_delta(self):
        current = EntityState(data={"name": "Soap", "stock": 10})

        state = apply_effect("item", "adjust", "I1", current, {"delta": -2})
        assert state.data["stock"] == 8
        assert current.data["stock"] == 10

    def test_adjust_may_go_negative(self):
        current = EntityState(data={"stock": 1})

        state = apply_effect("item", "adjust", "I1", current, {"delta": -3})
        assert state.data["stock"] == -2

    def test_adjust_missing_target(self):
        with pytest.raises(MissingDependencyError) as exc_info:
            apply_effect("item", "adjust", "I9", None, {"delta": 1})

        assert exc_info.value.retryable is True
        assert exc_info.value.entity_id == "I9"

    def test_update_merges(self):
        current = EntityState(data={"name": "Soap", "price": 2.0})

        state = apply_effect("item", "update", "I1", current, {"price": 2.5})
        assert state.data == {"name": "Soap", "price": 2.5}

    def test_update_after_delete_is_missing(self):
        current = EntityState(data={"name": "Soap"}, deleted=True)

        with pytest.raises(MissingDependencyError):
            apply_effect("item", "update", "I1", current, {"price": 1.0})

    def test_delete_keeps_last_data_as_tombstone(self):
        current = EntityState(data={"name": "Soap"})

        state = apply_effect("item", "delete", "I1", current, {})
        assert state.deleted is True
        assert state.data == {"name": "Soap"}

    def test_record_payment_reduces_balance(self):
        current = EntityState(data={"type": "CUSTOMER", "balance": 100.0})

        state = apply_effect("party", "record_payment", "P1", current, {"amount": 40.25, "mode": "UPI"})
        assert state.data["balance"] == 59.75

    def test_upsert_vendor_sets_type(self):
        state = apply_effect("party", "upsert_vendor", "P1", None, {"name": "Acme", "phone": "1"})

        assert state.data["type"] == "VENDOR"
        assert state.data["balance"] == 0.0

    def test_mark_done(self):
        current = EntityState(data={"title": "Call", "dueAt": 1})

        state = apply_effect("reminder", "mark_done", "R1", current, {})
        assert state.data["done"] is True


class TestInMemoryLocalStore:
    """Tests for InMemoryLocalStore."""

    @pytest.mark.asyncio
    async def test_local_apply_keeps_server_version(self):
        store = InMemoryLocalStore()
        await store.put_state("item", "I1", {"name": "Soap", "stock": 10}, version=3)

        await store.apply_locally("item", "adjust", "I1", {"delta": -2})

        record = await store.get("item", "I1")
        assert record.data["stock"] == 8
        assert record.version == 3

    @pytest.mark.asyncio
    async def test_local_create_has_no_version(self):
        store = InMemoryLocalStore()

        await store.apply_locally("item", "create", "I1", {"name": "Soap"})

        assert await store.get_version("item", "I1") is None

    @pytest.mark.asyncio
    async def test_failed_local_apply_changes_nothing(self):
        store = InMemoryLocalStore()

        with pytest.raises(MissingDependencyError):
            await store.apply_locally("item", "adjust", "I1", {"delta": 1})

        assert await store.get("item", "I1") is None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self):
        store = InMemoryLocalStore()
        await store.put_state("item", "I1", {"name": "Soap"}, version=1)

        record = await store.get("item", "I1")
        record.data["name"] = "Changed"

        assert (await store.get("item", "I1")).data["name"] == "Soap"
        assert store.snapshot()[("item", "I1")].data["name"] == "Soap"

    @pytest.mark.asyncio
    async def test_restore_undoes_local_apply(self):
        store = InMemoryLocalStore()
        await store.put_state("item", "I1", {"name": "Soap", "stock": 10}, version=2)
        before = await store.get("item", "I1")
        missing = await store.get("item", "I2")

        await store.apply_locally("item", "adjust", "I1", {"delta": -2})
        await store.apply_locally("item", "create", "I2", {"name": "Salt"})
        await store.restore("item", "I1", before)
        await store.restore("item", "I2", missing)

        record = await store.get("item", "I1")
        assert (record.data["stock"], record.version) == (10, 2)
        assert await store.get("item", "I2") is None
