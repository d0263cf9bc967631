"""Tests for the ledger's compare-and-set store."""

import pytest
from protean.exceptions import ObjectNotFoundError

from orderflow.errors import ConflictError


def _insert(ledger, record_id="rec-1", status="pending"):
    return ledger.insert("orders", record_id, status, {"id": record_id, "note": "first"}, owner_id="buyer-1")


class TestRecords:
    def test_insert_starts_at_version_zero(self, ledger):
        record = _insert(ledger)
        assert record.version == 0

        stored = ledger.get("orders", "rec-1")
        assert stored.status == "pending"
        assert stored.document == {"id": "rec-1", "note": "first"}

    def test_duplicate_insert_conflicts(self, ledger):
        _insert(ledger)
        with pytest.raises(ConflictError):
            _insert(ledger, status="confirmed")
        assert ledger.get("orders", "rec-1").status == "pending"

    def test_get_missing_returns_none(self, ledger):
        assert ledger.get("orders", "missing") is None

    def test_find_by_owner_and_status(self, ledger):
        _insert(ledger, "rec-1", "pending")
        _insert(ledger, "rec-2", "confirmed")
        ledger.insert("orders", "rec-3", "pending", {"id": "rec-3"}, owner_id="buyer-2")

        assert [r.id for r in ledger.find("orders", owner_id="buyer-1")] == ["rec-1", "rec-2"]
        assert [r.id for r in ledger.find("orders", owner_id="buyer-1", status="confirmed")] == ["rec-2"]

    def test_find_by_lookup_key(self, ledger):
        ledger.insert("shipments", "shp-1", "created", {"id": "shp-1"}, lookup_key="WAYBILL1")
        assert [r.id for r in ledger.find("shipments", lookup_key="WAYBILL1")] == ["shp-1"]


class TestCompareAndSet:
    def test_matching_status_and_version_writes(self, ledger):
        _insert(ledger)
        version = ledger.compare_and_set("orders", "rec-1", "pending", 0, "confirmed", {"id": "rec-1", "note": "second"})

        assert version == 1
        stored = ledger.get("orders", "rec-1")
        assert stored.status == "confirmed"
        assert stored.version == 1
        assert stored.document["note"] == "second"

    def test_stale_version_conflicts(self, ledger):
        _insert(ledger)
        ledger.compare_and_set("orders", "rec-1", "pending", 0, "pending", {"id": "rec-1"})

        with pytest.raises(ConflictError):
            ledger.compare_and_set("orders", "rec-1", "pending", 0, "confirmed", {"id": "rec-1"})
        assert ledger.get("orders", "rec-1").status == "pending"

    def test_wrong_status_conflicts(self, ledger):
        _insert(ledger)
        with pytest.raises(ConflictError) as exc:
            ledger.compare_and_set("orders", "rec-1", "confirmed", 0, "shipped", {"id": "rec-1"})
        assert "pending at version 0" in exc.value.messages["status"][0]

    def test_missing_record_raises_not_found(self, ledger):
        with pytest.raises(ObjectNotFoundError):
            ledger.compare_and_set("orders", "nope", "pending", 0, "confirmed", {})


class TestIdempotencyKeys:
    def test_claim_once(self, ledger):
        assert ledger.claim_event("payment:fake", "evt-1") is True
        assert ledger.claim_event("payment:fake", "evt-1") is False
        assert ledger.is_claimed("payment:fake", "evt-1")

    def test_keys_are_scoped_by_source(self, ledger):
        assert ledger.claim_event("payment:fake", "evt-1") is True
        assert ledger.claim_event("scan", "evt-1") is True


class TestTransactions:
    def test_exception_rolls_back_every_write(self, ledger):
        with pytest.raises(RuntimeError):
            with ledger.transaction():
                _insert(ledger)
                ledger.claim_event("scan", "WAYBILL1:2026-01-01T00:00:00+00:00")
                raise RuntimeError("boom")

        assert ledger.get("orders", "rec-1") is None
        assert not ledger.is_claimed("scan", "WAYBILL1:2026-01-01T00:00:00+00:00")

    def test_nested_blocks_join_the_outer_transaction(self, ledger):
        with pytest.raises(ConflictError):
            with ledger.transaction():
                _insert(ledger)
                with ledger.transaction():
                    ledger.compare_and_set("orders", "rec-1", "pending", 0, "confirmed", {"id": "rec-1"})
                ledger.compare_and_set("orders", "rec-1", "pending", 0, "cancelled", {"id": "rec-1"})

        assert ledger.get("orders", "rec-1") is None

    def test_commit_on_clean_exit(self, ledger):
        with ledger.transaction():
            _insert(ledger)
            ledger.compare_and_set("orders", "rec-1", "pending", 0, "confirmed", {"id": "rec-1"})

        assert ledger.get("orders", "rec-1").status == "confirmed"
