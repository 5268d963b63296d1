"""
Tests for the Audit Trail hash chain.

Validates:
- Append-only semantics and sequence numbering
- Before/after state digests
- Chain verification and tamper detection
- SQL-backed store round trip
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from subsidy_engine.domain.schema import AuditAction, Project
from subsidy_engine.errors import AuditIntegrityError, Conflict
from subsidy_engine.ledger.audit import (
    GENESIS_HASH,
    AuditTrail,
    InMemoryAuditStore,
    SqlAuditStore,
    state_digest,
)
from subsidy_engine.ledger.verify_cli import run_verification

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _project(**overrides) -> Project:
    fields = {
        "id": 1,
        "producer": "producer-h2",
        "beneficiary_account": "ACCT-1",
        "name": "Green H2",
        "total_subsidy_amount": Decimal("1.0"),
        "created_at": NOW,
    }
    fields.update(overrides)
    return Project(**fields)


class SlowAuditStore(InMemoryAuditStore):
    """In-memory store whose writes take as long as a remote database round trip."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def append(self, entry):
        time.sleep(self.delay)
        super().append(entry)


class TestStateDigest:
    def test_none_has_no_digest(self):
        assert state_digest(None) is None

    def test_digest_is_stable_and_sensitive(self):
        assert state_digest(_project()) == state_digest(_project())
        assert state_digest(_project()) != state_digest(_project(name="Blue H2"))

    def test_model_and_dict_forms_agree(self):
        project = _project()
        assert state_digest(project) == state_digest(project.model_dump(mode="json"))


class TestAuditTrail:
    def setup_method(self):
        self.store = InMemoryAuditStore()
        self.trail = AuditTrail(self.store, clock=lambda: NOW)

    def _record_three(self):
        before = _project()
        after = _project(disbursed_amount=Decimal("0.5"))

        async def record():
            await self.trail.record(AuditAction.PROJECT_CREATED, "gov-1", "project", 1, after=before)
            await self.trail.record(
                AuditAction.PAYMENT_COMPLETED, "gov-1", "payment", "PAY_1_1_0",
                before=before, after=after, detail={"amount": Decimal("0.5")},
            )
            await self.trail.record(AuditAction.MILESTONE_CREATED, "gov-1", "milestone", 1)

        asyncio.run(record())

    def test_genesis_entry(self):
        entry = asyncio.run(self.trail.record(AuditAction.PROJECT_CREATED, "gov-1", "project", 1))
        assert entry.sequence_number == 0
        assert entry.previous_hash == GENESIS_HASH
        assert entry.entry_hash == entry.compute_hash()

    def test_entries_are_chained(self):
        self._record_three()
        entries = self.trail.entries()
        assert [e.sequence_number for e in entries] == [0, 1, 2]
        for prev, cur in zip(entries, entries[1:]):
            assert cur.previous_hash == prev.entry_hash

    def test_detail_is_json_normalised(self):
        self._record_three()
        payment = self.trail.entries("payment")[0]
        assert payment.detail == {"amount": "0.5"}
        assert payment.resource_id == "PAY_1_1_0"

    def test_digests_match_states(self):
        self._record_three()
        payment = self.trail.entries("payment")[0]
        assert AuditTrail.matches(payment, _project(disbursed_amount=Decimal("0.5")))
        assert not AuditTrail.matches(payment, _project())
        assert payment.before_digest == state_digest(_project())

    def test_record_failure_keeps_error_class(self):
        entry = asyncio.run(
            self.trail.record_failure(
                AuditAction.MILESTONE_FAILED, "oracle-1", "milestone", 9,
                error=Conflict("already verified"),
            )
        )
        assert entry.detail == {"error": "Conflict"}
        assert entry.before_digest is None and entry.after_digest is None

    def test_filter_by_resource(self):
        self._record_three()
        assert len(self.trail.entries("project")) == 1
        assert self.trail.entries("milestone", 1)[0].action == "milestone.created"
        assert self.trail.entries("milestone", 2) == []

    def test_verify_empty_chain(self):
        assert self.trail.verify_chain() == (True, 0, "Audit trail is empty")

    def test_verify_intact_chain(self):
        self._record_three()
        is_valid, count, _ = self.trail.verify_chain()
        assert is_valid
        assert count == 3
        self.trail.assert_intact()

    def test_detects_tampered_detail(self):
        self._record_three()
        entries = self.store._entries
        entries[1] = entries[1].model_copy(update={"detail": {"amount": "500"}})
        is_valid, position, message = self.trail.verify_chain()
        assert not is_valid
        assert position == 1
        assert "Hash mismatch" in message
        with pytest.raises(AuditIntegrityError):
            self.trail.assert_intact()

    def test_detects_deleted_entry(self):
        self._record_three()
        del self.store._entries[1]
        is_valid, position, message = self.trail.verify_chain()
        assert not is_valid
        assert position == 1
        assert "Sequence gap" in message

    def test_cli_reports_validity(self):
        self._record_three()
        assert run_verification(self.trail, verbose=True) is True
        self.store._entries[0] = self.store._entries[0].model_copy(
            update={"principal_id": "someone-else"}
        )
        assert run_verification(self.trail) is False


class TestSqlAuditStore:
    def test_chain_survives_round_trip(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        store = SqlAuditStore(url)
        store.initialize()
        trail = AuditTrail(store)
        asyncio.run(
            trail.record(AuditAction.PROJECT_CREATED, "gov-1", "project", 1, after=_project())
        )
        asyncio.run(
            trail.record(
                AuditAction.MILESTONE_VERIFIED, "oracle-1", "milestone", 1,
                detail={"success": True, "actual_value": 600},
            )
        )

        reopened = AuditTrail(SqlAuditStore(url))
        assert reopened.store.count() == 2
        assert reopened.store.last().sequence_number == 1
        is_valid, count, _ = reopened.verify_chain()
        assert is_valid
        assert count == 2

        # Appends continue the existing chain.
        entry = asyncio.run(
            reopened.record(AuditAction.MILESTONE_CREATED, "gov-1", "milestone", 2)
        )
        assert entry.sequence_number == 2
        assert reopened.verify_chain()[0]


class TestAuditConcurrency:
    def test_slow_store_does_not_block_the_event_loop(self):
        trail = AuditTrail(SlowAuditStore(delay=0.1), clock=lambda: NOW)
        ticks: list[int] = []

        async def ticker():
            for n in range(5):
                ticks.append(n)
                await asyncio.sleep(0.005)

        async def scenario():
            task = asyncio.create_task(ticker())
            await trail.record(AuditAction.PROJECT_CREATED, "gov-1", "project", 1)
            during = len(ticks)
            await task
            return during

        assert asyncio.run(scenario()) >= 2

    def test_concurrent_appends_keep_one_chain(self):
        trail = AuditTrail(SlowAuditStore(delay=0.002), clock=lambda: NOW)

        async def scenario():
            await asyncio.gather(
                *(
                    trail.record(AuditAction.MILESTONE_CREATED, "gov-1", "milestone", n)
                    for n in range(10)
                )
            )

        asyncio.run(scenario())
        entries = trail.entries()
        assert [e.sequence_number for e in entries] == list(range(10))
        assert sorted(e.resource_id for e in entries) == sorted(str(n) for n in range(10))
        is_valid, count, _ = trail.verify_chain()
        assert is_valid
        assert count == 10
