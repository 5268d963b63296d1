"""
Tests for the persistent payment store and principal directory.

Validates:
- Payment records and queued retries survive a reopen
- A restarted orchestrator stays idempotent and runs retries it had queued
- Principals registered through the SQL directory survive a reopen
- from_settings wires the SQL-backed stores
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from subsidy_engine.config import SubsidySettings
from subsidy_engine.domain.schema import (
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    Principal,
    Role,
)
from subsidy_engine.errors import Conflict, Forbidden, GatewayUnavailable
from subsidy_engine.governance.permissions import RoleAuthority, SqlPrincipalDirectory
from subsidy_engine.ledger.audit import AuditTrail
from subsidy_engine.ledger.gateway import InMemoryLedgerGateway
from subsidy_engine.orchestrator import SubsidyCore
from subsidy_engine.payments.gateways import InMemoryPaymentGateway
from subsidy_engine.payments.orchestrator import PaymentOrchestrator
from subsidy_engine.payments.store import DeferredRetry, SqlPaymentStore

from subsidy_fixtures import (
    GOVERNMENT,
    ORACLE,
    PRODUCER,
    T0,
    FakeClock,
    RecordingSleep,
    make_authority,
)


def _record(payment_id="PAY_1_1_0", status=PaymentStatus.FAILED, **overrides) -> PaymentRecord:
    fields = {
        "payment_id": payment_id,
        "project_id": 1,
        "milestone_id": 1,
        "method": PaymentMethod.BANK_TRANSFER,
        "amount": Decimal("0.5"),
        "beneficiary": PRODUCER.account,
        "status": status,
        "status_history": [PaymentStatus.PENDING, status],
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return PaymentRecord(**fields)


class TestSqlPaymentStore:
    def _open(self, tmp_path):
        store = SqlPaymentStore(f"sqlite:///{tmp_path / 'payments.db'}")
        store.initialize()
        return store

    def test_records_survive_reopen(self, tmp_path):
        store = self._open(tmp_path)
        failed = _record(error="GatewayUnavailable", attempts=3)
        settled = _record(
            "PAY_1_1_5000",
            status=PaymentStatus.COMPLETED,
            gateway_reference="ACH-000001",
            fee=Decimal("0.25"),
            reconciled_from="PAY_1_1_0",
            created_at=T0 + timedelta(seconds=5),
            updated_at=T0 + timedelta(seconds=5),
        )
        store.save(failed)
        store.save(settled)

        reopened = self._open(tmp_path)
        assert reopened.get("PAY_1_1_0") == failed
        assert reopened.get("PAY_1_1_5000") == settled
        assert reopened.get("PAY_9_9_9") is None
        assert [r.payment_id for r in reopened.for_milestone(1, 1)] == [
            "PAY_1_1_0",
            "PAY_1_1_5000",
        ]
        assert reopened.for_milestone(1, 2) == []
        assert len(reopened.all()) == 2

    def test_save_replaces_existing_record(self, tmp_path):
        store = self._open(tmp_path)
        store.save(_record(status=PaymentStatus.PENDING, status_history=[PaymentStatus.PENDING]))
        store.save(_record())
        [stored] = store.all()
        assert stored.status == PaymentStatus.FAILED
        assert stored.status_history == [PaymentStatus.PENDING, PaymentStatus.FAILED]

    def test_retry_queue_survives_reopen(self, tmp_path):
        store = self._open(tmp_path)
        later = DeferredRetry(
            failed_payment_id="PAY_1_2_0", project_id=1, milestone_id=2,
            method=PaymentMethod.WIRE, beneficiary=PRODUCER.account,
            requested_by=GOVERNMENT.id, attempt=2, due_at=T0 + timedelta(minutes=10),
        )
        sooner = DeferredRetry(
            failed_payment_id="PAY_1_1_0", project_id=1, milestone_id=1,
            method=PaymentMethod.BANK_TRANSFER, beneficiary=PRODUCER.account,
            requested_by=ORACLE.id, attempt=1, due_at=T0 + timedelta(minutes=5),
        )
        store.save_retry(later)
        store.save_retry(sooner)

        reopened = self._open(tmp_path)
        assert reopened.retries() == [sooner, later]

        reopened.remove_retry(1, 1)
        reopened.remove_retry(7, 7)
        assert reopened.retries() == [later]


class TestOrchestratorRestart:
    def setup_method(self):
        self.clock = FakeClock()
        self.ledger = InMemoryLedgerGateway()
        self.audit = AuditTrail(clock=self.clock)
        self.rail = InMemoryPaymentGateway(clock=self.clock)
        self.project, self.milestone = asyncio.run(self._seed())

    async def _seed(self):
        project = await self.ledger.register_project(
            producer=PRODUCER.id,
            beneficiary_account=PRODUCER.account,
            name="Green H2 Valley",
            description="",
            total_subsidy_amount=Decimal("1.0"),
            payment_method=PaymentMethod.BANK_TRANSFER,
            created_at=T0,
        )
        milestone = await self.ledger.add_milestone(
            project_id=project.id,
            description="Produce first 500 kg",
            subsidy_amount=Decimal("0.5"),
            target_value=500,
            verification_source="meter-A",
            deadline=T0 + timedelta(days=1),
            created_at=T0,
        )
        milestone = await self.ledger.verify_milestone(milestone.id, 600, True, ORACLE.id, T0)
        return project, milestone

    def _payments(self, tmp_path):
        store = SqlPaymentStore(f"sqlite:///{tmp_path / 'payments.db'}")
        store.initialize()
        return PaymentOrchestrator(
            self.ledger,
            make_authority(),
            self.audit,
            {PaymentMethod.BANK_TRANSFER: self.rail},
            sleep=RecordingSleep(),
            clock=self.clock,
            store=store,
        )

    def _disburse(self, payments):
        return asyncio.run(payments.disburse(GOVERNMENT, self.project.id, self.milestone.id))

    def test_restarted_orchestrator_returns_existing_payment(self, tmp_path):
        first = self._disburse(self._payments(tmp_path))

        self.clock.advance(minutes=1)
        again = self._disburse(self._payments(tmp_path))
        assert again.payment_id == first.payment_id
        assert again.status == PaymentStatus.COMPLETED
        assert len(self.rail.transfers) == 1

    def test_queued_retry_runs_after_restart(self, tmp_path):
        self.rail.failures = [GatewayUnavailable("rail down")] * 3
        with pytest.raises(GatewayUnavailable):
            self._disburse(self._payments(tmp_path))

        restarted = self._payments(tmp_path)
        [retry] = asyncio.run(restarted.pending_retries())
        assert retry.attempt == 1

        self.clock.advance(seconds=301)
        [record] = asyncio.run(restarted.run_due_retries())
        assert record.status == PaymentStatus.COMPLETED
        assert record.deferred_attempt == 1
        assert asyncio.run(restarted.pending_retries()) == []
        analytics = asyncio.run(restarted.analytics())
        assert analytics.completed_payments == 1
        assert analytics.failed_payments == 1


class TestSqlPrincipalDirectory:
    def _open(self, tmp_path):
        directory = SqlPrincipalDirectory(f"sqlite:///{tmp_path / 'principals.db'}")
        directory.initialize()
        return directory

    def test_principals_survive_reopen(self, tmp_path):
        directory = self._open(tmp_path)
        directory.add(GOVERNMENT)
        directory.add(PRODUCER)

        reopened = self._open(tmp_path)
        assert reopened.get(GOVERNMENT.id) == GOVERNMENT
        assert reopened.get(PRODUCER.id).account == PRODUCER.account
        assert reopened.get("nobody") is None

    def test_duplicate_is_conflict(self, tmp_path):
        directory = self._open(tmp_path)
        directory.add(GOVERNMENT)
        with pytest.raises(Conflict):
            directory.add(Principal(id=GOVERNMENT.id, role=Role.AUDITOR))

        # Another process registered the id after this one loaded its cache.
        other = self._open(tmp_path)
        directory.add(ORACLE)
        with pytest.raises(Conflict):
            other.add(ORACLE)

    def test_lookup_falls_through_to_table(self, tmp_path):
        first = self._open(tmp_path)
        second = self._open(tmp_path)
        first.add(ORACLE)
        assert second.get(ORACLE.id) == ORACLE

    def test_authority_over_sql_directory(self, tmp_path):
        authority = RoleAuthority(self._open(tmp_path))
        authority.bootstrap(GOVERNMENT)
        authority.register_principal(GOVERNMENT, "oracle-2", Role.ORACLE)

        restarted = RoleAuthority(self._open(tmp_path))
        assert restarted.role_of("oracle-2") == Role.ORACLE
        with pytest.raises(Forbidden):
            restarted.register_principal(
                Principal(id="oracle-2", role=Role.ORACLE), "auditor-9", Role.AUDITOR
            )


class TestFromSettings:
    def test_wires_sql_stores(self, tmp_path):
        cfg = SubsidySettings(ledger_database_url=f"sqlite:///{tmp_path / 'core.db'}")
        core = SubsidyCore.from_settings(cfg)
        assert isinstance(core.payments.store, SqlPaymentStore)
        assert isinstance(core.authority.directory, SqlPrincipalDirectory)

        async def scenario():
            await core.initialize()
            try:
                core.authority.bootstrap(GOVERNMENT)
                return await core.register_principal(GOVERNMENT, "oracle-2", Role.ORACLE)
            finally:
                await core.shutdown()

        assert asyncio.run(scenario()).role == Role.ORACLE

        reopened = SubsidyCore.from_settings(cfg)

        async def reload():
            await reopened.initialize()
            try:
                return await reopened.audit_entries("principal")
            finally:
                await reopened.shutdown()

        [entry] = asyncio.run(reload())
        assert entry.resource_id == "oracle-2"
        assert reopened.authority.role_of("oracle-2") == Role.ORACLE
