"""
Tests for the Milestone Engine.

Validates:
- Project lifecycle and milestone creation rules
- Exactly-once verification under concurrency
- Inclusive auto-verify boundary and window validation
- Dispute and resolution round trips
- Read-only reporting queries
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from subsidy_engine.data.aggregator import DataAggregator, SourceBinding
from subsidy_engine.data.sources import StaticMeasurementSource
from subsidy_engine.domain.schema import (
    MilestoneStatus,
    PaymentMethod,
    ProjectStatus,
)
from subsidy_engine.engine.milestones import MilestoneEngine
from subsidy_engine.errors import (
    Conflict,
    Forbidden,
    InvalidArgument,
    NotFound,
    Unavailable,
)
from subsidy_engine.ledger.audit import AuditTrail
from subsidy_engine.ledger.gateway import InMemoryLedgerGateway

from subsidy_fixtures import (
    AUDITOR,
    GOVERNMENT,
    ORACLE,
    OTHER_PRODUCER,
    PRODUCER,
    FakeClock,
    make_authority,
    readings,
)

REASON = "Meter calibration certificate had expired"
RESOLUTION = "Recalibrated meter confirms the recorded output"


class RecordingDisbursements:
    def __init__(self) -> None:
        self.requested: list[tuple[int, str]] = []

    async def request_disbursement(self, milestone, requested_by):
        self.requested.append((milestone.id, requested_by))
        return None


class TestMilestoneEngine:
    def setup_method(self):
        self.clock = FakeClock()
        self.iot = StaticMeasurementSource({"dev-1": []})
        self.aggregator = DataAggregator(
            {"meter-A": [SourceBinding("iot:dev-1", self.iot, "dev-1")]},
            clock=self.clock,
        )
        self.ledger = InMemoryLedgerGateway(latency=0.001)
        self.audit = AuditTrail(clock=self.clock)
        self.disbursements = RecordingDisbursements()
        self.engine = MilestoneEngine(
            self.ledger,
            make_authority(),
            self.audit,
            aggregator=self.aggregator,
            disbursements=self.disbursements,
            clock=self.clock,
        )

    def run(self, coro):
        return asyncio.run(coro)

    def _project(self, total="1.0"):
        return self.run(
            self.engine.create_project(
                GOVERNMENT, "Green H2 Valley", "Electrolyser build-out",
                PRODUCER.id, Decimal(total),
            )
        )

    def _milestone(self, project_id, amount="0.5", target=500, hours=24):
        return self.run(
            self.engine.create_milestone(
                GOVERNMENT, project_id, "Produce first 500 kg",
                Decimal(amount), target, "meter-A",
                self.clock() + timedelta(hours=hours),
            )
        )

    def _actions(self):
        return [e.action for e in self.audit.entries()]

    # ── Projects ───────────────────────────────────────────────

    def test_create_project_uses_producer_account(self):
        project = self._project()
        assert project.id == 1
        assert project.status == ProjectStatus.PENDING
        assert project.beneficiary_account == PRODUCER.account
        assert project.payment_method == PaymentMethod.BANK_TRANSFER
        assert self._actions() == ["project.created"]

    def test_create_project_requires_registered_producer(self):
        with pytest.raises(InvalidArgument):
            self.run(
                self.engine.create_project(
                    GOVERNMENT, "X", "", ORACLE.id, Decimal("1")
                )
            )
        assert self.audit.entries()[-1].action == "project.failed"

    def test_project_status_transitions(self):
        project = self._project()
        active = self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.ACTIVE))
        assert active.status == ProjectStatus.ACTIVE
        self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.SUSPENDED))
        self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.ACTIVE))
        self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.CANCELLED))
        with pytest.raises(Conflict):
            self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.ACTIVE))

    def test_producer_projects(self):
        self._project()
        self._project()
        assert len(self.run(self.engine.get_producer_projects(PRODUCER.id))) == 2
        assert self.run(self.engine.get_producer_projects(OTHER_PRODUCER.id)) == []

    # ── Milestone creation ─────────────────────────────────────

    def test_producer_cannot_create_milestone(self):
        project = self._project()
        with pytest.raises(Forbidden):
            self.run(
                self.engine.create_milestone(
                    PRODUCER, project.id, "Self-declared", Decimal("0.1"), 1, "meter-A",
                    self.clock() + timedelta(days=1),
                )
            )
        entry = self.audit.entries()[-1]
        assert entry.action == "milestone.failed"
        assert entry.detail["error"] == "Forbidden"

    def test_create_milestone(self):
        project = self._project()
        milestone = self._milestone(project.id)
        assert milestone.status == MilestoneStatus.PENDING
        assert milestone.actual_value is None
        assert milestone.created_at == self.clock()

    def test_missing_project_is_not_found(self):
        with pytest.raises(NotFound):
            self._milestone(99)

    def test_deadline_must_be_future(self):
        project = self._project()
        with pytest.raises(InvalidArgument):
            self._milestone(project.id, hours=0)

    def test_subsidy_must_be_positive(self):
        project = self._project()
        with pytest.raises(InvalidArgument):
            self._milestone(project.id, amount="0")

    def test_subsidies_cannot_exceed_project_total(self):
        project = self._project(total="1.0")
        self._milestone(project.id, amount="0.6")
        with pytest.raises(InvalidArgument):
            self._milestone(project.id, amount="0.5")
        self._milestone(project.id, amount="0.4")

    def test_terminal_project_rejects_milestones(self):
        project = self._project()
        self.run(self.engine.set_project_status(GOVERNMENT, project.id, ProjectStatus.CANCELLED))
        with pytest.raises(InvalidArgument):
            self._milestone(project.id)

    # ── Verification ───────────────────────────────────────────

    def test_verify_success_requests_payment(self):
        milestone = self._milestone(self._project().id)
        self.clock.advance(hours=2)
        verified = self.run(self.engine.verify(ORACLE, milestone.id, 600, True))
        assert verified.status == MilestoneStatus.VERIFIED
        assert verified.actual_value == 600
        assert verified.verified_by == ORACLE.id
        assert verified.verified_at == self.clock()
        assert self.disbursements.requested == [(milestone.id, ORACLE.id)]

    def test_verify_failure_requests_nothing(self):
        milestone = self._milestone(self._project().id)
        failed = self.run(self.engine.verify(AUDITOR, milestone.id, 100, False))
        assert failed.status == MilestoneStatus.FAILED
        assert self.disbursements.requested == []

    def test_second_verify_conflicts(self):
        milestone = self._milestone(self._project().id)
        self.run(self.engine.verify(ORACLE, milestone.id, 600, True))
        with pytest.raises(Conflict):
            self.run(self.engine.verify(ORACLE, milestone.id, 700, True))
        assert self.run(self.engine.get_milestone(milestone.id)).actual_value == 600

    def test_concurrent_verify_exactly_once(self):
        milestone = self._milestone(self._project().id)

        async def race():
            return await asyncio.gather(
                self.engine.verify(ORACLE, milestone.id, 600, True),
                self.engine.verify(AUDITOR, milestone.id, 300, False),
                return_exceptions=True,
            )

        results = self.run(race())
        conflicts = [r for r in results if isinstance(r, Conflict)]
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(winners) == 1

        stored = self.run(self.engine.get_milestone(milestone.id))
        assert stored.actual_value == winners[0].actual_value
        assert stored.status == winners[0].status
        assert self._actions().count("milestone.verified") == 1

    def test_producer_cannot_verify(self):
        milestone = self._milestone(self._project().id)
        with pytest.raises(Forbidden):
            self.run(self.engine.verify(PRODUCER, milestone.id, 600, True))
        assert self.run(self.engine.get_milestone(milestone.id)).status == MilestoneStatus.PENDING

    def test_negative_actual_value_rejected(self):
        milestone = self._milestone(self._project().id)
        with pytest.raises(InvalidArgument):
            self.run(self.engine.verify(ORACLE, milestone.id, -1, True))

    # ── Auto-verify ────────────────────────────────────────────

    def _auto(self, milestone_id, hours_back=6, **kwargs):
        now = self.clock()
        return self.run(
            self.engine.auto_verify(
                ORACLE, milestone_id, now - timedelta(hours=hours_back), now, **kwargs
            )
        )

    def test_auto_verify_boundary_is_inclusive(self):
        milestone = self._milestone(self._project().id, target=500)
        self.iot.readings["dev-1"] = readings(
            (self.clock() - timedelta(hours=2), "250"),
            (self.clock() - timedelta(hours=1), "250"),
        )
        verified = self._auto(milestone.id)
        assert verified.status == MilestoneStatus.VERIFIED
        assert verified.actual_value == 500

    def test_auto_verify_below_target_fails(self):
        milestone = self._milestone(self._project().id, target=500)
        self.iot.readings["dev-1"] = readings((self.clock() - timedelta(hours=1), "499"))
        failed = self._auto(milestone.id)
        assert failed.status == MilestoneStatus.FAILED
        assert failed.actual_value == 499

    def test_auto_verify_window_validation(self):
        milestone = self._milestone(self._project().id)
        now = self.clock()
        with pytest.raises(InvalidArgument):
            self.run(self.engine.auto_verify(ORACLE, milestone.id, now, now))
        with pytest.raises(InvalidArgument):
            self.run(
                self.engine.auto_verify(
                    ORACLE, milestone.id, now - timedelta(hours=1), now + timedelta(hours=1)
                )
            )

    def test_auto_verify_is_oracle_only(self):
        milestone = self._milestone(self._project().id)
        now = self.clock()
        with pytest.raises(Forbidden):
            self.run(
                self.engine.auto_verify(AUDITOR, milestone.id, now - timedelta(hours=1), now)
            )

    def test_auto_verify_unavailable_sources(self):
        milestone = self._milestone(self._project().id)
        self.iot.error = Unavailable("meter offline")
        with pytest.raises(Unavailable):
            self._auto(milestone.id)
        assert self.run(self.engine.get_milestone(milestone.id)).status == MilestoneStatus.PENDING
        assert self.audit.entries()[-1].detail["error"] == "Unavailable"

    def test_auto_verify_reliability_threshold(self):
        backup = StaticMeasurementSource(error=Unavailable("registry down"))
        self.aggregator.register_source(
            "meter-A",
            [
                SourceBinding("iot:dev-1", self.iot, "dev-1"),
                SourceBinding("gov:fac-9", backup, "fac-9"),
            ],
        )
        milestone = self._milestone(self._project().id)
        self.iot.readings["dev-1"] = readings((self.clock() - timedelta(hours=1), "900"))
        with pytest.raises(Unavailable):
            self._auto(milestone.id, min_reliability=0.75)
        verified = self._auto(milestone.id, min_reliability=0.5)
        assert verified.status == MilestoneStatus.VERIFIED

    def test_auto_verify_skips_cache_after_deadline(self):
        milestone = self._milestone(self._project().id, hours=1)
        window_to = self.clock()
        window_from = window_to - timedelta(hours=3)
        self.iot.readings["dev-1"] = readings((window_from, "100"))
        self.run(self.aggregator.aggregate("meter-A", window_from, window_to))
        assert self.iot.fetch_count == 1

        self.clock.advance(hours=2)
        self.iot.readings["dev-1"] = readings((window_from, "800"))
        verified = self.run(
            self.engine.auto_verify(ORACLE, milestone.id, window_from, window_to)
        )
        assert self.iot.fetch_count == 2
        assert verified.actual_value == 800

    # ── Disputes ───────────────────────────────────────────────

    def _verified(self, success=True):
        milestone = self._milestone(self._project().id)
        return self.run(self.engine.verify(ORACLE, milestone.id, 600 if success else 100, success))

    def test_producer_disputes_own_verified_milestone(self):
        milestone = self._verified()
        disputed = self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        assert disputed.status == MilestoneStatus.DISPUTED
        assert disputed.original_status == MilestoneStatus.VERIFIED
        assert disputed.dispute.raised_by == PRODUCER.id

    def test_other_producer_cannot_dispute(self):
        milestone = self._verified()
        with pytest.raises(Forbidden):
            self.run(self.engine.dispute(OTHER_PRODUCER, milestone.id, REASON))

    def test_government_may_dispute_failed_milestone(self):
        milestone = self._verified(success=False)
        disputed = self.run(self.engine.dispute(GOVERNMENT, milestone.id, REASON))
        assert disputed.original_status == MilestoneStatus.FAILED

    def test_pending_milestone_cannot_be_disputed(self):
        milestone = self._milestone(self._project().id)
        with pytest.raises(Conflict):
            self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))

    def test_reason_length_bounds(self):
        milestone = self._verified()
        with pytest.raises(InvalidArgument):
            self.run(self.engine.dispute(PRODUCER, milestone.id, "too short"))
        with pytest.raises(InvalidArgument):
            self.run(self.engine.dispute(PRODUCER, milestone.id, "x" * 501))
        self.run(self.engine.dispute(PRODUCER, milestone.id, "x" * 10))

    def test_approved_dispute_restores_payment_eligibility(self):
        milestone = self._verified()
        self.disbursements.requested.clear()
        self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        resolved = self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, True, RESOLUTION))
        assert resolved.status == MilestoneStatus.VERIFIED
        assert resolved.payment_eligible
        assert resolved.dispute.approved is True
        assert resolved.dispute.resolved_by == AUDITOR.id
        assert self.disbursements.requested == [(milestone.id, AUDITOR.id)]

    def test_rejected_dispute_is_terminal(self):
        milestone = self._verified()
        self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        resolved = self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, False, RESOLUTION))
        assert resolved.status == MilestoneStatus.FAILED
        assert not resolved.payment_eligible
        with pytest.raises(Conflict):
            self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))

    def test_resolution_requires_auditor_and_open_dispute(self):
        milestone = self._verified()
        with pytest.raises(Conflict):
            self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, True, RESOLUTION))
        self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        with pytest.raises(Forbidden):
            self.run(self.engine.resolve_dispute(GOVERNMENT, milestone.id, True, RESOLUTION))
        with pytest.raises(InvalidArgument):
            self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, True, "ok"))

    def test_paid_milestone_cannot_be_disputed(self):
        milestone = self._verified()
        self.run(self.ledger.record_disbursement(milestone.project_id, milestone.id, milestone.subsidy_amount))
        with pytest.raises(Conflict):
            self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))

    def test_dispute_audit_trail(self):
        milestone = self._verified()
        self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, True, RESOLUTION))
        actions = [e.action for e in self.audit.entries("milestone", milestone.id)]
        assert actions == [
            "milestone.created",
            "milestone.verified",
            "milestone.disputed",
            "milestone.dispute_resolved",
        ]
        assert self.audit.verify_chain()[0]

    # ── Queries ────────────────────────────────────────────────

    def test_overdue_is_read_only(self):
        project = self._project(total="2")
        late = self._milestone(project.id, amount="0.5", hours=1)
        self._milestone(project.id, amount="0.5", hours=48)
        self.clock.advance(hours=2)
        overdue = self.run(self.engine.get_overdue_milestones(GOVERNMENT))
        assert [m.id for m in overdue] == [late.id]
        assert self.run(self.engine.get_milestone(late.id)).status == MilestoneStatus.PENDING

    def test_project_milestones_summary(self):
        project = self._project(total="2")
        first = self._milestone(project.id, amount="0.5")
        self._milestone(project.id, amount="0.5")
        self.run(self.engine.verify(ORACLE, first.id, 100, False))
        milestones, counts = self.run(self.engine.get_project_milestones(project.id))
        assert [m.id for m in milestones] == [1, 2]
        assert counts.total == 2
        assert counts.failed == 1
        assert counts.pending == 1

    def test_disputed_milestones_listing(self):
        milestone = self._verified()
        self.run(self.engine.dispute(PRODUCER, milestone.id, REASON))
        assert len(self.run(self.engine.get_disputed_milestones(AUDITOR))) == 1
        self.run(self.engine.resolve_dispute(AUDITOR, milestone.id, False, RESOLUTION))
        assert self.run(self.engine.get_disputed_milestones(AUDITOR)) == []
        assert len(self.run(self.engine.get_disputed_milestones(AUDITOR, open_only=False))) == 1
        with pytest.raises(Forbidden):
            self.run(self.engine.get_disputed_milestones(PRODUCER))

    def test_verification_queue(self):
        project = self._project(total="2")
        later = self._milestone(project.id, amount="0.5", hours=48)
        sooner = self._milestone(project.id, amount="0.5", hours=12)
        queue = self.run(self.engine.get_verification_queue(ORACLE, "meter-A"))
        assert [m.id for m in queue] == [sooner.id, later.id]
        assert self.run(self.engine.get_verification_queue(ORACLE, "meter-B")) == []

    def test_milestone_stats(self):
        project = self._project(total="2")
        first = self._milestone(project.id, amount="0.5")
        second = self._milestone(project.id, amount="1.0")
        self._milestone(project.id, amount="0.5", hours=1)
        self.clock.advance(hours=4)
        self.run(self.engine.verify(ORACLE, first.id, 600, True))
        self.run(self.engine.verify(ORACLE, second.id, 100, False))

        stats = self.run(self.engine.get_milestone_stats(AUDITOR, project.id, "7d"))
        assert stats.milestones.total == 3
        assert stats.milestones.verified == 1
        assert stats.milestones.failed == 1
        assert stats.milestones.overdue == 1
        assert stats.subsidies.total_allocated == Decimal("2.0")
        assert stats.subsidies.total_disbursed == Decimal("0")
        assert stats.verification.average_hours == pytest.approx(4.0)
        assert stats.verification.success_rate == pytest.approx(50.0)

    def test_stats_timeframe_validation(self):
        with pytest.raises(InvalidArgument):
            self.run(self.engine.get_milestone_stats(GOVERNMENT, timeframe="2w"))
        with pytest.raises(Forbidden):
            self.run(self.engine.get_milestone_stats(ORACLE))
