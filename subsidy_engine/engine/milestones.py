"""
Milestone Engine — the verification and dispute state machine.

Milestone states:

    Pending ──verify──▶ Verified ──dispute──▶ Disputed ──resolve(approved)──▶ Verified
        │                                        ▲   └────resolve(rejected)──▶ Failed
        └────verify──▶ Failed ───dispute─────────┘

Pending leaves exactly once. A milestone may be disputed once; resolution
is terminal and never reopens Pending. A paid milestone cannot be disputed.

Every transition holds the milestone's lock from the status check through
the ledger write, so two racing verifications produce exactly one
transition and one Conflict. Every failure is written to the audit trail
with its error class before it propagates.

The engine also owns project creation and project status changes, since
both are preconditions of the milestone lifecycle.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Protocol

from subsidy_engine.data.aggregator import DataAggregator
from subsidy_engine.domain.schema import (
    Action,
    AuditAction,
    DisputeRecord,
    Milestone,
    MilestoneCounts,
    MilestoneStats,
    MilestoneStatus,
    PaymentMethod,
    PaymentRecord,
    Principal,
    Project,
    ProjectStatus,
    PROJECT_TRANSITIONS,
    Role,
    SubsidyTotals,
    VerificationEvidence,
    VerificationTotals,
    utcnow,
)
from subsidy_engine.engine.locks import KeyedLocks, milestone_key, project_key
from subsidy_engine.errors import (
    Conflict,
    Forbidden,
    InvalidArgument,
    SubsidyError,
    Unavailable,
)
from subsidy_engine.governance.permissions import RoleAuthority
from subsidy_engine.ledger.audit import AuditTrail
from subsidy_engine.ledger.gateway import LedgerGateway

logger = logging.getLogger(__name__)


DISPUTE_REASON_LENGTH = (10, 500)
RESOLUTION_LENGTH = (10, 1000)
SOURCE_NAME_LENGTH = (1, 100)

STATS_TIMEFRAMES = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}


def count_milestones(milestones: list[Milestone], now: datetime) -> MilestoneCounts:
    return MilestoneCounts(
        total=len(milestones),
        pending=sum(1 for m in milestones if m.status == MilestoneStatus.PENDING),
        verified=sum(1 for m in milestones if m.status == MilestoneStatus.VERIFIED),
        failed=sum(1 for m in milestones if m.status == MilestoneStatus.FAILED),
        disputed=sum(1 for m in milestones if m.status == MilestoneStatus.DISPUTED),
        overdue=sum(1 for m in milestones if m.is_overdue(now)),
    )


class DisbursementRequester(Protocol):
    """Receives milestones that have become eligible for payment."""

    async def request_disbursement(
        self, milestone: Milestone, requested_by: str
    ) -> PaymentRecord | None: ...


def _require_length(value: str, bounds: tuple[int, int], field: str) -> str:
    text = (value or "").strip()
    low, high = bounds
    if not low <= len(text) <= high:
        raise InvalidArgument(f"{field} must be {low}-{high} characters")
    return text


class MilestoneEngine:
    """
    Creates milestones, applies verification evidence, and runs disputes.

    Usage:
        engine = MilestoneEngine(ledger, authority, audit, aggregator, locks)
        engine.disbursements = payment_orchestrator
        milestone = await engine.auto_verify(oracle, milestone_id, start, end)
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        authority: RoleAuthority,
        audit: AuditTrail,
        aggregator: DataAggregator | None = None,
        locks: KeyedLocks | None = None,
        disbursements: DisbursementRequester | None = None,
        clock=utcnow,
    ) -> None:
        self.ledger = ledger
        self.authority = authority
        self.audit = audit
        self.aggregator = aggregator
        self.locks = locks or KeyedLocks()
        self.disbursements = disbursements
        self.clock = clock

    @asynccontextmanager
    async def _audit_failures(
        self,
        action: AuditAction,
        principal: Principal,
        resource_type: str,
        resource_id: int | str,
    ) -> AsyncIterator[None]:
        try:
            yield
        except SubsidyError as exc:
            await self.audit.record_failure(
                action,
                principal_id=principal.id,
                resource_type=resource_type,
                resource_id=resource_id,
                error=exc,
            )
            logger.warning(
                "%s failed on %s/%s: %s (%s)",
                action.value, resource_type, resource_id, exc.message, exc.kind,
            )
            raise

    # ════════════════════════════════════════════════════════════
    # Projects
    # ════════════════════════════════════════════════════════════

    async def create_project(
        self,
        principal: Principal,
        name: str,
        description: str,
        producer_id: str,
        total_subsidy_amount: Decimal,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    ) -> Project:
        async with self._audit_failures(AuditAction.PROJECT_FAILED, principal, "project", "new"):
            self.authority.require(principal, Action.CREATE_PROJECT)
            name = _require_length(name, (1, 200), "Project name")
            total = Decimal(total_subsidy_amount)
            if total < 0:
                raise InvalidArgument("Total subsidy amount must not be negative")

            producer = self.authority.directory.get(producer_id)
            if producer is None or producer.role != Role.PRODUCER:
                raise InvalidArgument(f"{producer_id} is not a registered producer")

            project = await self.ledger.register_project(
                producer=producer.id,
                beneficiary_account=producer.account or producer.id,
                name=name,
                description=description or "",
                total_subsidy_amount=total,
                payment_method=payment_method,
                created_at=self.clock(),
            )

        await self.audit.record(
            AuditAction.PROJECT_CREATED,
            principal_id=principal.id,
            resource_type="project",
            resource_id=project.id,
            after=project,
            detail={"total_subsidy_amount": str(total), "producer": producer.id},
        )
        logger.info(
            "Project registered: id=%d producer=%s total=%s", project.id, producer.id, total
        )
        return project

    async def set_project_status(
        self, principal: Principal, project_id: int, status: ProjectStatus
    ) -> Project:
        async with self._audit_failures(AuditAction.PROJECT_FAILED, principal, "project", project_id):
            self.authority.require(principal, Action.SET_PROJECT_STATUS)
            async with self.locks.hold(project_key(project_id)):
                before = await self.ledger.get_project(project_id)
                if status not in PROJECT_TRANSITIONS[before.status]:
                    raise Conflict(
                        f"Project {project_id} cannot move from "
                        f"{before.status.value} to {status.value}"
                    )
                after = await self.ledger.set_project_status(project_id, status)

        await self.audit.record(
            AuditAction.PROJECT_STATUS_CHANGED,
            principal_id=principal.id,
            resource_type="project",
            resource_id=project_id,
            before=before,
            after=after,
            detail={"from": before.status.value, "to": status.value},
        )
        logger.info(
            "Project %d status: %s -> %s", project_id, before.status.value, status.value
        )
        return after

    async def get_project(self, project_id: int) -> Project:
        return await self.ledger.get_project(project_id)

    async def get_producer_projects(self, producer_id: str) -> list[Project]:
        return await self.ledger.get_producer_projects(producer_id)

    # ════════════════════════════════════════════════════════════
    # Milestone creation
    # ════════════════════════════════════════════════════════════

    async def create_milestone(
        self,
        principal: Principal,
        project_id: int,
        description: str,
        subsidy_amount: Decimal,
        target_value: int,
        verification_source: str,
        deadline: datetime,
    ) -> Milestone:
        """
        Add a Pending milestone to a live project.

        Raises:
            Forbidden: principal is not Government.
            NotFound: project does not exist.
            InvalidArgument: bad amount, target, source or deadline; project
                Cancelled or Completed; or subsidies would exceed the total.
        """
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "project", project_id
        ):
            self.authority.require(principal, Action.CREATE_MILESTONE)

            description = _require_length(description, (1, 500), "Description")
            source = _require_length(verification_source, SOURCE_NAME_LENGTH, "Verification source")
            amount = Decimal(subsidy_amount)
            if amount <= 0:
                raise InvalidArgument("Subsidy amount must be greater than zero")
            if isinstance(target_value, bool) or not isinstance(target_value, int) or target_value < 0:
                raise InvalidArgument("Target value must be a non-negative integer")
            now = self.clock()
            if deadline <= now:
                raise InvalidArgument("Deadline must be in the future")

            async with self.locks.hold(project_key(project_id)):
                project = await self.ledger.get_project(project_id)
                if project.is_terminal:
                    raise InvalidArgument(
                        f"Project {project_id} is {project.status.value}; "
                        f"milestones can no longer be added"
                    )
                existing = await self.ledger.get_project_milestones(project_id)
                allocated = sum((m.subsidy_amount for m in existing), Decimal("0"))
                if allocated + amount > project.total_subsidy_amount:
                    raise InvalidArgument(
                        f"Milestone subsidies ({allocated + amount}) would exceed "
                        f"project total ({project.total_subsidy_amount})"
                    )

                milestone = await self.ledger.add_milestone(
                    project_id=project_id,
                    description=description,
                    subsidy_amount=amount,
                    target_value=target_value,
                    verification_source=source,
                    deadline=deadline,
                    created_at=now,
                )

        await self.audit.record(
            AuditAction.MILESTONE_CREATED,
            principal_id=principal.id,
            resource_type="milestone",
            resource_id=milestone.id,
            after=milestone,
            detail={
                "project_id": project_id,
                "subsidy_amount": str(amount),
                "target_value": target_value,
            },
        )
        logger.info(
            "Milestone created: id=%d project=%d target=%d source=%s",
            milestone.id, project_id, target_value, source,
        )
        return milestone

    # ════════════════════════════════════════════════════════════
    # Verification
    # ════════════════════════════════════════════════════════════

    async def verify(
        self,
        principal: Principal,
        milestone_id: int,
        actual_value: int,
        success: bool,
    ) -> Milestone:
        """
        Record a manual verification outcome (Oracle or Auditor).

        Raises:
            Conflict: the milestone already left Pending.
        """
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "milestone", milestone_id
        ):
            self.authority.require(principal, Action.VERIFY_MILESTONE)
            if isinstance(actual_value, bool) or not isinstance(actual_value, int) or actual_value < 0:
                raise InvalidArgument("Actual value must be a non-negative integer")
            evidence = VerificationEvidence(
                milestone_id=milestone_id,
                source="manual",
                aggregated_value=actual_value,
                submitted_by=principal.id,
                submitted_at=self.clock(),
            )
        return await self._apply_evidence(principal, evidence, success)

    async def auto_verify(
        self,
        principal: Principal,
        milestone_id: int,
        window_from: datetime,
        window_to: datetime,
        min_reliability: float = 0.0,
    ) -> Milestone:
        """
        Verify a milestone from aggregated source data (Oracle only).

        Success is ``total_value >= target_value``. Once the milestone's
        deadline has passed the aggregation cache is bypassed.

        Raises:
            InvalidArgument: window is empty or reaches into the future.
            Unavailable: no source responded, or reliability is below
                ``min_reliability``.
        """
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "milestone", milestone_id
        ):
            self.authority.require(principal, Action.AUTO_VERIFY)
            now = self.clock()
            if window_from >= window_to:
                raise InvalidArgument("fromDate must be before toDate")
            if window_to > now:
                raise InvalidArgument("Verification window must not extend past now")
            if self.aggregator is None:
                raise Unavailable("No data aggregator is configured")

            milestone = await self.ledger.get_milestone(milestone_id)
            if milestone.status != MilestoneStatus.PENDING:
                raise Conflict(f"Milestone {milestone_id} is not in pending status")

            result = await self.aggregator.aggregate(
                milestone.verification_source,
                window_from,
                window_to,
                use_cache=now <= milestone.deadline,
            )
            if result.data_reliability < min_reliability:
                raise Unavailable(
                    f"Only {result.reliability_percent:.0f}% of sources for "
                    f"{milestone.verification_source} responded"
                )

            evidence = VerificationEvidence(
                milestone_id=milestone_id,
                source=milestone.verification_source,
                aggregated_value=result.total_value,
                data_point_count=result.data_point_count,
                window_from=window_from,
                window_to=window_to,
                data_reliability=result.data_reliability,
                submitted_by=principal.id,
                submitted_at=now,
            )
        success = evidence.aggregated_value >= milestone.target_value
        return await self._apply_evidence(principal, evidence, success)

    async def _apply_evidence(
        self,
        principal: Principal,
        evidence: VerificationEvidence,
        success: bool,
    ) -> Milestone:
        milestone_id = evidence.milestone_id
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "milestone", milestone_id
        ):
            async with self.locks.hold(milestone_key(milestone_id)):
                before = await self.ledger.get_milestone(milestone_id)
                if before.status != MilestoneStatus.PENDING:
                    raise Conflict(
                        f"Milestone {milestone_id} was already resolved as "
                        f"{before.status.value}"
                    )
                verified_at = max(self.clock(), before.created_at)
                after = await self.ledger.verify_milestone(
                    milestone_id,
                    actual_value=evidence.aggregated_value,
                    success=success,
                    verified_by=principal.id,
                    verified_at=verified_at,
                )

        await self.audit.record(
            AuditAction.MILESTONE_VERIFIED,
            principal_id=principal.id,
            resource_type="milestone",
            resource_id=milestone_id,
            before=before,
            after=after,
            detail={
                "success": success,
                "target_value": before.target_value,
                "actual_value": evidence.aggregated_value,
                "source": evidence.source,
                "data_point_count": evidence.data_point_count,
                "data_reliability": evidence.data_reliability,
            },
        )
        logger.info(
            "Milestone %d verified: status=%s actual=%d target=%d by=%s",
            milestone_id, after.status.value, evidence.aggregated_value,
            before.target_value, principal.id,
        )

        if after.payment_eligible and self.disbursements is not None:
            await self.disbursements.request_disbursement(after, principal.id)
        return after

    # ════════════════════════════════════════════════════════════
    # Disputes
    # ════════════════════════════════════════════════════════════

    async def dispute(
        self, principal: Principal, milestone_id: int, reason: str
    ) -> Milestone:
        """
        Dispute a Verified or Failed milestone.

        Producers may only dispute milestones of their own projects.
        """
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "milestone", milestone_id
        ):
            self.authority.require(principal, Action.DISPUTE_MILESTONE)
            reason = _require_length(reason, DISPUTE_REASON_LENGTH, "Dispute reason")

            async with self.locks.hold(milestone_key(milestone_id)):
                before = await self.ledger.get_milestone(milestone_id)
                if principal.role == Role.PRODUCER:
                    project = await self.ledger.get_project(before.project_id)
                    if project.producer != principal.id:
                        raise Forbidden("Producers may only dispute their own milestones")

                if before.dispute is not None:
                    raise Conflict(f"Milestone {milestone_id} has already been disputed")
                if before.status not in (MilestoneStatus.VERIFIED, MilestoneStatus.FAILED):
                    raise Conflict(
                        f"Only Verified or Failed milestones can be disputed "
                        f"(milestone {milestone_id} is {before.status.value})"
                    )
                if before.paid:
                    raise Conflict(f"Milestone {milestone_id} has already been paid")

                record = DisputeRecord(
                    reason=reason,
                    raised_by=principal.id,
                    raised_at=self.clock(),
                    original_status=before.status,
                )
                after = await self.ledger.set_dispute(
                    milestone_id, MilestoneStatus.DISPUTED, record
                )

        await self.audit.record(
            AuditAction.MILESTONE_DISPUTED,
            principal_id=principal.id,
            resource_type="milestone",
            resource_id=milestone_id,
            before=before,
            after=after,
            detail={"original_status": before.status.value},
        )
        logger.info(
            "Milestone %d disputed by %s (was %s)",
            milestone_id, principal.id, before.status.value,
        )
        return after

    async def resolve_dispute(
        self,
        principal: Principal,
        milestone_id: int,
        approved: bool,
        resolution: str,
    ) -> Milestone:
        """
        Close a dispute (Auditor only).

        Approved resolves to Verified and, if unpaid, requests payment.
        Rejected resolves to Failed and permanently blocks payment.
        """
        async with self._audit_failures(
            AuditAction.MILESTONE_FAILED, principal, "milestone", milestone_id
        ):
            self.authority.require(principal, Action.RESOLVE_DISPUTE)
            resolution = _require_length(resolution, RESOLUTION_LENGTH, "Resolution")

            async with self.locks.hold(milestone_key(milestone_id)):
                before = await self.ledger.get_milestone(milestone_id)
                if before.status != MilestoneStatus.DISPUTED or before.dispute is None:
                    raise Conflict(f"Milestone {milestone_id} is not under dispute")

                record = before.dispute.model_copy(
                    update={
                        "resolution": resolution,
                        "resolved_by": principal.id,
                        "resolved_at": self.clock(),
                        "approved": approved,
                    }
                )
                outcome = MilestoneStatus.VERIFIED if approved else MilestoneStatus.FAILED
                after = await self.ledger.set_dispute(milestone_id, outcome, record)

        await self.audit.record(
            AuditAction.DISPUTE_RESOLVED,
            principal_id=principal.id,
            resource_type="milestone",
            resource_id=milestone_id,
            before=before,
            after=after,
            detail={"approved": approved, "outcome": outcome.value},
        )
        logger.info(
            "Dispute on milestone %d resolved: approved=%s by=%s",
            milestone_id, approved, principal.id,
        )

        if after.payment_eligible and self.disbursements is not None:
            await self.disbursements.request_disbursement(after, principal.id)
        return after

    # ════════════════════════════════════════════════════════════
    # Queries (read-only)
    # ════════════════════════════════════════════════════════════

    async def get_milestone(self, milestone_id: int) -> Milestone:
        return await self.ledger.get_milestone(milestone_id)

    async def get_project_milestones(
        self, project_id: int
    ) -> tuple[list[Milestone], MilestoneCounts]:
        """A project's milestones in creation order, with a per-status summary."""
        milestones = sorted(
            await self.ledger.get_project_milestones(project_id), key=lambda m: m.id
        )
        return milestones, count_milestones(milestones, self.clock())

    async def _milestones(self, project_id: int | None) -> list[Milestone]:
        if project_id is not None:
            return await self.ledger.get_project_milestones(project_id)
        return await self.ledger.list_milestones()

    async def get_overdue_milestones(
        self, principal: Principal, project_id: int | None = None
    ) -> list[Milestone]:
        """Pending milestones past their deadline. Never changes state."""
        self.authority.require(principal, Action.VIEW_STATS)
        now = self.clock()
        overdue = [m for m in await self._milestones(project_id) if m.is_overdue(now)]
        return sorted(overdue, key=lambda m: m.deadline)

    async def get_disputed_milestones(
        self, principal: Principal, open_only: bool = True
    ) -> list[Milestone]:
        self.authority.require(principal, Action.VIEW_DISPUTES)
        disputed = [m for m in await self.ledger.list_milestones() if m.dispute is not None]
        if open_only:
            disputed = [m for m in disputed if m.dispute.is_open]
        return sorted(disputed, key=lambda m: m.dispute.raised_at)

    async def get_verification_queue(
        self, principal: Principal, source: str | None = None
    ) -> list[Milestone]:
        """Pending milestones an oracle can act on, earliest deadline first."""
        self.authority.require(principal, Action.VIEW_VERIFICATION_QUEUE)
        queue = [
            m for m in await self.ledger.list_milestones()
            if m.status == MilestoneStatus.PENDING
            and (source is None or m.verification_source == source)
        ]
        return sorted(queue, key=lambda m: m.deadline)

    async def get_milestone_stats(
        self,
        principal: Principal,
        project_id: int | None = None,
        timeframe: str = "30d",
    ) -> MilestoneStats:
        self.authority.require(principal, Action.VIEW_STATS)
        if timeframe not in STATS_TIMEFRAMES:
            raise InvalidArgument(
                f"Invalid timeframe {timeframe!r}; expected one of {sorted(STATS_TIMEFRAMES)}"
            )

        now = self.clock()
        from_date = now - STATS_TIMEFRAMES[timeframe]
        milestones = [
            m for m in await self._milestones(project_id) if m.created_at >= from_date
        ]

        counts = count_milestones(milestones, now)

        allocated = sum((m.subsidy_amount for m in milestones), Decimal("0"))
        disbursed = sum((m.subsidy_amount for m in milestones if m.paid), Decimal("0"))
        subsidies = SubsidyTotals(
            total_allocated=allocated,
            total_disbursed=disbursed,
            average_per_milestone=(allocated / len(milestones)) if milestones else Decimal("0"),
        )

        decided = [m for m in milestones if m.verified_at is not None]
        if decided:
            hours = [
                (m.verified_at - m.created_at).total_seconds() / 3600 for m in decided
            ]
            verified = sum(1 for m in decided if m.status == MilestoneStatus.VERIFIED)
            verification = VerificationTotals(
                average_hours=sum(hours) / len(hours),
                success_rate=verified / len(decided) * 100,
            )
        else:
            verification = VerificationTotals()

        return MilestoneStats(
            timeframe=timeframe,
            from_date=from_date,
            to_date=now,
            project_id=project_id,
            milestones=counts,
            subsidies=subsidies,
            verification=verification,
        )
