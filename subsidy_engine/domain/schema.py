"""
Subsidy Schema — Pydantic models for projects, milestones, payments and audit.

These models are the canonical data structures the core passes between the
ledger gateway, the milestone engine, the data aggregator and the payment
orchestrator. The ledger gateway is the authority for Project and Milestone;
every other component works on copies and writes back through the gateway.
"""

from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Role(str, enum.Enum):
    """Mutually exclusive principal roles."""

    GOVERNMENT = "government"
    PRODUCER = "producer"
    AUDITOR = "auditor"
    ORACLE = "oracle"


class Action(str, enum.Enum):
    """Capabilities checked by the RoleAuthority."""

    CREATE_PROJECT = "create_project"
    SET_PROJECT_STATUS = "set_project_status"
    CREATE_MILESTONE = "create_milestone"
    REGISTER_PRINCIPAL = "register_principal"
    VERIFY_MILESTONE = "verify_milestone"
    AUTO_VERIFY = "auto_verify"
    DISPUTE_MILESTONE = "dispute_milestone"
    RESOLVE_DISPUTE = "resolve_dispute"
    DISBURSE = "disburse"
    VIEW_STATS = "view_stats"
    VIEW_DISPUTES = "view_disputes"
    VIEW_VERIFICATION_QUEUE = "view_verification_queue"


class ProjectStatus(str, enum.Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    SUSPENDED = "Suspended"
    CANCELLED = "Cancelled"


# Monotonic except Suspended <-> Active.
PROJECT_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.PENDING: frozenset({ProjectStatus.ACTIVE, ProjectStatus.CANCELLED}),
    ProjectStatus.ACTIVE: frozenset(
        {ProjectStatus.SUSPENDED, ProjectStatus.COMPLETED, ProjectStatus.CANCELLED}
    ),
    ProjectStatus.SUSPENDED: frozenset({ProjectStatus.ACTIVE, ProjectStatus.CANCELLED}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}


class MilestoneStatus(str, enum.Enum):
    PENDING = "Pending"
    VERIFIED = "Verified"
    FAILED = "Failed"
    DISPUTED = "Disputed"


class PaymentMethod(str, enum.Enum):
    """Payment rails a disbursement can travel on."""

    BANK_TRANSFER = "ach"
    CARD = "card"
    WIRE = "wire"
    CRYPTO = "crypto"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class AuditAction(str, enum.Enum):
    """Action tags written to the audit trail."""

    PRINCIPAL_REGISTERED = "principal.registered"
    PROJECT_CREATED = "project.created"
    PROJECT_STATUS_CHANGED = "project.status_changed"
    PROJECT_FAILED = "project.failed"
    MILESTONE_CREATED = "milestone.created"
    MILESTONE_VERIFIED = "milestone.verified"
    MILESTONE_DISPUTED = "milestone.disputed"
    DISPUTE_RESOLVED = "milestone.dispute_resolved"
    MILESTONE_FAILED = "milestone.failed"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_ATTEMPT_FAILED = "payment.attempt_failed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_RETRY_SCHEDULED = "payment.retry_scheduled"


# ════════════════════════════════════════════════════════════════
# Principals
# ════════════════════════════════════════════════════════════════


class Principal(BaseModel):
    """An authenticated caller resolved to exactly one role."""

    model_config = {"frozen": True}

    id: str = Field(min_length=1)
    role: Role
    account: str | None = Field(
        default=None, description="Wallet or bank account reference (producers)"
    )


# ════════════════════════════════════════════════════════════════
# Projects and Milestones
# ════════════════════════════════════════════════════════════════


class Project(BaseModel):
    """A funding engagement between a government body and a producer."""

    id: int
    producer: str = Field(description="Producer principal id owning this project")
    beneficiary_account: str = Field(description="Account receiving disbursements")
    name: str
    description: str = ""
    total_subsidy_amount: Decimal = Field(ge=0)
    disbursed_amount: Decimal = Field(default=Decimal("0"), ge=0)
    status: ProjectStatus = ProjectStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _disbursed_within_total(self) -> "Project":
        if self.disbursed_amount > self.total_subsidy_amount:
            raise ValueError(
                f"disbursed amount {self.disbursed_amount} exceeds total "
                f"subsidy {self.total_subsidy_amount}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProjectStatus.COMPLETED, ProjectStatus.CANCELLED)

    @computed_field
    @property
    def remaining_amount(self) -> Decimal:
        return self.total_subsidy_amount - self.disbursed_amount


class DisputeRecord(BaseModel):
    """A dispute raised against a verified or failed milestone."""

    reason: str
    raised_by: str
    raised_at: datetime = Field(default_factory=utcnow)
    original_status: MilestoneStatus
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    approved: bool | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class Milestone(BaseModel):
    """
    A measurable sub-goal of a Project.

    ``status`` leaves Pending exactly once, at the same transition that sets
    ``actual_value``. ``paid`` only becomes true while ``status`` is Verified.
    """

    id: int
    project_id: int
    description: str
    subsidy_amount: Decimal = Field(gt=0)
    target_value: int = Field(ge=0)
    actual_value: int | None = None
    verification_source: str
    deadline: datetime
    status: MilestoneStatus = MilestoneStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    verified_at: datetime | None = None
    verified_by: str | None = None
    paid: bool = False
    dispute: DisputeRecord | None = None

    @model_validator(mode="after")
    def _paid_only_when_verified(self) -> "Milestone":
        if self.paid and self.status != MilestoneStatus.VERIFIED:
            raise ValueError("a milestone can only be paid while Verified")
        return self

    @property
    def original_status(self) -> MilestoneStatus | None:
        """Outcome the milestone held before it was disputed."""
        return self.dispute.original_status if self.dispute else None

    @property
    def payment_eligible(self) -> bool:
        return self.status == MilestoneStatus.VERIFIED and not self.paid

    def is_overdue(self, now: datetime) -> bool:
        return self.status == MilestoneStatus.PENDING and self.deadline < now


# ════════════════════════════════════════════════════════════════
# Verification evidence and measurement data
# ════════════════════════════════════════════════════════════════


class Measurement(BaseModel):
    """A single timestamped reading from a data source adapter."""

    model_config = {"frozen": True}

    timestamp: datetime
    value: Decimal = Field(ge=0)
    quality: float | None = Field(default=None, ge=0, le=1)


class SourceOutcome(BaseModel):
    """What one underlying source contributed to an aggregation."""

    label: str
    ok: bool
    total_value: Decimal = Decimal("0")
    data_point_count: int = 0
    error: str | None = None


class AggregationResult(BaseModel):
    """Trust-weighted total of a logical source over ``[window_from, window_to)``."""

    source: str
    window_from: datetime
    window_to: datetime
    total_value: int
    data_point_count: int
    data_reliability: float = Field(
        ge=0, le=1, description="fulfilled_sources / total_sources"
    )
    sources: list[SourceOutcome] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=utcnow)
    from_cache: bool = False

    @property
    def reliability_percent(self) -> float:
        return self.data_reliability * 100


class VerificationEvidence(BaseModel):
    """Evidence consumed once by the milestone engine. Never mutated."""

    model_config = {"frozen": True}

    milestone_id: int
    source: str
    aggregated_value: int = Field(ge=0)
    data_point_count: int = Field(default=0, ge=0)
    window_from: datetime | None = None
    window_to: datetime | None = None
    data_reliability: float | None = None
    submitted_by: str
    submitted_at: datetime = Field(default_factory=utcnow)


# ════════════════════════════════════════════════════════════════
# Payments
# ════════════════════════════════════════════════════════════════


class TransferReceipt(BaseModel):
    """What a payment rail returns for an accepted transfer."""

    reference: str
    estimated_completion: datetime | None = None
    fee: Decimal = Field(default=Decimal("0"), ge=0)


class PaymentRecord(BaseModel):
    """
    One disbursement attempt series for a milestone.

    Terminal on Completed or Failed. A deferred retry produces a new record;
    a failed record is never reopened. A Failed record that carries a
    gateway_reference was accepted by the rail but not written to the
    ledger; it is settled later by a record with ``reconciled_from`` set,
    without a second transfer.
    """

    payment_id: str
    project_id: int
    milestone_id: int
    method: PaymentMethod
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    beneficiary: str
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_reference: str | None = None
    estimated_completion: datetime | None = None
    fee: Decimal = Field(default=Decimal("0"), ge=0)
    attempts: int = 0
    error: str | None = None
    deferred_attempt: int = Field(
        default=0, description="0 for the first series, n for the n-th deferred retry"
    )
    reconciled_from: str | None = Field(
        default=None, description="Failed record whose accepted transfer this record settles"
    )
    status_history: list[PaymentStatus] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def make_id(project_id: int, milestone_id: int, timestamp: datetime) -> str:
        """Deterministic payment id from (project, milestone, timestamp)."""
        millis = int(timestamp.timestamp() * 1000)
        return f"PAY_{project_id}_{milestone_id}_{millis}"


class PaymentAnalytics(BaseModel):
    """Totals over every payment record the orchestrator holds."""

    total_payments: int = 0
    completed_payments: int = 0
    failed_payments: int = 0
    pending_retries: int = 0
    total_amount: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    method_breakdown: dict[str, int] = Field(default_factory=dict)


# ════════════════════════════════════════════════════════════════
# Audit
# ════════════════════════════════════════════════════════════════


class AuditEntry(BaseModel):
    """
    An append-only audit record.

    ``before_digest`` and ``after_digest`` are SHA-256 digests of the
    entity's observable state, not the payload itself. Entries are chained:
    each stores the hash of its predecessor so any retroactive edit is
    detectable by recomputing the chain.
    """

    model_config = {"frozen": True}

    id: UUID = Field(default_factory=uuid4)
    sequence_number: int
    action: str
    principal_id: str
    resource_type: str
    resource_id: str
    before_digest: str | None = None
    after_digest: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    previous_hash: str
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Hash = SHA-256(previous_hash || canonical_json(fields))."""
        hashable = {
            "id": str(self.id),
            "sequence_number": self.sequence_number,
            "action": self.action,
            "principal_id": self.principal_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before_digest": self.before_digest,
            "after_digest": self.after_digest,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
            "previous_hash": self.previous_hash,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (self.previous_hash + canonical).encode("utf-8")
        ).hexdigest()


# ════════════════════════════════════════════════════════════════
# Reporting
# ════════════════════════════════════════════════════════════════


class MilestoneCounts(BaseModel):
    total: int = 0
    pending: int = 0
    verified: int = 0
    failed: int = 0
    disputed: int = 0
    overdue: int = 0


class SubsidyTotals(BaseModel):
    total_allocated: Decimal = Decimal("0")
    total_disbursed: Decimal = Decimal("0")
    average_per_milestone: Decimal = Decimal("0")


class VerificationTotals(BaseModel):
    average_hours: float = 0.0
    success_rate: float = Field(default=0.0, description="Percentage of verified outcomes")


class MilestoneStats(BaseModel):
    timeframe: str
    from_date: datetime
    to_date: datetime
    project_id: int | None = None
    milestones: MilestoneCounts = Field(default_factory=MilestoneCounts)
    subsidies: SubsidyTotals = Field(default_factory=SubsidyTotals)
    verification: VerificationTotals = Field(default_factory=VerificationTotals)
