"""
Subsidy Ledger — SQLAlchemy models for the core's persistent state.

Projects and milestones are the authoritative state the core mutates through
the LedgerGateway. The audit table is APPEND-ONLY: rows are inserted, never
updated or deleted, and each row carries the SHA-256 hash of its predecessor.
Payment records, the deferred retry queue and the principal directory live
in their own tables so that a restarted core keeps its idempotency state.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


AMOUNT = Numeric(precision=28, scale=8, asdecimal=True)


class ProjectDB(Base):
    """A funding engagement between a government body and a producer."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    producer = Column(
        String(100), nullable=False, index=True,
        comment="Producer principal id owning the project",
    )
    beneficiary_account = Column(String(200), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    total_subsidy_amount = Column(AMOUNT, nullable=False)
    disbursed_amount = Column(
        AMOUNT, nullable=False, default=0,
        comment="Never exceeds total_subsidy_amount",
    )
    status = Column(String(20), nullable=False, default="Pending")
    payment_method = Column(String(20), nullable=False, default="ach")
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_project_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} status={self.status} name={self.name!r}>"


class MilestoneDB(Base):
    """A measurable sub-goal of a project with its own subsidy and target."""

    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(
        Integer, ForeignKey("projects.id"), nullable=False, index=True,
    )
    description = Column(Text, nullable=False)
    subsidy_amount = Column(AMOUNT, nullable=False)
    target_value = Column(Integer, nullable=False)
    actual_value = Column(
        Integer, nullable=True,
        comment="Set once, at the transition out of Pending",
    )
    verification_source = Column(String(100), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default="Pending")
    created_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String(100), nullable=True)
    paid = Column(Boolean, nullable=False, default=False)
    dispute = Column(
        JSON, nullable=True,
        comment="Dispute record: reason, original status, resolution",
    )

    __table_args__ = (
        Index("ix_milestone_status_deadline", "status", "deadline"),
        Index("ix_milestone_source", "verification_source"),
    )

    def __repr__(self) -> str:
        return (
            f"<Milestone id={self.id} project={self.project_id} "
            f"status={self.status} paid={self.paid}>"
        )


class AuditEntryDB(Base):
    """
    A single audit record. APPEND-ONLY.

    entry_hash = SHA-256(previous_hash || canonical_json(entry_fields)).
    """

    __tablename__ = "audit_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing sequence number",
    )
    action = Column(String(50), nullable=False, index=True)
    principal_id = Column(String(100), nullable=False)
    resource_type = Column(String(30), nullable=False)
    resource_id = Column(String(100), nullable=False)
    before_digest = Column(String(64), nullable=True)
    after_digest = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_audit_resource", "resource_type", "resource_id"),
        Index("ix_audit_principal", "principal_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry seq={self.sequence_number} "
            f"action={self.action} hash={self.entry_hash[:12]}...>"
        )


class PrincipalDB(Base):
    """A registered principal and its single role."""

    __tablename__ = "principals"

    id = Column(String(100), primary_key=True)
    role = Column(String(20), nullable=False, index=True)
    account = Column(String(200), nullable=True, comment="Payout account (producers)")

    def __repr__(self) -> str:
        return f"<Principal id={self.id} role={self.role}>"


class PaymentRecordDB(Base):
    """One disbursement attempt record. Failed rows are never reopened."""

    __tablename__ = "payment_records"

    payment_id = Column(String(80), primary_key=True)
    project_id = Column(Integer, nullable=False)
    milestone_id = Column(Integer, nullable=False)
    method = Column(String(20), nullable=False)
    amount = Column(AMOUNT, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    beneficiary = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="Pending")
    gateway_reference = Column(
        String(200), nullable=True,
        comment="Set once the rail has accepted the transfer",
    )
    estimated_completion = Column(DateTime(timezone=True), nullable=True)
    fee = Column(AMOUNT, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(String(50), nullable=True)
    deferred_attempt = Column(Integer, nullable=False, default=0)
    reconciled_from = Column(String(80), nullable=True)
    status_history = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_payment_milestone", "project_id", "milestone_id"),
        Index("ix_payment_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord id={self.payment_id} milestone={self.milestone_id} "
            f"status={self.status}>"
        )


class DeferredRetryDB(Base):
    """A queued disbursement retry; at most one per (project, milestone)."""

    __tablename__ = "deferred_retries"

    project_id = Column(Integer, primary_key=True)
    milestone_id = Column(Integer, primary_key=True)
    failed_payment_id = Column(String(80), nullable=False)
    method = Column(String(20), nullable=False)
    beneficiary = Column(String(200), nullable=False)
    requested_by = Column(String(100), nullable=False)
    attempt = Column(Integer, nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<DeferredRetry milestone={self.milestone_id} attempt={self.attempt} "
            f"due={self.due_at}>"
        )
