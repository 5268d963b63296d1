"""
Payment Store — payment records and the deferred retry queue.

The in-memory store serves tests and local runs; the SQL store keeps
records and queued retries across restarts, so a restarted core still
returns the existing Completed record for a paid milestone and still runs
the retries it had queued. Both are synchronous; the orchestrator calls
them from a worker thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from subsidy_engine.domain.schema import PaymentMethod, PaymentRecord, PaymentStatus
from subsidy_engine.ledger.models import Base, DeferredRetryDB, PaymentRecordDB
from subsidy_engine.ledger.sql_gateway import make_engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeferredRetry:
    """A disbursement to try again once ``due_at`` has passed."""

    failed_payment_id: str
    project_id: int
    milestone_id: int
    method: PaymentMethod
    beneficiary: str
    requested_by: str
    attempt: int
    due_at: datetime


class PaymentStore(Protocol):
    """Storage for payment records, keyed by payment id, and queued retries."""

    def save(self, record: PaymentRecord) -> None: ...

    def get(self, payment_id: str) -> PaymentRecord | None: ...

    def for_milestone(self, project_id: int, milestone_id: int) -> list[PaymentRecord]: ...

    def all(self) -> list[PaymentRecord]: ...

    def save_retry(self, retry: DeferredRetry) -> None: ...

    def remove_retry(self, project_id: int, milestone_id: int) -> None: ...

    def retries(self) -> list[DeferredRetry]: ...


class InMemoryPaymentStore:
    def __init__(self) -> None:
        self._records: dict[str, PaymentRecord] = {}
        self._retries: dict[tuple[int, int], DeferredRetry] = {}

    def save(self, record: PaymentRecord) -> None:
        self._records[record.payment_id] = record

    def get(self, payment_id: str) -> PaymentRecord | None:
        return self._records.get(payment_id)

    def for_milestone(self, project_id: int, milestone_id: int) -> list[PaymentRecord]:
        records = [
            r for r in self._records.values()
            if r.project_id == project_id and r.milestone_id == milestone_id
        ]
        return sorted(records, key=lambda r: (r.created_at, r.deferred_attempt))

    def all(self) -> list[PaymentRecord]:
        return list(self._records.values())

    def save_retry(self, retry: DeferredRetry) -> None:
        self._retries[(retry.project_id, retry.milestone_id)] = retry

    def remove_retry(self, project_id: int, milestone_id: int) -> None:
        self._retries.pop((project_id, milestone_id), None)

    def retries(self) -> list[DeferredRetry]:
        return sorted(self._retries.values(), key=lambda d: d.due_at)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_from_row(row: PaymentRecordDB) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row.payment_id,
        project_id=row.project_id,
        milestone_id=row.milestone_id,
        method=PaymentMethod(row.method),
        amount=Decimal(row.amount),
        currency=row.currency,
        beneficiary=row.beneficiary,
        status=PaymentStatus(row.status),
        gateway_reference=row.gateway_reference,
        estimated_completion=_aware(row.estimated_completion),
        fee=Decimal(row.fee or 0),
        attempts=row.attempts,
        error=row.error,
        deferred_attempt=row.deferred_attempt,
        reconciled_from=row.reconciled_from,
        status_history=[PaymentStatus(s) for s in row.status_history or []],
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _retry_from_row(row: DeferredRetryDB) -> DeferredRetry:
    return DeferredRetry(
        failed_payment_id=row.failed_payment_id,
        project_id=row.project_id,
        milestone_id=row.milestone_id,
        method=PaymentMethod(row.method),
        beneficiary=row.beneficiary,
        requested_by=row.requested_by,
        attempt=row.attempt,
        due_at=_aware(row.due_at),
    )


class SqlPaymentStore:
    """
    Payment records in ``payment_records`` and queued retries in
    ``deferred_retries``.

    Usage:
        store = SqlPaymentStore(settings.database_url_sync)
        store.initialize()  # create tables
    """

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        Base.metadata.create_all(self.engine)

    def save(self, record: PaymentRecord) -> None:
        with self.SessionLocal() as session:
            session.merge(
                PaymentRecordDB(
                    payment_id=record.payment_id,
                    project_id=record.project_id,
                    milestone_id=record.milestone_id,
                    method=record.method.value,
                    amount=record.amount,
                    currency=record.currency,
                    beneficiary=record.beneficiary,
                    status=record.status.value,
                    gateway_reference=record.gateway_reference,
                    estimated_completion=record.estimated_completion,
                    fee=record.fee,
                    attempts=record.attempts,
                    error=record.error,
                    deferred_attempt=record.deferred_attempt,
                    reconciled_from=record.reconciled_from,
                    status_history=[s.value for s in record.status_history],
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
            session.commit()

    def get(self, payment_id: str) -> PaymentRecord | None:
        with self.SessionLocal() as session:
            row = session.get(PaymentRecordDB, payment_id)
            return _record_from_row(row) if row else None

    def for_milestone(self, project_id: int, milestone_id: int) -> list[PaymentRecord]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(PaymentRecordDB)
                .where(
                    PaymentRecordDB.project_id == project_id,
                    PaymentRecordDB.milestone_id == milestone_id,
                )
                .order_by(
                    PaymentRecordDB.created_at.asc(),
                    PaymentRecordDB.deferred_attempt.asc(),
                    PaymentRecordDB.payment_id.asc(),
                )
            ).scalars().all()
            return [_record_from_row(r) for r in rows]

    def all(self) -> list[PaymentRecord]:
        with self.SessionLocal() as session:
            rows = session.execute(select(PaymentRecordDB)).scalars().all()
            return [_record_from_row(r) for r in rows]

    def save_retry(self, retry: DeferredRetry) -> None:
        with self.SessionLocal() as session:
            session.merge(
                DeferredRetryDB(
                    project_id=retry.project_id,
                    milestone_id=retry.milestone_id,
                    failed_payment_id=retry.failed_payment_id,
                    method=retry.method.value,
                    beneficiary=retry.beneficiary,
                    requested_by=retry.requested_by,
                    attempt=retry.attempt,
                    due_at=retry.due_at,
                )
            )
            session.commit()

    def remove_retry(self, project_id: int, milestone_id: int) -> None:
        with self.SessionLocal() as session:
            row = session.get(DeferredRetryDB, (project_id, milestone_id))
            if row is not None:
                session.delete(row)
                session.commit()

    def retries(self) -> list[DeferredRetry]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(DeferredRetryDB).order_by(DeferredRetryDB.due_at.asc())
            ).scalars().all()
            return [_retry_from_row(r) for r in rows]
