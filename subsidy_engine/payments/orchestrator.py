"""
Payment Orchestrator — disburses verified milestones over payment rails.

Disbursement is idempotent on (project_id, milestone_id): once a pair has a
Completed record, every later request returns that record and no transfer
is issued. All payment work on a milestone runs under the same per-milestone
lock the milestone engine uses, so a dispute and a payment never interleave.

Each attempt re-reads the milestone and project from the ledger and
recomputes the amount from the milestone's subsidy. An attempt aborts with
Conflict if the milestone is no longer Verified or the project is
Suspended or Cancelled.

When every immediate attempt fails with a transient error, the record is
marked Failed and a deferred retry is queued. ``run_due_retries`` picks up
due retries and starts a new record for each; Failed records are never
reopened.

A transfer the rail accepted is never sent twice. If the ledger write after
an accepted transfer fails, the record is marked Failed with the rail's
reference, and the next request for that milestone only retries the ledger
write, settling the transfer in a new Completed record that points back
with ``reconciled_from``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator

from subsidy_engine.domain.schema import (
    Action,
    AuditAction,
    Milestone,
    MilestoneStatus,
    PaymentAnalytics,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    Principal,
    Project,
    ProjectStatus,
    TransferReceipt,
    utcnow,
)
from subsidy_engine.engine.locks import KeyedLocks, milestone_key
from subsidy_engine.errors import (
    Conflict,
    GatewayUnavailable,
    InsufficientFunds,
    InvalidArgument,
    NotFound,
    SubsidyError,
    Unavailable,
)
from subsidy_engine.governance.permissions import RoleAuthority
from subsidy_engine.ledger.audit import AuditTrail
from subsidy_engine.ledger.gateway import LedgerGateway
from subsidy_engine.payments.gateways import PaymentGateway, mask_account
from subsidy_engine.payments.retry import RetryExecutor, RetryPolicy, Sleep
from subsidy_engine.payments.store import DeferredRetry, InMemoryPaymentStore, PaymentStore

logger = logging.getLogger(__name__)


class PaymentOrchestrator:
    """
    Executes disbursements with bounded retries and tracks their records.

    Usage:
        payments = PaymentOrchestrator(ledger, authority, audit, gateways, locks)
        record = await payments.disburse(government, project_id, milestone_id)
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        authority: RoleAuthority,
        audit: AuditTrail,
        gateways: dict[PaymentMethod, PaymentGateway],
        locks: KeyedLocks | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        clock=utcnow,
        store: PaymentStore | None = None,
        attempt_timeout: float = 60.0,
        deferred_delay_seconds: float = 300,
        deferred_max_attempts: int = 3,
        currency: str = "USD",
    ) -> None:
        self.ledger = ledger
        self.authority = authority
        self.audit = audit
        self.gateways = dict(gateways)
        self.locks = locks or KeyedLocks()
        self.executor = RetryExecutor(policy or RetryPolicy(), sleep=sleep)
        self.clock = clock
        self.store = store or InMemoryPaymentStore()
        self.attempt_timeout = attempt_timeout
        self.deferred_delay = timedelta(seconds=deferred_delay_seconds)
        self.deferred_max_attempts = deferred_max_attempts
        self.currency = currency

    # ════════════════════════════════════════════════════════════
    # Entry points
    # ════════════════════════════════════════════════════════════

    async def disburse(
        self,
        principal: Principal,
        project_id: int,
        milestone_id: int,
        amount: Decimal | None = None,
        method: PaymentMethod | None = None,
        beneficiary: str | None = None,
    ) -> PaymentRecord:
        """
        Pay a Verified milestone (Government only).

        ``amount`` is optional; when given it must equal the milestone's
        subsidy amount. ``method`` and ``beneficiary`` default to the
        project's payment method and beneficiary account.

        Raises:
            Forbidden, NotFound, InvalidArgument, Conflict,
            GatewayUnavailable, InvalidBeneficiary, InsufficientFunds.
        """
        async with self._audit_failures(principal.id, project_id, milestone_id):
            self.authority.require(principal, Action.DISBURSE)
            if amount is not None:
                milestone = await self.ledger.get_milestone(milestone_id)
                if Decimal(amount) != milestone.subsidy_amount:
                    raise InvalidArgument(
                        f"Amount {amount} does not match milestone subsidy "
                        f"{milestone.subsidy_amount}"
                    )
        return await self._disburse(
            principal.id, project_id, milestone_id, method, beneficiary, deferred_attempt=0
        )

    async def request_disbursement(
        self, milestone: Milestone, requested_by: str
    ) -> PaymentRecord | None:
        """
        Pay a milestone that just became Verified.

        Payment failures do not undo the verification: they are audited,
        logged and left to the deferred retry queue. Returns the resulting
        record, or None if no record could be created.
        """
        try:
            return await self._disburse(
                requested_by, milestone.project_id, milestone.id, None, None,
                deferred_attempt=0,
            )
        except SubsidyError as exc:
            logger.error(
                "Automatic disbursement for milestone %d failed: %s (%s)",
                milestone.id, exc.message, exc.kind,
            )
            return await self.latest_record(milestone.project_id, milestone.id)

    async def run_due_retries(self, now: datetime | None = None) -> list[PaymentRecord]:
        """Start a new payment record for every deferred retry that is due."""
        now = now or self.clock()
        due = [d for d in await self.pending_retries() if d.due_at <= now]
        results: list[PaymentRecord] = []
        for retry in due:
            await asyncio.to_thread(self.store.remove_retry, retry.project_id, retry.milestone_id)
            logger.info(
                "Running deferred retry %d for payment %s",
                retry.attempt, retry.failed_payment_id,
            )
            try:
                record = await self._disburse(
                    retry.requested_by,
                    retry.project_id,
                    retry.milestone_id,
                    retry.method,
                    retry.beneficiary,
                    deferred_attempt=retry.attempt,
                )
            except SubsidyError as exc:
                logger.warning(
                    "Deferred retry for milestone %d failed: %s (%s)",
                    retry.milestone_id, exc.message, exc.kind,
                )
                record = await self.latest_record(retry.project_id, retry.milestone_id)
            if record is not None:
                results.append(record)
        return results

    # ════════════════════════════════════════════════════════════
    # Execution
    # ════════════════════════════════════════════════════════════

    @asynccontextmanager
    async def _audit_failures(
        self, principal_id: str, project_id: int, milestone_id: int
    ) -> AsyncIterator[None]:
        try:
            yield
        except SubsidyError as exc:
            await self.audit.record_failure(
                AuditAction.PAYMENT_FAILED,
                principal_id=principal_id,
                resource_type="milestone",
                resource_id=milestone_id,
                error=exc,
                detail={"project_id": project_id},
            )
            raise

    async def _save(self, record: PaymentRecord) -> None:
        await asyncio.to_thread(self.store.save, record)

    async def _load_payable(
        self, project_id: int, milestone_id: int
    ) -> tuple[Project, Milestone]:
        milestone = await self.ledger.get_milestone(milestone_id)
        if milestone.project_id != project_id:
            raise NotFound(
                f"Milestone {milestone_id} does not belong to project {project_id}"
            )
        project = await self.ledger.get_project(project_id)

        if milestone.paid:
            raise Conflict(f"Milestone {milestone_id} has already been paid")
        if milestone.status != MilestoneStatus.VERIFIED:
            raise Conflict(
                f"Milestone {milestone_id} is {milestone.status.value}, not Verified"
            )
        if project.status in (ProjectStatus.SUSPENDED, ProjectStatus.CANCELLED):
            raise Conflict(f"Project {project_id} is {project.status.value}")
        if project.disbursed_amount + milestone.subsidy_amount > project.total_subsidy_amount:
            raise InsufficientFunds(
                f"Project {project_id} has {project.remaining_amount} remaining; "
                f"milestone {milestone_id} needs {milestone.subsidy_amount}"
            )
        return project, milestone

    async def _new_payment_id(self, project_id: int, milestone_id: int, now: datetime) -> str:
        payment_id = PaymentRecord.make_id(project_id, milestone_id, now)
        candidate, n = payment_id, 1
        while await asyncio.to_thread(self.store.get, candidate) is not None:
            candidate = f"{payment_id}_{n}"
            n += 1
        return candidate

    async def _disburse(
        self,
        requested_by: str,
        project_id: int,
        milestone_id: int,
        method: PaymentMethod | None,
        beneficiary: str | None,
        deferred_attempt: int,
    ) -> PaymentRecord:
        async with self.locks.hold(milestone_key(milestone_id)):
            history = await self.payments_for_milestone(project_id, milestone_id)
            completed = next((r for r in history if r.status == PaymentStatus.COMPLETED), None)
            if completed is not None:
                logger.info(
                    "Milestone %d already paid by %s; returning existing record",
                    milestone_id, completed.payment_id,
                )
                return completed

            settled = next(
                (r for r in reversed(history)
                 if r.status == PaymentStatus.FAILED and r.gateway_reference),
                None,
            )
            if settled is not None:
                return await self._reconcile(settled, requested_by, deferred_attempt)

            async with self._audit_failures(requested_by, project_id, milestone_id):
                project, milestone = await self._load_payable(project_id, milestone_id)
                method = method or project.payment_method
                gateway = self.gateways.get(method)
                if gateway is None:
                    raise InvalidArgument(f"No payment gateway configured for {method.value}")

            now = self.clock()
            record = PaymentRecord(
                payment_id=await self._new_payment_id(project_id, milestone_id, now),
                project_id=project_id,
                milestone_id=milestone_id,
                method=method,
                amount=milestone.subsidy_amount,
                currency=self.currency,
                beneficiary=beneficiary or project.beneficiary_account,
                deferred_attempt=deferred_attempt,
                status_history=[PaymentStatus.PENDING],
                created_at=now,
                updated_at=now,
            )
            await self._save(record)
            logger.info(
                "Payment %s started: amount=%s %s method=%s to=%s",
                record.payment_id, record.amount, record.currency,
                method.value, mask_account(record.beneficiary),
            )
            return await self._execute(record, gateway, requested_by)

    async def _execute(
        self, record: PaymentRecord, gateway: PaymentGateway, requested_by: str
    ) -> PaymentRecord:
        amounts: dict[int, Decimal] = {}

        async def attempt(n: int) -> TransferReceipt:
            if n > 1:
                _, milestone = await self._load_payable(record.project_id, record.milestone_id)
                amounts[n] = milestone.subsidy_amount
            else:
                amounts[n] = record.amount
            try:
                return await asyncio.wait_for(
                    gateway.transfer(
                        amounts[n], record.currency, record.beneficiary, record.payment_id
                    ),
                    timeout=self.attempt_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise GatewayUnavailable(
                    f"{record.method.value} rail did not answer within {self.attempt_timeout}s"
                ) from exc

        async def on_failure(n: int, exc: Exception) -> None:
            await self.audit.record(
                AuditAction.PAYMENT_ATTEMPT_FAILED,
                principal_id=requested_by,
                resource_type="payment",
                resource_id=record.payment_id,
                detail={
                    "attempt": n,
                    "error": type(exc).__name__,
                    "amount": str(amounts.get(n, record.amount)),
                    "method": record.method.value,
                    "milestone_id": record.milestone_id,
                },
            )

        try:
            receipt, attempts = await self.executor.run(attempt, on_failure)
        except SubsidyError as exc:
            await self._fail(record, exc, requested_by, attempts=max(amounts, default=0))
            raise

        amount = amounts[attempts]
        try:
            _, milestone = await self.ledger.record_disbursement(
                record.project_id, record.milestone_id, amount
            )
        except SubsidyError as exc:
            # Money has moved; the reference is what the next request settles.
            stranded = record.model_copy(
                update={
                    "amount": amount,
                    "status": PaymentStatus.FAILED,
                    "status_history": [*record.status_history, PaymentStatus.FAILED],
                    "gateway_reference": receipt.reference,
                    "estimated_completion": receipt.estimated_completion,
                    "fee": receipt.fee,
                    "attempts": attempts,
                    "error": type(exc).__name__,
                    "updated_at": self.clock(),
                }
            )
            await self._save(stranded)
            await self._ledger_write_failed(stranded, exc, requested_by, stranded.deferred_attempt)
            raise

        completed = record.model_copy(
            update={
                "amount": amount,
                "status": PaymentStatus.COMPLETED,
                "status_history": [*record.status_history, PaymentStatus.COMPLETED],
                "gateway_reference": receipt.reference,
                "estimated_completion": receipt.estimated_completion,
                "fee": receipt.fee,
                "attempts": attempts,
                "updated_at": self.clock(),
            }
        )
        await self._save(completed)
        await asyncio.to_thread(self.store.remove_retry, completed.project_id, completed.milestone_id)
        await self.audit.record(
            AuditAction.PAYMENT_COMPLETED,
            principal_id=requested_by,
            resource_type="payment",
            resource_id=completed.payment_id,
            after=milestone,
            detail={
                "amount": str(amount),
                "currency": completed.currency,
                "method": completed.method.value,
                "gateway_reference": receipt.reference,
                "fee": str(receipt.fee),
                "attempts": attempts,
                "project_id": completed.project_id,
                "milestone_id": completed.milestone_id,
            },
        )
        logger.info(
            "Payment %s completed: ref=%s attempts=%d fee=%s",
            completed.payment_id, receipt.reference, attempts, receipt.fee,
        )
        return completed

    async def _reconcile(
        self, settled: PaymentRecord, requested_by: str, deferred_attempt: int
    ) -> PaymentRecord:
        """
        Finish a payment whose transfer the rail already accepted.

        Only the ledger write is retried. If the ledger already shows the
        milestone paid (the earlier write landed but reported an error), the
        write is skipped.
        """
        logger.warning(
            "Payment %s was accepted by the rail (ref=%s); reconciling ledger only",
            settled.payment_id, settled.gateway_reference,
        )
        try:
            milestone = await self.ledger.get_milestone(settled.milestone_id)
            if not milestone.paid:
                _, milestone = await self.ledger.record_disbursement(
                    settled.project_id, settled.milestone_id, settled.amount
                )
        except SubsidyError as exc:
            await self._ledger_write_failed(settled, exc, requested_by, deferred_attempt)
            raise

        now = self.clock()
        reconciled = settled.model_copy(
            update={
                "payment_id": await self._new_payment_id(
                    settled.project_id, settled.milestone_id, now
                ),
                "status": PaymentStatus.COMPLETED,
                "status_history": [PaymentStatus.PENDING, PaymentStatus.COMPLETED],
                "error": None,
                "deferred_attempt": deferred_attempt,
                "reconciled_from": settled.payment_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self._save(reconciled)
        await asyncio.to_thread(self.store.remove_retry, reconciled.project_id, reconciled.milestone_id)
        await self.audit.record(
            AuditAction.PAYMENT_COMPLETED,
            principal_id=requested_by,
            resource_type="payment",
            resource_id=reconciled.payment_id,
            after=milestone,
            detail={
                "amount": str(reconciled.amount),
                "currency": reconciled.currency,
                "method": reconciled.method.value,
                "gateway_reference": reconciled.gateway_reference,
                "fee": str(reconciled.fee),
                "attempts": 0,
                "project_id": reconciled.project_id,
                "milestone_id": reconciled.milestone_id,
                "reconciled_from": settled.payment_id,
            },
        )
        logger.info(
            "Payment %s reconciled from %s: ref=%s",
            reconciled.payment_id, settled.payment_id, reconciled.gateway_reference,
        )
        return reconciled

    async def _ledger_write_failed(
        self,
        record: PaymentRecord,
        exc: SubsidyError,
        requested_by: str,
        deferred_attempt: int,
    ) -> None:
        await self.audit.record_failure(
            AuditAction.PAYMENT_FAILED,
            principal_id=requested_by,
            resource_type="payment",
            resource_id=record.payment_id,
            error=exc,
            detail={"stage": "ledger", "gateway_reference": record.gateway_reference},
        )
        logger.critical(
            "Payment %s transferred (ref=%s) but ledger write failed: %s",
            record.payment_id, record.gateway_reference, exc.message,
        )
        if isinstance(exc, Unavailable):
            await self._schedule_retry(record, requested_by, deferred_attempt)

    async def _fail(
        self,
        record: PaymentRecord,
        exc: SubsidyError,
        requested_by: str,
        attempts: int,
    ) -> PaymentRecord:
        failed = record.model_copy(
            update={
                "status": PaymentStatus.FAILED,
                "status_history": [*record.status_history, PaymentStatus.FAILED],
                "attempts": attempts,
                "error": type(exc).__name__,
                "updated_at": self.clock(),
            }
        )
        await self._save(failed)
        await self.audit.record_failure(
            AuditAction.PAYMENT_FAILED,
            principal_id=requested_by,
            resource_type="payment",
            resource_id=failed.payment_id,
            error=exc,
            detail={"attempts": attempts, "amount": str(failed.amount)},
        )
        logger.error(
            "Payment %s failed after %d attempt(s): %s",
            failed.payment_id, attempts, exc.message,
        )

        if isinstance(exc, GatewayUnavailable):
            await self._schedule_retry(failed, requested_by, failed.deferred_attempt)
        return failed

    async def _schedule_retry(
        self, failed: PaymentRecord, requested_by: str, deferred_attempt: int
    ) -> None:
        next_attempt = deferred_attempt + 1
        if next_attempt > self.deferred_max_attempts:
            logger.error(
                "Payment %s exhausted %d deferred retries; manual action required",
                failed.payment_id, self.deferred_max_attempts,
            )
            return

        retry = DeferredRetry(
            failed_payment_id=failed.payment_id,
            project_id=failed.project_id,
            milestone_id=failed.milestone_id,
            method=failed.method,
            beneficiary=failed.beneficiary,
            requested_by=requested_by,
            attempt=next_attempt,
            due_at=self.clock() + self.deferred_delay,
        )
        await asyncio.to_thread(self.store.save_retry, retry)
        await self.audit.record(
            AuditAction.PAYMENT_RETRY_SCHEDULED,
            principal_id=requested_by,
            resource_type="payment",
            resource_id=failed.payment_id,
            detail={"deferred_attempt": next_attempt, "due_at": retry.due_at.isoformat()},
        )
        logger.info(
            "Payment %s retry %d scheduled for %s",
            failed.payment_id, next_attempt, retry.due_at.isoformat(),
        )

    # ════════════════════════════════════════════════════════════
    # Queries
    # ════════════════════════════════════════════════════════════

    async def payment_status(self, payment_id: str) -> PaymentRecord:
        record = await asyncio.to_thread(self.store.get, payment_id)
        if record is None:
            raise NotFound(f"Payment {payment_id} does not exist")
        return record

    async def payments_for_milestone(
        self, project_id: int, milestone_id: int
    ) -> list[PaymentRecord]:
        return await asyncio.to_thread(self.store.for_milestone, project_id, milestone_id)

    async def latest_record(self, project_id: int, milestone_id: int) -> PaymentRecord | None:
        records = await self.payments_for_milestone(project_id, milestone_id)
        return records[-1] if records else None

    async def pending_retries(self) -> list[DeferredRetry]:
        return await asyncio.to_thread(self.store.retries)

    async def analytics(self) -> PaymentAnalytics:
        records = await asyncio.to_thread(self.store.all)
        retries = await self.pending_retries()
        completed = [r for r in records if r.status == PaymentStatus.COMPLETED]
        breakdown: dict[str, int] = {}
        for record in completed:
            breakdown[record.method.value] = breakdown.get(record.method.value, 0) + 1
        return PaymentAnalytics(
            total_payments=len(records),
            completed_payments=len(completed),
            failed_payments=sum(1 for r in records if r.status == PaymentStatus.FAILED),
            pending_retries=len(retries),
            total_amount=sum((r.amount for r in completed), Decimal("0")),
            total_fees=sum((r.fee for r in completed), Decimal("0")),
            method_breakdown=breakdown,
        )
