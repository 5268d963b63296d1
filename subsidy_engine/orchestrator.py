"""
Subsidy Engine — composition root and service loop.

Builds every component from settings and wires them together:
1. Ledger gateway and audit trail (SQL-backed)
2. Role authority over the SQL principal directory
3. Data aggregator with the HTTP measurement sources
4. Payment rails and the payment orchestrator, with its SQL payment store
5. The milestone engine, with payments as its disbursement sink

``SubsidyCore`` exposes the operations the HTTP boundary calls. The
service loop processes deferred payment retries and checks the audit
chain on every tick.

This is the entrypoint for the engine container.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, TypeVar

import structlog

from subsidy_engine.config import SubsidySettings, settings
from subsidy_engine.data.aggregator import DataAggregator, SourceBinding
from subsidy_engine.data.sources import HttpMeasurementSource, MeasurementSource, SourceKind
from subsidy_engine.domain.schema import (
    AuditAction,
    AuditEntry,
    Milestone,
    MilestoneCounts,
    MilestoneStats,
    PaymentAnalytics,
    PaymentMethod,
    PaymentRecord,
    Principal,
    Project,
    ProjectStatus,
    Role,
    utcnow,
)
from subsidy_engine.engine.locks import KeyedLocks
from subsidy_engine.engine.milestones import MilestoneEngine
from subsidy_engine.errors import SubsidyError
from subsidy_engine.governance.permissions import RoleAuthority, SqlPrincipalDirectory
from subsidy_engine.ledger.audit import AuditTrail, SqlAuditStore
from subsidy_engine.ledger.gateway import LedgerGateway
from subsidy_engine.ledger.sql_gateway import SqlLedgerGateway
from subsidy_engine.payments.gateways import HttpPaymentGateway, PaymentGateway
from subsidy_engine.payments.orchestrator import PaymentOrchestrator
from subsidy_engine.payments.retry import RetryPolicy
from subsidy_engine.payments.store import PaymentStore, SqlPaymentStore

log = structlog.get_logger()

T = TypeVar("T")


def configure_logging(cfg: SubsidySettings = settings) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if cfg.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(cfg.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


class SubsidyCore:
    """
    The subsidy core with all of its collaborators wired in.

    Usage:
        core = SubsidyCore.from_settings(settings)
        await core.initialize()
        project = await core.create_project(government, ...)
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        audit: AuditTrail,
        authority: RoleAuthority,
        aggregator: DataAggregator,
        gateways: dict[PaymentMethod, PaymentGateway],
        source_adapters: dict[SourceKind, MeasurementSource] | None = None,
        source_timeouts: dict[SourceKind, float] | None = None,
        policy: RetryPolicy | None = None,
        payment_store: PaymentStore | None = None,
        clock=utcnow,
        sleep=asyncio.sleep,
        deferred_delay_seconds: float = 300,
        deferred_max_attempts: int = 3,
        currency: str = "USD",
    ) -> None:
        self.ledger = ledger
        self.audit = audit
        self.authority = authority
        self.aggregator = aggregator
        self.source_adapters = dict(source_adapters or {})
        self.source_timeouts = dict(source_timeouts or {})
        self.clock = clock
        self.locks = KeyedLocks()
        self.payments = PaymentOrchestrator(
            ledger,
            authority,
            audit,
            gateways,
            locks=self.locks,
            policy=policy,
            sleep=sleep,
            clock=clock,
            store=payment_store,
            deferred_delay_seconds=deferred_delay_seconds,
            deferred_max_attempts=deferred_max_attempts,
            currency=currency,
        )
        self.engine = MilestoneEngine(
            ledger,
            authority,
            audit,
            aggregator=aggregator,
            locks=self.locks,
            disbursements=self.payments,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, cfg: SubsidySettings = settings) -> "SubsidyCore":
        database_url = cfg.database_url_sync
        rails = {
            PaymentMethod.BANK_TRANSFER: (cfg.ach_api_url, cfg.ach_api_key, cfg.ach_timeout_seconds),
            PaymentMethod.CARD: (cfg.card_api_url, cfg.card_api_key, cfg.card_timeout_seconds),
            PaymentMethod.WIRE: (cfg.wire_api_url, cfg.wire_api_key, cfg.wire_timeout_seconds),
            PaymentMethod.CRYPTO: (cfg.crypto_api_url, cfg.crypto_api_key, cfg.crypto_timeout_seconds),
        }
        gateways: dict[PaymentMethod, PaymentGateway] = {
            method: HttpPaymentGateway(method, url, api_key=key, timeout=timeout)
            for method, (url, key, timeout) in rails.items()
        }
        sources = {
            SourceKind.IOT: (cfg.iot_platform_url, cfg.iot_platform_api_key, cfg.iot_timeout_seconds),
            SourceKind.GOVERNMENT: (
                cfg.government_api_url, cfg.government_api_key, cfg.government_timeout_seconds
            ),
            SourceKind.THIRD_PARTY: (
                cfg.third_party_verifier_url, cfg.third_party_api_key, cfg.third_party_timeout_seconds
            ),
        }
        adapters: dict[SourceKind, MeasurementSource] = {
            kind: HttpMeasurementSource(kind, url, api_key=key, timeout=timeout)
            for kind, (url, key, timeout) in sources.items()
        }
        return cls(
            ledger=SqlLedgerGateway(database_url),
            audit=AuditTrail(SqlAuditStore(database_url)),
            authority=RoleAuthority(SqlPrincipalDirectory(database_url)),
            aggregator=DataAggregator(cache_ttl_seconds=cfg.aggregation_cache_ttl_seconds),
            gateways=gateways,
            source_adapters=adapters,
            source_timeouts={kind: timeout for kind, (_, _, timeout) in sources.items()},
            policy=RetryPolicy(
                max_attempts=cfg.payment_max_attempts,
                base_delay=cfg.payment_base_delay_seconds,
                max_delay=cfg.payment_max_delay_seconds,
            ),
            payment_store=SqlPaymentStore(database_url),
            deferred_delay_seconds=cfg.deferred_retry_delay_seconds,
            deferred_max_attempts=cfg.deferred_retry_max_attempts,
            currency=cfg.default_currency,
        )

    # ── Lifecycle ──────────────────────────────────────────────

    async def initialize(self) -> None:
        await self.ledger.initialize()
        if isinstance(self.audit.store, SqlAuditStore):
            await asyncio.to_thread(self.audit.store.initialize)
        if isinstance(self.authority.directory, SqlPrincipalDirectory):
            await asyncio.to_thread(self.authority.directory.initialize)
        if isinstance(self.payments.store, SqlPaymentStore):
            await asyncio.to_thread(self.payments.store.initialize)
        log.info(
            "subsidy.core.initialized",
            audit_entries=await asyncio.to_thread(self.audit.store.count),
            pending_retries=len(await self.payments.pending_retries()),
        )

    async def shutdown(self) -> None:
        await self.aggregator.aclose()
        for adapter in self.source_adapters.values():
            await adapter.aclose()
        for gateway in self.payments.gateways.values():
            await gateway.aclose()
        await self.ledger.shutdown()
        log.info("subsidy.core.shutdown")

    def bind_source(self, name: str, source_ids: dict[SourceKind, str]) -> None:
        """Back the logical source ``name`` with the configured adapters."""
        bindings = [
            SourceBinding(
                label=f"{kind.value}:{source_id}",
                adapter=self.source_adapters[kind],
                source_id=source_id,
                timeout=self.source_timeouts.get(kind, 15.0),
            )
            for kind, source_id in source_ids.items()
        ]
        self.aggregator.register_source(name, bindings)

    async def _call(self, event: str, operation: Awaitable[T], **context: Any) -> T:
        try:
            result = await operation
        except SubsidyError as exc:
            log.warning(f"subsidy.core.{event}.rejected", kind=exc.kind, message=exc.message, **context)
            raise
        log.info(f"subsidy.core.{event}", **context)
        return result

    # ── Principals and projects ────────────────────────────────

    async def register_principal(
        self, actor: Principal, principal_id: str, role: Role, account: str | None = None
    ) -> Principal:
        principal = await asyncio.to_thread(
            self.authority.register_principal, actor, principal_id, role, account
        )
        await self.audit.record(
            AuditAction.PRINCIPAL_REGISTERED,
            principal_id=actor.id,
            resource_type="principal",
            resource_id=principal_id,
            after=principal,
        )
        log.info("subsidy.core.principal_registered", principal=principal_id, role=role.value)
        return principal

    async def create_project(
        self,
        principal: Principal,
        name: str,
        description: str,
        producer_id: str,
        total_subsidy_amount: Decimal,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    ) -> Project:
        return await self._call(
            "project_created",
            self.engine.create_project(
                principal, name, description, producer_id, total_subsidy_amount, payment_method
            ),
            principal=principal.id,
            producer=producer_id,
        )

    async def set_project_status(
        self, principal: Principal, project_id: int, status: ProjectStatus
    ) -> Project:
        return await self._call(
            "project_status_changed",
            self.engine.set_project_status(principal, project_id, status),
            project_id=project_id,
            status=status.value,
        )

    async def get_producer_projects(self, producer_id: str) -> list[Project]:
        return await self.engine.get_producer_projects(producer_id)

    # ── Milestones ─────────────────────────────────────────────

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
        return await self._call(
            "milestone_created",
            self.engine.create_milestone(
                principal, project_id, description, subsidy_amount,
                target_value, verification_source, deadline,
            ),
            project_id=project_id,
        )

    async def verify(
        self, principal: Principal, milestone_id: int, actual_value: int, success: bool
    ) -> Milestone:
        return await self._call(
            "milestone_verified",
            self.engine.verify(principal, milestone_id, actual_value, success),
            milestone_id=milestone_id,
            success=success,
        )

    async def auto_verify(
        self,
        principal: Principal,
        milestone_id: int,
        window_from: datetime,
        window_to: datetime,
        min_reliability: float = 0.0,
    ) -> Milestone:
        return await self._call(
            "milestone_auto_verified",
            self.engine.auto_verify(
                principal, milestone_id, window_from, window_to, min_reliability
            ),
            milestone_id=milestone_id,
        )

    async def dispute(self, principal: Principal, milestone_id: int, reason: str) -> Milestone:
        return await self._call(
            "milestone_disputed",
            self.engine.dispute(principal, milestone_id, reason),
            milestone_id=milestone_id,
            principal=principal.id,
        )

    async def resolve_dispute(
        self, principal: Principal, milestone_id: int, approved: bool, resolution: str
    ) -> Milestone:
        return await self._call(
            "dispute_resolved",
            self.engine.resolve_dispute(principal, milestone_id, approved, resolution),
            milestone_id=milestone_id,
            approved=approved,
        )

    async def get_milestone(self, milestone_id: int) -> Milestone:
        return await self.engine.get_milestone(milestone_id)

    async def get_project_milestones(
        self, project_id: int
    ) -> tuple[list[Milestone], MilestoneCounts]:
        return await self.engine.get_project_milestones(project_id)

    async def get_milestone_stats(
        self, principal: Principal, project_id: int | None = None, timeframe: str = "30d"
    ) -> MilestoneStats:
        return await self.engine.get_milestone_stats(principal, project_id, timeframe)

    async def get_overdue_milestones(
        self, principal: Principal, project_id: int | None = None
    ) -> list[Milestone]:
        return await self.engine.get_overdue_milestones(principal, project_id)

    async def get_disputed_milestones(
        self, principal: Principal, open_only: bool = True
    ) -> list[Milestone]:
        return await self.engine.get_disputed_milestones(principal, open_only)

    async def get_verification_queue(
        self, principal: Principal, source: str | None = None
    ) -> list[Milestone]:
        return await self.engine.get_verification_queue(principal, source)

    # ── Payments ───────────────────────────────────────────────

    async def disburse(
        self,
        principal: Principal,
        project_id: int,
        milestone_id: int,
        amount: Decimal | None = None,
        method: PaymentMethod | None = None,
        beneficiary: str | None = None,
    ) -> PaymentRecord:
        return await self._call(
            "payment_disbursed",
            self.payments.disburse(
                principal, project_id, milestone_id, amount, method, beneficiary
            ),
            project_id=project_id,
            milestone_id=milestone_id,
        )

    async def payment_status(self, payment_id: str) -> PaymentRecord:
        return await self.payments.payment_status(payment_id)

    async def payment_history(self, project_id: int, milestone_id: int) -> list[PaymentRecord]:
        return await self.payments.payments_for_milestone(project_id, milestone_id)

    async def payment_analytics(self) -> PaymentAnalytics:
        return await self.payments.analytics()

    async def run_due_retries(self, now: datetime | None = None) -> list[PaymentRecord]:
        records = await self.payments.run_due_retries(now)
        if records:
            log.info(
                "subsidy.core.retries_processed",
                count=len(records),
                statuses=[r.status.value for r in records],
            )
        return records

    # ── Audit ──────────────────────────────────────────────────

    async def audit_entries(
        self, resource_type: str | None = None, resource_id: int | str | None = None
    ) -> list[AuditEntry]:
        return await asyncio.to_thread(self.audit.entries, resource_type, resource_id)

    async def verify_audit_chain(self) -> tuple[bool, int, str]:
        return await asyncio.to_thread(self.audit.verify_chain)


async def main() -> None:
    """Main service loop."""
    configure_logging(settings)

    log.info(
        "subsidy.core.starting",
        currency=settings.default_currency,
        retry_poll_seconds=settings.retry_poll_seconds,
    )

    core = SubsidyCore.from_settings(settings)
    await core.initialize()

    if settings.bootstrap_government_id:
        directory = core.authority.directory
        if await asyncio.to_thread(directory.get, settings.bootstrap_government_id) is None:
            await asyncio.to_thread(
                core.authority.bootstrap,
                Principal(id=settings.bootstrap_government_id, role=Role.GOVERNMENT),
            )
            log.info("subsidy.core.government_bootstrapped", principal=settings.bootstrap_government_id)

    log.info("subsidy.core.running", message="Subsidy core operational")

    # Main loop: process deferred payment retries, check audit integrity
    try:
        while True:
            await core.run_due_retries()

            is_valid, entries, msg = await core.verify_audit_chain()
            if not is_valid:
                log.critical(
                    "subsidy.core.integrity_failure",
                    message=msg,
                    entries=entries,
                )

            log.debug(
                "subsidy.core.heartbeat",
                audit_entries=entries,
                chain_valid=is_valid,
                pending_retries=len(await core.payments.pending_retries()),
            )

            await asyncio.sleep(settings.retry_poll_seconds)

    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("subsidy.core.shutdown_requested")
    except Exception as e:
        log.exception("subsidy.core.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        await core.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
