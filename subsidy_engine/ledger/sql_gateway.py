"""
SQL Ledger Gateway — LedgerGateway over a relational database.

Uses a synchronous SQLAlchemy engine; each call runs in a worker thread so
the event loop is never blocked by database I/O. Connection-level failures
surface as Unavailable. Verification and disbursement lock the milestone row
and re-check its status before writing, raising Conflict when another
writer got there first.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from subsidy_engine.domain.schema import (
    DisputeRecord,
    Milestone,
    MilestoneStatus,
    PaymentMethod,
    Project,
    ProjectStatus,
)
from subsidy_engine.errors import Conflict, InsufficientFunds, NotFound, Unavailable
from subsidy_engine.ledger.gateway import LedgerGateway
from subsidy_engine.ledger.models import Base, MilestoneDB, ProjectDB

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_engine(database_url: str):
    """Create an engine; SQLite connections are shared across worker threads."""
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, connect_args=connect_args)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_project(row: ProjectDB) -> Project:
    return Project(
        id=row.id,
        producer=row.producer,
        beneficiary_account=row.beneficiary_account,
        name=row.name,
        description=row.description or "",
        total_subsidy_amount=Decimal(row.total_subsidy_amount),
        disbursed_amount=Decimal(row.disbursed_amount or 0),
        status=ProjectStatus(row.status),
        payment_method=PaymentMethod(row.payment_method),
        created_at=_aware(row.created_at),
    )


def _to_milestone(row: MilestoneDB) -> Milestone:
    return Milestone(
        id=row.id,
        project_id=row.project_id,
        description=row.description,
        subsidy_amount=Decimal(row.subsidy_amount),
        target_value=row.target_value,
        actual_value=row.actual_value,
        verification_source=row.verification_source,
        deadline=_aware(row.deadline),
        status=MilestoneStatus(row.status),
        created_at=_aware(row.created_at),
        verified_at=_aware(row.verified_at),
        verified_by=row.verified_by,
        paid=row.paid,
        dispute=DisputeRecord.model_validate(row.dispute) if row.dispute else None,
    )


class SqlLedgerGateway(LedgerGateway):
    """
    Relational LedgerGateway.

    Usage:
        gateway = SqlLedgerGateway(settings.database_url_sync)
        await gateway.initialize()  # create tables
    """

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    async def initialize(self) -> None:
        await self._run(lambda: Base.metadata.create_all(self.engine))
        logger.info("Ledger schema ready: %s", self.engine.url.render_as_string(hide_password=True))

    async def shutdown(self) -> None:
        await asyncio.to_thread(self.engine.dispose)

    async def _run(self, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except OperationalError as exc:
            logger.error("Ledger store unreachable: %s", exc.orig)
            raise Unavailable("Ledger store is unreachable") from exc

    @staticmethod
    def _project_row(session: Session, project_id: int) -> ProjectDB:
        row = session.get(ProjectDB, project_id)
        if row is None:
            raise NotFound(f"Project {project_id} does not exist")
        return row

    @staticmethod
    def _milestone_row(
        session: Session, milestone_id: int, for_update: bool = False
    ) -> MilestoneDB:
        row = session.get(MilestoneDB, milestone_id, with_for_update=for_update)
        if row is None:
            raise NotFound(f"Milestone {milestone_id} does not exist")
        return row

    # ── Projects ───────────────────────────────────────────────

    async def register_project(
        self,
        producer: str,
        beneficiary_account: str,
        name: str,
        description: str,
        total_subsidy_amount: Decimal,
        payment_method: PaymentMethod,
        created_at: datetime,
    ) -> Project:
        def op() -> Project:
            with self.SessionLocal() as session:
                row = ProjectDB(
                    producer=producer,
                    beneficiary_account=beneficiary_account,
                    name=name,
                    description=description,
                    total_subsidy_amount=total_subsidy_amount,
                    disbursed_amount=Decimal("0"),
                    status=ProjectStatus.PENDING.value,
                    payment_method=payment_method.value,
                    created_at=created_at,
                )
                session.add(row)
                session.commit()
                return _to_project(row)

        return await self._run(op)

    async def get_project(self, project_id: int) -> Project:
        def op() -> Project:
            with self.SessionLocal() as session:
                return _to_project(self._project_row(session, project_id))

        return await self._run(op)

    async def get_producer_projects(self, producer: str) -> list[Project]:
        def op() -> list[Project]:
            with self.SessionLocal() as session:
                rows = session.execute(
                    select(ProjectDB)
                    .where(ProjectDB.producer == producer)
                    .order_by(ProjectDB.id.asc())
                ).scalars().all()
                return [_to_project(r) for r in rows]

        return await self._run(op)

    async def set_project_status(self, project_id: int, status: ProjectStatus) -> Project:
        def op() -> Project:
            with self.SessionLocal() as session:
                row = self._project_row(session, project_id)
                row.status = status.value
                session.commit()
                return _to_project(row)

        return await self._run(op)

    # ── Milestones ─────────────────────────────────────────────

    async def add_milestone(
        self,
        project_id: int,
        description: str,
        subsidy_amount: Decimal,
        target_value: int,
        verification_source: str,
        deadline: datetime,
        created_at: datetime,
    ) -> Milestone:
        def op() -> Milestone:
            with self.SessionLocal() as session:
                self._project_row(session, project_id)
                row = MilestoneDB(
                    project_id=project_id,
                    description=description,
                    subsidy_amount=subsidy_amount,
                    target_value=target_value,
                    verification_source=verification_source,
                    deadline=deadline,
                    status=MilestoneStatus.PENDING.value,
                    created_at=created_at,
                    paid=False,
                )
                session.add(row)
                session.commit()
                return _to_milestone(row)

        return await self._run(op)

    async def get_milestone(self, milestone_id: int) -> Milestone:
        def op() -> Milestone:
            with self.SessionLocal() as session:
                return _to_milestone(self._milestone_row(session, milestone_id))

        return await self._run(op)

    async def get_project_milestones(self, project_id: int) -> list[Milestone]:
        def op() -> list[Milestone]:
            with self.SessionLocal() as session:
                self._project_row(session, project_id)
                rows = session.execute(
                    select(MilestoneDB)
                    .where(MilestoneDB.project_id == project_id)
                    .order_by(MilestoneDB.id.asc())
                ).scalars().all()
                return [_to_milestone(r) for r in rows]

        return await self._run(op)

    async def list_milestones(self) -> list[Milestone]:
        def op() -> list[Milestone]:
            with self.SessionLocal() as session:
                rows = session.execute(
                    select(MilestoneDB).order_by(MilestoneDB.id.asc())
                ).scalars().all()
                return [_to_milestone(r) for r in rows]

        return await self._run(op)

    async def verify_milestone(
        self,
        milestone_id: int,
        actual_value: int,
        success: bool,
        verified_by: str,
        verified_at: datetime,
    ) -> Milestone:
        def op() -> Milestone:
            with self.SessionLocal() as session:
                row = self._milestone_row(session, milestone_id, for_update=True)
                if row.status != MilestoneStatus.PENDING.value:
                    raise Conflict(
                        f"Milestone {milestone_id} is already {row.status}"
                    )
                row.actual_value = actual_value
                row.status = (
                    MilestoneStatus.VERIFIED if success else MilestoneStatus.FAILED
                ).value
                row.verified_by = verified_by
                row.verified_at = verified_at
                session.commit()
                return _to_milestone(row)

        return await self._run(op)

    async def set_dispute(
        self,
        milestone_id: int,
        status: MilestoneStatus,
        dispute: DisputeRecord,
    ) -> Milestone:
        def op() -> Milestone:
            with self.SessionLocal() as session:
                row = self._milestone_row(session, milestone_id)
                row.status = status.value
                row.dispute = dispute.model_dump(mode="json")
                session.commit()
                return _to_milestone(row)

        return await self._run(op)

    async def record_disbursement(
        self, project_id: int, milestone_id: int, amount: Decimal
    ) -> tuple[Project, Milestone]:
        def op() -> tuple[Project, Milestone]:
            with self.SessionLocal() as session:
                project = session.execute(
                    select(ProjectDB).where(ProjectDB.id == project_id).with_for_update()
                ).scalar_one_or_none()
                if project is None:
                    raise NotFound(f"Project {project_id} does not exist")
                milestone = self._milestone_row(session, milestone_id, for_update=True)
                if milestone.paid:
                    raise Conflict(f"Milestone {milestone_id} has already been paid")
                if milestone.status != MilestoneStatus.VERIFIED.value:
                    raise Conflict(
                        f"Milestone {milestone_id} is {milestone.status}, not Verified"
                    )

                disbursed = Decimal(project.disbursed_amount or 0) + amount
                if disbursed > Decimal(project.total_subsidy_amount):
                    raise InsufficientFunds(
                        f"Disbursing {amount} would exceed project {project_id} subsidy"
                    )
                project.disbursed_amount = disbursed
                milestone.paid = True
                session.commit()
                return _to_project(project), _to_milestone(milestone)

        return await self._run(op)
