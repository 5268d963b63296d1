"""
Ledger Gateway — the authoritative store for projects and milestones.

The core never holds project or milestone state of its own: it reads from
the gateway, decides, and writes back. Implementations may sit in front of
a smart contract, a relational database or a plain dict. Writes are treated
as at-most-once; the core does not retry them.

All operations are coroutines because every real backing store performs
I/O. Implementations raise NotFound for missing entities and Unavailable
when the store cannot be reached.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal

from subsidy_engine.domain.schema import (
    DisputeRecord,
    Milestone,
    MilestoneStatus,
    PaymentMethod,
    Project,
    ProjectStatus,
    utcnow,
)
from subsidy_engine.errors import Conflict, InsufficientFunds, NotFound

logger = logging.getLogger(__name__)


class LedgerGateway(ABC):
    """Abstract read/write interface over projects and milestones."""

    async def initialize(self) -> None:
        """Prepare the backing store. Default: nothing to do."""

    async def shutdown(self) -> None:
        """Release backing-store resources. Default: nothing to do."""

    # ── Projects ───────────────────────────────────────────────

    @abstractmethod
    async def register_project(
        self,
        producer: str,
        beneficiary_account: str,
        name: str,
        description: str,
        total_subsidy_amount: Decimal,
        payment_method: PaymentMethod,
        created_at: datetime,
    ) -> Project: ...

    @abstractmethod
    async def get_project(self, project_id: int) -> Project: ...

    @abstractmethod
    async def get_producer_projects(self, producer: str) -> list[Project]: ...

    @abstractmethod
    async def set_project_status(self, project_id: int, status: ProjectStatus) -> Project: ...

    # ── Milestones ─────────────────────────────────────────────

    @abstractmethod
    async def add_milestone(
        self,
        project_id: int,
        description: str,
        subsidy_amount: Decimal,
        target_value: int,
        verification_source: str,
        deadline: datetime,
        created_at: datetime,
    ) -> Milestone: ...

    @abstractmethod
    async def get_milestone(self, milestone_id: int) -> Milestone: ...

    @abstractmethod
    async def get_project_milestones(self, project_id: int) -> list[Milestone]: ...

    @abstractmethod
    async def list_milestones(self) -> list[Milestone]: ...

    @abstractmethod
    async def verify_milestone(
        self,
        milestone_id: int,
        actual_value: int,
        success: bool,
        verified_by: str,
        verified_at: datetime,
    ) -> Milestone:
        """Record the verification outcome. Raises Conflict unless the milestone is Pending."""

    @abstractmethod
    async def set_dispute(
        self,
        milestone_id: int,
        status: MilestoneStatus,
        dispute: DisputeRecord,
    ) -> Milestone:
        """Store the dispute record and the status it implies."""

    @abstractmethod
    async def record_disbursement(
        self, project_id: int, milestone_id: int, amount: Decimal
    ) -> tuple[Project, Milestone]:
        """
        Mark the milestone paid and add ``amount`` to the project's disbursed
        total in one step. Raises InsufficientFunds if the total would exceed
        the project's subsidy, and Conflict if the milestone is already paid
        or not Verified.
        """


class InMemoryLedgerGateway(LedgerGateway):
    """
    Dict-backed gateway. Interchangeable with the SQL gateway; used in tests
    and for local runs.

    ``latency`` inserts an await point before each call so that concurrent
    callers interleave the way they would against a remote store.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._projects: dict[int, Project] = {}
        self._milestones: dict[int, Milestone] = {}
        self._project_ids = itertools.count(1)
        self._milestone_ids = itertools.count(1)

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    def _project(self, project_id: int) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise NotFound(f"Project {project_id} does not exist")
        return project

    def _milestone(self, milestone_id: int) -> Milestone:
        milestone = self._milestones.get(milestone_id)
        if milestone is None:
            raise NotFound(f"Milestone {milestone_id} does not exist")
        return milestone

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
        await self._io()
        project = Project(
            id=next(self._project_ids),
            producer=producer,
            beneficiary_account=beneficiary_account,
            name=name,
            description=description,
            total_subsidy_amount=total_subsidy_amount,
            payment_method=payment_method,
            created_at=created_at,
        )
        self._projects[project.id] = project
        return project.model_copy(deep=True)

    async def get_project(self, project_id: int) -> Project:
        await self._io()
        return self._project(project_id).model_copy(deep=True)

    async def get_producer_projects(self, producer: str) -> list[Project]:
        await self._io()
        return [
            p.model_copy(deep=True) for p in self._projects.values() if p.producer == producer
        ]

    async def set_project_status(self, project_id: int, status: ProjectStatus) -> Project:
        await self._io()
        project = self._project(project_id).model_copy(update={"status": status})
        self._projects[project_id] = project
        return project.model_copy(deep=True)

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
        await self._io()
        self._project(project_id)
        milestone = Milestone(
            id=next(self._milestone_ids),
            project_id=project_id,
            description=description,
            subsidy_amount=subsidy_amount,
            target_value=target_value,
            verification_source=verification_source,
            deadline=deadline,
            created_at=created_at,
        )
        self._milestones[milestone.id] = milestone
        return milestone.model_copy(deep=True)

    async def get_milestone(self, milestone_id: int) -> Milestone:
        await self._io()
        return self._milestone(milestone_id).model_copy(deep=True)

    async def get_project_milestones(self, project_id: int) -> list[Milestone]:
        await self._io()
        self._project(project_id)
        return [
            m.model_copy(deep=True)
            for m in self._milestones.values()
            if m.project_id == project_id
        ]

    async def list_milestones(self) -> list[Milestone]:
        await self._io()
        return [m.model_copy(deep=True) for m in self._milestones.values()]

    async def verify_milestone(
        self,
        milestone_id: int,
        actual_value: int,
        success: bool,
        verified_by: str,
        verified_at: datetime,
    ) -> Milestone:
        await self._io()
        current = self._milestone(milestone_id)
        if current.status != MilestoneStatus.PENDING:
            raise Conflict(f"Milestone {milestone_id} is already {current.status.value}")
        milestone = current.model_copy(
            update={
                "actual_value": actual_value,
                "status": MilestoneStatus.VERIFIED if success else MilestoneStatus.FAILED,
                "verified_by": verified_by,
                "verified_at": verified_at,
            }
        )
        self._milestones[milestone_id] = milestone
        return milestone.model_copy(deep=True)

    async def set_dispute(
        self,
        milestone_id: int,
        status: MilestoneStatus,
        dispute: DisputeRecord,
    ) -> Milestone:
        await self._io()
        milestone = self._milestone(milestone_id).model_copy(
            update={"status": status, "dispute": dispute}
        )
        self._milestones[milestone_id] = milestone
        return milestone.model_copy(deep=True)

    async def record_disbursement(
        self, project_id: int, milestone_id: int, amount: Decimal
    ) -> tuple[Project, Milestone]:
        await self._io()
        project = self._project(project_id)
        milestone = self._milestone(milestone_id)
        if milestone.paid:
            raise Conflict(f"Milestone {milestone_id} has already been paid")
        if milestone.status != MilestoneStatus.VERIFIED:
            raise Conflict(
                f"Milestone {milestone_id} is {milestone.status.value}, not Verified"
            )
        disbursed = project.disbursed_amount + amount
        if disbursed > project.total_subsidy_amount:
            raise InsufficientFunds(
                f"Disbursing {amount} would exceed project {project_id} subsidy "
                f"({project.disbursed_amount} of {project.total_subsidy_amount} used)"
            )
        project = project.model_copy(update={"disbursed_amount": disbursed})
        milestone = Milestone.model_validate(
            {**milestone.model_dump(), "paid": True}
        )
        self._projects[project_id] = project
        self._milestones[milestone_id] = milestone
        logger.info(
            "Disbursement recorded: project=%d milestone=%d amount=%s at=%s",
            project_id, milestone_id, amount, utcnow().isoformat(),
        )
        return project.model_copy(deep=True), milestone.model_copy(deep=True)
