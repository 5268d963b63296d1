"""
Role Authority — static capability table and principal directory.

Every state-changing operation passes through this check before touching
the ledger. Principals live in an in-memory directory for tests or in the
``principals`` table for a deployed core. Actions map to a fixed set of roles; the table is not
configurable at runtime. Checks are pure functions of (role, action), so a
denied call never leaves partial effects behind.

Ownership rules (a Producer disputing only its own project) depend on the
project and are enforced by the milestone engine after this check.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from subsidy_engine.domain.schema import Action, Principal, Role
from subsidy_engine.errors import Conflict, Forbidden, InvalidArgument, NotFound
from subsidy_engine.ledger.models import Base, PrincipalDB
from subsidy_engine.ledger.sql_gateway import make_engine

logger = logging.getLogger(__name__)


# action -> roles allowed to perform it
CAPABILITIES: dict[Action, frozenset[Role]] = {
    Action.CREATE_PROJECT: frozenset({Role.GOVERNMENT}),
    Action.SET_PROJECT_STATUS: frozenset({Role.GOVERNMENT}),
    Action.CREATE_MILESTONE: frozenset({Role.GOVERNMENT}),
    Action.REGISTER_PRINCIPAL: frozenset({Role.GOVERNMENT}),
    Action.VERIFY_MILESTONE: frozenset({Role.ORACLE, Role.AUDITOR}),
    Action.AUTO_VERIFY: frozenset({Role.ORACLE}),
    Action.DISPUTE_MILESTONE: frozenset({Role.PRODUCER, Role.GOVERNMENT}),
    Action.RESOLVE_DISPUTE: frozenset({Role.AUDITOR}),
    Action.DISBURSE: frozenset({Role.GOVERNMENT}),
    Action.VIEW_STATS: frozenset({Role.GOVERNMENT, Role.AUDITOR}),
    Action.VIEW_DISPUTES: frozenset({Role.AUDITOR}),
    Action.VIEW_VERIFICATION_QUEUE: frozenset({Role.ORACLE}),
}


def can_perform(role: Role, action: Action) -> bool:
    """Pure capability check against the static table."""
    return role in CAPABILITIES.get(action, frozenset())


class PermissionDecision(str, Enum):
    AUTHORIZED = "authorized"
    FORBIDDEN = "forbidden"


@dataclass
class PermissionCheckResult:
    """Result of checking an action against a principal's role."""

    decision: PermissionDecision
    action: Action
    principal_id: str
    role: Role | None
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.AUTHORIZED


class PrincipalDirectory(Protocol):
    """Backing store for principal -> role lookups."""

    def get(self, principal_id: str) -> Principal | None: ...

    def add(self, principal: Principal) -> None: ...


class InMemoryPrincipalDirectory:
    """Directory kept in a dict. Suitable for tests and single-process runs."""

    def __init__(self, principals: list[Principal] | None = None) -> None:
        self._principals: dict[str, Principal] = {}
        self._lock = threading.Lock()
        for principal in principals or []:
            self._principals[principal.id] = principal

    def get(self, principal_id: str) -> Principal | None:
        return self._principals.get(principal_id)

    def add(self, principal: Principal) -> None:
        with self._lock:
            if principal.id in self._principals:
                raise Conflict(f"Principal {principal.id} is already registered")
            self._principals[principal.id] = principal


def _principal_from_row(row: PrincipalDB) -> Principal:
    return Principal(id=row.id, role=Role(row.role), account=row.account)


class SqlPrincipalDirectory:
    """
    Directory persisted in the ``principals`` table.

    Lookups are answered from a cache filled by ``initialize`` and updated
    on every ``add``. A miss falls through to the table, so principals
    registered by another process are still found.

    Usage:
        directory = SqlPrincipalDirectory(settings.database_url_sync)
        directory.initialize()  # create table, load principals
    """

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._principals: dict[str, Principal] = {}
        self._lock = threading.Lock()

    def initialize(self) -> None:
        Base.metadata.create_all(self.engine)
        with self.SessionLocal() as session:
            rows = session.execute(select(PrincipalDB)).scalars().all()
            loaded = [_principal_from_row(r) for r in rows]
        with self._lock:
            for principal in loaded:
                self._principals[principal.id] = principal
        logger.info("Loaded %d registered principal(s)", len(loaded))

    def get(self, principal_id: str) -> Principal | None:
        principal = self._principals.get(principal_id)
        if principal is not None:
            return principal
        with self.SessionLocal() as session:
            row = session.get(PrincipalDB, principal_id)
            if row is None:
                return None
            principal = _principal_from_row(row)
        with self._lock:
            self._principals[principal.id] = principal
        return principal

    def add(self, principal: Principal) -> None:
        with self._lock:
            if principal.id in self._principals:
                raise Conflict(f"Principal {principal.id} is already registered")
            with self.SessionLocal() as session:
                session.add(
                    PrincipalDB(
                        id=principal.id,
                        role=principal.role.value,
                        account=principal.account,
                    )
                )
                try:
                    session.commit()
                except IntegrityError as exc:
                    raise Conflict(f"Principal {principal.id} is already registered") from exc
            self._principals[principal.id] = principal


class RoleAuthority:
    """
    Answers role and capability questions for resolved principals.

    Credential issuance is handled upstream; the core receives a resolved
    ``Principal`` per call. The directory is consulted so that a caller
    claiming a role it was never granted is rejected.
    """

    def __init__(self, directory: PrincipalDirectory | None = None) -> None:
        self.directory = directory or InMemoryPrincipalDirectory()

    def role_of(self, principal_id: str) -> Role:
        principal = self.directory.get(principal_id)
        if principal is None:
            raise NotFound(f"Principal {principal_id} is not registered")
        return principal.role

    def check(self, principal: Principal, action: Action) -> PermissionCheckResult:
        registered = self.directory.get(principal.id)
        if registered is None:
            return PermissionCheckResult(
                decision=PermissionDecision.FORBIDDEN,
                action=action,
                principal_id=principal.id,
                role=None,
                reason=f"Unknown principal: {principal.id}",
            )

        if registered.role != principal.role:
            return PermissionCheckResult(
                decision=PermissionDecision.FORBIDDEN,
                action=action,
                principal_id=principal.id,
                role=registered.role,
                reason=(
                    f"Principal {principal.id} presented role {principal.role.value} "
                    f"but is registered as {registered.role.value}"
                ),
            )

        if not can_perform(registered.role, action):
            return PermissionCheckResult(
                decision=PermissionDecision.FORBIDDEN,
                action=action,
                principal_id=principal.id,
                role=registered.role,
                reason=(
                    f"Role {registered.role.value} may not perform {action.value}"
                ),
            )

        return PermissionCheckResult(
            decision=PermissionDecision.AUTHORIZED,
            action=action,
            principal_id=principal.id,
            role=registered.role,
            reason=f"Role {registered.role.value} may perform {action.value}",
        )

    def can_perform(self, principal: Principal, action: Action) -> bool:
        return self.check(principal, action).is_allowed

    def require(self, principal: Principal, action: Action) -> None:
        """Raise Forbidden unless the principal may perform the action."""
        result = self.check(principal, action)
        if not result.is_allowed:
            logger.warning(
                "Permission denied: principal=%s action=%s reason=%s",
                principal.id, action.value, result.reason,
            )
            raise Forbidden(result.reason)

    def bootstrap(self, principal: Principal) -> None:
        """Seed a principal without an acting Government (first administrator)."""
        self.directory.add(principal)
        logger.info("Principal bootstrapped: %s role=%s", principal.id, principal.role.value)

    def register_principal(
        self,
        actor: Principal,
        principal_id: str,
        role: Role,
        account: str | None = None,
    ) -> Principal:
        self.require(actor, Action.REGISTER_PRINCIPAL)
        if not principal_id.strip():
            raise InvalidArgument("Principal id must not be empty")
        if role == Role.PRODUCER and not account:
            raise InvalidArgument("Producers must be registered with a payout account")

        principal = Principal(id=principal_id, role=role, account=account)
        self.directory.add(principal)
        logger.info(
            "Principal registered: %s role=%s by=%s", principal_id, role.value, actor.id
        )
        return principal
