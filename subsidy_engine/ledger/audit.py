"""
Audit Trail — append-only, hash-chained record of every decision.

Each entry records who acted, on what, and digests of the entity's
observable state before and after the change. Raw payloads are not kept:
a digest is enough to detect that a stored state was later altered.

Entries are chained: entry_hash = SHA-256(previous_hash || canonical_json).
verify_chain() walks the chain from the first entry and recomputes every
hash, so any retroactive edit, insertion or deletion is detectable.

There is no update or delete operation.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from subsidy_engine.domain.schema import AuditAction, AuditEntry, utcnow
from subsidy_engine.errors import AuditIntegrityError
from subsidy_engine.ledger.models import AuditEntryDB, Base
from subsidy_engine.ledger.sql_gateway import make_engine

logger = logging.getLogger(__name__)


GENESIS_HASH = "0" * 64  # The "previous hash" for the first entry in the chain


def state_digest(state: BaseModel | dict[str, Any] | None) -> str | None:
    """SHA-256 of an entity's canonical JSON form, or None for no state."""
    if state is None:
        return None
    if isinstance(state, BaseModel):
        state = state.model_dump(mode="json")
    canonical = json.dumps(state, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditStore(Protocol):
    """Append-only storage for audit entries."""

    def append(self, entry: AuditEntry) -> None: ...

    def last(self) -> AuditEntry | None: ...

    def all(self) -> list[AuditEntry]: ...

    def count(self) -> int: ...


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def last(self) -> AuditEntry | None:
        return self._entries[-1] if self._entries else None

    def all(self) -> list[AuditEntry]:
        return list(self._entries)

    def count(self) -> int:
        return len(self._entries)


def _entry_from_row(row: AuditEntryDB) -> AuditEntry:
    timestamp = row.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return AuditEntry(
        id=row.id,
        sequence_number=row.sequence_number,
        action=row.action,
        principal_id=row.principal_id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        before_digest=row.before_digest,
        after_digest=row.after_digest,
        detail=row.detail or {},
        timestamp=timestamp,
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
    )


class SqlAuditStore:
    """Audit entries in the ``audit_entries`` table. INSERT only."""

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        Base.metadata.create_all(self.engine)

    def append(self, entry: AuditEntry) -> None:
        with self.SessionLocal() as session:
            session.add(
                AuditEntryDB(
                    id=entry.id,
                    sequence_number=entry.sequence_number,
                    action=entry.action,
                    principal_id=entry.principal_id,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    before_digest=entry.before_digest,
                    after_digest=entry.after_digest,
                    detail=entry.detail,
                    timestamp=entry.timestamp,
                    previous_hash=entry.previous_hash,
                    entry_hash=entry.entry_hash,
                )
            )
            session.commit()

    def last(self) -> AuditEntry | None:
        with self.SessionLocal() as session:
            row = session.execute(
                select(AuditEntryDB)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _entry_from_row(row) if row else None

    def all(self) -> list[AuditEntry]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditEntryDB).order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()
            return [_entry_from_row(r) for r in rows]

    def count(self) -> int:
        with self.SessionLocal() as session:
            return session.execute(
                select(func.count()).select_from(AuditEntryDB)
            ).scalar() or 0


class AuditTrail:
    """
    Append-only audit trail.

    Appends are coroutines: the store write runs in a worker thread so a
    SQL-backed store never blocks the event loop.

    Usage:
        trail = AuditTrail()
        await trail.record(
            AuditAction.MILESTONE_VERIFIED,
            principal_id="oracle-1",
            resource_type="milestone",
            resource_id=7,
            before=old_milestone,
            after=new_milestone,
        )
    """

    def __init__(
        self,
        store: AuditStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or InMemoryAuditStore()
        self.clock = clock
        self._lock = threading.Lock()

    async def record(
        self,
        action: AuditAction | str,
        principal_id: str,
        resource_type: str,
        resource_id: int | str,
        before: BaseModel | dict[str, Any] | None = None,
        after: BaseModel | dict[str, Any] | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Append one entry. This is the ONLY write operation."""
        action_tag = action.value if isinstance(action, AuditAction) else action
        entry = await asyncio.to_thread(
            self._append,
            action_tag,
            principal_id,
            resource_type,
            str(resource_id),
            state_digest(before),
            state_digest(after),
            json.loads(json.dumps(detail or {}, default=str)),
        )
        logger.info(
            "Audit entry appended: seq=%d action=%s resource=%s/%s hash=%s",
            entry.sequence_number, action_tag, resource_type, resource_id,
            entry.entry_hash[:16],
        )
        return entry

    def _append(
        self,
        action: str,
        principal_id: str,
        resource_type: str,
        resource_id: str,
        before_digest: str | None,
        after_digest: str | None,
        detail: dict[str, Any],
    ) -> AuditEntry:
        # Sequence number and previous hash are assigned under the lock so
        # concurrent writers cannot fork the chain.
        with self._lock:
            last = self.store.last()
            entry = AuditEntry(
                sequence_number=(last.sequence_number + 1) if last else 0,
                action=action,
                principal_id=principal_id,
                resource_type=resource_type,
                resource_id=resource_id,
                before_digest=before_digest,
                after_digest=after_digest,
                detail=detail,
                timestamp=self.clock(),
                previous_hash=last.entry_hash if last else GENESIS_HASH,
            )
            entry = entry.model_copy(update={"entry_hash": entry.compute_hash()})
            self.store.append(entry)
        return entry

    async def record_failure(
        self,
        action: AuditAction | str,
        principal_id: str,
        resource_type: str,
        resource_id: int | str,
        error: Exception,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Record a failed operation with its error class."""
        return await self.record(
            action,
            principal_id=principal_id,
            resource_type=resource_type,
            resource_id=resource_id,
            detail={**(detail or {}), "error": type(error).__name__},
        )

    def entries(
        self,
        resource_type: str | None = None,
        resource_id: int | str | None = None,
    ) -> list[AuditEntry]:
        entries = self.store.all()
        if resource_type is not None:
            entries = [e for e in entries if e.resource_type == resource_type]
        if resource_id is not None:
            entries = [e for e in entries if e.resource_id == str(resource_id)]
        return entries

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Verify the integrity of the entire chain.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        entries = self.store.all()
        if not entries:
            return True, 0, "Audit trail is empty"

        previous_hash = GENESIS_HASH
        for i, entry in enumerate(entries):
            if entry.sequence_number != i:
                return (
                    False, i,
                    f"Sequence gap at position {i}: found {entry.sequence_number}",
                )
            if entry.previous_hash != previous_hash:
                return (
                    False, i,
                    f"Chain break at sequence {entry.sequence_number}: "
                    f"previous_hash does not match prior entry's hash",
                )
            expected = entry.compute_hash()
            if entry.entry_hash != expected:
                return (
                    False, i,
                    f"Hash mismatch at sequence {entry.sequence_number}: "
                    f"stored={entry.entry_hash[:16]}... computed={expected[:16]}...",
                )
            previous_hash = entry.entry_hash

        return True, len(entries), f"Chain verified: {len(entries)} entries, integrity intact"

    def assert_intact(self) -> None:
        is_valid, _, message = self.verify_chain()
        if not is_valid:
            raise AuditIntegrityError(message)

    @staticmethod
    def matches(entry: AuditEntry, state: BaseModel | dict[str, Any] | None) -> bool:
        """Whether ``state`` is the after-state this entry recorded."""
        return entry.after_digest == state_digest(state)
