"""
Audit Recorder — append-only, hash-chained record of every mutation.

`record()` runs inside the caller's transaction: if the audit write fails
the mutation it describes rolls back with it. Entries are never updated
or deleted (the store has no such operation; the database additionally
rejects UPDATE/DELETE on the audit table with a trigger).

Each entity has its own chain:

    entry_hash = sha256(previous_hash + canonical_json(entry))

so `verify_chain()` detects an entry altered or removed out of band.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from uuid import UUID

import structlog
from railway.result import Result

from domain_ledger.domain.models import (
    Actor,
    AuditEntry,
    AuditOperation,
    ChainVerification,
    EntityKind,
    RequestMeta,
    Snapshot,
)
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction
from domain_ledger.domain.snapshots import GENESIS_HASH, chain_hash, kind_of
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()


def entity_id_of(snapshot: Snapshot) -> UUID:
    """Role assignments and registry attributes are audited under their domain."""
    entity_id = getattr(snapshot, "id", None)
    return entity_id if entity_id is not None else snapshot.domain_id  # type: ignore[union-attr]


class AuditRecorder:
    """Appends audit entries and reads/verifies per-entity chains."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def record(
        self,
        tx: LedgerTransaction,
        entity_kind: EntityKind,
        entity_id: UUID,
        operation: AuditOperation,
        before: Snapshot | None,
        after: Snapshot | None,
        actor: Actor,
        request_meta: RequestMeta | None = None,
        idempotency_key: str | None = None,
    ) -> AuditEntry:
        """Append one entry, chained to the entity's previous entry."""
        previous_hash = tx.latest_audit_hash(entity_kind, entity_id) or GENESIS_HASH
        entry = AuditEntry(
            entity_kind=entity_kind,
            entity_id=entity_id,
            operation=operation,
            actor=actor,
            before=before,
            after=after,
            recorded_at=self._clock(),
            request_meta=request_meta or RequestMeta(),
            idempotency_key=idempotency_key,
            previous_hash=previous_hash,
        )
        entry = replace(entry, entry_hash=chain_hash(previous_hash, entry))
        tx.append_audit(entry)
        log.debug(
            "audit.recorded",
            entity_kind=entity_kind.value,
            entity_id=str(entity_id),
            operation=operation.value,
            actor=actor.username,
        )
        return entry

    # ── convenience wrappers: the kind and id come from the snapshot ──

    def inserted(
        self,
        tx: LedgerTransaction,
        after: Snapshot,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> AuditEntry:
        return self.record(
            tx, kind_of(after), entity_id_of(after), AuditOperation.INSERT,
            None, after, actor, request_meta,
        )

    def updated(
        self,
        tx: LedgerTransaction,
        before: Snapshot,
        after: Snapshot,
        actor: Actor,
        request_meta: RequestMeta | None = None,
        idempotency_key: str | None = None,
    ) -> AuditEntry:
        return self.record(
            tx, kind_of(after), entity_id_of(after), AuditOperation.UPDATE,
            before, after, actor, request_meta, idempotency_key,
        )

    def deleted(
        self,
        tx: LedgerTransaction,
        before: Snapshot,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> AuditEntry:
        return self.record(
            tx, kind_of(before), entity_id_of(before), AuditOperation.DELETE,
            before, None, actor, request_meta,
        )

    # ── reads ──

    def history(
        self, store: LedgerStore, entity_kind: EntityKind, entity_id: UUID
    ) -> Result[list[AuditEntry]]:
        """Every entry of one entity, oldest first."""
        return run_in_transaction(
            store,
            "audit_history",
            lambda tx: tx.list_audit(entity_kind, entity_id),
        )

    def verify_chain(
        self, store: LedgerStore, entity_kind: EntityKind, entity_id: UUID
    ) -> Result[ChainVerification]:
        return run_in_transaction(
            store,
            "verify_audit_chain",
            lambda tx: self._verify(tx.list_audit(entity_kind, entity_id), entity_kind, entity_id),
        )

    @staticmethod
    def _verify(
        entries: list[AuditEntry], entity_kind: EntityKind, entity_id: UUID
    ) -> ChainVerification:
        previous_hash = GENESIS_HASH
        for checked, entry in enumerate(entries):
            if entry.previous_hash != previous_hash or entry.entry_hash != chain_hash(previous_hash, entry):
                log.warning(
                    "audit.chain_broken",
                    entity_kind=entity_kind.value,
                    entity_id=str(entity_id),
                    entry_id=str(entry.id),
                )
                return ChainVerification(entity_kind, entity_id, checked, False, broken_at=entry.id)
            previous_hash = entry.entry_hash
        return ChainVerification(entity_kind, entity_id, len(entries), True)
