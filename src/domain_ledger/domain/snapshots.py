"""
Audit snapshot codec — typed snapshots ⇄ JSON (the at-rest form only).

Inside the engine an audit snapshot is always one of the entity
dataclasses, tagged by EntityKind. JSON appears only when an entry is
persisted or hashed. Each kind gets a pydantic TypeAdapter so decoding
restores the exact dataclass (UUIDs, Decimals, datetimes, enums).

Hash chain:
    entry_hash = sha256(previous_hash + canonical_json(entry))
The first entry of an entity chains to GENESIS_HASH.
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC
from typing import Any

from pydantic import TypeAdapter

from domain_ledger.domain.models import (
    AuditEntry,
    BillingItem,
    Contact,
    Customer,
    Domain,
    EntityKind,
    Invoice,
    Payment,
    RegistryAttributes,
    RoleAssignment,
    Snapshot,
)

GENESIS_HASH = "0" * 64

SNAPSHOT_TYPES: dict[EntityKind, type] = {
    EntityKind.CUSTOMER: Customer,
    EntityKind.CONTACT: Contact,
    EntityKind.DOMAIN: Domain,
    EntityKind.ROLE_ASSIGNMENT: RoleAssignment,
    EntityKind.REGISTRY_ATTRIBUTES: RegistryAttributes,
    EntityKind.INVOICE: Invoice,
    EntityKind.BILLING_ITEM: BillingItem,
    EntityKind.PAYMENT: Payment,
}

_ADAPTERS: dict[EntityKind, TypeAdapter[Any]] = {
    kind: TypeAdapter(cls) for kind, cls in SNAPSHOT_TYPES.items()
}


def kind_of(snapshot: Snapshot) -> EntityKind:
    for kind, cls in SNAPSHOT_TYPES.items():
        if isinstance(snapshot, cls):
            return kind
    raise TypeError(f"Not an auditable snapshot: {type(snapshot).__name__}")


def snapshot_to_json(kind: EntityKind, snapshot: Snapshot | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    if not isinstance(snapshot, SNAPSHOT_TYPES[kind]):
        raise TypeError(f"{type(snapshot).__name__} snapshot tagged as {kind}")
    return _ADAPTERS[kind].dump_python(snapshot, mode="json")


def snapshot_from_json(kind: EntityKind, data: dict[str, Any] | None) -> Snapshot | None:
    if data is None:
        return None
    return _ADAPTERS[kind].validate_python(data)


def canonical_entry(entry: AuditEntry) -> str:
    """Deterministic JSON of everything an entry hash covers."""
    body = {
        "id": str(entry.id),
        "entity_kind": entry.entity_kind.value,
        "entity_id": str(entry.entity_id),
        "operation": entry.operation.value,
        "actor": entry.actor.username,
        "actor_customer_id": str(entry.actor.customer_id) if entry.actor.customer_id else None,
        "before": snapshot_to_json(entry.entity_kind, entry.before),
        "after": snapshot_to_json(entry.entity_kind, entry.after),
        "recorded_at": entry.recorded_at.astimezone(UTC).isoformat(),
        "ip_address": entry.request_meta.ip_address,
        "user_agent": entry.request_meta.user_agent,
        "request_id": entry.request_meta.request_id,
        "idempotency_key": entry.idempotency_key,
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def chain_hash(previous_hash: str, entry: AuditEntry) -> str:
    return hashlib.sha256((previous_hash + canonical_entry(entry)).encode()).hexdigest()
