"""Ownership checks on the verified Actor supplied by the identity provider."""

from __future__ import annotations

from uuid import UUID

from domain_ledger.domain.errors import AuthorizationDenied
from domain_ledger.domain.models import Actor


def ensure_owner(actor: Actor, customer_id: UUID, **entity_ids: UUID | str | None) -> None:
    """Operators act on any customer's records; customers only on their own."""
    if actor.is_operator or actor.customer_id == customer_id:
        return
    raise AuthorizationDenied(
        f"{actor.username} may not act on another customer's records",
        customer_id=customer_id,
        **entity_ids,
    )


def ensure_operator(actor: Actor, action: str) -> None:
    if not actor.is_operator:
        raise AuthorizationDenied(f"{action} requires an operator, not {actor.username}")
