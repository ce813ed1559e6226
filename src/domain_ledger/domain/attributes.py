"""
Registry-specific attributes — per-TLD schemas supplied as configuration.

Some registries need extra data per domain (e.g. `.us` nexus category,
`.ca` legal type). Instead of threading free-form strings through the
engine, every TLD declares which keys it accepts, which are required
before a domain can leave `pending`, and what values are legal. Unknown
TLDs accept no attributes.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from uuid import UUID

from domain_ledger.domain.errors import ConstraintViolation


@dataclass(frozen=True, slots=True)
class AttributeSpec:
    """One allowed key: whether it is required and how its value is checked."""

    key: str
    required: bool = False
    pattern: str | None = None
    choices: tuple[str, ...] = ()

    def check(self, value: str) -> str | None:
        """Return a reason string when `value` is invalid, None when valid."""
        if self.choices and value not in self.choices:
            return f"{self.key}={value!r} not in {list(self.choices)}"
        if self.pattern is not None and re.fullmatch(self.pattern, value) is None:
            return f"{self.key}={value!r} does not match {self.pattern!r}"
        return None


@dataclass(frozen=True, slots=True)
class AttributeSchema:
    tld: str
    specs: tuple[AttributeSpec, ...] = ()

    def validate(self, values: Mapping[str, str], *, domain_id: UUID | None = None) -> dict[str, str]:
        """Check every key/value against the schema; raises ConstraintViolation."""
        known = {spec.key: spec for spec in self.specs}
        problems: list[str] = []
        for key, value in values.items():
            spec = known.get(key)
            if spec is None:
                problems.append(f"unknown attribute {key!r} for .{self.tld}")
                continue
            reason = spec.check(value)
            if reason:
                problems.append(reason)
        if problems:
            raise ConstraintViolation("; ".join(problems), domain_id=domain_id)
        return dict(values)

    def missing_required(self, values: Mapping[str, str]) -> list[str]:
        return [spec.key for spec in self.specs if spec.required and spec.key not in values]


@dataclass(frozen=True, slots=True)
class AttributeSchemas:
    """Lookup of AttributeSchema by top-level label."""

    by_tld: dict[str, AttributeSchema] = field(default_factory=dict)

    def for_tld(self, tld: str) -> AttributeSchema:
        return self.by_tld.get(tld.lower(), AttributeSchema(tld=tld.lower()))
