"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (database password, registry credential, auth-code key)
    out of source control

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var REGISTRY__USERNAME maps to registry.username, DATABASE__HOST maps to database.host,
etc. Table-shaped settings (LIFECYCLE__WINDOWS, BILLING__PRICES, ATTRIBUTES) are
given as JSON strings.

Per-TLD tables always fall back to their "default" entry.
"""

from __future__ import annotations

import decimal
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain_ledger.adapters.opensrs import RegistryEnvironment
from domain_ledger.domain.aggregates import CurrencyPolicy
from domain_ledger.domain.attributes import AttributeSchema, AttributeSchemas, AttributeSpec
from domain_ledger.domain.lifecycle import LifecycleWindows, WindowTable
from domain_ledger.domain.models import BillingItemType

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

_ROUNDING_MODES = frozenset(
    {
        decimal.ROUND_HALF_UP,
        decimal.ROUND_HALF_EVEN,
        decimal.ROUND_HALF_DOWN,
        decimal.ROUND_UP,
        decimal.ROUND_DOWN,
        decimal.ROUND_CEILING,
        decimal.ROUND_FLOOR,
        decimal.ROUND_05UP,
    }
)


def _validate_cron(value: str) -> str:
    fields = value.strip().split()
    if len(fields) != 5:
        raise ValueError(
            f"Cron expression must have exactly 5 fields "
            f"(minute hour dom month dow), got {len(fields)}: {value!r}"
        )
    return value.strip()


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN takes priority when
    both are provided.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")
    apply_schema: bool = Field(default=False, description="Create missing tables at startup")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """Build `dsn` from the components when no full DSN was given."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class RegistrySettings(BaseModel):
    """
    OpenSRS reseller account. Reconciliation and registry-backed actions
    are disabled while username or credential is missing.
    """

    username: str | None = Field(default=None, description="Reseller username (X-Username)")
    credential: SecretStr | None = Field(default=None, description="Reseller API key")
    environment: RegistryEnvironment = Field(default=RegistryEnvironment.TEST)
    page_size: int = Field(default=40, ge=1, le=1000)
    timeout_seconds: int = Field(default=60, ge=1)

    @property
    def configured(self) -> bool:
        return bool(self.username and self.credential)


class SchedulerSettings(BaseModel):
    """
    Cron expressions (5 fields: minute hour dom month dow) of the three jobs.

      tick_cron       lifecycle tick (time-driven transitions, overdue invoices)
      reconcile_cron  registry reconciliation
      verify_cron     full aggregate verification
    """

    tick_cron: str = Field(default="*/15 * * * *")
    reconcile_cron: str = Field(default="0 3 * * *")
    verify_cron: str = Field(default="30 4 * * *")

    @field_validator("tick_cron", "reconcile_cron", "verify_cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        return _validate_cron(value)


class WindowSettings(BaseModel):
    """Lengths (days) of the post-expiry phases of one TLD."""

    expired_days: int = Field(default=1, ge=0)
    grace_days: int = Field(default=40, ge=0)
    redemption_days: int = Field(default=30, ge=0)
    pending_delete_days: int = Field(default=5, ge=0)


class LifecycleSettings(BaseModel):
    windows: dict[str, WindowSettings] = Field(
        default_factory=lambda: {"default": WindowSettings()}
    )

    def window_table(self) -> WindowTable:
        return WindowTable(
            {tld.lower(): LifecycleWindows(**w.model_dump()) for tld, w in self.windows.items()}
        )


class BillingSettings(BaseModel):
    """Currency handling, invoice terms and per-TLD unit prices."""

    currency_places: int = Field(default=2, ge=0, le=6)
    rounding: str = Field(default=decimal.ROUND_HALF_UP)
    invoice_due_days: int = Field(default=30, ge=0)
    prices: dict[str, dict[BillingItemType, Decimal]] = Field(default_factory=dict)

    @field_validator("rounding")
    @classmethod
    def validate_rounding(cls, value: str) -> str:
        mode = value.strip().upper()
        if mode not in _ROUNDING_MODES:
            raise ValueError(f"Unknown rounding mode {value!r}; use one of {sorted(_ROUNDING_MODES)}")
        return mode

    @field_validator("prices")
    @classmethod
    def validate_prices(
        cls, value: dict[str, dict[BillingItemType, Decimal]]
    ) -> dict[str, dict[BillingItemType, Decimal]]:
        for tld, table in value.items():
            for item_type, price in table.items():
                if price < 0:
                    raise ValueError(f"Negative {item_type} price for {tld!r}")
        return {tld.lower(): table for tld, table in value.items()}

    def currency_policy(self) -> CurrencyPolicy:
        return CurrencyPolicy(places=self.currency_places, rounding=self.rounding)


class AttributeSpecSettings(BaseModel):
    key: str
    required: bool = False
    pattern: str | None = None
    choices: list[str] = Field(default_factory=list)

    def to_spec(self) -> AttributeSpec:
        return AttributeSpec(self.key, self.required, self.pattern, tuple(self.choices))


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (Kubernetes ConfigMap / Secret)
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings
    auth_code_key: SecretStr = Field(description="Fernet key encrypting transfer auth codes")
    registry: RegistrySettings = Field(default_factory=lambda: RegistrySettings())
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())
    lifecycle: LifecycleSettings = Field(default_factory=lambda: LifecycleSettings())
    billing: BillingSettings = Field(default_factory=lambda: BillingSettings())
    attributes: dict[str, list[AttributeSpecSettings]] = Field(default_factory=dict)

    reconcile_window_days: int = Field(default=60, ge=1)
    run_on_startup: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    def attribute_schemas(self) -> AttributeSchemas:
        return AttributeSchemas(
            {
                tld.lower(): AttributeSchema(tld.lower(), tuple(s.to_spec() for s in specs))
                for tld, specs in self.attributes.items()
            }
        )
