"""
Budget Data Models

These models define the persisted shape of all budget data.
They are designed to:
1. Enforce type safety when data comes back from any backend
2. Be serializable to the JSON document every provider stores
3. Accept every legacy on-disk format through one migration function

DESIGN DECISION: Every envelope loaded by any provider goes through
migrate_budget_data() before use. Providers never hand raw JSON to callers.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel


# Increment when making breaking changes to the envelope structure.
# "1.0" is the layout {version, exportedAt, provider, data}.
CURRENT_FORMAT_VERSION = "2.0"
LEGACY_FORMAT_VERSIONS = frozenset({"1.0"})

MIGRATED_PROVIDER_ID = "migrated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_pay_period_config() -> dict[str, Any]:
    return {
        "type": "bi-monthly",
        "lastPayday": utcnow().isoformat(),
    }


# =============================================================================
# ENUMS
# =============================================================================

class TransactionKind(str, Enum):
    """Direction of money for a transaction."""
    INCOME = "income"
    EXPENSE = "expense"


# =============================================================================
# CORE MODELS
# =============================================================================

class Transaction(BaseModel):
    """
    A single income or expense entry.

    Unknown fields are preserved so that data written by newer UI
    features survives a round trip through storage.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="allow",
        populate_by_name=True,
    )

    id: str = Field(
        ...,
        min_length=1,
        description="Opaque identifier, unique within an envelope"
    )
    date: date
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Non-negative amount; direction comes from kind"
    )
    description: str = Field(default="")
    category: str = Field(default="")
    # Older releases stored this as "type"
    kind: TransactionKind = Field(
        ...,
        validation_alias=AliasChoices("kind", "type"),
        serialization_alias="kind",
    )

    @field_validator('id', mode='before')
    @classmethod
    def coerce_numeric_id(cls, v: Any) -> Any:
        """Early releases used millisecond timestamps as ids."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('date', mode='before')
    @classmethod
    def strip_time_component(cls, v: Any) -> Any:
        """Accept full ISO timestamps by keeping only the calendar date."""
        if isinstance(v, str) and len(v) > 10 and v[10] in "T ":
            return v[:10]
        return v


class BudgetPayload(BaseModel):
    """The user's actual budget data."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    # Newest first
    transactions: list[Transaction] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    pay_period_config: dict[str, Any] = Field(default_factory=default_pay_period_config)


class BudgetDataEnvelope(BaseModel):
    """
    The unit of persistence.

    CRITICAL: The orchestrator owns the canonical in-memory envelope.
    Providers only own its serialized representation on their backend.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    format_version: str = Field(default=CURRENT_FORMAT_VERSION)
    saved_at: datetime = Field(default_factory=utcnow)
    origin_provider: str = Field(
        ...,
        description="Id of the provider that last wrote this envelope"
    )
    payload: BudgetPayload = Field(default_factory=BudgetPayload)

    @property
    def transaction_count(self) -> int:
        return len(self.payload.transactions)

    @property
    def has_transactions(self) -> bool:
        return bool(self.payload.transactions)

    def stamped(self, provider_id: str) -> "BudgetDataEnvelope":
        """Copy of this envelope marked as written now by provider_id."""
        return self.model_copy(update={
            "saved_at": utcnow(),
            "origin_provider": provider_id,
        })

    def with_payload(self, **changes: Any) -> "BudgetDataEnvelope":
        """Copy of this envelope with some payload fields replaced."""
        return self.model_copy(update={
            "payload": self.payload.model_copy(update=changes),
        })

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self, indent: Optional[int] = None) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


# =============================================================================
# CONSTRUCTION & MIGRATION
# =============================================================================

def create_budget_data(
    provider_id: str,
    transactions: Optional[list] = None,
    settings: Optional[dict] = None,
    pay_period_config: Optional[dict] = None,
) -> BudgetDataEnvelope:
    """Create a standardized envelope around raw budget data."""
    payload = BudgetPayload(
        transactions=transactions or [],
        settings=settings or {},
        pay_period_config=pay_period_config or default_pay_period_config(),
    )
    return BudgetDataEnvelope(origin_provider=provider_id, payload=payload)


def migrate_budget_data(raw: Any) -> BudgetDataEnvelope:
    """
    Validate and migrate data loaded from storage or an import file.

    Accepts:
    - an envelope of the current format (returned unchanged)
    - a "1.0" envelope {version, exportedAt, provider, data}
    - legacy versionless data: a bare list of transactions, or a dict
      with transactions/settings/payPeriodConfig keys

    Raises:
        ValueError: If the data cannot be coerced into an envelope
            (pydantic's ValidationError is a ValueError)
    """
    if isinstance(raw, BudgetDataEnvelope):
        return raw

    if isinstance(raw, list):
        return create_budget_data(MIGRATED_PROVIDER_ID, transactions=raw)

    if not isinstance(raw, dict):
        raise ValueError(f"Unrecognised budget data of type {type(raw).__name__}")

    if "formatVersion" in raw or "format_version" in raw:
        version = raw.get("formatVersion", raw.get("format_version"))
        if version != CURRENT_FORMAT_VERSION:
            raise ValueError(f"Unsupported data format version: {version}")
        return BudgetDataEnvelope.model_validate(raw)

    version = raw.get("version")
    if version is not None:
        if version not in LEGACY_FORMAT_VERSIONS:
            raise ValueError(f"Unsupported data format version: {version}")
        return _migrate_v1(raw)

    # Legacy data (pre-envelope)
    return create_budget_data(
        MIGRATED_PROVIDER_ID,
        transactions=raw.get("transactions") or [],
        settings=raw.get("settings") or {},
        pay_period_config=raw.get("payPeriodConfig") or {},
    )


def _migrate_v1(raw: dict) -> BudgetDataEnvelope:
    """Upgrade a 1.0 envelope to the current layout."""
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError(f"Unrecognised 1.0 data of type {type(data).__name__}")
    envelope = create_budget_data(
        raw.get("provider") or MIGRATED_PROVIDER_ID,
        transactions=data.get("transactions") or [],
        settings=data.get("settings") or {},
        pay_period_config=data.get("payPeriodConfig") or {},
    )
    exported_at = raw.get("exportedAt")
    if exported_at:
        if not isinstance(exported_at, str):
            raise ValueError("exportedAt must be an ISO 8601 timestamp")
        envelope.saved_at = datetime.fromisoformat(exported_at.replace("Z", "+00:00"))
    return envelope
