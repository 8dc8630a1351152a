"""Pydantic domain models for Travel Settle."""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_currency_code(value: str) -> str:
    """Normalize an ISO 4217 currency code (strip + upper case)."""
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {value!r}")
    return code


# ============================================================================
# Ledger Models
# ============================================================================


class Member(BaseModel):
    """A member of a travel project.

    Members without a linked user account are placeholders: slots created by
    the project owner and claimed later. They take part in expenses exactly
    like linked members.
    """

    model_config = ConfigDict(frozen=True)

    member_id: str
    display_name: str
    user_id: str | None = None  # None = placeholder, not yet claimed
    avatar_url: str | None = None

    @property
    def is_placeholder(self) -> bool:
        """True when no user account is linked to this member."""
        return self.user_id is None


class ParticipantShare(BaseModel):
    """A member's share of an expense, in the expense's currency."""

    member_id: str
    share_amount: Decimal = Field(ge=0)


class Expense(BaseModel):
    """An active (not soft-deleted) expense in a project ledger.

    Participant shares are expected to sum to ``amount`` before conversion.
    The expense form validates this on creation; the engine only relies on it.
    """

    expense_id: str
    amount: Decimal = Field(gt=0)
    currency: str
    payer_member_id: str
    expense_date: date
    description: str = ""
    participants: list[ParticipantShare]

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency_code(value)

    @property
    def share_total(self) -> Decimal:
        """Sum of all participant shares."""
        return sum((p.share_amount for p in self.participants), Decimal("0"))


class ExchangeRatePolicy(BaseModel):
    """Per-project currency settings.

    Custom rates are expressed as "1 unit of foreign currency = rate units of
    the reporting currency".
    """

    currency: str = "TWD"  # reporting currency
    custom_rates: dict[str, Decimal] = Field(default_factory=dict)
    precision: int = Field(default=2, ge=0)  # decimal places
    rate_date: date | None = None  # None = latest live rates

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency_code(value)

    @field_validator("custom_rates")
    @classmethod
    def _normalize_custom_rates(
        cls, value: dict[str, Decimal]
    ) -> dict[str, Decimal]:
        rates = {}
        for code, rate in value.items():
            if rate <= 0:
                raise ValueError(f"Custom rate for {code} must be positive")
            rates[normalize_currency_code(code)] = rate
        return rates


class Project(BaseModel):
    """A travel project as stored in the ledger store."""

    project_id: str
    name: str
    currency: str = "TWD"
    precision: int = Field(default=2, ge=0)
    custom_rates: dict[str, Decimal] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)

    def to_policy(self) -> ExchangeRatePolicy:
        """Build the exchange rate policy for this project."""
        return ExchangeRatePolicy(
            currency=self.currency,
            custom_rates=self.custom_rates,
            precision=self.precision,
        )


# ============================================================================
# Exchange Rate Models
# ============================================================================


class RateTable(BaseModel):
    """A table of rates quoted against a base: 1 base = rate units of currency.

    Sources:
    - live: fetched from the rate API during this run (or served from the
      client's TTL cache)
    - snapshot: the last live table persisted by the ledger store
    - static: the built-in fallback table
    """

    base: str
    rates: dict[str, Decimal]
    fetched_at: datetime = Field(default_factory=datetime.now)
    source: Literal["live", "snapshot", "static"] = "live"

    @property
    def is_fallback(self) -> bool:
        """True when the table did not come from a live lookup."""
        return self.source != "live"


class RateQuote(BaseModel):
    """Resolved rate from one currency into the reporting currency."""

    currency: str
    rate: Decimal
    is_custom: bool = False
    is_fallback: bool = False  # True = stale or guessed rate, warn the user


# ============================================================================
# Settlement Models
# ============================================================================


class Balance(BaseModel):
    """A member's net position in the reporting currency.

    Positive balance = the member is owed money, negative = the member owes.
    """

    model_config = ConfigDict(frozen=True)

    member: Member
    total_paid: Decimal = Decimal("0")
    total_share: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")

    @property
    def member_id(self) -> str:
        return self.member.member_id


class Settlement(BaseModel):
    """A single transfer: ``from_member`` pays ``amount`` to ``to_member``."""

    model_config = ConfigDict(frozen=True)

    from_member: Member = Field(serialization_alias="from")
    to_member: Member = Field(serialization_alias="to")
    amount: Decimal


class SettlementSummary(BaseModel):
    """Totals and rate metadata for a settlement computation."""

    currency: str
    precision: int
    total_expenses: int = 0
    total_amount: Decimal = Decimal("0")
    total_shared: Decimal = Decimal("0")
    is_balanced: bool = True
    using_fallback_rates: bool = False
    rates: list[RateQuote] = Field(default_factory=list)

    @property
    def custom_currencies(self) -> list[str]:
        """Currencies converted with a project custom rate."""
        return [quote.currency for quote in self.rates if quote.is_custom]

    @property
    def live_currencies(self) -> list[str]:
        """Currencies converted with a live (non-fallback) rate."""
        return [
            quote.currency
            for quote in self.rates
            if not quote.is_custom and not quote.is_fallback
        ]


class SettlementResult(BaseModel):
    """Everything a caller needs to show who owes whom."""

    balances: list[Balance]
    settlements: list[Settlement]
    summary: SettlementSummary
