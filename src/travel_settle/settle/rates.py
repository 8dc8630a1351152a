"""Exchange rate resolution for converting expenses into the reporting currency."""

import logging
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Protocol

from ..exceptions import ExchangeRateAPIError
from ..models import RateQuote, RateTable, normalize_currency_code

logger = logging.getLogger(__name__)

# Static rates (USD base) used when neither the rate API nor a stored
# snapshot is available. Refresh when adding currencies to the CLI.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "AUD": Decimal("1.53"),
    "CAD": Decimal("1.36"),
    "TWD": Decimal("31.5"),
    "JPY": Decimal("149.5"),
    "KRW": Decimal("1320"),
    "CNY": Decimal("7.24"),
    "HKD": Decimal("7.82"),
    "SGD": Decimal("1.34"),
    "THB": Decimal("35.8"),
    "VND": Decimal("24500"),
}


class RateSource(Protocol):
    """Anything that can supply rate tables (see ExchangeRateClient)."""

    def get_latest_rates(self, base: str = "USD") -> RateTable: ...

    def get_historical_rates(self, on: date, base: str = "USD") -> RateTable: ...


def static_fallback_table() -> RateTable:
    """Build the built-in fallback rate table."""
    return RateTable(base="USD", rates=dict(FALLBACK_RATES), source="static")


def cross_rate(
    table: RateTable, from_currency: str, to_currency: str
) -> Decimal | None:
    """
    Compose the rate between two currencies through the table base.

    With a USD table, JPY -> TWD is rate(USD -> TWD) / rate(USD -> JPY).

    Args:
        table: Rate table quoted against its base currency
        from_currency: Currency being converted
        to_currency: Target currency

    Returns:
        Units of ``to_currency`` per 1 ``from_currency``, or None if either
        currency is missing from the table
    """
    if from_currency == to_currency:
        return Decimal("1")

    from_rate = table.rates.get(from_currency)
    to_rate = table.rates.get(to_currency)
    if from_rate is None or to_rate is None:
        return None

    return to_rate / from_rate


class ExchangeRateResolver:
    """Resolves conversion rates with custom-rate precedence and fallback.

    The live table is requested at most once per rate date for the lifetime
    of the resolver, so resolving any number of currencies costs one round
    trip. A failing or missing source never raises: rates come from the
    stored snapshot or the static table instead and are flagged as fallback.
    """

    def __init__(
        self,
        source: RateSource | None = None,
        base: str = "USD",
        snapshot: RateTable | None = None,
    ):
        """Initialize the resolver."""
        self.source = source
        self.base = normalize_currency_code(base)
        self.snapshot = snapshot
        self._tables: dict[date | None, RateTable] = {}

    def get_table(self, rate_date: date | None = None) -> RateTable:
        """
        Get the rate table for a date, fetching it on first use.

        Args:
            rate_date: Date of the rates, or None for the latest table

        Returns:
            Live table, or a fallback table if the lookup failed
        """
        if rate_date not in self._tables:
            self._tables[rate_date] = self._load_table(rate_date)
        return self._tables[rate_date]

    def latest_table(self) -> RateTable | None:
        """The latest table if one was loaded during this run."""
        return self._tables.get(None)

    def _load_table(self, rate_date: date | None) -> RateTable:
        if self.source is None:
            logger.warning("No exchange rate source configured, using fallback rates")
            return self._fallback_table()

        try:
            if rate_date is None:
                return self.source.get_latest_rates(self.base)
            return self.source.get_historical_rates(rate_date, self.base)
        except ExchangeRateAPIError as e:
            logger.warning(f"Exchange rate lookup failed, using fallback rates: {e}")
            return self._fallback_table()

    def _fallback_table(self) -> RateTable:
        if self.snapshot is not None:
            logger.info(f"Using rate snapshot from {self.snapshot.fetched_at}")
            return self.snapshot.model_copy(update={"source": "snapshot"})
        return static_fallback_table()

    def resolve(
        self,
        from_currency: str,
        to_currency: str,
        custom_rates: dict[str, Decimal] | None = None,
        rate_date: date | None = None,
    ) -> RateQuote:
        """
        Resolve the rate for 1 unit of ``from_currency`` in ``to_currency``.

        Priority:
        1. Same currency: rate 1
        2. Custom project rate for ``from_currency``
        3. Live table (or fallback table when the source failed)

        Args:
            from_currency: Currency being converted
            to_currency: Target (reporting) currency
            custom_rates: Project custom rates into ``to_currency``
            rate_date: Date for historical rates, None for latest

        Returns:
            Rate quote with custom/fallback flags
        """
        from_currency = normalize_currency_code(from_currency)
        to_currency = normalize_currency_code(to_currency)

        if from_currency == to_currency:
            return RateQuote(currency=from_currency, rate=Decimal("1"))

        if custom_rates and from_currency in custom_rates:
            return RateQuote(
                currency=from_currency,
                rate=custom_rates[from_currency],
                is_custom=True,
            )

        table = self.get_table(rate_date)
        rate = cross_rate(table, from_currency, to_currency)
        if rate is not None:
            return RateQuote(
                currency=from_currency, rate=rate, is_fallback=table.is_fallback
            )

        # Currency missing from the table: try the static table, then parity
        rate = cross_rate(static_fallback_table(), from_currency, to_currency)
        if rate is None:
            logger.warning(
                f"No rate known for {from_currency} -> {to_currency}, using 1"
            )
            rate = Decimal("1")
        else:
            logger.warning(
                f"{from_currency} -> {to_currency} missing from rate table, "
                f"using static fallback rate {rate}"
            )

        return RateQuote(currency=from_currency, rate=rate, is_fallback=True)

    def resolve_all(
        self,
        currencies: Iterable[str],
        reporting_currency: str,
        custom_rates: dict[str, Decimal] | None = None,
        rate_date: date | None = None,
    ) -> dict[str, RateQuote]:
        """
        Resolve each distinct foreign currency exactly once.

        Args:
            currencies: Currencies seen in the ledger (duplicates allowed)
            reporting_currency: Project reporting currency
            custom_rates: Project custom rates
            rate_date: Date for historical rates, None for latest

        Returns:
            Mapping of currency -> rate quote (reporting currency excluded)
        """
        reporting_currency = normalize_currency_code(reporting_currency)
        distinct = sorted(
            {normalize_currency_code(c) for c in currencies} - {reporting_currency}
        )

        quotes = {
            currency: self.resolve(
                currency, reporting_currency, custom_rates, rate_date
            )
            for currency in distinct
        }

        if quotes:
            fallback = [c for c, q in quotes.items() if q.is_fallback]
            logger.debug(
                f"Resolved {len(quotes)} currencies into {reporting_currency}"
                + (f" ({len(fallback)} using fallback rates)" if fallback else "")
            )

        return quotes
