"""Exchange rate API client."""

import logging
import time
from datetime import date
from decimal import Decimal, InvalidOperation

import httpx

from ..exceptions import ExchangeRateAPIError
from ..models import RateTable, normalize_currency_code

logger = logging.getLogger(__name__)


class ExchangeRateClient:
    """Client for an exchangerate.host compatible rate API.

    Latest tables are cached for ``cache_ttl`` seconds. Historical tables
    never change, so they are cached for the lifetime of the client.
    """

    DEFAULT_BASE_URL = "https://api.exchangerate.host"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        cache_ttl: int = 3600,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the exchange rate client."""
        self.cache_ttl = cache_ttl
        self._cache: dict[tuple[str, str], tuple[float, RateTable]] = {}
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def get_latest_rates(self, base: str = "USD") -> RateTable:
        """
        Get the latest rate table.

        Args:
            base: Currency the table is quoted against

        Returns:
            Rate table where 1 base = rate units of each currency

        Raises:
            ExchangeRateAPIError: If the request fails or the payload is invalid
        """
        base = normalize_currency_code(base)
        key = (base, "latest")

        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            logger.debug(f"Using cached latest rates for {base}")
            return cached[1]

        table = self._fetch_table("/latest", base)
        self._cache[key] = (time.monotonic(), table)
        return table

    def get_historical_rates(self, on: date, base: str = "USD") -> RateTable:
        """
        Get the rate table as of a given date.

        Args:
            on: Date of the rates
            base: Currency the table is quoted against

        Returns:
            Rate table where 1 base = rate units of each currency

        Raises:
            ExchangeRateAPIError: If the request fails or the payload is invalid
        """
        base = normalize_currency_code(base)
        key = (base, on.isoformat())

        cached = self._cache.get(key)
        if cached:
            logger.debug(f"Using cached {on} rates for {base}")
            return cached[1]

        table = self._fetch_table(f"/{on.isoformat()}", base)
        self._cache[key] = (time.monotonic(), table)
        return table

    def _fetch_table(self, path: str, base: str) -> RateTable:
        """Request a rate table and parse it into a RateTable."""
        try:
            response = self.client.get(path, params={"base": base})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ExchangeRateAPIError(f"Exchange rate request failed: {e}") from e
        except ValueError as e:
            raise ExchangeRateAPIError(
                "Exchange rate API returned invalid JSON"
            ) from e

        if not isinstance(data, dict) or data.get("success") is False:
            raise ExchangeRateAPIError(
                "Exchange rate API returned unsuccessful response"
            )

        raw_rates = data.get("rates")
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise ExchangeRateAPIError("Exchange rate API response has no rates")

        rates: dict[str, Decimal] = {}
        for code, value in raw_rates.items():
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                logger.warning(f"Skipping unparseable rate for {code}: {value!r}")
                continue
            if not rate.is_finite() or rate <= 0:
                logger.warning(f"Skipping invalid rate for {code}: {rate}")
                continue
            rates[code.upper()] = rate

        table_base = str(data.get("base") or base).upper()
        rates[table_base] = Decimal("1")

        logger.info(
            f"Fetched {len(rates)} exchange rates ({path}, base {table_base})"
        )

        return RateTable(base=table_base, rates=rates, source="live")
