"""
Market-data provider clients.

Each source makes exactly one HTTP attempt per call and classifies whatever
goes wrong into the source error taxonomy. Retries, circuit breaking and
fallback between providers live in the price resolver, not here.

"Close of day D" is the latest sample timestamped at or before
D 23:59:59.999 UTC. Samples from D+1 are never used, even if a provider
returns them.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog

from verdict.infrastructure.clock import end_of_day, from_epoch_ms, start_of_day, to_epoch_ms, utc_now
from verdict.infrastructure.config import Settings
from verdict.infrastructure.exceptions import (
    MalformedQuote,
    SourceTimeout,
    SourceUnavailable,
    UnsupportedAsset,
)
from verdict.models.resolution import PriceQuote

logger = structlog.get_logger(__name__)

USER_AGENT = "Verdict/1.0"

# Symbol -> provider id. Keys are the assets the service can resolve.
COINGECKO_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "XRP": "ripple",
    "DOGE": "dogecoin",
    "LTC": "litecoin",
    "BNB": "binancecoin",
}

COINCAP_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "DOT": "polkadot",
    "AVAX": "avalanche",
    "MATIC": "polygon",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "XRP": "xrp",
    "DOGE": "dogecoin",
    "LTC": "litecoin",
    "BNB": "binance-coin",
}

COINGECKO_CURRENCIES = frozenset({
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "KRW", "INR", "BRL",
})

Sample = Tuple[datetime, Decimal]


def known_assets() -> List[str]:
    """Every symbol at least one provider can quote."""
    return sorted(set(COINGECKO_IDS) | set(COINCAP_IDS))


def is_known_asset(symbol: str) -> bool:
    symbol = (symbol or "").upper()
    return symbol in COINGECKO_IDS or symbol in COINCAP_IDS


def _to_decimal(value: Any, *, source: str, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise MalformedQuote(f"{source}: {field} is not numeric ({value!r})", source=source)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MalformedQuote(f"{source}: {field} is not numeric ({value!r})", source=source) from exc
    if not result.is_finite() or result < 0:
        raise MalformedQuote(f"{source}: {field} out of range ({value!r})", source=source)
    return result


def pick_close(samples: Sequence[Sample], day: date, *, source: str) -> Sample:
    """Latest sample at or before the end of the UTC day."""
    cutoff = end_of_day(day)
    eligible = [s for s in samples if s[0] <= cutoff]
    if not eligible:
        raise MalformedQuote(
            f"{source}: no sample at or before {cutoff.isoformat()}",
            source=source,
        )
    return max(eligible, key=lambda s: s[0])


# ---------------------------------------------------------------------------
# Base client
# ---------------------------------------------------------------------------

class PriceSource:
    """One market-data provider. Subclasses map symbols and parse payloads."""

    name = "base"
    asset_ids: Dict[str, str] = {}

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create a persistent HTTP client for connection reuse."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def supports(self, asset: str, currency: str) -> bool:
        return asset.upper() in self.asset_ids

    def provider_id(self, asset: str, currency: str) -> str:
        if not self.supports(asset, currency):
            raise UnsupportedAsset(
                f"{self.name} does not quote {asset.upper()}/{currency.upper()}",
                source=self.name,
            )
        return self.asset_ids[asset.upper()]

    def lookup_url(self, provider_id: str) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        """One GET, classified. Floats are parsed as Decimal."""
        try:
            response = await self.client.get(
                url, params=params, headers=self._headers(), timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise SourceTimeout(
                f"{self.name} did not answer within {self.timeout}s", source=self.name,
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(
                f"{self.name} request failed: {type(exc).__name__}: {exc}", source=self.name,
            ) from exc

        if response.status_code >= 400:
            raise SourceUnavailable(
                f"{self.name} returned HTTP {response.status_code}",
                source=self.name,
                status_code=response.status_code,
            )

        try:
            return response.json(parse_float=Decimal)
        except ValueError as exc:
            raise MalformedQuote(f"{self.name} returned invalid JSON", source=self.name) from exc

    def _parse_samples(self, payload: Any) -> List[Sample]:
        raise NotImplementedError

    def _request(self, provider_id: str, day: date, currency: str) -> Tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    async def fetch_close_at_date(self, asset: str, day: date, currency: str = "USD") -> PriceQuote:
        """Closing price of asset on the UTC day, in currency."""
        asset = asset.upper()
        currency = currency.upper()
        provider_id = self.provider_id(asset, currency)

        url, params = self._request(provider_id, day, currency)
        payload = await self._get_json(url, params)
        quoted_at, raw_price = pick_close(self._parse_samples(payload), day, source=self.name)

        logger.debug(
            "price_source_quote",
            source=self.name,
            asset=asset,
            currency=currency,
            as_of=day.isoformat(),
            price=str(raw_price),
        )

        return PriceQuote(
            asset=asset,
            as_of=day,
            price=raw_price,
            raw_price=raw_price,
            currency=currency,
            source=self.name,
            quoted_at=quoted_at,
            fetched_at=utc_now(),
            lookup_url=self.lookup_url(provider_id),
        )


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class CoinGeckoSource(PriceSource):
    """CoinGecko market_chart/range. Payload: {"prices": [[ms, price], ...]}."""

    name = "coingecko"
    asset_ids = COINGECKO_IDS

    def supports(self, asset: str, currency: str) -> bool:
        return asset.upper() in self.asset_ids and currency.upper() in COINGECKO_CURRENCIES

    def lookup_url(self, provider_id: str) -> str:
        return f"https://www.coingecko.com/en/coins/{provider_id}"

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"x-cg-demo-api-key": self.api_key}
        return {}

    def _request(self, provider_id: str, day: date, currency: str) -> Tuple[str, Dict[str, Any]]:
        url = f"{self.base_url}/coins/{provider_id}/market_chart/range"
        params = {
            "vs_currency": currency.lower(),
            "from": int(start_of_day(day).timestamp()),
            "to": int(end_of_day(day).timestamp()),
        }
        return url, params

    def _parse_samples(self, payload: Any) -> List[Sample]:
        if not isinstance(payload, dict) or not isinstance(payload.get("prices"), list):
            raise MalformedQuote("coingecko: payload has no 'prices' list", source=self.name)

        samples: List[Sample] = []
        for point in payload["prices"]:
            if not isinstance(point, (list, tuple)) or len(point) < 2:
                raise MalformedQuote(f"coingecko: bad sample {point!r}", source=self.name)
            ms = _to_decimal(point[0], source=self.name, field="timestamp")
            samples.append((from_epoch_ms(ms), _to_decimal(point[1], source=self.name, field="price")))
        return samples


class CoinCapSource(PriceSource):
    """CoinCap hourly history. USD only. Payload: {"data": [{"priceUsd", "time"}, ...]}."""

    name = "coincap"
    asset_ids = COINCAP_IDS

    def supports(self, asset: str, currency: str) -> bool:
        return asset.upper() in self.asset_ids and currency.upper() == "USD"

    def lookup_url(self, provider_id: str) -> str:
        return f"https://coincap.io/assets/{provider_id}"

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def _request(self, provider_id: str, day: date, currency: str) -> Tuple[str, Dict[str, Any]]:
        url = f"{self.base_url}/assets/{provider_id}/history"
        params = {
            "interval": "h1",
            "start": to_epoch_ms(start_of_day(day)),
            "end": to_epoch_ms(end_of_day(day)),
        }
        return url, params

    def _parse_samples(self, payload: Any) -> List[Sample]:
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise MalformedQuote("coincap: payload has no 'data' list", source=self.name)

        samples: List[Sample] = []
        for point in payload["data"]:
            if not isinstance(point, dict) or "priceUsd" not in point or "time" not in point:
                raise MalformedQuote(f"coincap: bad sample {point!r}", source=self.name)
            ms = _to_decimal(point["time"], source=self.name, field="time")
            samples.append((from_epoch_ms(ms), _to_decimal(point["priceUsd"], source=self.name, field="priceUsd")))
        return samples


SOURCE_TYPES = {
    CoinGeckoSource.name: CoinGeckoSource,
    CoinCapSource.name: CoinCapSource,
}


def build_sources(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> List[PriceSource]:
    """Instantiate the configured providers in fallback order."""
    config = {
        CoinGeckoSource.name: (settings.coingecko_base_url, settings.coingecko_api_key),
        CoinCapSource.name: (settings.coincap_base_url, settings.coincap_api_key),
    }

    sources: List[PriceSource] = []
    for name in settings.source_order:
        source_cls = SOURCE_TYPES.get(name)
        if source_cls is None:
            logger.warning("price_source_unknown", source=name, known=sorted(SOURCE_TYPES))
            continue
        base_url, api_key = config[name]
        sources.append(source_cls(
            base_url,
            api_key=api_key,
            timeout=settings.source_timeout_seconds,
            client=client,
        ))
    return sources
