"""
Price Resolver.

Turns a PRICE insight into a YES / NO / INVALID verdict:

1. Parse the machine-checkable condition from resolver_ref, falling back to
   the canonical statement (``BTC close >= 100000 USD on 2025-12-31``).
2. Ask each configured provider in order, every call going through that
   provider's circuit breaker and the shared retry policy. The first usable
   quote wins.
3. Round quote and threshold to the asset's precision, then compare.

Nothing escapes past resolve(): unparsable references, unsupported assets and
exhausted providers all become INVALID verdicts with the reason in evidence.
"""

import asyncio
import json
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from verdict.infrastructure.circuit_breaker import CircuitBreaker
from verdict.infrastructure.clock import as_utc
from verdict.infrastructure.config import Settings
from verdict.infrastructure.exceptions import (
    AllSourcesExhausted,
    CircuitOpenError,
    ResolutionError,
    SourceError,
    SourceTimeout,
    SourceUnavailable,
    UnparsableReference,
    UnsupportedAsset,
)
from verdict.infrastructure.retry import RetryPolicy, retry_async
from verdict.models.resolution import (
    ComparisonOperator,
    Insight,
    OutcomeResult,
    PriceCondition,
    PriceQuote,
    ResolutionResult,
)
from verdict.services.price_sources import PriceSource, build_sources, is_known_asset
from verdict.services.quote_cache import QuoteCache

logger = structlog.get_logger(__name__)

# No provider map lists a fiat asset yet; the two-place rule applies once one does.
FIAT_ASSETS = frozenset({"USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF"})
FIAT_PRECISION = 2
CRYPTO_PRECISION = 8

_STATEMENT_RE = re.compile(
    r"\b(?P<asset>[A-Za-z][A-Za-z0-9]{0,14})\s+"
    r"(?:close\s+)?"
    r"(?P<op>>=|<=|==|=|>|<)\s*"
    r"(?P<threshold>\d[\d,]*(?:\.\d+)?)"
    r"(?:\s+(?P<currency>[A-Za-z]{3})\b)?"
    r"(?:\s+on\s+(?P<date>\d{4}-\d{2}-\d{2}))?",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Condition parsing
# ---------------------------------------------------------------------------

def _load_ref(resolver_ref: Any) -> Dict[str, Any]:
    if resolver_ref is None or resolver_ref == "":
        return {}
    if isinstance(resolver_ref, dict):
        return resolver_ref
    try:
        ref = json.loads(resolver_ref)
    except (TypeError, ValueError) as exc:
        raise UnparsableReference(f"resolver_ref is not valid JSON: {exc}") from exc
    if not isinstance(ref, dict):
        raise UnparsableReference("resolver_ref must be a JSON object")
    return ref


def _pick(ref: Dict[str, Any], key: str, match: Optional[re.Match], group: str) -> Any:
    value = ref.get(key)
    if value is None and match is not None:
        value = match.group(group)
    return value


def parse_price_condition(canonical: str, resolver_ref: Any, deadline: datetime) -> PriceCondition:
    """
    Build a PriceCondition from resolver_ref keys, filling gaps from the statement.

    Raises:
        UnsupportedAsset: asset symbol no provider quotes.
        UnparsableReference: anything else unusable.
    """
    ref = _load_ref(resolver_ref)
    match = _STATEMENT_RE.search(canonical or "")

    asset = _pick(ref, "asset", match, "asset")
    if not asset or not isinstance(asset, str):
        raise UnparsableReference("no asset in resolver_ref or statement")
    asset = asset.strip().upper()

    op_raw = _pick(ref, "operator", match, "op")
    if op_raw is None:
        raise UnparsableReference("no comparison operator in resolver_ref or statement")
    try:
        operator = ComparisonOperator.parse(str(op_raw))
    except ValueError as exc:
        raise UnparsableReference(f"unknown operator {op_raw!r}") from exc

    threshold_raw = _pick(ref, "threshold", match, "threshold")
    if threshold_raw is None or isinstance(threshold_raw, bool):
        raise UnparsableReference("no threshold in resolver_ref or statement")
    try:
        threshold = Decimal(str(threshold_raw).replace(",", ""))
    except InvalidOperation as exc:
        raise UnparsableReference(f"threshold {threshold_raw!r} is not a number") from exc
    if not threshold.is_finite():
        raise UnparsableReference(f"threshold {threshold_raw!r} is not finite")

    currency = _pick(ref, "currency", match, "currency") or "USD"
    currency = str(currency).strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", currency):
        raise UnparsableReference(f"currency {currency!r} is not a 3-letter code")

    date_raw = _pick(ref, "date", match, "date")
    if date_raw:
        try:
            as_of = date.fromisoformat(str(date_raw))
        except ValueError as exc:
            raise UnparsableReference(f"date {date_raw!r} is not YYYY-MM-DD") from exc
    else:
        as_of = as_utc(deadline).date()

    if not is_known_asset(asset):
        raise UnsupportedAsset(f"no provider quotes {asset}")

    return PriceCondition(
        asset=asset,
        operator=operator,
        threshold=threshold,
        currency=currency,
        as_of=as_of,
    )


# ---------------------------------------------------------------------------
# Normalisation / comparison
# ---------------------------------------------------------------------------

def precision_for(asset: str) -> int:
    return FIAT_PRECISION if asset.upper() in FIAT_ASSETS else CRYPTO_PRECISION


def round_price(value: Decimal, asset: str) -> Decimal:
    """Round half away from zero to the asset's precision."""
    quantum = Decimal(1).scaleb(-precision_for(asset))
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def evaluate(price: Decimal, operator: ComparisonOperator, threshold: Decimal) -> bool:
    if operator == ComparisonOperator.GT:
        return price > threshold
    if operator == ComparisonOperator.GTE:
        return price >= threshold
    if operator == ComparisonOperator.LT:
        return price < threshold
    if operator == ComparisonOperator.LTE:
        return price <= threshold
    if operator == ComparisonOperator.EQ:
        return price == threshold
    raise ValueError(f"Unhandled operator: {operator}")


def _condition_meta(condition: PriceCondition) -> Dict[str, Any]:
    return {
        "asset": condition.asset,
        "operator": condition.operator.value,
        "threshold": str(condition.threshold),
        "currency": condition.currency,
        "as_of": condition.as_of.isoformat(),
    }


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class PriceResolver:
    """Resolves PRICE insights against an ordered list of providers."""

    def __init__(
        self,
        sources: Sequence[PriceSource],
        *,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[QuoteCache] = None,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        sleep=asyncio.sleep,
    ):
        self.sources: List[PriceSource] = list(sources)
        self.breakers: Dict[str, CircuitBreaker] = {
            source.name: CircuitBreaker(
                source.name,
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                non_failure_exceptions=(UnsupportedAsset,),
            )
            for source in self.sources
        }
        self.retry_policy = retry_policy or RetryPolicy(
            retry_on=(SourceUnavailable, SourceTimeout),
            never_retry=(CircuitOpenError,),
        )
        self.cache = cache if cache is not None else QuoteCache()
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ) -> "PriceResolver":
        return cls(
            build_sources(settings, client=client),
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                retry_on=(SourceUnavailable, SourceTimeout),
                never_retry=(CircuitOpenError,),
            ),
            cache=QuoteCache(ttl_seconds=settings.quote_cache_ttl_seconds),
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout=settings.breaker_recovery_timeout,
            sleep=sleep,
        )

    async def fetch_quote(self, condition: PriceCondition) -> PriceQuote:
        """
        First usable quote across providers, rounded to the asset's precision.

        Raises:
            AllSourcesExhausted: every provider failed or could not serve the pair.
        """
        asset, currency, day = condition.asset, condition.currency, condition.as_of

        cached = self.cache.get(asset, currency, day)
        if cached is not None:
            return cached

        failures: List[SourceError] = []
        for source in self.sources:
            if not source.supports(asset, currency):
                failures.append(UnsupportedAsset(
                    f"{source.name} does not quote {asset}/{currency}", source=source.name,
                ))
                continue

            breaker = self.breakers[source.name]
            try:
                quote = await retry_async(
                    partial(breaker.call, source.fetch_close_at_date, asset, day, currency),
                    self.retry_policy,
                    sleep=self._sleep,
                    label=f"{source.name}:{asset}",
                )
            except SourceError as exc:
                if exc.source is None:
                    exc.source = source.name
                logger.warning(
                    "price_source_failed",
                    source=source.name,
                    asset=asset,
                    as_of=day.isoformat(),
                    error_class=exc.error_class,
                    error=exc.message,
                )
                failures.append(exc)
                continue

            quote = quote.model_copy(update={"price": round_price(quote.raw_price, asset)})
            self.cache.put(quote)
            return quote

        raise AllSourcesExhausted(failures)

    async def resolve(self, insight: Insight) -> ResolutionResult:
        """Adjudicate one PRICE insight. Never raises a ResolutionError."""
        try:
            condition = parse_price_condition(insight.canonical, insight.resolver_ref, insight.deadline)
        except ResolutionError as exc:
            logger.warning(
                "price_condition_invalid",
                insight_id=insight.id,
                error_class=exc.error_class,
                error=exc.message,
            )
            return ResolutionResult(
                result=OutcomeResult.INVALID,
                evidence_meta={"error_class": exc.error_class, "message": exc.message},
            )

        try:
            quote = await self.fetch_quote(condition)
        except AllSourcesExhausted as exc:
            logger.warning(
                "price_sources_exhausted",
                insight_id=insight.id,
                asset=condition.asset,
                failures=[f["error_class"] for f in exc.describe()],
            )
            return ResolutionResult(
                result=OutcomeResult.INVALID,
                evidence_meta={
                    "error_class": exc.error_class,
                    "message": exc.message,
                    "condition": _condition_meta(condition),
                    "failures": exc.describe(),
                },
            )

        threshold = round_price(condition.threshold, condition.asset)
        holds = evaluate(quote.price, condition.operator, threshold)
        result = OutcomeResult.YES if holds else OutcomeResult.NO

        logger.info(
            "price_insight_evaluated",
            insight_id=insight.id,
            asset=condition.asset,
            price=str(quote.price),
            operator=condition.operator.value,
            threshold=str(threshold),
            result=result.value,
            source=quote.source,
        )

        return ResolutionResult(
            result=result,
            evidence_url=quote.lookup_url,
            evidence_meta={
                "condition": _condition_meta(condition),
                "quote": quote.audit(),
                "comparison": f"{quote.price} {condition.operator.value} {threshold}",
                "holds": holds,
            },
        )

    def status(self) -> Dict[str, Any]:
        names = [s.name for s in self.sources]
        return {
            "primary": names[0] if names else None,
            "secondary": names[1] if len(names) > 1 else None,
            "sources": names,
            "breakers": [self.breakers[name].status() for name in names],
            "cache": self.cache.stats(),
        }

    async def close(self):
        for source in self.sources:
            await source.close()

