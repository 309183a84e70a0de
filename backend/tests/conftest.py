"""
Shared test fixtures for Verdict tests.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Union
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient, ASGITransport

from verdict.db.models import InsightModel, OutcomeModel
from verdict.infrastructure import database
from verdict.infrastructure.config import Settings
from verdict.models.resolution import PriceQuote
from verdict.services.price_resolver import PriceResolver
from verdict.services.price_sources import PriceSource
from verdict.services.resolution_engine import ResolutionEngine
from verdict.services.score_service import ScoreService

NOW = datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)
DEADLINE = datetime(2025, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
BTC_STATEMENT = "BTC close >= 100000 USD on 2025-12-31"
OPERATOR_KEY = "test-operator-key"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSource(PriceSource):
    """Scripted provider: each call consumes the next response (the last one repeats)."""

    def __init__(self, name: str, responses: List[Union[Decimal, Exception]], assets=("BTC", "ETH")):
        super().__init__("http://fake.invalid")
        self.name = name
        self.asset_ids = {a: a.lower() for a in assets}
        self.responses = list(responses)
        self.calls = 0

    def lookup_url(self, provider_id: str) -> str:
        return f"https://{self.name}.example/{provider_id}"

    async def fetch_close_at_date(self, asset: str, day: date, currency: str = "USD") -> PriceQuote:
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return PriceQuote(
            asset=asset,
            as_of=day,
            price=response,
            raw_price=response,
            currency=currency,
            source=self.name,
            quoted_at=datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=23),
            fetched_at=NOW,
            lookup_url=self.lookup_url(asset.lower()),
        )


def make_resolver(*sources: PriceSource, **kwargs) -> PriceResolver:
    """Resolver that never really sleeps between retries."""
    kwargs.setdefault("sleep", AsyncMock())
    return PriceResolver(list(sources), **kwargs)


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database per test."""
    await database.init_database(f"sqlite:///{tmp_path / 'verdict.db'}")
    await database.create_tables()
    yield
    await database.close_database()


@pytest.fixture
def add_insight(db):
    """Insert an insight row."""
    async def _add(
        insight_id: str,
        *,
        creator_id: Optional[str] = "alice",
        canonical: str = BTC_STATEMENT,
        resolver_kind: str = "PRICE",
        resolver_ref: Optional[str] = None,
        deadline: datetime = DEADLINE,
        status: str = "OPEN",
        probability: Optional[float] = 0.7,
    ):
        async with database.get_session() as session:
            session.add(InsightModel(
                id=insight_id,
                creator_id=creator_id,
                canonical=canonical,
                resolver_kind=resolver_kind,
                resolver_ref=resolver_ref,
                deadline=deadline,
                status=status,
                stated_probability=probability,
            ))
    return _add


@pytest.fixture
def add_outcome(db):
    """Insert an outcome row directly, bypassing the engine."""
    async def _add(insight_id: str, result: str, *, decided_at: datetime = NOW, decided_by: str = "AGENT"):
        async with database.get_session() as session:
            session.add(OutcomeModel(
                id=f"out-{insight_id}",
                insight_id=insight_id,
                result=result,
                decided_by=decided_by,
                decided_at=decided_at,
            ))
    return _add


@pytest.fixture
def add_resolved(add_insight, add_outcome):
    """Insert a RESOLVED insight together with its outcome."""
    async def _add(insight_id: str, creator_id: str, probability: float, result: str, decided_at: datetime = NOW):
        await add_insight(insight_id, creator_id=creator_id, probability=probability, status="RESOLVED")
        await add_outcome(insight_id, result, decided_at=decided_at)
    return _add


@pytest.fixture
def score_service():
    return ScoreService(window_days=90, concurrency=2)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'verdict.db'}",
        resolution_enabled=True,
        resolution_key=OPERATOR_KEY,
    )


@pytest.fixture
async def client(db, test_settings, score_service):
    """Async HTTP client for testing FastAPI endpoints.

    ASGITransport does not run the lifespan, so the database comes from the
    db fixture. Services are swapped for ones built on scripted providers.
    """
    from verdict.main import app

    engine = ResolutionEngine(
        make_resolver(FakeSource("coingecko", [Decimal("105000.00")])),
        score_service,
        concurrency=2,
        batch_pause=0,
    )

    with patch("verdict.infrastructure.auth.get_settings", return_value=test_settings), \
         patch("verdict.routers.resolution.get_settings", return_value=test_settings), \
         patch("verdict.services.resolution_engine.get_resolution_engine", return_value=engine), \
         patch("verdict.services.score_service.get_score_service", return_value=score_service):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            ac.engine = engine
            yield ac
