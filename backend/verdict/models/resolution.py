"""
Resolution data models.
Insights awaiting adjudication, their outcomes, price conditions and quotes,
and the summary a resolution run reports back.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class InsightStatus(str, Enum):
    """Lifecycle of an insight. Monotonic: never moves backwards."""
    OPEN = "OPEN"
    COMMITTED = "COMMITTED"
    RESOLVED = "RESOLVED"


RESOLVABLE_STATUSES = (InsightStatus.OPEN.value, InsightStatus.COMMITTED.value)


class ResolverKind(str, Enum):
    """How an insight is adjudicated."""
    PRICE = "PRICE"
    URL = "URL"
    TEXT = "TEXT"


class OutcomeResult(str, Enum):
    YES = "YES"
    NO = "NO"
    INVALID = "INVALID"


class DecisionAgent(str, Enum):
    AGENT = "AGENT"
    USER = "USER"


class ComparisonOperator(str, Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "="

    @classmethod
    def parse(cls, symbol: str) -> "ComparisonOperator":
        symbol = (symbol or "").strip()
        if symbol == "==":
            return cls.EQ
        return cls(symbol)


# ---------------------------------------------------------------------------
# Insight / Outcome
# ---------------------------------------------------------------------------

class Insight(BaseModel):
    """An insight as read from the authoring service's table."""
    id: str
    creator_id: Optional[str] = None
    canonical: str
    resolver_kind: ResolverKind
    resolver_ref: Optional[str] = None
    deadline: datetime
    status: InsightStatus = InsightStatus.OPEN
    stated_probability: Optional[float] = Field(None, ge=0, le=1)


class Outcome(BaseModel):
    """Immutable adjudication record for one insight."""
    id: str
    insight_id: str
    result: OutcomeResult
    evidence_url: Optional[str] = None
    evidence_meta: Optional[Dict[str, Any]] = None
    decided_by: DecisionAgent
    decided_at: datetime


# ---------------------------------------------------------------------------
# Price resolution
# ---------------------------------------------------------------------------

class PriceCondition(BaseModel):
    """Machine-checkable form of a price insight."""
    asset: str
    operator: ComparisonOperator
    threshold: Decimal
    currency: str = "USD"
    as_of: date


class PriceQuote(BaseModel):
    """Closing price for one asset on one UTC day, from one provider."""
    asset: str
    as_of: date
    price: Decimal
    raw_price: Decimal
    currency: str
    source: str
    quoted_at: datetime
    fetched_at: datetime
    lookup_url: str

    def audit(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "as_of": self.as_of.isoformat(),
            "price": str(self.price),
            "raw_price": str(self.raw_price),
            "currency": self.currency,
            "source": self.source,
            "quoted_at": self.quoted_at.isoformat(),
            "fetched_at": self.fetched_at.isoformat(),
        }


class ResolutionResult(BaseModel):
    """Verdict for one insight, before it is persisted."""
    result: OutcomeResult
    evidence_url: Optional[str] = None
    evidence_meta: Dict[str, Any] = Field(default_factory=dict)
    decided_by: DecisionAgent = DecisionAgent.AGENT


# ---------------------------------------------------------------------------
# Run reporting
# ---------------------------------------------------------------------------

class ResolutionFailure(BaseModel):
    insight_id: str
    error_class: str
    message: str


class ResolutionRunSummary(BaseModel):
    """What a resolution run did."""
    run_id: str
    trigger: str = "manual"
    started_at: datetime
    finished_at: Optional[datetime] = None
    took_ms: int = 0
    considered: int = 0
    resolved: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    cancelled: bool = False
    outcomes: Dict[str, int] = Field(
        default_factory=lambda: {r.value: 0 for r in OutcomeResult}
    )
    failures: List[ResolutionFailure] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)
    creators_rescored: int = 0
    error: Optional[str] = None


class ConfirmOutcomeRequest(BaseModel):
    """Manual adjudication of a URL/TEXT insight."""
    insight_id: str = Field(..., min_length=1)
    result: OutcomeResult
    evidence_url: Optional[str] = Field(None, max_length=2000)
    reasoning: Optional[str] = Field(None, max_length=500)


class RepairReport(BaseModel):
    """Result of the consistency repair pass."""
    status_flipped: List[str] = Field(default_factory=list)
    missing_outcome: List[str] = Field(default_factory=list)
