"""
Pairing engine schemas: role corrections, candidates, pairs, singletons
and run metrics.

Every input image ends up in exactly one Pair (front, back or extra) or
exactly one Singleton.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.image_insight import ImageRole


# ===================
# ROLE CORRECTION
# ===================

class RoleCorrection(BaseSchema):
    """Per-image role confidence after heuristic re-scoring."""

    key: str
    original_role: ImageRole
    role: ImageRole = Field(..., description="Adjusted role")
    confidence: float = Field(..., ge=0.0, le=1.0)
    flags: list[str] = Field(default_factory=list)

    @property
    def corrected(self) -> bool:
        return self.role != self.original_role


class GroupRoleChange(BaseSchema):
    """One demotion or promotion inside a provisional product group."""

    image_key: str
    original_role: ImageRole
    corrected_role: ImageRole
    reason: str


class GroupRoleCorrection(BaseSchema):
    """Result of cross-checking all images of one provisional product."""

    group_id: str
    corrections: list[GroupRoleChange] = Field(default_factory=list)


# ===================
# CANDIDATES
# ===================

class BrandFlag(str, Enum):
    """How the brand signal resolved for a candidate."""
    EQUAL = "equal"
    MISMATCH = "mismatch"
    UNKNOWN = "unknown"
    UNKNOWN_RESCUE = "unknown_rescue"
    DISTRIBUTOR_RESCUE = "distributor_rescue"


class Candidate(BaseSchema):
    """
    A scored (front, back) pairing hypothesis.

    Ephemeral: lives only for the duration of one scoring run.
    """

    front_key: str
    back_key: str
    pre_score: float
    components: dict[str, float] = Field(
        default_factory=dict,
        description="Signal name -> contribution to pre_score"
    )
    brand_flag: BrandFlag = BrandFlag.UNKNOWN
    product_jaccard: float = 0.0
    variant_jaccard: float = 0.0
    size_match: bool = False
    packaging: str = ""
    packaging_match: bool = False
    category_match: bool = False
    color_match: bool = False
    ingredient_cue: bool = False
    evidence: list[str] = Field(default_factory=list)


class DecisionOutcome(str, Enum):
    """What the decision rule does with a front's top candidates."""
    AUTO_ACCEPT = "auto_accept"
    AUTO_ACCEPT_HAIR = "auto_accept_hair"
    ESCALATE = "escalate"
    GIVE_UP = "give_up"


class Decision(BaseSchema):
    outcome: DecisionOutcome
    top_score: float
    gap: float
    hair_signal: bool = False


# ===================
# OUTPUT
# ===================

class PairSource(str, Enum):
    AUTO = "auto"
    AUTO_HAIR = "auto_hair"
    TIEBREAK = "tiebreak"


class Pair(BaseSchema):
    """An accepted product: front, back and optional extra shots."""

    front_key: str
    back_key: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    match_score: float
    brand: str = ""
    product: str = ""
    variant: str = ""
    source: PairSource
    evidence: list[str] = Field(
        default_factory=list,
        description="Signals that fired, e.g. 'color match', 'distributor rescue'"
    )
    extras: list[str] = Field(default_factory=list)

    @property
    def product_id(self) -> str:
        return re.sub(r"[^a-z0-9]+", "_", f"{self.brand}_{self.product}".lower()).strip("_")

    def image_keys(self) -> list[str]:
        return [self.front_key, self.back_key, *self.extras]


class Singleton(BaseSchema):
    """An image that ended the run unpaired."""

    key: str
    reason: str
    needs_review: bool = True


class GenericBackFlag(BaseSchema):
    """A back that plausibly matches an unusual number of fronts."""

    back_key: str
    front_count: int


# ===================
# METRICS
# ===================

class MetricsTotals(BaseSchema):
    images: int = 0
    fronts: int = 0
    backs: int = 0
    candidates: int = 0
    auto_pairs: int = 0
    judge_pairs: int = 0
    extras: int = 0
    singletons: int = 0
    escalations: int = 0
    judge_calls: int = 0


class BrandStats(BaseSchema):
    fronts: int = 0
    paired: int = 0
    pair_rate: float = 0.0


class SloStatus(BaseSchema):
    pair_rate_ok: bool
    singleton_rate_ok: bool
    judge_rate_ok: bool

    @property
    def all_ok(self) -> bool:
        return self.pair_rate_ok and self.singleton_rate_ok and self.judge_rate_ok


class PairingMetrics(BaseSchema):
    """Counts and rates for one pairing run, used for SLO tracking."""

    totals: MetricsTotals
    by_brand: dict[str, BrandStats] = Field(default_factory=dict)
    reasons: dict[str, int] = Field(default_factory=dict)
    generic_backs: list[GenericBackFlag] = Field(default_factory=list)
    role_corrections: int = 0
    candidate_budget_exceeded: bool = False
    pair_rate: float = 0.0
    singleton_rate: float = 0.0
    judge_rate: float = 0.0
    slo: Optional[SloStatus] = None
    thresholds: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    duration_ms: int = 0


class PairingResult(BaseSchema):
    """Final output of the pairing engine."""

    engine_version: str
    pairs: list[Pair] = Field(default_factory=list)
    singletons: list[Singleton] = Field(default_factory=list)
    metrics: PairingMetrics
    role_corrections: list[GroupRoleChange] = Field(
        default_factory=list,
        description="Audit trail of per-image flips and group demotions/promotions"
    )
