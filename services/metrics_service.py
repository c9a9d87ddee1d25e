"""
Pairing run metrics used for SLO tracking.

Built once per pairing run from the final pairs and singletons, so the
numbers are a deterministic function of the complete classification set.

SLO targets (configurable on PairingConfig):
  → pair rate        >= 98% of fronts paired
  → singleton rate   <= 2% of images left unpaired
  → judge rate       <= 2% of fronts escalated past the auto thresholds
"""

from collections import Counter, defaultdict
from typing import Optional

import structlog

from config.pairing import PairingConfig
from models.image_insight import FeatureRow, ImageRole
from models.pairing import (
    BrandStats,
    GenericBackFlag,
    MetricsTotals,
    Pair,
    PairingMetrics,
    PairSource,
    Singleton,
    SloStatus,
)

logger = structlog.get_logger(__name__)

UNKNOWN_BRAND = "unknown"


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def evaluate_slo(
    pair_rate: float,
    singleton_rate: float,
    judge_rate: float,
    config: PairingConfig,
) -> SloStatus:
    """Compare run rates against the configured targets."""
    return SloStatus(
        pair_rate_ok=pair_rate >= config.target_pair_rate,
        singleton_rate_ok=singleton_rate <= config.max_singleton_rate,
        judge_rate_ok=judge_rate <= config.max_judge_rate,
    )


def build_metrics(
    features: dict[str, FeatureRow],
    pairs: list[Pair],
    singletons: list[Singleton],
    config: PairingConfig,
    candidates: int = 0,
    escalations: int = 0,
    judge_calls: int = 0,
    generic_backs: Optional[list[GenericBackFlag]] = None,
    role_corrections: int = 0,
    candidate_budget_exceeded: bool = False,
    duration_ms: int = 0,
) -> PairingMetrics:
    """
    Compute totals, per-brand pair rates and the singleton reason histogram.

    Fronts and backs are counted by effective role (after correction).
    Rates use fronts as the denominator for pair and judge rates and all
    images for the singleton rate.

    Args:
        features: Features with effective roles, keyed by image key
        pairs: Accepted pairs
        singletons: Unpaired images
        config: Provides SLO targets and the threshold snapshot
        candidates: Total candidates generated
        escalations: Fronts routed to the tie-break judge
        judge_calls: Tie-break calls actually made
        generic_backs: Ratio-guard flags
        role_corrections: Number of role changes applied
        candidate_budget_exceeded: Whether candidate building was cut short
        duration_ms: Run duration

    Returns:
        PairingMetrics
    """
    fronts = [f for f in features.values() if f.role == ImageRole.FRONT]
    backs = [f for f in features.values() if f.role == ImageRole.BACK]

    auto_pairs = sum(1 for p in pairs if p.source in (PairSource.AUTO, PairSource.AUTO_HAIR))
    judge_pairs = sum(1 for p in pairs if p.source == PairSource.TIEBREAK)

    totals = MetricsTotals(
        images=len(features),
        fronts=len(fronts),
        backs=len(backs),
        candidates=candidates,
        auto_pairs=auto_pairs,
        judge_pairs=judge_pairs,
        extras=sum(len(p.extras) for p in pairs),
        singletons=len(singletons),
        escalations=escalations,
        judge_calls=judge_calls,
    )

    # Per-brand stats keyed by normalized brand of the front
    paired_fronts = {p.front_key for p in pairs}
    brand_fronts: dict[str, int] = defaultdict(int)
    brand_paired: dict[str, int] = defaultdict(int)
    for front in fronts:
        brand = front.brand_norm or UNKNOWN_BRAND
        brand_fronts[brand] += 1
        if front.key in paired_fronts:
            brand_paired[brand] += 1
    by_brand = {
        brand: BrandStats(
            fronts=count,
            paired=brand_paired[brand],
            pair_rate=_rate(brand_paired[brand], count),
        )
        for brand, count in sorted(brand_fronts.items())
    }

    reasons = dict(sorted(Counter(s.reason for s in singletons).items()))

    pair_rate = _rate(len(pairs), len(fronts))
    singleton_rate = _rate(len(singletons), len(features))
    judge_rate = _rate(escalations, len(fronts))

    return PairingMetrics(
        totals=totals,
        by_brand=by_brand,
        reasons=reasons,
        generic_backs=generic_backs or [],
        role_corrections=role_corrections,
        candidate_budget_exceeded=candidate_budget_exceeded,
        pair_rate=pair_rate,
        singleton_rate=singleton_rate,
        judge_rate=judge_rate,
        slo=evaluate_slo(pair_rate, singleton_rate, judge_rate, config),
        thresholds=config.thresholds_snapshot(),
        duration_ms=duration_ms,
    )


def format_metrics_log(metrics: PairingMetrics) -> str:
    """One-line summary for logs and the report script."""
    t = metrics.totals
    parts = [
        f"images={t.images}",
        f"fronts={t.fronts}",
        f"backs={t.backs}",
        f"candidates={t.candidates}",
        f"auto={t.auto_pairs}",
        f"judge={t.judge_pairs}",
        f"extras={t.extras}",
        f"singletons={t.singletons}",
        f"pair_rate={metrics.pair_rate:.1%}",
        f"singleton_rate={metrics.singleton_rate:.1%}",
        f"judge_rate={metrics.judge_rate:.1%}",
    ]
    if metrics.slo is not None:
        parts.append("slo=ok" if metrics.slo.all_ok else "slo=BREACH")
    if metrics.candidate_budget_exceeded:
        parts.append("candidate_budget=EXCEEDED")
    if metrics.generic_backs:
        parts.append(f"generic_backs={len(metrics.generic_backs)}")
    return "METRICS " + " ".join(parts)


def log_metrics(metrics: PairingMetrics) -> None:
    """Emit the run metrics as a structured event, warning on SLO breach."""
    event = {
        "images": metrics.totals.images,
        "fronts": metrics.totals.fronts,
        "auto_pairs": metrics.totals.auto_pairs,
        "judge_pairs": metrics.totals.judge_pairs,
        "singletons": metrics.totals.singletons,
        "pair_rate": metrics.pair_rate,
        "singleton_rate": metrics.singleton_rate,
        "judge_rate": metrics.judge_rate,
        "reasons": metrics.reasons,
        "duration_ms": metrics.duration_ms,
    }
    if metrics.slo is not None and not metrics.slo.all_ok:
        logger.warning("pairing_slo_breach", **event, slo=metrics.slo.model_dump())
    else:
        logger.info("pairing_metrics", **event)
