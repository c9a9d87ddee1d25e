"""
Pairing engine configuration.

All tunables for candidate scoring, auto-pair thresholds, tie-break
escalation and guardrails live in one validated PairingConfig that is
passed explicitly into the scorer, the judge and the orchestrator.
"""

import random
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config.settings import Settings, get_settings

# Bumped whenever scoring weights or decision rules change meaning
ENGINE_VERSION = "pairing-2.3.0"


# =============================================================================
# RETRY POLICY
# =============================================================================

class RetryPolicy(BaseModel):
    """
    Retry schedule for transient collaborator failures.

    Delay for attempt n (0-based) is base_delay * 2**n, capped at max_delay,
    with up to `jitter` fraction added at random.
    """
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    max_delay_seconds: float = Field(default=8.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, le=1)

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff delay after the given failed attempt (0-based)."""
        delay = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        if self.jitter and delay:
            delay += delay * self.jitter * (rng or random).random()
        return delay


# =============================================================================
# SCORE WEIGHTS
# =============================================================================

class ScoreWeights(BaseModel):
    """Contribution of each matching signal to a candidate's pre-score."""
    model_config = ConfigDict(frozen=True)

    brand_match: float = 3.0
    product_strong: float = 2.0       # product token Jaccard >= 0.5
    product_partial: float = 1.0      # product token Jaccard >= 0.3
    variant_match: float = 1.0
    size_match: float = 1.0
    packaging_dropper: float = 2.0
    packaging_pouch: float = 1.5
    packaging_default: float = 1.0
    category_match: float = 1.0
    unknown_brand_rescue: float = 1.0
    distributor_rescue: float = 1.5
    ingredient_cue: float = 0.5
    color_match: float = 1.5
    proximity: float = 0.5
    barcode: float = 0.5
    category_conflict: float = -2.0

    def packaging_boost(self, hint: str) -> float:
        if hint == "dropper-bottle":
            return self.packaging_dropper
        if hint == "pouch":
            return self.packaging_pouch
        return self.packaging_default


# =============================================================================
# PAIRING CONFIG
# =============================================================================

class PairingConfig(BaseModel):
    """
    Validated tunables for one pairing run.

    Example:
        config = PairingConfig(auto_pair_score=3.5)
        engine = PairingService(config, judge=None)
    """
    model_config = ConfigDict(frozen=True)

    candidates_per_front: int = Field(default=8, ge=1, le=50)
    min_pre_score: float = 2.0
    auto_pair_score: float = 3.0
    auto_pair_gap: float = Field(default=1.0, ge=0)
    auto_pair_hair_score: float = 2.4
    auto_pair_hair_gap: float = Field(default=0.8, ge=0)

    tiebreak_enabled: bool = True
    tiebreak_max_calls: int = Field(default=25, ge=0)
    tiebreak_text_chars: int = Field(default=400, ge=50)
    tiebreak_retry: RetryPolicy = Field(default_factory=RetryPolicy)

    max_extras_per_product: int = Field(default=4, ge=0)
    min_extra_score: float = 2.0

    max_candidate_build_ms: int = Field(default=5000, ge=1)
    max_back_front_ratio: int = Field(default=5, ge=2)

    # SLO targets used when evaluating run metrics
    target_pair_rate: float = Field(default=0.98, ge=0, le=1)
    max_singleton_rate: float = Field(default=0.02, ge=0, le=1)
    max_judge_rate: float = Field(default=0.02, ge=0, le=1)

    weights: ScoreWeights = Field(default_factory=ScoreWeights)

    @model_validator(mode="after")
    def check_thresholds(self) -> "PairingConfig":
        """Hair thresholds are a relaxation of the general ones, never stricter."""
        if self.auto_pair_hair_score > self.auto_pair_score:
            raise ValueError("auto_pair_hair_score must not exceed auto_pair_score")
        if self.min_pre_score > self.auto_pair_score:
            raise ValueError("min_pre_score must not exceed auto_pair_score")
        return self

    def thresholds_snapshot(self) -> dict:
        """Threshold values recorded alongside run metrics."""
        return {
            "engine_version": ENGINE_VERSION,
            "min_pre_score": self.min_pre_score,
            "auto_pair_score": self.auto_pair_score,
            "auto_pair_gap": self.auto_pair_gap,
            "auto_pair_hair_score": self.auto_pair_hair_score,
            "auto_pair_hair_gap": self.auto_pair_hair_gap,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "PairingConfig":
        """Build config from flat PAIR_* environment settings."""
        return cls(
            candidates_per_front=settings.pair_candidates_per_front,
            min_pre_score=settings.pair_min_pre_score,
            auto_pair_score=settings.pair_auto_score,
            auto_pair_gap=settings.pair_auto_gap,
            auto_pair_hair_score=settings.pair_auto_hair_score,
            auto_pair_hair_gap=settings.pair_auto_hair_gap,
            tiebreak_enabled=not settings.pair_disable_tiebreak,
            tiebreak_max_calls=settings.pair_tiebreak_max_calls,
            tiebreak_text_chars=settings.pair_tiebreak_text_chars,
            tiebreak_retry=RetryPolicy(max_attempts=settings.pair_tiebreak_max_attempts),
            max_extras_per_product=settings.pair_max_extras_per_product,
            min_extra_score=settings.pair_min_extra_score,
            max_candidate_build_ms=settings.pair_max_candidate_build_ms,
            max_back_front_ratio=settings.pair_max_back_front_ratio,
            weights=ScoreWeights(
                packaging_dropper=settings.pair_pkg_boost_dropper,
                packaging_pouch=settings.pair_pkg_boost_pouch,
                packaging_default=settings.pair_pkg_boost_default,
            ),
        )


def get_pairing_config() -> PairingConfig:
    """Pairing config for the current environment."""
    return PairingConfig.from_settings(get_settings())
