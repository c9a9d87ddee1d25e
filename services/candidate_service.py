"""
Candidate scorer.

For every front, scores the backs in its brand/category neighborhood as
a weighted sum of matching signals and keeps the top K above the minimum
pre-score. Two guardrails run here: a cooperative wall-clock budget on
candidate building, and a ratio check for backs that look plausible for
too many fronts (a generic or reused back panel).
"""

import re
import time
from collections import Counter, defaultdict
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from config.pairing import PairingConfig
from models.image_insight import FeatureRow, ImageRole
from models.pairing import BrandFlag, Candidate, GenericBackFlag
from utils.text_utils import jaccard, levenshtein

logger = structlog.get_logger(__name__)

INGREDIENT_CUE = re.compile(
    r"ingredients:|avoid contact|\b12m\b|\b24m\b|distributed by|apply.*hair", re.IGNORECASE
)
BARCODE_CUE = re.compile(r"barcode|\bupc\b|\bean\b|gtin|product code", re.IGNORECASE)
HAIR_COSMETIC = re.compile(r"hair|cosmetic|beauty", re.IGNORECASE)
SUPPLEMENT_FOOD = re.compile(r"supplement|food|beverage|vitamin|nutrition", re.IGNORECASE)
SHADE_PREFIX = re.compile(r"^(light|dark|deep|bright|pale|dim)-")


class CandidateBuildResult(BaseModel):
    """Output of build_candidates."""

    by_front: dict[str, list[Candidate]] = Field(default_factory=dict)
    fronts_without_candidates: list[str] = Field(default_factory=list)
    unscored_fronts: list[str] = Field(
        default_factory=list,
        description="Fronts skipped because the wall-clock budget ran out"
    )
    budget_exceeded: bool = False
    generic_backs: list[GenericBackFlag] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def total_candidates(self) -> int:
        return sum(len(c) for c in self.by_front.values())


# ===================
# SIGNALS
# ===================

def category_overlap(tail_a: str, tail_b: str) -> bool:
    """True when two category tails share at least one word."""
    if not tail_a or not tail_b:
        return False
    tokens_a = set(tail_a.lower().replace(">", " ").split())
    tokens_b = set(tail_b.lower().replace(">", " ").split())
    return bool(tokens_a & tokens_b)


def category_conflict(path_a: str, path_b: str) -> bool:
    """Hair/cosmetic on one side and supplement/food on the other."""
    if not path_a or not path_b:
        return False
    a_hair, b_hair = bool(HAIR_COSMETIC.search(path_a)), bool(HAIR_COSMETIC.search(path_b))
    a_supp, b_supp = bool(SUPPLEMENT_FOOD.search(path_a)), bool(SUPPLEMENT_FOOD.search(path_b))
    return (a_hair and b_supp) or (a_supp and b_hair)


def colors_match(color_a: str, color_b: str) -> bool:
    """Same dominant color, ignoring shade modifiers (light-, dark-, ...)."""
    if not color_a or not color_b:
        return False
    if color_a == color_b:
        return True
    return SHADE_PREFIX.sub("", color_a) == SHADE_PREFIX.sub("", color_b)


def has_ingredient_cue(text: str) -> bool:
    """INCI-style ingredient list or cosmetic directions on a label."""
    return bool(INGREDIENT_CUE.search(text or ""))


def is_proximate(front: FeatureRow, back: FeatureRow) -> bool:
    """Same folder, or filename stems within edit distance 2."""
    if front.folder and front.folder == back.folder:
        return True
    if len(front.stem) > 2 and len(back.stem) > 2:
        return levenshtein(front.stem, back.stem) <= 2
    return False


def front_signature(front: FeatureRow) -> str:
    return f"{front.brand_norm}|{' '.join(sorted(front.product_tokens))}"


def in_neighborhood(front: FeatureRow, back: FeatureRow) -> bool:
    """
    Whether a back is worth scoring against a front.

    Same brand, either brand unknown, overlapping category tail, or
    partial product-name agreement (needed for distributor rescue).
    """
    if not front.brand_norm or not back.brand_norm:
        return True
    if front.brand_norm == back.brand_norm:
        return True
    if category_overlap(front.category_tail, back.category_tail):
        return True
    return jaccard(front.product_tokens, back.product_tokens) >= 0.3


# ===================
# SCORING
# ===================

def score_candidate(
    front: FeatureRow,
    back: FeatureRow,
    config: PairingConfig,
    front_is_unique: bool = False,
) -> Candidate:
    """
    Score one (front, back) hypothesis.

    Callers pass a FRONT and a BACK by effective role; roles are not scored.

    Args:
        front: Front features (effective role)
        back: Back features (effective role)
        config: Weights and thresholds
        front_is_unique: No other front shares this brand+product signature

    Returns:
        Candidate with pre_score, per-signal contributions and evidence
    """
    w = config.weights
    components: dict[str, float] = {}
    evidence: list[str] = []

    brand_match = bool(front.brand_norm) and front.brand_norm == back.brand_norm
    if brand_match:
        components["brand"] = w.brand_match
        evidence.append("brand match")

    prod_jac = jaccard(front.product_tokens, back.product_tokens)
    if prod_jac >= 0.5:
        components["product"] = w.product_strong
        evidence.append("product name match")
    elif prod_jac >= 0.3:
        components["product"] = w.product_partial
        evidence.append("partial product name match")

    var_jac = jaccard(front.variant_tokens, back.variant_tokens)
    if var_jac >= 0.5:
        components["variant"] = w.variant_match
        evidence.append("variant match")

    size_match = bool(front.size_canonical) and front.size_canonical == back.size_canonical
    if size_match:
        components["size"] = w.size_match
        evidence.append(f"size match ({front.size_canonical})")

    pkg_match = bool(front.packaging_hint) and front.packaging_hint == back.packaging_hint
    if pkg_match:
        components["packaging"] = w.packaging_boost(front.packaging_hint)
        evidence.append(f"packaging match ({front.packaging_hint})")

    cat_match = category_overlap(front.category_tail, back.category_tail)
    if cat_match:
        components["category"] = w.category_match
        evidence.append("category match")

    brand_flag = BrandFlag.EQUAL if brand_match else BrandFlag.MISMATCH
    one_brand_unknown = not front.brand_norm or not back.brand_norm

    if one_brand_unknown and pkg_match:
        category_unknown_or_match = (
            not front.category_path or not back.category_path
            or front.category_path.lower() == "unknown"
            or back.category_path.lower() == "unknown"
            or cat_match
        )
        if category_unknown_or_match:
            components["unknown_brand_rescue"] = w.unknown_brand_rescue
            brand_flag = BrandFlag.UNKNOWN_RESCUE
            evidence.append("unknown brand rescue")

    if not brand_match and not one_brand_unknown:
        supporting = (size_match or cat_match) and pkg_match
        if prod_jac >= 0.5 and supporting:
            # Back printed by a third-party distributor rather than the brand
            components["distributor_rescue"] = w.distributor_rescue
            brand_flag = BrandFlag.DISTRIBUTOR_RESCUE
            evidence.append("distributor rescue")
            logger.debug(
                "distributor_rescue",
                front_key=front.key,
                back_key=back.key,
                front_brand=front.brand_norm,
                back_brand=back.brand_norm
            )

    if brand_flag == BrandFlag.MISMATCH and one_brand_unknown:
        brand_flag = BrandFlag.UNKNOWN

    ingredient_cue = has_ingredient_cue(back.text_extracted)
    if ingredient_cue:
        components["ingredient_cue"] = w.ingredient_cue
        evidence.append("ingredient list on back")

    color_match = colors_match(front.color_key, back.color_key)
    if color_match:
        components["color"] = w.color_match
        evidence.append("color match")

    if is_proximate(front, back):
        components["proximity"] = w.proximity
        evidence.append("filename proximity")

    if front_is_unique and BARCODE_CUE.search(back.text_extracted or ""):
        components["barcode"] = w.barcode
        evidence.append("barcode on back")

    if category_conflict(front.category_path, back.category_path):
        components["category_conflict"] = w.category_conflict

    return Candidate(
        front_key=front.key,
        back_key=back.key,
        pre_score=round(sum(components.values()), 4),
        components=components,
        brand_flag=brand_flag,
        product_jaccard=round(prod_jac, 4),
        variant_jaccard=round(var_jac, 4),
        size_match=size_match,
        packaging=front.packaging_hint,
        packaging_match=pkg_match,
        category_match=cat_match,
        color_match=color_match,
        ingredient_cue=ingredient_cue,
        evidence=evidence,
    )


def _rank_key(c: Candidate) -> tuple:
    # Score, then product agreement, brand, packaging; key last for stability
    return (
        -c.pre_score,
        -c.product_jaccard,
        c.brand_flag != BrandFlag.EQUAL,
        not c.packaging_match,
        c.back_key,
    )


def build_candidates(
    features: dict[str, FeatureRow],
    config: PairingConfig,
    clock: Callable[[], float] = time.monotonic,
) -> CandidateBuildResult:
    """
    Generate and rank candidate backs for every front.

    Fronts are processed in key order. If the wall-clock budget runs out,
    the remaining fronts are reported as unscored rather than waiting.

    Args:
        features: Features with effective roles, keyed by image key
        config: Weights, K, min pre-score and guardrail limits
        clock: Monotonic seconds (injected for tests)

    Returns:
        CandidateBuildResult
    """
    started = clock()
    budget_seconds = config.max_candidate_build_ms / 1000.0

    fronts = sorted(
        (f for f in features.values() if f.role == ImageRole.FRONT),
        key=lambda f: f.key,
    )
    backs = sorted(
        (f for f in features.values() if f.role == ImageRole.BACK),
        key=lambda f: f.key,
    )
    signature_counts = Counter(front_signature(f) for f in fronts)

    result = CandidateBuildResult()

    for index, front in enumerate(fronts):
        if clock() - started > budget_seconds:
            result.budget_exceeded = True
            result.unscored_fronts = [f.key for f in fronts[index:]]
            logger.warning(
                "candidate_budget_exceeded",
                budget_ms=config.max_candidate_build_ms,
                scored_fronts=index,
                unscored_fronts=len(result.unscored_fronts)
            )
            break

        unique = signature_counts[front_signature(front)] == 1
        scored = [
            score_candidate(front, back, config, front_is_unique=unique)
            for back in backs
            if back.key != front.key and in_neighborhood(front, back)
        ]
        kept = sorted(
            (c for c in scored if c.pre_score >= config.min_pre_score),
            key=_rank_key,
        )[: config.candidates_per_front]

        if kept:
            result.by_front[front.key] = kept
        else:
            result.fronts_without_candidates.append(front.key)

    result.generic_backs = find_generic_backs(result.by_front, config)
    result.duration_ms = int((clock() - started) * 1000)

    logger.info(
        "candidates_built",
        fronts=len(fronts),
        backs=len(backs),
        fronts_with_candidates=len(result.by_front),
        total_candidates=result.total_candidates,
        duration_ms=result.duration_ms
    )
    return result


def find_generic_backs(
    by_front: dict[str, list[Candidate]],
    config: PairingConfig,
) -> list[GenericBackFlag]:
    """
    Backs that appear as a plausible candidate for too many fronts.

    Flagged for operator visibility only; scoring is not changed.
    """
    fronts_per_back: dict[str, set[str]] = defaultdict(set)
    for front_key, candidates in by_front.items():
        for candidate in candidates:
            fronts_per_back[candidate.back_key].add(front_key)

    flags = [
        GenericBackFlag(back_key=back_key, front_count=len(front_keys))
        for back_key, front_keys in sorted(fronts_per_back.items())
        if len(front_keys) >= config.max_back_front_ratio
    ]
    for flag in flags:
        logger.warning(
            "generic_back_suspected",
            back_key=flag.back_key,
            front_count=flag.front_count,
            limit=config.max_back_front_ratio
        )
    return flags


def candidate_scores_for_front(
    features: dict[str, FeatureRow],
    front_key: str,
    config: PairingConfig,
) -> list[Candidate]:
    """
    Every back scored against one front, unfiltered, best first.

    Debugging aid for explaining why a front ended up unpaired.
    """
    front: Optional[FeatureRow] = features.get(front_key)
    if front is None or front.role != ImageRole.FRONT:
        return []
    fronts = [f for f in features.values() if f.role == ImageRole.FRONT]
    signature = front_signature(front)
    unique = sum(1 for f in fronts if front_signature(f) == signature) == 1
    scores = [
        score_candidate(front, back, config, front_is_unique=unique)
        for back in features.values()
        if back.role == ImageRole.BACK and back.key != front_key
    ]
    return sorted(scores, key=_rank_key)
