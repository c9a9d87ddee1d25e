"""
Pairing engine.

Turns a set of classified images into accepted front/back pairs (with
optional extra shots) and singletons:

1. Normalize features and correct roles
2. Score candidate backs per front
3. Auto-accept fronts whose top candidate clears the score/gap thresholds
   (general, or relaxed for hair/cosmetic labels with an ingredient list)
4. Escalate the rest to the tie-break judge under a call budget
5. Attach side/detail shots to accepted pairs, up to a cap
6. Everything left over becomes a singleton with a reason

Every input image ends in exactly one pair or one singleton.
"""

import re
import time
from typing import Callable, Optional

import structlog

from config.pairing import ENGINE_VERSION, PairingConfig, get_pairing_config
from exceptions import TieBreakError
from models.image_insight import FeatureRow, ImageInsight, ImageRole
from models.pairing import (
    BrandFlag,
    Candidate,
    Decision,
    DecisionOutcome,
    GroupRoleChange,
    Pair,
    PairingResult,
    PairSource,
    Singleton,
)
from services.candidate_service import (
    build_candidates,
    candidate_scores_for_front,
    category_overlap,
    colors_match,
)
from services.feature_service import build_features
from services.metrics_service import build_metrics, log_metrics
from services.role_confidence_service import apply_role_corrections
from services.tiebreak_service import TieBreakJudge, truncate_texts

logger = structlog.get_logger(__name__)

HAIR_CATEGORY = re.compile(r"hair|cosmetic|skin|styling|beauty", re.IGNORECASE)

CONFIDENCE_AUTO = 0.95
CONFIDENCE_AUTO_HAIR = 0.90
CONFIDENCE_TIEBREAK = 0.75

# Singleton reasons
REASON_NO_CANDIDATES = "no candidates"
REASON_JUDGE_NO_MATCH = "tiebreak: no match"
REASON_TIEBREAK_DISABLED = "tiebreak disabled"
REASON_TIEBREAK_FAILED = "tiebreak failed"
REASON_TIEBREAK_BUDGET = "tiebreak budget exhausted"
REASON_CLAIMED = "candidates claimed by other fronts"
REASON_CANDIDATE_BUDGET = "candidate budget exceeded"
REASON_UNPAIRED_BACK = "unpaired back"
REASON_NO_PRODUCT = "no matching product"
REASON_EXTRAS_CAP = "extras cap reached"


def decide(
    top_score: Optional[float],
    second_score: Optional[float],
    hair_signal: bool,
    config: PairingConfig,
) -> Decision:
    """
    Apply the auto-pair decision rule to a front's top two candidates.

    With s1 the top score and g = s1 - s2 (s2 missing counts as -inf):
    - auto-accept when s1 >= auto_pair_score and g >= auto_pair_gap
    - auto-accept (hair) when the hair signal is present and
      s1 >= auto_pair_hair_score and g >= auto_pair_hair_gap
    - otherwise escalate if tie-break is enabled, else give up

    Examples (default thresholds 3.0/1.0, hair 2.4/0.8):
        decide(3.2, 1.9, False, cfg) → AUTO_ACCEPT
        decide(2.6, 2.3, False, cfg) → ESCALATE
        decide(2.5, 1.6, True, cfg)  → AUTO_ACCEPT_HAIR
    """
    if top_score is None:
        return Decision(outcome=DecisionOutcome.GIVE_UP, top_score=0.0, gap=0.0)

    gap = float("inf") if second_score is None else top_score - second_score

    # Compare on rounded values so 2.5 - 1.6 is not 0.8999999
    rounded_gap = round(gap, 6) if gap != float("inf") else gap
    rounded_top = round(top_score, 6)

    if rounded_top >= config.auto_pair_score and rounded_gap >= config.auto_pair_gap:
        outcome = DecisionOutcome.AUTO_ACCEPT
    elif (
        hair_signal
        and rounded_top >= config.auto_pair_hair_score
        and rounded_gap >= config.auto_pair_hair_gap
    ):
        outcome = DecisionOutcome.AUTO_ACCEPT_HAIR
    elif config.tiebreak_enabled:
        outcome = DecisionOutcome.ESCALATE
    else:
        outcome = DecisionOutcome.GIVE_UP

    return Decision(outcome=outcome, top_score=top_score, gap=gap, hair_signal=hair_signal)


def has_hair_signal(front: FeatureRow, top: Candidate) -> bool:
    """Hair/cosmetic front whose best back carries an ingredient list."""
    return bool(HAIR_CATEGORY.search(front.category_path)) and top.ingredient_cue


def score_extra(extra: FeatureRow, front: FeatureRow, back: FeatureRow) -> Optional[float]:
    """
    How well a side/detail shot fits an accepted product.

    Returns None when a known brand contradicts the product's brand.
    """
    product_brand = front.brand_norm or back.brand_norm
    score = 0.0

    if extra.brand_norm and product_brand:
        if extra.brand_norm != product_brand:
            return None
        score += 3.0

    if extra.packaging_hint and extra.packaging_hint in (front.packaging_hint, back.packaging_hint):
        score += 2.0
    if category_overlap(extra.category_tail, front.category_tail or back.category_tail):
        score += 1.0
    if extra.folder and extra.folder in (front.folder, back.folder):
        score += 1.0
    if colors_match(extra.color_key, front.color_key) or colors_match(extra.color_key, back.color_key):
        score += 1.0
    return score


class PairingService:
    """
    Pairing engine for one batch of classified images.

    Example:
        engine = PairingService(get_pairing_config(), judge=ClaudeTieBreakJudge())
        result = engine.run(insights)
    """

    def __init__(
        self,
        config: Optional[PairingConfig] = None,
        judge: Optional[TieBreakJudge] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_pairing_config()
        self.judge = judge
        self.clock = clock

    # ===================
    # RUN
    # ===================

    def run(self, insights: list[ImageInsight]) -> PairingResult:
        """
        Pair a batch of classified images.

        Args:
            insights: Classifier output (duplicate keys are ignored)

        Returns:
            PairingResult with pairs, singletons, metrics and the role
            correction audit trail
        """
        started = self.clock()
        config = self.config

        features, role_audit = self._prepare(insights)

        build = build_candidates(features, config, clock=self.clock)

        pairs: dict[str, Pair] = {}
        singletons: dict[str, Singleton] = {}
        used_backs: set[str] = set()

        for key in build.fronts_without_candidates:
            singletons[key] = Singleton(key=key, reason=REASON_NO_CANDIDATES)
        for key in build.unscored_fronts:
            singletons[key] = Singleton(key=key, reason=REASON_CANDIDATE_BUDGET)

        # Best-scoring fronts decide first so the outcome ignores input order
        order = sorted(
            build.by_front,
            key=lambda k: (-build.by_front[k][0].pre_score, k),
        )

        deferred = self._auto_pass(order, build.by_front, features, pairs, used_backs)
        escalations, judge_calls = self._escalation_pass(
            deferred, build.by_front, features, insights_by_key, pairs, singletons, used_backs
        )

        self._attach_extras(features, pairs, singletons)

        # Whatever is still unassigned is a back nobody claimed or a stray shot
        assigned = set(singletons)
        for pair in pairs.values():
            assigned.update(pair.image_keys())
        for key in sorted(features):
            if key in assigned:
                continue
            reason = REASON_UNPAIRED_BACK if features[key].role == ImageRole.BACK else REASON_NO_PRODUCT
            singletons[key] = Singleton(key=key, reason=reason)

        pair_list = sorted(pairs.values(), key=lambda p: p.front_key)
        singleton_list = sorted(singletons.values(), key=lambda s: s.key)

        metrics = build_metrics(
            features,
            pair_list,
            singleton_list,
            config,
            candidates=build.total_candidates,
            escalations=escalations,
            judge_calls=judge_calls,
            generic_backs=build.generic_backs,
            role_corrections=len(role_audit),
            candidate_budget_exceeded=build.budget_exceeded,
            duration_ms=int((self.clock() - started) * 1000),
        )
        log_metrics(metrics)

        return PairingResult(
            engine_version=ENGINE_VERSION,
            pairs=pair_list,
            singletons=singleton_list,
            metrics=metrics,
            role_corrections=role_audit,
        )

    def explain_front(self, insights: list[ImageInsight], front_key: str) -> list[Candidate]:
        """
        Every back scored against one front, unfiltered, best first.

        Roles are corrected the same way run() corrects them. Empty when the
        key is unknown or did not end up a front.
        """
        features, _ = self._prepare(insights)
        return candidate_scores_for_front(features, front_key, self.config)

    def _prepare(
        self, insights: list[ImageInsight]
    ) -> tuple[dict[str, FeatureRow], list[GroupRoleChange]]:
        insights_by_key: dict[str, ImageInsight] = {}
        for insight in insights:
            insights_by_key.setdefault(insight.key, insight)
        unique = list(insights_by_key.values())

        features = build_features(unique)
        features, role_audit = apply_role_corrections(unique, features)
        return features, role_audit

    # ===================
    # DECISION PASSES
    # ===================

    def _remaining(self, candidates: list[Candidate], used_backs: set[str]) -> list[Candidate]:
        return [c for c in candidates if c.back_key not in used_backs]

    def _decide_front(self, front: FeatureRow, remaining: list[Candidate]) -> Decision:
        top = remaining[0]
        second = remaining[1].pre_score if len(remaining) > 1 else None
        return decide(top.pre_score, second, has_hair_signal(front, top), self.config)

    def _auto_pass(
        self,
        order: list[str],
        by_front: dict[str, list[Candidate]],
        features: dict[str, FeatureRow],
        pairs: dict[str, Pair],
        used_backs: set[str],
    ) -> list[str]:
        """Accept every front that clears the thresholds; return the rest."""
        deferred: list[str] = []
        for front_key in order:
            remaining = self._remaining(by_front[front_key], used_backs)
            if not remaining:
                deferred.append(front_key)
                continue

            decision = self._decide_front(features[front_key], remaining)
            if decision.outcome in (DecisionOutcome.AUTO_ACCEPT, DecisionOutcome.AUTO_ACCEPT_HAIR):
                pair = self._make_pair(features, remaining[0], decision)
                pairs[front_key] = pair
                used_backs.add(pair.back_key)
                logger.info(
                    "auto_pair_accepted",
                    front_key=front_key,
                    back_key=pair.back_key,
                    score=round(decision.top_score, 2),
                    gap=round(decision.gap, 2) if decision.gap != float("inf") else None,
                    hair=decision.outcome == DecisionOutcome.AUTO_ACCEPT_HAIR
                )
            else:
                deferred.append(front_key)
        return deferred

    def _escalation_pass(
        self,
        deferred: list[str],
        by_front: dict[str, list[Candidate]],
        features: dict[str, FeatureRow],
        insights_by_key: dict[str, ImageInsight],
        pairs: dict[str, Pair],
        singletons: dict[str, Singleton],
        used_backs: set[str],
    ) -> tuple[int, int]:
        """
        Resolve fronts the auto pass left undecided.

        Candidate lists are re-read because earlier accepts may have
        claimed backs; a front can clear the thresholds now that a rival
        back is gone.

        Returns:
            (escalations, judge_calls). Escalations are fronts routed to the
            judge, including those turned away by the call budget.
        """
        config = self.config
        escalations = 0
        judge_calls = 0

        for front_key in deferred:
            remaining = self._remaining(by_front[front_key], used_backs)
            if not remaining:
                singletons[front_key] = Singleton(key=front_key, reason=REASON_CLAIMED)
                continue

            decision = self._decide_front(features[front_key], remaining)
            if decision.outcome in (DecisionOutcome.AUTO_ACCEPT, DecisionOutcome.AUTO_ACCEPT_HAIR):
                pair = self._make_pair(features, remaining[0], decision)
                pairs[front_key] = pair
                used_backs.add(pair.back_key)
                continue

            if decision.outcome == DecisionOutcome.GIVE_UP or self.judge is None:
                singletons[front_key] = Singleton(key=front_key, reason=REASON_TIEBREAK_DISABLED)
                continue

            escalations += 1
            if judge_calls >= config.tiebreak_max_calls:
                singletons[front_key] = Singleton(key=front_key, reason=REASON_TIEBREAK_BUDGET)
                logger.warning(
                    "tiebreak_budget_exhausted",
                    front_key=front_key,
                    max_calls=config.tiebreak_max_calls
                )
                continue

            front = insights_by_key[front_key]
            backs = [insights_by_key[c.back_key] for c in remaining]
            texts = truncate_texts([front, *backs], config.tiebreak_text_chars)

            logger.info(
                "tiebreak_escalated",
                front_key=front_key,
                candidates=len(backs),
                top_score=round(decision.top_score, 2)
            )
            judge_calls += 1
            try:
                selected = self.judge.resolve(front, backs, texts)
            except TieBreakError as e:
                logger.error("tiebreak_failed", front_key=front_key, error=e.message)
                singletons[front_key] = Singleton(key=front_key, reason=REASON_TIEBREAK_FAILED)
                continue

            if selected is None:
                singletons[front_key] = Singleton(
                    key=front_key, reason=REASON_JUDGE_NO_MATCH, needs_review=False
                )
                continue

            chosen = remaining[selected]
            pair = self._make_pair(features, chosen, decision, source=PairSource.TIEBREAK)
            pairs[front_key] = pair
            used_backs.add(pair.back_key)

        return escalations, judge_calls

    def _make_pair(
        self,
        features: dict[str, FeatureRow],
        candidate: Candidate,
        decision: Decision,
        source: Optional[PairSource] = None,
    ) -> Pair:
        front = features[candidate.front_key]
        back = features[candidate.back_key]

        if source is None:
            source = (
                PairSource.AUTO_HAIR
                if decision.outcome == DecisionOutcome.AUTO_ACCEPT_HAIR
                else PairSource.AUTO
            )
        confidence = {
            PairSource.AUTO: CONFIDENCE_AUTO,
            PairSource.AUTO_HAIR: CONFIDENCE_AUTO_HAIR,
            PairSource.TIEBREAK: CONFIDENCE_TIEBREAK,
        }[source]

        evidence = list(candidate.evidence)
        if candidate.brand_flag == BrandFlag.DISTRIBUTOR_RESCUE and "distributor rescue" not in evidence:
            evidence.append("distributor rescue")
        if source == PairSource.TIEBREAK:
            evidence.append("resolved by tie-break")
        elif source == PairSource.AUTO_HAIR:
            evidence.append("hair/cosmetic threshold")

        return Pair(
            front_key=front.key,
            back_key=back.key,
            confidence=confidence,
            match_score=round(candidate.pre_score, 2),
            brand=front.brand or back.brand,
            product=front.product or back.product,
            variant=front.variant or back.variant,
            source=source,
            evidence=evidence,
        )

    # ===================
    # EXTRAS
    # ===================

    def _attach_extras(
        self,
        features: dict[str, FeatureRow],
        pairs: dict[str, Pair],
        singletons: dict[str, Singleton],
    ) -> None:
        """
        Greedily attach side/other shots to accepted pairs.

        Highest scores attach first. A shot that qualifies for some pair
        but finds every qualifying pair full becomes an "extras cap
        reached" singleton.
        """
        config = self.config
        extras = sorted(
            key for key, f in features.items()
            if f.role in (ImageRole.SIDE, ImageRole.OTHER) and key not in singletons
        )
        if not extras or not pairs:
            return

        scored: list[tuple[float, str, str]] = []
        for extra_key in extras:
            extra = features[extra_key]
            for front_key, pair in pairs.items():
                score = score_extra(extra, features[front_key], features[pair.back_key])
                if score is not None and score >= config.min_extra_score:
                    scored.append((score, extra_key, front_key))

        scored.sort(key=lambda item: (-item[0], item[1], item[2]))

        attached: set[str] = set()
        capped: set[str] = set()
        for score, extra_key, front_key in scored:
            if extra_key in attached:
                continue
            pair = pairs[front_key]
            if len(pair.extras) >= config.max_extras_per_product:
                capped.add(extra_key)
                continue
            pair.extras.append(extra_key)
            attached.add(extra_key)
            logger.debug(
                "extra_attached",
                extra_key=extra_key,
                front_key=front_key,
                score=score
            )

        for extra_key in sorted(capped - attached):
            singletons[extra_key] = Singleton(key=extra_key, reason=REASON_EXTRAS_CAP)

