"""
Unit tests for the pairing engine.

Run: pytest tests/unit/test_pairing_service.py -v
"""

import pytest

from config.pairing import PairingConfig
from exceptions import TieBreakError
from models.image_insight import ImageRole
from models.pairing import Candidate, DecisionOutcome, PairSource
from services.feature_service import build_feature_row
from services.pairing_service import (
    CONFIDENCE_AUTO,
    CONFIDENCE_TIEBREAK,
    PairingService,
    decide,
    has_hair_signal,
    score_extra,
)
from tests.conftest import FakeJudge
from tests.factories import HAIR_BACK_TEXT, InsightFactory


def _all_keys(result) -> list[str]:
    keys = [s.key for s in result.singletons]
    for pair in result.pairs:
        keys.extend(pair.image_keys())
    return keys


def _olaplex_pair():
    overrides = {
        "brand": "Olaplex",
        "product": "No. 3 Hair Perfector",
        "variant": "",
        "size": "3.3 fl oz",
        "category_path": "Beauty > Hair Care > Treatments",
        "dominant_color": "white",
    }
    front = InsightFactory.front(visual_description="white plastic tube, centered", **overrides)
    back = InsightFactory.back(
        text_extracted=HAIR_BACK_TEXT,
        visual_description="white plastic tube back",
        evidence_triggers=["ingredients"],
        **overrides
    )
    return front, back


class TestDecide:
    """Tests for decide()"""

    @pytest.fixture
    def config(self) -> PairingConfig:
        return PairingConfig()

    def test_clear_winner_auto_accepts(self, config):
        """3.2 vs 1.9 clears score 3.0 and gap 1.0."""
        decision = decide(3.2, 1.9, False, config)

        assert decision.outcome == DecisionOutcome.AUTO_ACCEPT

    def test_close_race_escalates(self, config):
        """2.6 vs 2.3 clears neither threshold."""
        decision = decide(2.6, 2.3, False, config)

        assert decision.outcome == DecisionOutcome.ESCALATE

    def test_hair_signal_relaxes_thresholds(self, config):
        """2.5 vs 1.6 with the hair signal: score 2.4 and gap 0.8 are enough."""
        decision = decide(2.5, 1.6, True, config)

        assert decision.outcome == DecisionOutcome.AUTO_ACCEPT_HAIR
        assert decision.hair_signal

    def test_same_scores_without_hair_signal_escalate(self, config):
        decision = decide(2.5, 1.6, False, config)

        assert decision.outcome == DecisionOutcome.ESCALATE

    def test_single_candidate_has_infinite_gap(self, config):
        decision = decide(3.5, None, False, config)

        assert decision.outcome == DecisionOutcome.AUTO_ACCEPT
        assert decision.gap == float("inf")

    def test_gap_exactly_at_threshold(self, config):
        decision = decide(4.0, 3.0, False, config)

        assert decision.outcome == DecisionOutcome.AUTO_ACCEPT

    def test_tiebreak_disabled_gives_up(self):
        config = PairingConfig(tiebreak_enabled=False)

        decision = decide(2.6, 2.3, False, config)

        assert decision.outcome == DecisionOutcome.GIVE_UP

    def test_no_candidate_gives_up(self, config):
        assert decide(None, None, False, config).outcome == DecisionOutcome.GIVE_UP


class TestHairSignal:
    """Tests for has_hair_signal()"""

    def _candidate(self, ingredient_cue: bool) -> Candidate:
        return Candidate(front_key="f", back_key="b", pre_score=2.5, ingredient_cue=ingredient_cue)

    def test_hair_front_with_ingredient_back(self):
        front = build_feature_row(InsightFactory.front(category_path="Beauty > Hair Care"))

        assert has_hair_signal(front, self._candidate(True))
        assert not has_hair_signal(front, self._candidate(False))

    def test_supplement_front_never_has_signal(self):
        front = build_feature_row(InsightFactory.front())

        assert not has_hair_signal(front, self._candidate(True))


class TestScoreExtra:
    """Tests for score_extra()"""

    def test_matching_side_scores_high(self):
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side()

        score = score_extra(
            build_feature_row(side), build_feature_row(front), build_feature_row(back)
        )

        assert score == 8.0

    def test_conflicting_brand_is_rejected(self):
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side(brand="Olaplex")

        score = score_extra(
            build_feature_row(side), build_feature_row(front), build_feature_row(back)
        )

        assert score is None


class TestPairingServiceRun:
    """Tests for PairingService.run()"""

    @pytest.fixture
    def config(self) -> PairingConfig:
        return PairingConfig()

    def test_single_product_auto_pairs(self, config):
        front, back = InsightFactory.product_pair()

        result = PairingService(config, judge=FakeJudge()).run([front, back])

        assert len(result.pairs) == 1
        pair = result.pairs[0]
        assert pair.front_key == front.key
        assert pair.back_key == back.key
        assert pair.source == PairSource.AUTO
        assert pair.confidence == CONFIDENCE_AUTO
        assert pair.brand == "Jocko Fuel"
        assert "brand match" in pair.evidence
        assert result.singletons == []
        assert result.metrics.pair_rate == 1.0

    def test_every_image_assigned_exactly_once(self, config):
        """Mixed batch: two products, a side shot, a lone front and a stray back."""
        jocko_front, jocko_back = InsightFactory.product_pair()
        jocko_side = InsightFactory.side()
        hair_front, hair_back = _olaplex_pair()
        lone_front = InsightFactory.front(
            brand="Thorne",
            product="Magnesium Bisglycinate",
            variant="",
            size="",
            category_path="Health > Vitamins & Supplements > Minerals",
            visual_description="brown glass bottle, centered",
            dominant_color="brown",
        )
        stray_back = InsightFactory.back(
            brand="Acme",
            product="Dish Soap",
            variant="",
            size="",
            category_path="Home > Cleaning",
            visual_description="green spray bottle",
            dominant_color="green",
            text_extracted="Caution: keep out of reach of children",
            evidence_triggers=["directions"],
        )
        insights = [jocko_front, jocko_back, jocko_side, hair_front, hair_back, lone_front, stray_back]

        result = PairingService(config, judge=FakeJudge()).run(insights)

        keys = _all_keys(result)
        assert sorted(keys) == sorted(i.key for i in insights)
        assert len(keys) == len(set(keys))

        assert len(result.pairs) == 2
        jocko_pair = next(p for p in result.pairs if p.front_key == jocko_front.key)
        assert jocko_pair.extras == [jocko_side.key]

        reasons = {s.key: s.reason for s in result.singletons}
        assert reasons == {
            lone_front.key: "no candidates",
            stray_back.key: "unpaired back",
        }
        assert result.metrics.totals.images == 7
        assert result.metrics.totals.extras == 1

    def test_result_does_not_depend_on_input_order(self, config):
        jocko_front, jocko_back = InsightFactory.product_pair()
        hair_front, hair_back = _olaplex_pair()
        insights = [jocko_front, jocko_back, hair_front, hair_back]

        forward = PairingService(config, judge=FakeJudge()).run(insights)
        backward = PairingService(config, judge=FakeJudge()).run(list(reversed(insights)))

        assert [p.model_dump() for p in forward.pairs] == [p.model_dump() for p in backward.pairs]
        assert forward.singletons == backward.singletons

    def test_ambiguous_front_resolved_by_judge(self, config):
        """Two identical backs tie; the judge picks the second."""
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]
        judge = FakeJudge(answer=1)

        result = PairingService(config, judge=judge).run([front, *backs])

        assert len(judge.calls) == 1
        _, candidate_keys, _ = judge.calls[0]
        assert candidate_keys == [backs[0].key, backs[1].key]

        pair = result.pairs[0]
        assert pair.back_key == backs[1].key
        assert pair.source == PairSource.TIEBREAK
        assert pair.confidence == CONFIDENCE_TIEBREAK
        assert "resolved by tie-break" in pair.evidence

        assert [(s.key, s.reason) for s in result.singletons] == [(backs[0].key, "unpaired back")]
        assert result.metrics.totals.escalations == 1
        assert result.metrics.totals.judge_calls == 1
        assert result.metrics.judge_rate == 1.0

    def test_judge_texts_are_truncated(self):
        config = PairingConfig(tiebreak_text_chars=50)
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]
        judge = FakeJudge(answer=0)

        PairingService(config, judge=judge).run([front, *backs])

        _, _, texts = judge.calls[0]
        assert set(texts) == {front.key, backs[0].key, backs[1].key}
        assert all(len(t) <= 50 for t in texts.values())

    def test_judge_no_match_does_not_need_review(self, config):
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]

        result = PairingService(config, judge=FakeJudge(answer=None)).run([front, *backs])

        assert result.pairs == []
        front_singleton = next(s for s in result.singletons if s.key == front.key)
        assert front_singleton.reason == "tiebreak: no match"
        assert front_singleton.needs_review is False
        back_reasons = {s.reason for s in result.singletons if s.key != front.key}
        assert back_reasons == {"unpaired back"}

    def test_judge_failure_leaves_front_unpaired(self, config):
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]
        judge = FakeJudge(answer=TieBreakError(front.key, "model unavailable", attempts=2))

        result = PairingService(config, judge=judge).run([front, *backs])

        front_singleton = next(s for s in result.singletons if s.key == front.key)
        assert front_singleton.reason == "tiebreak failed"
        assert front_singleton.needs_review

    def test_tiebreak_disabled(self):
        config = PairingConfig(tiebreak_enabled=False)
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]
        judge = FakeJudge(answer=0)

        result = PairingService(config, judge=judge).run([front, *backs])

        assert judge.calls == []
        front_singleton = next(s for s in result.singletons if s.key == front.key)
        assert front_singleton.reason == "tiebreak disabled"
        assert result.metrics.totals.escalations == 0
        assert result.metrics.judge_rate == 0.0
        assert result.metrics.slo.judge_rate_ok

    def test_no_judge_configured(self, config):
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]

        result = PairingService(config, judge=None).run([front, *backs])

        front_singleton = next(s for s in result.singletons if s.key == front.key)
        assert front_singleton.reason == "tiebreak disabled"
        assert result.metrics.judge_rate == 0.0

    def test_judge_budget_exhausted(self):
        config = PairingConfig(tiebreak_max_calls=0)
        front = InsightFactory.front()
        backs = [InsightFactory.back(), InsightFactory.back()]
        judge = FakeJudge(answer=0)

        result = PairingService(config, judge=judge).run([front, *backs])

        assert judge.calls == []
        front_singleton = next(s for s in result.singletons if s.key == front.key)
        assert front_singleton.reason == "tiebreak budget exhausted"
        assert result.metrics.totals.escalations == 1
        assert result.metrics.totals.judge_calls == 0

    def test_back_claimed_by_stronger_front(self, config):
        """The better-matching front takes the only back; the other is reported."""
        chocolate = InsightFactory.front()
        vanilla = InsightFactory.front(variant="Vanilla")
        back = InsightFactory.back()

        result = PairingService(config, judge=FakeJudge()).run([vanilla, chocolate, back])

        assert [(p.front_key, p.back_key) for p in result.pairs] == [(chocolate.key, back.key)]
        assert [(s.key, s.reason) for s in result.singletons] == [
            (vanilla.key, "candidates claimed by other fronts")
        ]

    def test_extras_cap(self):
        config = PairingConfig(max_extras_per_product=1)
        front, back = InsightFactory.product_pair()
        sides = [InsightFactory.side(), InsightFactory.side()]

        result = PairingService(config, judge=FakeJudge()).run([front, back, *sides])

        assert result.pairs[0].extras == [sides[0].key]
        assert [(s.key, s.reason) for s in result.singletons] == [(sides[1].key, "extras cap reached")]

    def test_side_without_size_attaches_as_extra(self, config):
        """A side panel that does not print the net size still joins its product."""
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side(size="")

        result = PairingService(config, judge=FakeJudge()).run([front, back, side])

        assert [(p.front_key, p.back_key, p.extras) for p in result.pairs] == [
            (front.key, back.key, [side.key])
        ]
        assert result.singletons == []
        assert result.role_corrections == []

    def test_side_without_variant_is_not_promoted(self, config):
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side(variant="")

        result = PairingService(config, judge=FakeJudge()).run([front, back, side])

        assert result.pairs[0].extras == [side.key]
        assert result.role_corrections == []

    def test_role_corrections_reported(self, config):
        """A duplicate front of the same product becomes an extra shot."""
        front, back = InsightFactory.product_pair()
        weak_front = InsightFactory.front(role_score=0.1, dominant_color="red", visual_description="pouch")

        result = PairingService(config, judge=FakeJudge()).run([front, back, weak_front])

        assert [c.image_key for c in result.role_corrections] == [weak_front.key]
        assert result.role_corrections[0].corrected_role == ImageRole.SIDE
        assert result.pairs[0].extras == [weak_front.key]
        assert result.metrics.role_corrections == 1

    def test_duplicate_keys_counted_once(self, config):
        front, back = InsightFactory.product_pair()

        result = PairingService(config, judge=FakeJudge()).run([front, back, front])

        assert result.metrics.totals.images == 2
        assert len(result.pairs) == 1

    def test_empty_batch(self, config):
        result = PairingService(config, judge=FakeJudge()).run([])

        assert result.pairs == []
        assert result.singletons == []
        assert result.metrics.totals.images == 0


class TestExplainFront:
    """Tests for PairingService.explain_front()"""

    def test_lists_every_back_best_first(self):
        front, back = InsightFactory.product_pair()
        other_back = InsightFactory.back(
            brand="Olaplex",
            product="Bond Oil",
            variant="",
            size="",
            category_path="Beauty > Hair Care",
            visual_description="white tube",
            dominant_color="white",
            text_extracted="",
        )
        service = PairingService(PairingConfig(), judge=None)

        scores = service.explain_front([front, back, other_back], front.key)

        assert [c.back_key for c in scores] == [back.key, other_back.key]
        assert scores[0].pre_score > scores[1].pre_score

    def test_demoted_front_has_no_scores(self):
        """Uses the corrected role, so a duplicate front demoted to a side is not explained."""
        front, back = InsightFactory.product_pair()
        weak_front = InsightFactory.front(role_score=0.1, dominant_color="red", visual_description="pouch")
        service = PairingService(PairingConfig(), judge=None)

        assert service.explain_front([front, back, weak_front], weak_front.key) == []
        assert service.explain_front([front, back], "missing.jpg") == []
