"""
Unit tests for the role-confidence corrector.

Run: pytest tests/unit/test_role_confidence_service.py -v
"""

from models.image_insight import ImageRole
from models.pairing import RoleCorrection
from services.feature_service import build_features
from services.role_confidence_service import (
    apply_role_corrections,
    compute_role_confidence,
    cross_check_group_roles,
    group_images,
)
from tests.factories import BACK_LABEL_TEXT, InsightFactory


def _correction(key: str, role: ImageRole, confidence: float) -> RoleCorrection:
    return RoleCorrection(key=key, original_role=role, role=role, confidence=confidence)


class TestComputeRoleConfidence:
    """Tests for compute_role_confidence()"""

    def test_clean_front_is_confident(self):
        """Short hero text, logo cue, centered on plain background."""
        insight = InsightFactory.front()

        result = compute_role_confidence(insight)

        assert result.role == ImageRole.FRONT
        assert result.confidence == 1.0
        assert result.flags == []

    def test_dense_back_is_confident(self):
        insight = InsightFactory.back()

        result = compute_role_confidence(insight)

        assert result.role == ImageRole.BACK
        assert result.confidence == 1.0
        assert not result.corrected

    def test_front_with_back_cues_is_flipped(self):
        """Back-label cues on a weak 'front' flip it to back."""
        insight = InsightFactory.front(
            role_score=0.3,
            text_extracted="x" * 300,
            visual_description="amber bottle",
            dominant_color="amber",
            evidence_triggers=["ingredients", "barcode"],
        )

        result = compute_role_confidence(insight)

        assert result.role == ImageRole.BACK
        assert result.original_role == ImageRole.FRONT
        assert result.corrected
        assert "back_indicators_on_front_label" in result.flags
        assert "role_corrected_front_to_back" in result.flags
        assert "low_confidence" in result.flags

    def test_strong_front_with_back_cues_is_not_flipped(self):
        """The contradiction penalty alone does not flip a confident front."""
        insight = InsightFactory.front(
            role_score=0.95,
            visual_description="pouch",
            evidence_triggers=["barcode"],
        )

        result = compute_role_confidence(insight)

        assert result.role == ImageRole.FRONT
        assert "back_indicators_on_front_label" in result.flags

    def test_sparse_back_is_penalized(self):
        insight = InsightFactory.back(text_extracted="", evidence_triggers=[], visual_description="pouch")

        result = compute_role_confidence(insight)

        assert result.confidence == 0.75
        assert "low_text_for_back" in result.flags

    def test_rotated_front_is_penalized(self):
        insight = InsightFactory.front(visual_description="rotated pouch", dominant_color="red")

        result = compute_role_confidence(insight)

        assert "rotated_image_marked_as_front" in result.flags

    def test_confidence_is_clamped(self):
        """Negative role scores use their magnitude; result stays in [0, 1]."""
        insight = InsightFactory.back(role_score=-2.0)

        result = compute_role_confidence(insight)

        assert 0.0 <= result.confidence <= 1.0


class TestCrossCheckGroupRoles:
    """Tests for cross_check_group_roles()"""

    def test_two_fronts_keeps_most_confident(self):
        """Two fronts at 0.8 and 0.5: the 0.5 one becomes a side."""
        corrections = {
            "a": _correction("a", ImageRole.FRONT, 0.8),
            "b": _correction("b", ImageRole.FRONT, 0.5),
        }

        result = cross_check_group_roles("g1", ["a", "b"], corrections)

        assert len(result.corrections) == 1
        change = result.corrections[0]
        assert change.image_key == "b"
        assert change.original_role == ImageRole.FRONT
        assert change.corrected_role == ImageRole.SIDE
        assert "0.80 vs 0.50" in change.reason

    def test_equal_confidence_tie_broken_by_key(self):
        corrections = {
            "b": _correction("b", ImageRole.FRONT, 0.7),
            "a": _correction("a", ImageRole.FRONT, 0.7),
        }

        result = cross_check_group_roles("g1", ["b", "a"], corrections)

        assert [c.image_key for c in result.corrections] == ["b"]

    def test_backs_are_never_promoted(self):
        """A group holding only backs is left alone."""
        corrections = {
            "a": _correction("a", ImageRole.BACK, 0.9),
            "b": _correction("b", ImageRole.BACK, 0.4),
        }

        result = cross_check_group_roles("g1", ["a", "b"], corrections)

        assert result.corrections == []

    def test_side_promoted_when_no_front(self):
        corrections = {
            "back": _correction("back", ImageRole.BACK, 0.95),
            "side": _correction("side", ImageRole.SIDE, 0.6),
            "other": _correction("other", ImageRole.OTHER, 0.3),
        }

        result = cross_check_group_roles("g1", ["back", "side", "other"], corrections)

        assert len(result.corrections) == 1
        assert result.corrections[0].image_key == "side"
        assert result.corrections[0].corrected_role == ImageRole.FRONT

    def test_side_promoted_without_any_back(self):
        """A group of loose shots still gets its best one as front."""
        corrections = {
            "side": _correction("side", ImageRole.SIDE, 0.6),
            "other": _correction("other", ImageRole.OTHER, 0.3),
        }

        result = cross_check_group_roles("g1", ["side", "other"], corrections)

        assert [(c.image_key, c.corrected_role) for c in result.corrections] == [
            ("side", ImageRole.FRONT)
        ]

    def test_single_front_group_unchanged(self):
        corrections = {
            "f": _correction("f", ImageRole.FRONT, 0.9),
            "b": _correction("b", ImageRole.BACK, 0.9),
        }

        result = cross_check_group_roles("g1", ["f", "b"], corrections)

        assert result.corrections == []


class TestGroupImages:
    """Tests for group_images()"""

    def test_sizeless_shot_joins_its_product(self):
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side(size="")
        features = build_features([front, back, side])

        groups = group_images(features)

        assert list(groups.values()) == [[front.key, back.key, side.key]]

    def test_sizeless_shot_with_two_sized_products_stays_apart(self):
        small_front = InsightFactory.front(size="1 lb")
        large_front = InsightFactory.front(size="5 lb")
        side = InsightFactory.side(size="")
        features = build_features([small_front, large_front, side])

        groups = group_images(features)

        assert len(groups) == 3
        assert [side.key] in groups.values()

    def test_variantless_shot_joins_its_product(self):
        front, back = InsightFactory.product_pair()
        side = InsightFactory.side(variant="", size="")
        features = build_features([front, back, side])

        groups = group_images(features)

        assert list(groups.values()) == [[front.key, back.key, side.key]]

    def test_variantless_shot_with_two_flavors_stays_apart(self):
        chocolate = InsightFactory.front(variant="Chocolate")
        vanilla = InsightFactory.front(variant="Vanilla")
        side = InsightFactory.side(variant="")
        features = build_features([chocolate, vanilla, side])

        groups = group_images(features)

        assert sorted(groups.values()) == sorted([[chocolate.key], [vanilla.key], [side.key]])

    def test_two_sizes_are_two_products(self):
        small_front = InsightFactory.front(size="1 lb")
        large_front = InsightFactory.front(size="5 lb")
        insights = [small_front, large_front]

        features, audit = apply_role_corrections(insights, build_features(insights))

        assert features[small_front.key].role == ImageRole.FRONT
        assert features[large_front.key].role == ImageRole.FRONT
        assert audit == []


class TestApplyRoleCorrections:
    """Tests for apply_role_corrections()"""

    def test_duplicate_front_demoted_in_features(self):
        """Two fronts of the same product: one ends up a side, audited."""
        front_a = InsightFactory.front()
        front_b = InsightFactory.front(role_score=0.1, dominant_color="red", visual_description="pouch")
        back = InsightFactory.back()
        insights = [front_a, front_b, back]

        features, audit = apply_role_corrections(insights, build_features(insights))

        assert features[front_a.key].role == ImageRole.FRONT
        assert features[front_b.key].role == ImageRole.SIDE
        assert features[front_b.key].original_role == ImageRole.FRONT
        assert features[back.key].role == ImageRole.BACK
        assert [c.image_key for c in audit] == [front_b.key]

    def test_flipped_image_is_audited(self):
        front = InsightFactory.front(
            role_score=0.2,
            brand="Other Brand",
            text_extracted=BACK_LABEL_TEXT,
            visual_description="amber bottle",
            dominant_color="amber",
            evidence_triggers=["ingredients"],
        )
        insights = [front]

        features, audit = apply_role_corrections(insights, build_features(insights))

        assert features[front.key].role == ImageRole.BACK
        assert len(audit) == 1
        assert audit[0].corrected_role == ImageRole.BACK
        assert "back_indicators_on_front_label" in audit[0].reason

    def test_role_confidence_copied_to_features(self):
        back = InsightFactory.back()

        features, _ = apply_role_corrections([back], build_features([back]))

        assert features[back.key].role_confidence == 1.0
