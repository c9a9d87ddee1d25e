"""
Role-confidence corrector.

Re-scores the classifier's front/back/side call for each image using
text-density and keyword heuristics, then cross-checks every provisional
product group so it ends with at most one front. A back is never promoted
to front.
"""

from collections import defaultdict
from typing import Optional

import structlog

from models.image_insight import FeatureRow, ImageInsight, ImageRole
from models.pairing import GroupRoleChange, GroupRoleCorrection, RoleCorrection

logger = structlog.get_logger(__name__)

# =============================================================================
# HEURISTIC CONSTANTS
# =============================================================================

FRONT_TRIGGERS = ("brand logo", "hero text", "large centered")
BACK_TRIGGERS = ("supplement facts", "nutrition facts", "barcode", "directions", "ingredients")
SYMMETRY_CUES = ("centered", "symmetrical")
ROTATION_CUES = ("rotated", "angled")
FULL_WRAP_CUES = ("full-wrap", "360")
PLAIN_BACKGROUNDS = {"white", "black"}

FRONT_TEXT_MIN = 20
FRONT_TEXT_MAX = 200
FRONT_TEXT_EXCESSIVE = 400
BACK_TEXT_DENSE = 200
BACK_TEXT_SPARSE = 30

CONTRADICTION_PENALTY = 0.30
LOW_CONFIDENCE_FLOOR = 0.4
FLIP_BELOW = 0.5


def _has_cue(haystacks: list[str], cues: tuple[str, ...]) -> bool:
    return any(cue in hay for hay in haystacks for cue in cues)


def compute_role_confidence(insight: ImageInsight) -> RoleCorrection:
    """
    Adjust the classifier's role confidence for one image.

    Starts from |role_score| and applies text-length, trigger-keyword,
    background and composition adjustments. Contradictory triggers
    subtract a fixed penalty and raise a flag; a flagged image whose
    confidence ends below 0.5 has its role flipped front↔back.

    Args:
        insight: Classifier output

    Returns:
        RoleCorrection with adjusted role, confidence in [0, 1] and flags
    """
    role = insight.role
    confidence = abs(insight.role_score)
    flags: list[str] = []

    text_length = len(insight.text_extracted)
    description = insight.visual_description.lower()
    # Triggers may come from the classifier's evidence list or the description
    haystacks = [t.lower() for t in insight.evidence_triggers] + [description]

    # Text density
    if role == ImageRole.FRONT:
        if FRONT_TEXT_MIN < text_length < FRONT_TEXT_MAX:
            confidence += 0.10
        if text_length > FRONT_TEXT_EXCESSIVE:
            confidence -= 0.15
            flags.append("excessive_text_for_front")
    elif role == ImageRole.BACK:
        if text_length > BACK_TEXT_DENSE:
            confidence += 0.15
        if text_length < BACK_TEXT_SPARSE:
            confidence -= 0.10
            flags.append("low_text_for_back")

    # Trigger keywords
    front_cues = _has_cue(haystacks, FRONT_TRIGGERS)
    back_cues = _has_cue(haystacks, BACK_TRIGGERS)

    if role == ImageRole.FRONT and front_cues:
        confidence += 0.15
    if role == ImageRole.BACK and back_cues:
        confidence += 0.20

    if role == ImageRole.BACK and front_cues and not back_cues:
        flags.append("front_indicators_on_back_label")
        confidence -= CONTRADICTION_PENALTY
    if role == ImageRole.FRONT and back_cues and not front_cues:
        flags.append("back_indicators_on_front_label")
        confidence -= CONTRADICTION_PENALTY

    # Background and composition
    if role == ImageRole.FRONT and insight.dominant_color.strip().lower() in PLAIN_BACKGROUNDS:
        confidence += 0.05

    if any(cue in description for cue in FULL_WRAP_CUES):
        flags.append("full_wrap_label_detected")

    if role == ImageRole.FRONT and any(cue in description for cue in SYMMETRY_CUES):
        confidence += 0.10
    if role == ImageRole.FRONT and any(cue in description for cue in ROTATION_CUES):
        confidence -= 0.15
        flags.append("rotated_image_marked_as_front")

    confidence = max(0.0, min(1.0, confidence))

    if confidence < LOW_CONFIDENCE_FLOOR:
        flags.append("low_confidence")

    adjusted = role
    if "back_indicators_on_front_label" in flags and confidence < FLIP_BELOW:
        adjusted = ImageRole.BACK
        flags.append("role_corrected_front_to_back")
    elif "front_indicators_on_back_label" in flags and confidence < FLIP_BELOW:
        adjusted = ImageRole.FRONT
        flags.append("role_corrected_back_to_front")

    if adjusted != role:
        logger.info(
            "role_flipped",
            image_key=insight.key,
            from_role=role.value,
            to_role=adjusted.value,
            confidence=round(confidence, 2)
        )

    return RoleCorrection(
        key=insight.key,
        original_role=role,
        role=adjusted,
        confidence=round(confidence, 4),
        flags=flags,
    )


def compute_role_confidence_batch(insights: list[ImageInsight]) -> dict[str, RoleCorrection]:
    """Per-image corrections keyed by image key."""
    return {insight.key: compute_role_confidence(insight) for insight in insights}


def cross_check_group_roles(
    group_id: str,
    image_keys: list[str],
    corrections: dict[str, RoleCorrection],
) -> GroupRoleCorrection:
    """
    Make one provisional product group consistent.

    - More than one front: keep the highest-confidence front, demote the
      rest to side.
    - No front: promote the highest-confidence side/other image. Backs are
      never promoted; a group of only backs is left alone.

    Ties in confidence are broken by image key so the outcome does not
    depend on input order.

    Args:
        group_id: Provisional product identity
        image_keys: Images in the group
        corrections: Per-image results from compute_role_confidence

    Returns:
        GroupRoleCorrection with at most one change per image
    """
    members = [(key, corrections[key]) for key in image_keys if key in corrections]
    by_confidence = sorted(members, key=lambda item: (-item[1].confidence, item[0]))

    fronts = [(k, c) for k, c in by_confidence if c.role == ImageRole.FRONT]
    changes: list[GroupRoleChange] = []

    if len(fronts) > 1:
        best_key, best = fronts[0]
        for key, weaker in fronts[1:]:
            changes.append(GroupRoleChange(
                image_key=key,
                original_role=ImageRole.FRONT,
                corrected_role=ImageRole.SIDE,
                reason=(
                    f"Multiple fronts detected, keeping highest confidence "
                    f"({best.confidence:.2f} vs {weaker.confidence:.2f})"
                ),
            ))

    elif not fronts:
        promotable = [
            (k, c) for k, c in by_confidence
            if c.role in (ImageRole.SIDE, ImageRole.OTHER)
        ]
        if promotable:
            key, candidate = promotable[0]
            changes.append(GroupRoleChange(
                image_key=key,
                original_role=candidate.role,
                corrected_role=ImageRole.FRONT,
                reason=(
                    f"No front detected in group, promoting best candidate "
                    f"(confidence: {candidate.confidence:.2f})"
                ),
            ))

    if changes:
        logger.info(
            "group_roles_corrected",
            group_id=group_id,
            changes=[(c.image_key, c.corrected_role.value) for c in changes]
        )

    return GroupRoleCorrection(group_id=group_id, corrections=changes)


def _extends(group_id: str, other_id: str) -> bool:
    """other_id names the same brand and product and fills in what group_id leaves blank."""
    if group_id == other_id or other_id.startswith("image:"):
        return False
    brand, product, variant, size = group_id.split("|")
    o_brand, o_product, o_variant, o_size = other_id.split("|")
    return (
        (brand, product) == (o_brand, o_product)
        and variant in ("", o_variant)
        and size in ("", o_size)
    )


def group_images(features: dict[str, FeatureRow]) -> dict[str, list[str]]:
    """
    Bucket images by provisional product group.

    A group missing its variant or size (a side panel that does not print
    them) joins the one most complete group of the same brand and product
    that agrees on every field it does have. With several such groups it
    stays on its own.
    """
    exact: dict[str, list[str]] = defaultdict(list)
    for key in sorted(features):
        exact[features[key].provisional_group].append(key)

    groups: dict[str, list[str]] = defaultdict(list)
    for group_id in sorted(exact):
        target = group_id
        if not group_id.startswith("image:"):
            matches = [g for g in exact if _extends(group_id, g)]
            complete = [m for m in matches if not any(_extends(m, g) for g in matches)]
            if len(complete) == 1:
                target = complete[0]
        groups[target].extend(exact[group_id])

    return {group_id: sorted(keys) for group_id, keys in groups.items()}


def apply_role_corrections(
    insights: list[ImageInsight],
    features: dict[str, FeatureRow],
    corrections: Optional[dict[str, RoleCorrection]] = None,
) -> tuple[dict[str, FeatureRow], list[GroupRoleChange]]:
    """
    Run both correction passes and return features with effective roles.

    Args:
        insights: Classifier output for the batch
        features: Normalized features keyed by image key
        corrections: Precomputed per-image corrections (computed if None)

    Returns:
        (features with corrected roles, audit trail of every role change)
    """
    corrections = corrections or compute_role_confidence_batch(insights)
    audit: list[GroupRoleChange] = []

    for key, correction in corrections.items():
        if correction.corrected:
            audit.append(GroupRoleChange(
                image_key=key,
                original_role=correction.original_role,
                corrected_role=correction.role,
                reason=", ".join(correction.flags),
            ))

    groups = group_images(features)

    final_roles = {key: c.role for key, c in corrections.items()}
    for group_id in sorted(groups):
        result = cross_check_group_roles(group_id, groups[group_id], corrections)
        for change in result.corrections:
            final_roles[change.image_key] = change.corrected_role
            audit.append(change)

    corrected: dict[str, FeatureRow] = {}
    for key, feature in features.items():
        correction = corrections.get(key)
        corrected[key] = feature.model_copy(update={
            "role": final_roles.get(key, feature.role),
            "role_confidence": correction.confidence if correction else 0.0,
        })

    logger.info(
        "role_corrections_applied",
        images=len(features),
        groups=len(groups),
        changes=len(audit)
    )
    return corrected, audit
