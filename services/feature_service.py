"""
Feature normalizer.

Derives comparable fields from classifier output: normalized brand,
canonical size, packaging hint and category tail, plus the token and
path features the candidate scorer uses. Missing fields degrade to empty
values that simply fail to contribute to scoring.
"""

import re
from typing import Optional

import structlog

from models.image_insight import FeatureRow, ImageInsight, ImageRole
from utils.text_utils import strip_accents, tokenize

logger = structlog.get_logger(__name__)

# Legal and generic words printed after the brand name
BRAND_SUFFIXES = re.compile(
    r"\b(inc|llc|ltd|corp|co|company|brands|supplements|nutrition|wellness|fuel)\b\.?"
)
BRAND_FILLER_WORDS = {"by", "from", "the", "a", "an"}
UNKNOWN_BRANDS = {"", "unknown", "n/a", "none", "null"}

# Categories where sizes are compared in metric units
METRIC_CATEGORIES = re.compile(
    r"supplement|vitamin|nutrition|food|beverage|hair|cosmetic|skin", re.IGNORECASE
)

ML_PER_FL_OZ = 29.5735
G_PER_OZ = 28.3495
G_PER_LB = 453.592

# Order matters: first match wins
PACKAGING_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("pouch", re.compile(r"resealable|stand-up|pouch")),
    ("dropper-bottle", re.compile(r"dropper|pipette|tincture")),
    ("bottle", re.compile(r"\bbottle\b")),
    ("jar", re.compile(r"\bjar\b")),
    ("tube", re.compile(r"\btube\b")),
    ("canister", re.compile(r"canister|\btub\b")),
]

CATEGORY_DELIMITER = re.compile(r"\s*>\s*")
IMAGE_EXTENSION = re.compile(r"\.(jpe?g|png|webp|gif|heic)$", re.IGNORECASE)


def normalize_brand(raw: Optional[str]) -> str:
    """
    Normalize a brand for comparison.

    - Lowercase, accents removed
    - Legal/generic suffixes dropped (Inc, LLC, Co, Nutrition, ...)
    - Punctuation collapsed to single spaces
    - Multi-word brands reduced to the first significant word

    Examples:
        "R+Co" → "r"
        "myBrainCo." → "mybrainco"
        "Jocko Fuel" → "jocko"
        "Unknown" → ""

    Args:
        raw: Brand as printed

    Returns:
        Normalized brand, or "" when unknown
    """
    if not raw or raw.strip().lower() in UNKNOWN_BRANDS:
        return ""

    normalized = strip_accents(raw).lower()
    normalized = BRAND_SUFFIXES.sub(" ", normalized)
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized).strip()

    tokens = [t for t in normalized.split() if t not in BRAND_FILLER_WORDS]
    if not tokens:
        return ""
    return tokens[0]


def _number(value: str) -> float:
    return float(value.replace(",", "."))


def canonicalize_size(size: Optional[str], category_path: Optional[str]) -> str:
    """
    Canonical size string.

    In supplement/food/hair/cosmetic categories volumes become milliliters
    and masses become grams, rounded to an integer ("1.4 fl oz" → "41ml").
    Elsewhere the literal is lowercased with whitespace collapsed.

    Args:
        size: Free-text size
        category_path: Category used to decide whether to convert

    Returns:
        Canonical size, or "" when no size is given
    """
    if not size or not size.strip():
        return ""

    literal = re.sub(r"\s+", " ", size.strip().lower())
    if not METRIC_CATEGORIES.search(category_path or ""):
        return literal

    num = r"(\d+(?:[.,]\d+)?)"

    match = re.search(num + r"\s*fl\.?\s*oz", literal)
    if match:
        return f"{round(_number(match.group(1)) * ML_PER_FL_OZ)}ml"

    match = re.search(num + r"\s*(?:ml|milliliters?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)))}ml"

    match = re.search(num + r"\s*(?:l|liters?|litres?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)) * 1000)}ml"

    match = re.search(num + r"\s*(?:kg|kilograms?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)) * 1000)}g"

    match = re.search(num + r"\s*(?:g|grams?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)))}g"

    match = re.search(num + r"\s*(?:oz|ounces?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)) * G_PER_OZ)}g"

    match = re.search(num + r"\s*(?:lbs?|pounds?)\b", literal)
    if match:
        return f"{round(_number(match.group(1)) * G_PER_LB)}g"

    return literal


def extract_packaging(visual_description: Optional[str]) -> str:
    """Packaging hint from the visual description ("" when nothing matches)."""
    if not visual_description:
        return ""
    lower = visual_description.lower()
    for hint, pattern in PACKAGING_PATTERNS:
        if pattern.search(lower):
            return hint
    return ""


def category_tail(category_path: Optional[str]) -> str:
    """
    Last one or two segments of a category path.

    "Health > Vitamins > Multivitamins" → "Vitamins > Multivitamins"
    "Shampoo" → "Shampoo"
    """
    if not category_path or not category_path.strip():
        return ""
    parts = [p for p in CATEGORY_DELIMITER.split(category_path.strip()) if p]
    return " > ".join(parts[-2:])


def normalize_color(color: Optional[str]) -> str:
    """Lowercase-kebab color key ("Dark Green" → "dark-green")."""
    if not color:
        return ""
    return re.sub(r"\s+", "-", color.strip().lower())


def split_key(key: str) -> tuple[str, str]:
    """
    Folder and filename stem of an image key.

    Query strings are ignored; '|' separators (Dropbox display paths)
    are treated as '/'.
    """
    cleaned = re.sub(r"\s*\|\s*", "/", key.strip()).split("?")[0]
    parts = cleaned.replace("\\", "/").split("/")
    filename = parts[-1]
    folder = "/".join(parts[:-1])
    return folder.lower(), IMAGE_EXTENSION.sub("", filename).lower()


def provisional_group_id(
    brand_norm: str,
    product_tokens: list[str],
    variant_tokens: list[str],
    size_canonical: str,
) -> str:
    """Identity used to decide which images provisionally show one product."""
    return "|".join([
        brand_norm,
        " ".join(sorted(set(product_tokens))),
        " ".join(sorted(set(variant_tokens))),
        size_canonical,
    ])


def build_feature_row(
    insight: ImageInsight,
    role: Optional[ImageRole] = None,
    role_confidence: float = 0.0,
) -> FeatureRow:
    """
    Normalize one insight.

    Args:
        insight: Classifier output
        role: Effective role after correction (defaults to classifier role)
        role_confidence: Corrected confidence in [0, 1]

    Returns:
        FeatureRow with every comparable field filled (possibly empty)
    """
    brand_norm = normalize_brand(insight.brand)
    product_tokens = tokenize(insight.product)
    variant_tokens = tokenize(insight.variant)
    size_canonical = canonicalize_size(insight.size, insight.category_path)
    folder, stem = split_key(insight.key)

    if brand_norm or product_tokens:
        group_id = provisional_group_id(brand_norm, product_tokens, variant_tokens, size_canonical)
    else:
        # Nothing identifying: the image is its own group
        group_id = f"image:{insight.key}"

    return FeatureRow(
        key=insight.key,
        role=role or insight.role,
        original_role=insight.role,
        role_confidence=role_confidence,
        brand=insight.brand,
        product=insight.product,
        variant=insight.variant,
        brand_norm=brand_norm,
        product_tokens=product_tokens,
        variant_tokens=variant_tokens,
        size_canonical=size_canonical,
        packaging_hint=extract_packaging(insight.visual_description),
        category_path=insight.category_path,
        category_tail=category_tail(insight.category_path),
        color_key=normalize_color(insight.dominant_color),
        text_extracted=insight.text_extracted,
        folder=folder,
        stem=stem,
        provisional_group=group_id,
    )


def build_features(insights: list[ImageInsight]) -> dict[str, FeatureRow]:
    """
    Normalize a batch of insights, keyed by image key.

    Later duplicates of the same key are ignored (the classifier is
    idempotent per image, so they carry the same data).
    """
    features: dict[str, FeatureRow] = {}
    duplicates = 0
    for insight in insights:
        if insight.key in features:
            duplicates += 1
            continue
        features[insight.key] = build_feature_row(insight)

    logger.debug(
        "features_built",
        images=len(features),
        duplicates_ignored=duplicates
    )
    return features
