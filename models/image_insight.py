"""
Per-image classifier output and the normalized features derived from it.
"""

from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from models.base import BaseSchema


class ImageRole(str, Enum):
    """Which side of the package a photo shows."""
    FRONT = "front"
    BACK = "back"
    SIDE = "side"
    OTHER = "other"


class ImageInsight(BaseSchema):
    """
    One classified image.

    Produced once by the classifier and read-only afterwards; role
    overrides from the corrector live on FeatureRow, not here.
    """

    key: str = Field(..., min_length=1, description="Stable image key (path or URL)")
    role: ImageRole = Field(default=ImageRole.OTHER, description="Classifier-assigned role")
    brand: str = Field(default="", description="Brand as printed, may be empty or 'unknown'")
    product: str = Field(default="", description="Product name")
    variant: str = Field(default="", description="Flavor/scent/variant")
    size: str = Field(default="", description="Free-text net size, e.g. '1.4 fl oz'")
    category_path: str = Field(default="", description="Category taxonomy path, '>'-delimited")
    text_extracted: str = Field(default="", description="OCR text visible on the label")
    visual_description: str = Field(default="", description="Free-text description of the photo")
    dominant_color: str = Field(default="", description="Dominant color bucket")
    role_score: float = Field(default=0.0, description="Raw role confidence from the classifier")
    evidence_triggers: list[str] = Field(
        default_factory=list,
        description="Cues the classifier reported (e.g. 'brand logo', 'barcode')"
    )

    @field_validator("role", mode="before")
    @classmethod
    def coerce_role(cls, v: Any) -> Any:
        """Map unknown classifier panels ('unclear', 'label', None) to OTHER."""
        if isinstance(v, ImageRole):
            return v
        value = str(v or "").strip().lower()
        if value in {r.value for r in ImageRole}:
            return value
        return ImageRole.OTHER

    @field_validator(
        "brand", "product", "variant", "size", "category_path",
        "text_extracted", "visual_description", "dominant_color",
        mode="before",
    )
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("role_score", mode="before")
    @classmethod
    def coerce_score(cls, v: Any) -> Any:
        if v is None or v == "":
            return 0.0
        return v


class FeatureRow(BaseSchema):
    """
    Comparable fields for one image.

    Built by services.feature_service.build_features. `role` is the
    effective role after correction; `original_role` is what the
    classifier said.
    """

    key: str
    role: ImageRole
    original_role: ImageRole
    role_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    brand: str = ""
    product: str = ""
    variant: str = ""
    brand_norm: str = ""
    product_tokens: list[str] = Field(default_factory=list)
    variant_tokens: list[str] = Field(default_factory=list)
    size_canonical: str = ""
    packaging_hint: str = ""
    category_path: str = ""
    category_tail: str = ""
    color_key: str = ""
    text_extracted: str = ""
    folder: str = ""
    stem: str = ""
    provisional_group: str = ""
