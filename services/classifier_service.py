"""
Claude Vision classifier for product photos.

Sends each image to Claude and parses the JSON answer into an
ImageInsight: which side of the package the photo shows, printed brand,
product, variant, size, category and label text.

All classifier calls in the process share one concurrency throttle,
independent of how many chunks run in parallel.
"""

import base64
import json
import re
import threading
from typing import Optional, Protocol

import anthropic
import structlog

from config.pairing import RetryPolicy
from config.settings import settings
from exceptions import ClassificationError
from integrations.image_source import FetchedImage
from models.image_insight import ImageInsight
from utils.retry import call_with_retry

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class ImageClassifier(Protocol):
    """Turns fetched images into insights; same image gives the same insight."""

    def classify(self, images: list[FetchedImage]) -> list[ImageInsight]:
        ...


# ===================
# THROTTLE
# ===================

class ClassificationThrottle:
    """Caps classifier calls in flight across every chunk and job."""

    def __init__(self, limit: int):
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)

    def __enter__(self):
        self._semaphore.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._semaphore.release()
        return False


_throttle: Optional[ClassificationThrottle] = None
_throttle_lock = threading.Lock()


def get_classification_throttle() -> ClassificationThrottle:
    """Get or create the process-wide classifier throttle."""
    global _throttle
    with _throttle_lock:
        if _throttle is None:
            _throttle = ClassificationThrottle(settings.classify_concurrency)
        return _throttle


# ===================
# CLASSIFIER
# ===================

class ClaudeVisionClassifier:
    """
    Classify product photos using Claude Vision API.

    One request per image so a retry never re-bills the whole chunk and
    results are stable per image.
    """

    MAX_TOKENS = 1024

    SYSTEM_PROMPT = """You classify retail product photos for listing.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation, no code blocks.

Extract these fields (use "" if not visible):
- role: which side of the package the photo shows: "front", "back", "side" or "other"
  front = main label with brand logo and product name
  back = nutrition/supplement facts, ingredients, directions, barcode
- role_score: 0.0-1.0 confidence in the role
- brand: brand name exactly as printed
- product: product name without the brand
- variant: flavor, scent, shade or strength
- size: net size as printed, e.g. "1.4 fl oz", "60 capsules", "500 g"
- category_path: category path from general to specific, separated by " > "
  e.g. "Health > Vitamins & Supplements > Multivitamins"
- text_extracted: all legible label text (up to 600 characters)
- visual_description: one or two sentences on packaging and composition,
  e.g. "white dropper bottle, centered, plain background"
- dominant_color: one color word, optionally with light/dark, e.g. "dark green"
- evidence_triggers: list of cues you saw, from: "brand logo", "hero text",
  "supplement facts", "nutrition facts", "barcode", "directions", "ingredients"

Return JSON in this exact structure:
{
  "role": "front",
  "role_score": 0.9,
  "brand": "Jocko Fuel",
  "product": "Mölk Protein",
  "variant": "Chocolate",
  "size": "2 lb",
  "category_path": "Health > Sports Nutrition > Protein",
  "text_extracted": "JOCKO MÖLK PROTEIN CHOCOLATE ...",
  "visual_description": "black resealable pouch, centered, plain white background",
  "dominant_color": "black",
  "evidence_triggers": ["brand logo", "hero text"]
}"""

    def __init__(
        self,
        client: Optional[anthropic.Anthropic] = None,
        model: Optional[str] = None,
        throttle: Optional[ClassificationThrottle] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        if client is None:
            if not settings.anthropic_configured:
                raise ClassificationError("ANTHROPIC_API_KEY is not configured")
            client = anthropic.Anthropic(api_key=settings.anthropic_api_key)
        self.client = client
        self.model = model or settings.classifier_model
        self.throttle = throttle or get_classification_throttle()
        self.retry = retry or RetryPolicy()

    def _call(self, image: FetchedImage) -> str:
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.media_type,
                    "data": base64.b64encode(image.content).decode("utf-8"),
                },
            },
            {"type": "text", "text": "Classify this product photo."},
        ]
        with self.throttle:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                temperature=0,
                system=self.SYSTEM_PROMPT,
                messages=[{"role": "user", "content": content}],
            )
        return response.content[0].text

    def classify_one(self, image: FetchedImage) -> ImageInsight:
        """
        Classify a single image.

        Raises:
            ClassificationError: API failure after retries or unparseable answer
        """
        try:
            response_text = call_with_retry(
                lambda: self._call(image),
                self.retry,
                retry_on=TRANSIENT_ERRORS,
                operation="classify",
            )
        except anthropic.APIError as e:
            logger.error("claude_api_error", image_key=image.key, error=str(e))
            raise ClassificationError(f"Claude API error: {e}", image_keys=[image.key])

        return parse_insight(image.key, response_text)

    def classify(self, images: list[FetchedImage]) -> list[ImageInsight]:
        """Classify images in listing order."""
        insights = [self.classify_one(image) for image in images]
        logger.info("images_classified", count=len(insights), model=self.model)
        return insights


def parse_insight(key: str, response_text: str) -> ImageInsight:
    """
    Parse Claude's JSON response into an ImageInsight.

    Raises:
        ClassificationError: Response is not a JSON object
    """
    cleaned = response_text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r'^```(?:json)?\s*', '', cleaned)
        cleaned = re.sub(r'\s*```$', '', cleaned)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("json_parse_failed", image_key=key, response_preview=response_text[:300], error=str(e))
        raise ClassificationError(f"Unparseable classifier response: {e}", image_keys=[key])

    if not isinstance(data, dict):
        raise ClassificationError("Classifier response is not a JSON object", image_keys=[key])

    triggers = data.get("evidence_triggers") or []
    if not isinstance(triggers, list):
        triggers = [str(triggers)]

    try:
        role_score = float(data.get("role_score") or 0.0)
    except (TypeError, ValueError):
        role_score = 0.0

    return ImageInsight(
        key=key,
        role=data.get("role"),
        brand=data.get("brand"),
        product=data.get("product"),
        variant=data.get("variant"),
        size=data.get("size"),
        category_path=data.get("category_path"),
        text_extracted=data.get("text_extracted"),
        visual_description=data.get("visual_description"),
        dominant_color=data.get("dominant_color"),
        role_score=role_score,
        evidence_triggers=[str(t) for t in triggers],
    )
