"""
Tie-break judge.

Invoked only for fronts whose top candidates are too close to call. The
judge sees the front and the ambiguous backs (label text truncated to a
fixed budget) and answers with the index of the matching back or null.
Runs at temperature 0 with a bounded retry policy for transient API
failures.
"""

import json
import re
from typing import Optional, Protocol

import anthropic
import structlog

from config.pairing import PairingConfig, RetryPolicy
from config.settings import settings
from exceptions import TieBreakError
from models.image_insight import ImageInsight
from utils.retry import call_with_retry
from utils.text_utils import truncate

logger = structlog.get_logger(__name__)

# Anthropic errors worth retrying; anything else fails the call immediately
TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class TieBreakJudge(Protocol):
    """Anything that can pick a back for an ambiguous front."""

    def resolve(
        self,
        front: ImageInsight,
        candidates: list[ImageInsight],
        truncated_texts: dict[str, str],
    ) -> Optional[int]:
        """Index into candidates of the matching back, or None for no match."""
        ...


def truncate_texts(insights: list[ImageInsight], max_chars: int) -> dict[str, str]:
    """Label text per image key, cut to max_chars."""
    return {i.key: truncate(i.text_extracted, max_chars) for i in insights}


def parse_selection(response_text: str, candidate_count: int) -> Optional[int]:
    """
    Parse the judge's JSON answer.

    Accepts {"selected": <index or null>}, optionally wrapped in a
    markdown code block.

    Raises:
        ValueError: Not JSON, missing key, or index out of range
    """
    cleaned = response_text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r'^```(?:json)?\s*', '', cleaned)
        cleaned = re.sub(r'\s*```$', '', cleaned)

    data = json.loads(cleaned)
    if not isinstance(data, dict) or "selected" not in data:
        raise ValueError("response has no 'selected' field")

    selected = data["selected"]
    if selected is None:
        return None
    if isinstance(selected, bool) or not isinstance(selected, int):
        raise ValueError(f"'selected' must be an integer or null, got {selected!r}")
    if not 0 <= selected < candidate_count:
        raise ValueError(f"'selected' index {selected} out of range 0..{candidate_count - 1}")
    return selected


class ClaudeTieBreakJudge:
    """
    Tie-break judge backed by the Anthropic Messages API.

    Text-only: the judge compares classifier attributes and OCR text, not
    pixels, which keeps each call small and cheap.
    """

    MAX_TOKENS = 256

    SYSTEM_PROMPT = """You match product photos. You are given one FRONT label and a numbered list of candidate BACK labels.

Pick the back that belongs to the same physical product as the front.
Use brand, product name, variant/flavor, size, packaging, color and label text.
A back may be printed by a distributor with a different company name; match on product details when they clearly agree.
If none of the candidates belongs to the front, answer null.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation:
{"selected": 0}
or
{"selected": null}"""

    def __init__(
        self,
        client: Optional[anthropic.Anthropic] = None,
        model: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        sleep=None,
    ):
        if client is None:
            if not settings.anthropic_configured:
                raise TieBreakError("-", "ANTHROPIC_API_KEY is not configured")
            client = anthropic.Anthropic(api_key=settings.anthropic_api_key)
        self.client = client
        self.model = model or settings.tiebreak_model
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: PairingConfig, client: Optional[anthropic.Anthropic] = None):
        return cls(client=client, retry=config.tiebreak_retry)

    @staticmethod
    def _describe(insight: ImageInsight, text: str) -> dict:
        return {
            "brand": insight.brand,
            "product": insight.product,
            "variant": insight.variant,
            "size": insight.size,
            "category": insight.category_path,
            "color": insight.dominant_color,
            "description": truncate(insight.visual_description, 200),
            "text": text,
        }

    def build_prompt(
        self,
        front: ImageInsight,
        candidates: list[ImageInsight],
        truncated_texts: dict[str, str],
    ) -> str:
        payload = {
            "front": self._describe(front, truncated_texts.get(front.key, "")),
            "candidates": [
                {"index": i, **self._describe(c, truncated_texts.get(c.key, ""))}
                for i, c in enumerate(candidates)
            ],
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    def _call(self, prompt: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.MAX_TOKENS,
            temperature=0,
            system=self.SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text

    def resolve(
        self,
        front: ImageInsight,
        candidates: list[ImageInsight],
        truncated_texts: dict[str, str],
    ) -> Optional[int]:
        """
        Ask the model which candidate back matches the front.

        Args:
            front: The ambiguous front
            candidates: Candidate backs, best pre-score first
            truncated_texts: Label text per key, already cut to budget

        Returns:
            Index into candidates, or None when the model says no match

        Raises:
            TieBreakError: Retries exhausted, non-transient API error, or
                unusable response
        """
        if not candidates:
            return None

        prompt = self.build_prompt(front, candidates, truncated_texts)
        retry_kwargs = {"sleep": self._sleep} if self._sleep else {}

        try:
            response_text = call_with_retry(
                lambda: self._call(prompt),
                self.retry,
                retry_on=TRANSIENT_ERRORS,
                operation="tiebreak",
                **retry_kwargs,
            )
        except anthropic.APIError as e:
            raise TieBreakError(front.key, str(e), attempts=self.retry.max_attempts)

        try:
            selected = parse_selection(response_text, len(candidates))
        except ValueError as e:
            logger.error(
                "tiebreak_response_unusable",
                front_key=front.key,
                response_preview=response_text[:200],
                error=str(e)
            )
            raise TieBreakError(front.key, f"Unusable judge response: {e}")

        logger.info(
            "tiebreak_resolved",
            front_key=front.key,
            candidates=len(candidates),
            selected=selected
        )
        return selected
