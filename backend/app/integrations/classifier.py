"""Content-sensitivity scorer adapter.

The scoring model lives outside this service. We hand it a URL for the
stored blob and get back a verdict with a confidence. Ambiguous results are
flagged (fail-closed) so they land in manual review.
"""

import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Literal

import httpx
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from app.config import get_settings
from app.core.exceptions import PermanentMediaError, TransientInfraError

settings = get_settings()
logger = logging.getLogger(__name__)

DEFAULT_FLAG_REASON = "Content flagged by classifier"

_PERMANENT_STATUS_CODES = {400, 415, 422}


class Verdict(BaseModel):
    verdict: Literal["safe", "flagged"]
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str | None = None


def apply_confidence_policy(verdict: Verdict, threshold: float) -> Verdict:
    """Fail closed: a verdict below ``threshold`` becomes flagged for manual review."""
    if verdict.confidence < threshold:
        reason = (
            f"Low classifier confidence ({verdict.confidence:.2f} < {threshold:.2f}); "
            "manual review required"
        )
        if verdict.verdict == "flagged" and verdict.reason:
            reason = f"{verdict.reason} ({reason})"
        return Verdict(verdict="flagged", confidence=verdict.confidence, reason=reason)
    if verdict.verdict == "flagged" and not (verdict.reason or "").strip():
        return Verdict(verdict="flagged", confidence=verdict.confidence, reason=DEFAULT_FLAG_REASON)
    return verdict


class ClassifierAdapter(ABC):
    @abstractmethod
    async def classify(self, video_id: str, blob_ref: str, url: str) -> Verdict:
        """
        Score a stored video.

        Raises:
            TransientInfraError: Timeout or scorer unavailable; retry later
            PermanentMediaError: Scorer could not read the media
        """


class HttpClassifier(ClassifierAdapter):
    def __init__(self, url: str, timeout: float, api_key: str = "", transport=None):
        self.url = url
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def classify(self, video_id: str, blob_ref: str, url: str) -> Verdict:
        payload = {"video_id": video_id, "blob_ref": blob_ref, "url": url}
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientInfraError(f"Classifier timed out: {e}")
        except httpx.TransportError as e:
            raise TransientInfraError(f"Classifier unavailable: {e}")

        if response.status_code in _PERMANENT_STATUS_CODES:
            raise PermanentMediaError(_error_detail(response) or "Classifier rejected the media")
        if response.status_code >= 400:
            raise TransientInfraError(f"Classifier returned HTTP {response.status_code}")

        try:
            return Verdict.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise TransientInfraError(f"Malformed classifier response: {e}")

    async def aclose(self) -> None:
        await self._client.aclose()


class ManualReviewClassifier(ClassifierAdapter):
    """Used when no scorer is configured: every video goes to manual review."""

    async def classify(self, video_id: str, blob_ref: str, url: str) -> Verdict:
        return Verdict(verdict="flagged", confidence=0.0, reason="No automated scorer configured")


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        return body.get("detail") or body.get("error")
    return None


def build_classifier() -> ClassifierAdapter:
    if settings.classifier_url:
        return HttpClassifier(
            settings.classifier_url,
            timeout=settings.classifier_timeout_seconds,
            api_key=settings.classifier_api_key,
        )
    logger.warning("CLASSIFIER_URL is not set; all videos will be flagged for manual review")
    return ManualReviewClassifier()


@lru_cache
def get_classifier() -> ClassifierAdapter:
    return build_classifier()
