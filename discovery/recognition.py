"""Recognition policy and the HTTP client for the external image oracle."""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from math import isfinite
from typing import Dict, Optional

import requests
from PIL import Image, UnidentifiedImageError

from .outcomes import DiscoveryServiceError, malformed

MAX_ORACLE_IMAGE_EDGE = 1024


class RecognitionGate:
    """Applies per-difficulty confidence thresholds to an oracle score."""

    def __init__(self, thresholds: Dict[str, float]):
        self.thresholds = dict(thresholds)

    def threshold_for(self, difficulty: str) -> float:
        if difficulty in self.thresholds:
            return self.thresholds[difficulty]
        return max(self.thresholds.values())

    @staticmethod
    def validate(confidence: float) -> None:
        if confidence is None or not isfinite(confidence) or not 0.0 <= confidence <= 1.0:
            raise malformed("Recognition confidence must be within [0, 1]")

    def accepts(self, confidence: float, threshold: float) -> bool:
        self.validate(confidence)
        return confidence >= threshold

    def accepts_for(
        self,
        confidence: float,
        difficulty: str,
        expected_landmark_id: str,
        matched_landmark_id: Optional[str] = None,
    ) -> bool:
        # An oracle that recognised a different landmark never counts.
        if matched_landmark_id and str(matched_landmark_id) != str(expected_landmark_id):
            self.validate(confidence)
            return False
        return self.accepts(confidence, self.threshold_for(difficulty))


@dataclass(frozen=True)
class OracleVerdict:
    confidence: float
    matched_landmark_id: Optional[str] = None


class HttpRecognitionOracle:
    """Posts a normalised photo to the recognition service and returns its score."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def score(self, image: bytes, expected_landmark_id: str) -> OracleVerdict:
        payload = {
            "landmark_id": expected_landmark_id,
            "image": base64.b64encode(normalise_image(image)).decode("ascii"),
        }
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as exc:
            raise DiscoveryServiceError(
                "Recognition oracle timed out",
                status_code=504,
                payload={"error": "recognition_unavailable", "detail": "timeout"},
            ) from exc
        except (requests.RequestException, ValueError) as exc:
            raise DiscoveryServiceError(
                "Recognition oracle unavailable",
                status_code=502,
                payload={"error": "recognition_unavailable", "detail": str(exc)},
            ) from exc

        try:
            confidence = float(body["confidence"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DiscoveryServiceError(
                "Recognition oracle returned an unusable score",
                status_code=502,
                payload={"error": "recognition_unavailable", "detail": "bad_response"},
            ) from exc
        matched = body.get("matched_landmark_id")
        return OracleVerdict(confidence=confidence, matched_landmark_id=str(matched) if matched else None)


def normalise_image(image: bytes) -> bytes:
    """Downscale to the oracle's maximum edge and re-encode as JPEG."""
    try:
        with Image.open(io.BytesIO(image)) as img:
            img = img.convert("RGB")
            if img.width > MAX_ORACLE_IMAGE_EDGE or img.height > MAX_ORACLE_IMAGE_EDGE:
                img.thumbnail((MAX_ORACLE_IMAGE_EDGE, MAX_ORACLE_IMAGE_EDGE), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", optimize=True, quality=85)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        raise malformed("Photo could not be decoded") from exc
