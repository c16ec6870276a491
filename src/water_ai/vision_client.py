"""Barcode detection through the Google Cloud Vision ``images:annotate`` API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from .settings import (
    GOOGLE_VISION_API_KEY,
    GOOGLE_VISION_TIMEOUT_SECONDS,
    GOOGLE_VISION_URL,
)

logger = logging.getLogger(__name__)


class BarcodeDetectionError(RuntimeError):
    pass


def barcode_values(data: Any) -> list[str]:
    """Decoded barcode strings from an annotate response, best match first."""
    try:
        annotations = data["responses"][0].get("barcodeAnnotations") or []
    except (KeyError, IndexError, TypeError, AttributeError):
        return []
    return [a["description"] for a in annotations if a.get("description")]


class VisionClient:
    def __init__(
        self,
        api_key: str = GOOGLE_VISION_API_KEY,
        url: str = GOOGLE_VISION_URL,
        timeout: float = GOOGLE_VISION_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, body: dict[str, Any]) -> requests.Response:
        return self._session.post(
            self.url,
            params={"key": self.api_key},
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )

    async def detect_barcodes(self, image_base64: str, max_results: int = 5) -> list[str]:
        body = {
            "requests": [
                {
                    "image": {"content": image_base64},
                    "features": [{"type": "BARCODE_DETECTION", "maxResults": max_results}],
                }
            ]
        }
        resp = await asyncio.to_thread(self._post, body)
        if not resp.ok:
            logger.error("barcode detection failed (%s)", resp.status_code)
            raise BarcodeDetectionError("Barcode detection failed")

        try:
            data = resp.json()
        except ValueError as e:
            raise BarcodeDetectionError("Barcode detection failed") from e
        return barcode_values(data)

    def close(self) -> None:
        self._session.close()
