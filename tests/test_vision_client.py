from __future__ import annotations

from typing import Any

import pytest

from water_ai.vision_client import BarcodeDetectionError, VisionClient, barcode_values

URL = "https://vision.example.test/v1/images:annotate"


class FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return self._body


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        return self.response

    def close(self) -> None:
        pass


def test_barcode_values_handles_missing_annotations() -> None:
    assert barcode_values({"responses": [{}]}) == []
    assert barcode_values({"responses": []}) == []
    assert barcode_values(None) == []
    assert barcode_values(
        {"responses": [{"barcodeAnnotations": [{"description": "111"}, {"format": "EAN_13"}]}]}
    ) == ["111"]


@pytest.mark.asyncio
async def test_detect_barcodes_posts_image_with_api_key() -> None:
    session = FakeSession(
        FakeResponse(200, {"responses": [{"barcodeAnnotations": [{"description": "0123"}]}]})
    )
    client = VisionClient(api_key="k", url=URL, session=session)

    assert await client.detect_barcodes("QUJD") == ["0123"]

    call = session.calls[0]
    assert call["url"] == URL
    assert call["params"] == {"key": "k"}
    req = call["json"]["requests"][0]
    assert req["image"] == {"content": "QUJD"}
    assert req["features"] == [{"type": "BARCODE_DETECTION", "maxResults": 5}]


@pytest.mark.asyncio
async def test_detect_barcodes_raises_on_http_error() -> None:
    client = VisionClient(api_key="k", url=URL, session=FakeSession(FakeResponse(403, {})))

    with pytest.raises(BarcodeDetectionError, match="Barcode detection failed"):
        await client.detect_barcodes("QUJD")
