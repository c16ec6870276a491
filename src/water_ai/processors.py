from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass
from typing import Any

from .cache import MemoryCache, barcode_product_key, invalidate_user_caches
from .hydration import (
    MAX_OUNCES,
    MIN_OUNCES,
    clamp_ounces,
    duration_ounces,
    hydration_percentage,
    percentage_ounces,
    smart_round,
)
from .jobs import JobSpec
from .openai_client import OpenAIClient, OpenAIError, message_content
from .settings import (
    BARCODE_CACHE_TTL_MS,
    OPENAI_BARCODE_MODEL,
    OPENAI_TEXT_MODEL,
    OPENAI_VISION_MODEL,
)
from .vision_client import VisionClient

logger = logging.getLogger(__name__)

WATER_ANALYSIS = "analyze-water"
TEXT_ANALYSIS = "analyze-text"
BARCODE_ANALYSIS = "analyze-barcode"

VALID_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
DEFAULT_MIME_TYPE = "image/jpeg"

DEFAULT_CONTAINER_OZ = 16.0
DEFAULT_TEXT_OZ = 8.0

_DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z]+;base64,(.+)$", re.DOTALL)
_FINAL_ANSWER_RE = re.compile(r"FINAL ANSWER:\s*(\d+\.?\d*)\s*oz", re.IGNORECASE)
_LIQUID_RE = re.compile(r"LIQUID:\s*([^\n|]+?)(?:\s*\||$)", re.IGNORECASE | re.MULTILINE)
_OUNCES_RE = re.compile(r"OUNCES:\s*(\d+\.?\d*)", re.IGNORECASE)
_PRODUCT_RE = re.compile(r"PRODUCT:\s*(.+?)(?:\n|$)", re.IGNORECASE)


class AnalysisError(ValueError):
    pass


# ------------------------------------------------------------------ payloads


@dataclass(frozen=True)
class WaterAnalysisPayload:
    user_id: int
    base64: str
    mime_type: str = DEFAULT_MIME_TYPE
    percentage: float | None = None
    duration: str | None = None
    servings: int = 1
    liquid_type: str | None = None
    hand_size: str = "medium"
    sip_size: str = "medium"


@dataclass(frozen=True)
class WaterAnalysisResult:
    ounces: float
    container_capacity: float
    classification: str
    liquid_type: str
    servings: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TextAnalysisPayload:
    user_id: int
    description: str


@dataclass(frozen=True)
class TextAnalysisResult:
    ounces: float
    liquid_type: str
    classification: str = "description"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BarcodeAnalysisPayload:
    user_id: int
    base64: str
    mime_type: str = DEFAULT_MIME_TYPE
    percentage: float | None = None
    duration: str | None = None
    servings: int = 1
    liquid_type: str | None = None
    sip_size: str = "medium"


@dataclass(frozen=True)
class BarcodeAnalysisResult:
    ounces: float
    container_capacity: float
    liquid_type: str
    product_name: str
    barcode: str
    servings: int
    classification: str = "disposable-bottle"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ------------------------------------------------------------------ helpers


def clean_base64(raw: str | None) -> str:
    """Strip a data-URL prefix and whitespace from base64 image data."""
    if not raw:
        raise AnalysisError("No image data provided")

    s = raw.strip()
    if s.startswith("data:"):
        m = _DATA_URL_RE.match(s)
        if m:
            s = m.group(1)
        else:
            logger.warning("malformed data URL, extracting after 'base64,'")
            parts = s.split("base64,", 1)
            s = parts[1] if len(parts) > 1 else s

    s = re.sub(r"\s", "", s)
    if len(s) < 100:
        raise AnalysisError("Invalid or empty base64 image data")
    return s


def normalize_mime_type(mime_type: str | None) -> str:
    m = (mime_type or "").lower().strip() or DEFAULT_MIME_TYPE
    if m not in VALID_MIME_TYPES:
        logger.warning("invalid MIME type %r, defaulting to %s", mime_type, DEFAULT_MIME_TYPE)
        return DEFAULT_MIME_TYPE
    return m


def build_water_prompt(hand_size: str, sip_size: str, duration: str | None) -> str:
    lines = [
        f"Analyze this image of a liquid container. User has {hand_size} hands.",
        "",
        "Account for hand size when estimating container size:",
        "- Large hands make bottles look smaller than they are",
        "- Medium hands show bottles at normal size",
        "- Small hands make bottles look larger than they are",
        "",
    ]
    if duration:
        oz = duration_ounces(duration, sip_size)
        lines += [
            f"The user drank for {duration} with {sip_size} sip size.",
            f"Calculated consumption: {oz:.1f} oz (DO NOT change this amount)",
            "",
        ]
    lines += [
        "**OPTION 1: Estimate container**",
        "Estimate the container capacity in ounces.",
        "",
        "Standard sizes:",
        "- Small (1-8oz): shot, espresso, sample cup, teacup, coffee cup",
        "- Medium (9-16oz): mug, pint, 12oz can, 16.9oz bottle",
        "- Large (17-40oz): sports bottle (20-24oz), tumbler (30-32oz), 1L bottle (33.8oz)",
        "- XL (41-128oz): 40oz tumbler, half gallon (64oz), gallon (128oz)",
        "",
        "Classify container as one of: reusable-bottle, disposable-bottle, "
        "disposable-can, cup-glass, water-fountain, faucet-tap, filtered-dispenser",
        "",
        "Detect liquid type from labels/branding: water, diet soda, soda, sports drink, "
        "energy drink, coffee, tea, milk, juice, smoothie, alcohol. "
        "If clear liquid or no label is visible, assume water.",
        "",
        "Respond: ESTIMATE:[ounces]:[classification]:[liquid_type]",
        "",
        "**OPTION 2: No liquid container found**",
        "NO_WATER:Could not detect a liquid container in this image.",
        "",
        "Respond with ONLY one format above. Nothing else.",
    ]
    return "\n".join(lines)


def parse_water_decision(decision: str) -> tuple[float, str, str]:
    """Return ``(container_oz, classification, liquid_type)`` from the model reply."""
    decision = decision.strip()
    classification = "reusable-bottle"
    liquid = "water"

    if decision.startswith("NO_WATER:"):
        msg = decision[len("NO_WATER:"):].strip()
        raise AnalysisError(msg or "No water container detected in image")

    if decision.startswith("ESTIMATE:"):
        parts = decision.split(":")
        raw_oz = parts[1] if len(parts) > 1 else ""
        classification = (parts[2].strip() if len(parts) > 2 else "") or classification
        liquid = (parts[3].strip() if len(parts) > 3 else "") or liquid
    else:
        raw_oz = decision

    try:
        oz = float(raw_oz)
    except ValueError:
        oz = float("nan")

    if not (1 <= oz <= 128):
        logger.info("invalid container estimate %r, defaulting to %.0foz", raw_oz, DEFAULT_CONTAINER_OZ)
        oz = DEFAULT_CONTAINER_OZ

    return math.floor(oz * 2 + 0.5) / 2, classification, liquid


def parse_text_answer(content: str) -> tuple[float, str]:
    ounces = DEFAULT_TEXT_OZ
    liquid = "water"

    m = _FINAL_ANSWER_RE.search(content)
    if m:
        ounces = float(m.group(1))
    m = _LIQUID_RE.search(content)
    if m:
        liquid = m.group(1).strip()

    return round(ounces, 2), liquid


def parse_barcode_reply(content: str) -> tuple[float, str]:
    """Return ``(container_oz, product_name)``; 16 oz / "Unknown Product" when absent."""
    m = _OUNCES_RE.search(content)
    ounces = float(m.group(1)) if m else DEFAULT_CONTAINER_OZ
    m = _PRODUCT_RE.search(content)
    product = m.group(1).strip() if m else ""
    return ounces, product or "Unknown Product"


def _adjusted_ounces(ounces: float, liquid_type: str, servings: int = 1) -> float:
    multiplier = hydration_percentage(liquid_type)
    if multiplier == 0:
        raise AnalysisError("Alcohol is worth 0 oz of water")
    return smart_round(ounces * (servings or 1) * multiplier)


# ---------------------------------------------------------------- analyzers


async def analyze_water(payload: WaterAnalysisPayload, client: OpenAIClient) -> WaterAnalysisResult:
    image = clean_base64(payload.base64)
    mime = normalize_mime_type(payload.mime_type)

    prompt = build_water_prompt(payload.hand_size, payload.sip_size, payload.duration)
    data = await client.chat_completion(
        {
            "model": OPENAI_VISION_MODEL,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{image}"}},
                    ],
                }
            ],
            "max_completion_tokens": 100,
        }
    )
    decision = message_content(data)
    logger.info("user %s water decision: %s", payload.user_id, decision)

    capacity, classification, detected_liquid = parse_water_decision(decision)

    if payload.duration:
        consumed = duration_ounces(payload.duration, payload.sip_size)
    elif payload.percentage:
        consumed = percentage_ounces(capacity, float(payload.percentage))
    else:
        consumed = capacity
    consumed = clamp_ounces(consumed)

    liquid = payload.liquid_type or detected_liquid or "water"
    servings = payload.servings or 1

    return WaterAnalysisResult(
        ounces=_adjusted_ounces(consumed, liquid, servings),
        container_capacity=capacity,
        classification=classification,
        liquid_type=liquid,
        servings=servings,
    )


TEXT_SYSTEM_PROMPT = """You are a precise water intake estimation assistant. Analyze the description and:

1. Identify the container type and size
2. Determine the liquid type (water, soda, diet soda, sports drink, energy drink, coffee, tea, milk, juice, smoothie, alcohol)
3. Calculate the RAW ounces consumed (do NOT apply hydration percentages)

Standard sizes:
- Small glass/cup: 6-10oz
- Medium glass/cup: 10-14oz
- Large glass/cup: 14-20oz
- Water bottle: 16.9oz (500mL), 20oz, 24oz, 32oz
- Soda can: 12oz
- Coffee mug: 8-16oz

If no liquid type is mentioned, assume water.

Format:
FINAL ANSWER: [ounces] oz | LIQUID: [type]"""


async def analyze_text(payload: TextAnalysisPayload, client: OpenAIClient) -> TextAnalysisResult:
    description = (payload.description or "").strip()
    if not description:
        raise AnalysisError("Description is required")

    try:
        data = await client.chat_completion(
            {
                "model": OPENAI_TEXT_MODEL,
                "messages": [
                    {"role": "system", "content": TEXT_SYSTEM_PROMPT},
                    {"role": "user", "content": description},
                ],
                "max_tokens": 300,
            }
        )
    except Exception as e:
        raise OpenAIError(f"Failed to analyze text: {e}") from e

    ounces, liquid = parse_text_answer(message_content(data))
    return TextAnalysisResult(ounces=_adjusted_ounces(ounces, liquid), liquid_type=liquid)


BARCODE_PROMPT = """Analyze this beverage container. Determine the INDIVIDUAL CONTAINER SIZE in fluid ounces.

CRITICAL: If you see multi-pack labels (e.g. "24 pack" or "12 cans"), return the PER-CONTAINER size, not the total.

Examples:
- "24 pack 16.9 fl oz" -> 16.9 oz
- "12 cans 12 oz" -> 12 oz

Also identify the liquid type: water, soda, diet soda, sports drink, energy drink, coffee, tea, milk, juice, smoothie, or alcohol.

Respond with:
OUNCES: [number]
LIQUID: [type]
PRODUCT: [product name]"""


async def _lookup_product(
    barcode: str,
    image: str,
    mime: str,
    client: OpenAIClient,
    cache: MemoryCache | None,
) -> tuple[float, str]:
    key = barcode_product_key(barcode)
    if cache is not None:
        hit = cache.get(key)
        if hit is not None:
            logger.info("barcode %s cache hit: %s, %soz", barcode, hit["product_name"], hit["ounces"])
            return hit["ounces"], hit["product_name"]

    data = await client.chat_completion(
        {
            "model": OPENAI_BARCODE_MODEL,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": BARCODE_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{image}"}},
                    ],
                }
            ],
            "max_tokens": 200,
        }
    )
    ounces, product = parse_barcode_reply(message_content(data))
    logger.info("barcode %s identified: %s, %soz", barcode, product, ounces)

    # first identification wins
    if cache is not None and key not in cache:
        cache.set(key, {"ounces": ounces, "product_name": product}, BARCODE_CACHE_TTL_MS)
    return ounces, product


async def analyze_barcode(
    payload: BarcodeAnalysisPayload,
    client: OpenAIClient,
    vision: VisionClient,
    cache: MemoryCache | None = None,
) -> BarcodeAnalysisResult:
    image = clean_base64(payload.base64)
    mime = normalize_mime_type(payload.mime_type)

    barcodes = await vision.detect_barcodes(image)
    if not barcodes:
        raise AnalysisError("No barcode found in image")
    barcode = barcodes[0]
    logger.info("user %s barcode detected: %s", payload.user_id, barcode)

    capacity, product = await _lookup_product(barcode, image, mime, client, cache)

    if payload.percentage:
        consumed = percentage_ounces(capacity, float(payload.percentage))
    elif payload.duration:
        consumed = duration_ounces(payload.duration, payload.sip_size)
    else:
        consumed = capacity
    consumed = math.floor(consumed * 100 + 0.5) / 100
    consumed = max(MIN_OUNCES, min(consumed, MAX_OUNCES))

    # the label decides the size only; the drink defaults to water
    liquid = payload.liquid_type or "water"
    servings = payload.servings or 1

    return BarcodeAnalysisResult(
        ounces=_adjusted_ounces(consumed, liquid, servings),
        container_capacity=capacity,
        liquid_type=liquid,
        product_name=product,
        barcode=barcode,
        servings=servings,
    )


# ----------------------------------------------------------------- job specs


def water_analysis_job(
    payload: WaterAnalysisPayload,
    client: OpenAIClient,
    cache: MemoryCache | None = None,
) -> JobSpec[WaterAnalysisPayload, dict[str, Any]]:
    async def run(p: WaterAnalysisPayload) -> dict[str, Any]:
        result = await analyze_water(p, client)
        if cache is not None:
            invalidate_user_caches(cache, p.user_id)
        return result.to_dict()

    return JobSpec(payload=payload, processor=run, kind=WATER_ANALYSIS)


def text_analysis_job(
    payload: TextAnalysisPayload,
    client: OpenAIClient,
    cache: MemoryCache | None = None,
) -> JobSpec[TextAnalysisPayload, dict[str, Any]]:
    async def run(p: TextAnalysisPayload) -> dict[str, Any]:
        result = await analyze_text(p, client)
        if cache is not None:
            invalidate_user_caches(cache, p.user_id)
        return result.to_dict()

    return JobSpec(payload=payload, processor=run, kind=TEXT_ANALYSIS)


def barcode_analysis_job(
    payload: BarcodeAnalysisPayload,
    client: OpenAIClient,
    vision: VisionClient,
    cache: MemoryCache | None = None,
) -> JobSpec[BarcodeAnalysisPayload, dict[str, Any]]:
    async def run(p: BarcodeAnalysisPayload) -> dict[str, Any]:
        result = await analyze_barcode(p, client, vision, cache)
        if cache is not None:
            invalidate_user_caches(cache, p.user_id)
        return result.to_dict()

    return JobSpec(payload=payload, processor=run, kind=BARCODE_ANALYSIS)
