from __future__ import annotations

import os

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))
OPENAI_MAX_RETRIES = int(os.getenv("OPENAI_MAX_RETRIES", "5"))
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-5-mini")
OPENAI_TEXT_MODEL = os.getenv("OPENAI_TEXT_MODEL", "gpt-4o-mini")
OPENAI_BARCODE_MODEL = os.getenv("OPENAI_BARCODE_MODEL", "gpt-4o")

GOOGLE_VISION_API_KEY = os.getenv("GOOGLE_VISION_API_KEY", "")
GOOGLE_VISION_URL = os.getenv(
    "GOOGLE_VISION_URL", "https://vision.googleapis.com/v1/images:annotate"
)
GOOGLE_VISION_TIMEOUT_SECONDS = float(os.getenv("GOOGLE_VISION_TIMEOUT_SECONDS", "30"))

JOB_QUEUE_MAX_SIZE = int(os.getenv("JOB_QUEUE_MAX_SIZE", "500"))
JOB_COMPLETE_GRACE_SECONDS = float(os.getenv("JOB_COMPLETE_GRACE_SECONDS", "300"))
JOB_ERROR_GRACE_SECONDS = float(os.getenv("JOB_ERROR_GRACE_SECONDS", "120"))
JOB_MAX_AGE_SECONDS = float(os.getenv("JOB_MAX_AGE_SECONDS", "600"))
JOB_SWEEP_INTERVAL_SECONDS = float(os.getenv("JOB_SWEEP_INTERVAL_SECONDS", "60"))
# 0 = no cap on simultaneously processing jobs
JOB_MAX_CONCURRENT = int(os.getenv("JOB_MAX_CONCURRENT", "0"))

CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "2000"))
CACHE_DEFAULT_TTL_MS = int(os.getenv("CACHE_DEFAULT_TTL_MS", "60000"))
# barcode -> container size lookups change rarely
BARCODE_CACHE_TTL_MS = int(os.getenv("BARCODE_CACHE_TTL_MS", str(7 * 24 * 3600 * 1000)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
