from __future__ import annotations

import logging
import os

import uvicorn

from ..settings import LOG_LEVEL


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "water_ai.api.app:app",
        host=os.getenv("WATER_AI_HOST", "127.0.0.1"),
        port=int(os.getenv("WATER_AI_PORT", "8000")),
        reload=os.getenv("WATER_AI_RELOAD", "0") == "1",
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
