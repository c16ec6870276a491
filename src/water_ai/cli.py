from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from .cache import MemoryCache
from .jobs import JobManager
from .openai_client import OpenAIClient
from .processors import TextAnalysisPayload, text_analysis_job
from .settings import LOG_LEVEL
from .status import JobStatusQuery


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="water-ai")
    p.add_argument("--log-level", default=LOG_LEVEL)
    sub = p.add_subparsers(dest="cmd", required=True)

    t = sub.add_parser("analyze-text", help="Estimate intake from a description")
    t.add_argument("description")
    t.add_argument("--user-id", type=int, default=0)
    t.add_argument("--poll-interval", type=float, default=0.5)
    t.add_argument("--max-polls", type=int, default=120)

    sub.add_parser("serve", help="Run the HTTP API")

    return p


async def _analyze_text(args: argparse.Namespace) -> int:
    client = OpenAIClient()
    try:
        async with JobManager() as manager:
            query = JobStatusQuery(manager)
            payload = TextAnalysisPayload(user_id=args.user_id, description=args.description)
            job_id = manager.add_job(
                uuid.uuid4().hex, text_analysis_job(payload, client, MemoryCache())
            )
            print(f"JOB,{job_id}")

            for _ in range(max(1, args.max_polls)):
                snap = query.get(job_id)
                if snap is None:
                    print("STATUS,not_found")
                    return 2
                if snap.status == "complete":
                    print("STATUS,complete")
                    for k, v in (snap.result or {}).items():
                        print(f"RESULT,{k},{v}")
                    return 0
                if snap.status == "error":
                    print("STATUS,error")
                    print(f"ERROR,{snap.error}")
                    return 1
                await asyncio.sleep(args.poll_interval)

            print("STATUS,timeout")
            return 2
    finally:
        client.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "analyze-text":
        return asyncio.run(_analyze_text(args))

    if args.cmd == "serve":
        from .api.main import main as serve

        serve()
        return 0

    return 2
