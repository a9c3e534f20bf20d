#!/usr/bin/env python3
"""Runs the job engine against a simulated provider and submits a demo batch.

Usage:
  BOOKJOBS_MAX_CONCURRENT=3 python scripts/run_engine.py

Set TESTING=1 to shorten the simulated provider latency (used by the tests).
Set SIMULATED_FAILURE_RATE (0..1) to make the simulated provider fail with a
transient error now and then.
"""
import asyncio
import logging
import os
import random

from bookjobs import (
    BatchOptions,
    CallableProvider,
    ContentType,
    EngineConfig,
    JobEngine,
    ProviderResult,
    TransientProviderError,
    items_for_covers,
    items_for_export,
    items_for_projects,
)
from bookjobs.config import TESTING

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FAILURE_RATE = float(os.getenv("SIMULATED_FAILURE_RATE", "0"))

DEMO_PROJECTS = [
    {
        "id": "proj-dragons",
        "title": "Friendly Dragons",
        "description": "A coloring adventure",
        "image_style": "cartoon",
        "pages": [
            {"id": "p1", "type": "coloring", "image_prompt": "a dragon reading a book"},
            {"id": "p2", "type": "coloring", "image_prompt": "a dragon baking cookies"},
            {"id": "p3", "type": "story", "text": "The dragons fly home at sunset"},
            {"id": "p4", "type": "coloring", "image_prompt": "already drawn", "image_data": "done"},
        ],
    },
]


async def simulated_generate(payload):
    # Simulate work
    work_time = random.uniform(0.01, 0.05) if TESTING else random.uniform(0.2, 1.5)
    await asyncio.sleep(work_time)
    if random.random() < FAILURE_RATE:
        raise TransientProviderError("simulated provider temporarily unavailable", code="HTTP_503", status=503)
    return ProviderResult(f"image://{abs(hash(str(payload))) % 10**8}", provider="simulated")


async def simulated_export(payload):
    await asyncio.sleep(0.01 if TESTING else 0.5)
    return {"success": True, "downloadUrl": f"file://{payload['project_id']}.{payload['format'].lower()}"}


def build_engine(config=None) -> JobEngine:
    provider = CallableProvider({ContentType.EXPORT: simulated_export}, default=simulated_generate)
    return JobEngine(provider, config or EngineConfig(retry_delay=0.1 if TESTING else 2.0))


async def run_engine(engine=None):
    engine = engine or build_engine()

    def on_progress(progress):
        print(
            f"engine: batch {progress.batch_id} {progress.progress}% "
            f"(completed={progress.completed} failed={progress.failed} "
            f"in_progress={progress.in_progress} queued={progress.queued})"
        )

    async with engine:
        options = BatchOptions(progress_callback=on_progress)
        image_batch = engine.submit_batch(items_for_projects(DEMO_PROJECTS) + items_for_covers(DEMO_PROJECTS), options)
        final = await engine.wait_for_batch(image_batch)

        export_batch = engine.submit_batch(items_for_export([p["id"] for p in DEMO_PROJECTS], "PDF"), options)
        exported = await engine.wait_for_batch(export_batch)
        print("engine: stats", engine.stats().model_dump())
    return final, exported


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        print("engine: exiting")
