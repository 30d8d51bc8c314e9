from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from radar.core.config import get_settings
from radar.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from radar.services.runtime import build_runtime

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker(*, continuous: bool = True) -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, role="worker")
    runtime = build_runtime(settings)
    await runtime.initialize()

    continuous_task: asyncio.Task[None] | None = None
    if continuous:
        continuous_task = asyncio.create_task(runtime.engine.continuous_mode())

    backoff = settings.queue_poll_interval_seconds
    last_reap_at = 0.0
    last_cache_sweep_at = time.monotonic()

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await runtime.queue.reap_expired_leases(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    if now - last_cache_sweep_at >= settings.classification_cache_sweep_interval_seconds:
                        swept = await runtime.classifier.cleanup_cache()
                        logger.info("classification cache sweep: %s", swept)
                        last_cache_sweep_at = now

                    summary = await runtime.queue.tick()
                    if not summary["processed"]:
                        await asyncio.sleep(settings.queue_poll_interval_seconds)
                        continue

                    backoff = settings.queue_poll_interval_seconds
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.queue_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        if continuous_task is not None:
            runtime.engine.stop_continuous()
            await asyncio.gather(continuous_task, return_exceptions=True)
        await runtime.queue.stop()
        await runtime.store.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
