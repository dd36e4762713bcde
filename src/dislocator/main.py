"""
Main Entry Point
================

Live dislocation pipeline.

Usage:
    python -m dislocator

The service will:
1. Load configuration from environment
2. Setup JSON logging
3. Discover the active Polymarket up/down markets (Gamma API)
4. Connect to the Coinbase ticker feed and the Polymarket market feed
5. Normalize every message and pass it to the unified consumer, one event
   at a time, in arrival order
6. Optionally record accepted events for replay
7. Flush buffered signals to the JSONL store periodically (fire-and-forget)
8. Log feed metrics periodically
9. Shut down gracefully on SIGINT / SIGTERM

A position cap breach stops the service with exit status 1.
"""

import asyncio
import logging
import signal
import sys
import uuid
from typing import Optional

from dislocator import __schema_version__, __version__
from dislocator.config import Settings, load_settings
from dislocator.consumer import PipelineContext, UnifiedEventConsumer
from dislocator.errors import InvariantViolation
from dislocator.feeds.market_catalog import MarketCatalog, MarketDescriptor
from dislocator.feeds.normalizers import FEED_COINBASE, FEED_POLYMARKET, EventNormalizer
from dislocator.feeds.ws_client import FeedClient, coinbase_subscription, polymarket_subscription
from dislocator.logging_setup import bind_run, setup_logging
from dislocator.metrics import Metrics
from dislocator.persistence import JsonlSignalStore
from dislocator.replay.recorder import EventRecorder
from dislocator.sinks import CollectIntentSink, FanoutSink, LiveIntentSink

logger = logging.getLogger(__name__)

QUEUE_MAX_SIZE = 20_000
METRICS_LOG_INTERVAL_SEC = 30


async def consumer_loop(
    queue: asyncio.Queue,
    normalizer: EventNormalizer,
    consumer: UnifiedEventConsumer,
    sink: FanoutSink,
    ctx: PipelineContext,
    metrics: Metrics,
    recorder: Optional[EventRecorder],
    shutdown_event: asyncio.Event,
) -> None:
    """
    Single consumer task: normalize envelopes and drive handle_event().

    Raises:
        InvariantViolation: Position cap breached; shutdown is requested first.
    """
    logger.info("consumer_started", extra={"run_id": ctx.run_id})

    while not shutdown_event.is_set():
        try:
            envelope = await asyncio.wait_for(queue.get(), timeout=1.0)
        except asyncio.TimeoutError:
            continue

        try:
            feed = envelope.get("feed", "unknown")
            dropped_before = normalizer.dropped_count(feed)
            events = normalizer.handle_envelope(envelope)
            if normalizer.dropped_count(feed) > dropped_before:
                metrics.inc_dropped(feed)

            for event in events:
                metrics.observe_event(feed, event.kind, event.ingest_ts - event.exchange_ts)
                if recorder is not None:
                    recorder.record(event)
                try:
                    consumer.handle_event(event, sink, ctx)
                except InvariantViolation:
                    logger.critical("consumer_fatal_invariant", extra={"run_id": ctx.run_id})
                    shutdown_event.set()
                    raise
        finally:
            queue.task_done()

    logger.info("consumer_stopped", extra=consumer.stats())


async def flush_loop(
    sink: FanoutSink,
    interval_sec: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Start a sink flush every interval without awaiting it on the decision path."""
    pending: set[asyncio.Task] = set()
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_sec)
        except asyncio.TimeoutError:
            task = asyncio.create_task(sink.flush_to_db(), name="sink_flush")
            pending.add(task)
            task.add_done_callback(pending.discard)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def metrics_logger_loop(
    metrics: Metrics,
    consumer: UnifiedEventConsumer,
    shutdown_event: asyncio.Event,
) -> None:
    """Periodically log feed metrics and pipeline state."""
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=METRICS_LOG_INTERVAL_SEC)
        except asyncio.TimeoutError:
            logger.info(
                "metrics_snapshot",
                extra={
                    **metrics.get_short_summary(),
                    "state": consumer.state.value,
                    "collision_count": consumer.collision_count,
                },
            )


async def main(settings: Settings) -> int:
    """
    Main async entry point.

    Returns:
        Process exit status.
    """
    logger.info(
        "dislocator_starting",
        extra={"version": __version__, "schema_version": __schema_version__},
    )
    logger.info("config_loaded", extra={"config": settings.dump()})

    run_id = uuid.uuid4().hex
    bind_run(run_id, "live")
    ctx = PipelineContext(
        mode="live",
        run_id=run_id,
        features_version=settings.FEATURES_VERSION,
        beta_version=settings.BETA_VERSION,
    )

    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAX_SIZE)
    shutdown_event = asyncio.Event()
    metrics = Metrics()

    consumer = UnifiedEventConsumer.from_settings(settings)
    store = JsonlSignalStore(settings.SIGNALS_DIR)
    sink = FanoutSink(LiveIntentSink(), CollectIntentSink(run_id, store))
    normalizer = EventNormalizer(product_ids=[settings.SPOT_PRODUCT_ID], asset_ids=[])

    recorder: Optional[EventRecorder] = None
    if settings.RECORD_ENABLED:
        recorder = EventRecorder(output_dir=settings.RECORD_DIR)
        await recorder.start()

    coinbase = FeedClient(
        name=FEED_COINBASE,
        url=settings.COINBASE_WS_URL,
        out_queue=queue,
        subscription=coinbase_subscription([settings.SPOT_PRODUCT_ID]),
        metrics=metrics,
    )
    polymarket = FeedClient(
        name=FEED_POLYMARKET,
        url=settings.POLYMARKET_WS_URL,
        out_queue=queue,
        metrics=metrics,
    )

    catalog = MarketCatalog(
        gamma_api=settings.POLYMARKET_GAMMA_API,
        asset=settings.CATALOG_ASSET,
        windows_ahead=settings.CATALOG_WINDOWS_AHEAD,
        refresh_sec=settings.CATALOG_REFRESH_SEC,
    )

    async def on_markets(markets: list[MarketDescriptor]) -> None:
        asset_ids = catalog.active_asset_ids()
        normalizer.set_assets(asset_ids, catalog.condition_by_asset())
        await polymarket.set_subscription(polymarket_subscription(asset_ids))

    catalog.on_update(on_markets)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", extra={"signal": sig.name})
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    consumer_task = asyncio.create_task(
        consumer_loop(queue, normalizer, consumer, sink, ctx, metrics, recorder, shutdown_event),
        name="consumer",
    )
    consumer_task.add_done_callback(lambda _: shutdown_event.set())
    tasks = [
        asyncio.create_task(coinbase.run_forever(), name="ws_coinbase"),
        asyncio.create_task(polymarket.run_forever(), name="ws_polymarket"),
        asyncio.create_task(catalog.run_forever(shutdown_event), name="market_catalog"),
        asyncio.create_task(flush_loop(sink, settings.FLUSH_INTERVAL_SEC, shutdown_event), name="flush"),
        asyncio.create_task(metrics_logger_loop(metrics, consumer, shutdown_event), name="metrics_logger"),
    ]

    logger.info(
        "dislocator_ready",
        extra={
            "run_id": run_id,
            "spot_product_id": settings.SPOT_PRODUCT_ID,
            "beta": consumer.beta,
            "beta_blocked": consumer.beta_blocked,
            "record_enabled": settings.RECORD_ENABLED,
        },
    )

    await shutdown_event.wait()

    # =========================================
    # GRACEFUL SHUTDOWN
    # =========================================
    logger.info("shutdown_start")

    await coinbase.stop()
    await polymarket.stop()

    # Events already accepted finish; the consumer exits on the shutdown flag
    exit_code = 0
    try:
        await consumer_task
    except InvariantViolation as e:
        logger.critical("invariant_violation", extra={"error": str(e), "key": e.key})
        exit_code = 1
    except Exception as e:
        logger.exception("consumer_crashed", extra={"error": str(e)})
        exit_code = 1

    for task in tasks:
        if task.get_name() != "flush":
            task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
            logger.warning(
                "shutdown_task_error",
                extra={"task": task.get_name(), "error": str(result)},
            )

    flushed = await sink.flush_to_db()
    if recorder is not None:
        await recorder.stop()
    await catalog.close()
    store.close()

    final_metrics = metrics.snapshot()
    logger.info(
        "shutdown_complete",
        extra={
            "run_id": run_id,
            "final_flush_rows": flushed,
            "normalizer": normalizer.get_stats(),
            "pipeline": consumer.stats(),
            "uptime_sec": round(final_metrics.get("uptime_ms", 0) / 1000, 1),
        },
    )
    return exit_code


def run() -> None:
    """Synchronous entry point."""
    settings = load_settings()
    setup_logging(settings.LOG_LEVEL)

    try:
        exit_code = asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("dislocator_interrupted")
        return
    except Exception as e:
        logger.exception("dislocator_crashed", extra={"error": str(e)})
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    run()
