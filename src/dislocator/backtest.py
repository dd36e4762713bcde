"""
Backtest Runner
===============

Replays recorded events through the same consumer the live service uses,
with simulated execution.

Usage:
    python -m dislocator.backtest data/recordings --run-id bt-001
    python -m dislocator.backtest events_20250101_120000.jsonl --seed 7 --output summary.json

Prints nothing; the summary is logged as "backtest_summary" (and written
to --output when given). Exit status 1 on ordering / invariant violations
or missing inputs.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Optional

import orjson

from dislocator import __schema_version__
from dislocator.config import Settings, SimConfig, load_settings
from dislocator.consumer import PipelineContext, UnifiedEventConsumer
from dislocator.errors import DislocatorError
from dislocator.logging_setup import bind_run, setup_logging
from dislocator.persistence import JsonlSignalStore, SignalStore
from dislocator.replay.fingerprint import RunFingerprint
from dislocator.replay.harness import ReplayHarness
from dislocator.replay.loader import DEFAULT_CHUNK_SIZE, LoadStats, iter_chunks
from dislocator.sinks import BacktestIntentSink, FanoutSink, SimulatedExecutionSink

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay recorded events through the dislocation pipeline",
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        help="Event files (.jsonl / .json) or directories containing them",
    )
    parser.add_argument("--run-id", help="Run identifier (default: random)")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Events per replay chunk",
    )
    parser.add_argument(
        "--signals-dir",
        help="Signal store directory (default: SIGNALS_DIR)",
    )
    parser.add_argument(
        "--no-persist",
        action="store_true",
        help="Do not write signals / simulated trades",
    )
    parser.add_argument("--condition-id", help="Default condition id for books without one")
    parser.add_argument("--asset-id", help="Default asset id recorded on signal rows")
    parser.add_argument("--seed", type=int, help="Simulation seed (default: SIM_SEED)")
    parser.add_argument(
        "--no-sim",
        action="store_true",
        help="Disable simulated execution (intents are never filled)",
    )
    parser.add_argument("--output", help="Write the summary as JSON to this file")
    return parser


async def run_backtest(
    inputs: list[str],
    settings: Settings,
    run_id: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    store: Optional[SignalStore] = None,
    sim: Optional[SimConfig] = None,
    simulate: bool = True,
    condition_id: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> dict:
    """
    Run one backtest.

    Args:
        inputs: Event files / directories
        settings: Pipeline settings
        run_id: Run identifier used for persisted rows
        chunk_size: Events per replay chunk
        store: Optional persistence collaborator
        sim: Simulation parameters (default: from settings)
        simulate: Attach simulated execution
        condition_id: Context condition id
        asset_id: Context asset id

    Returns:
        Summary dict.

    Raises:
        OrderingViolation, InvariantViolation: fatal replay errors
        FileNotFoundError: missing input path
    """
    ctx = PipelineContext(
        mode="backtest",
        run_id=run_id,
        features_version=settings.FEATURES_VERSION,
        beta_version=settings.BETA_VERSION,
        condition_id=condition_id,
        asset_id=asset_id,
    )
    consumer = UnifiedEventConsumer.from_settings(settings)

    backtest_sink = BacktestIntentSink(run_id, store)
    sim_sink = SimulatedExecutionSink(run_id, sim or settings.sim_config(), store) if simulate else None
    sink = FanoutSink(backtest_sink, sim_sink) if sim_sink is not None else FanoutSink(backtest_sink)

    fingerprint = RunFingerprint()
    harness = ReplayHarness(consumer, sink, ctx, feedback=sim_sink, fingerprint=fingerprint)
    stats = LoadStats()

    logger.info(
        "backtest_started",
        extra={
            "run_id": run_id,
            "inputs": [str(p) for p in inputs],
            "chunk_size": chunk_size,
            "simulate": simulate,
            "beta_blocked": consumer.beta_blocked,
        },
    )

    for chunk in iter_chunks(inputs, chunk_size=chunk_size, stats=stats):
        harness.replay(chunk)
        await sink.flush_to_db()

    replay_summary = harness.finish()
    await sink.flush_to_db()

    positions = consumer.positions.snapshot()
    summary = {
        "run_id": run_id,
        "schema_version": __schema_version__,
        "load": stats.to_dict(),
        **replay_summary.to_dict(),
        "event_hash": fingerprint.events,
        "output_hash": fingerprint.outputs,
        "states_seen": sorted(s.value for s in backtest_sink.states),
        "signals_flush_failures": backtest_sink.flush_failures,
        "sim_fills": sim_sink.fills if sim_sink else 0,
        "sim_fails": sim_sink.fails if sim_sink else 0,
        "positions": positions,
    }
    logger.info("backtest_summary", extra=summary)
    return summary


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.chunk_size <= 0:
        parser.error("--chunk-size must be positive")

    overrides = {}
    if args.signals_dir:
        overrides["SIGNALS_DIR"] = args.signals_dir
    if args.seed is not None:
        overrides["SIM_SEED"] = args.seed
    settings = load_settings(**overrides)
    setup_logging(settings.LOG_LEVEL)

    run_id = args.run_id or f"bt-{uuid.uuid4().hex[:12]}"
    bind_run(run_id, "backtest")
    store = None if args.no_persist else JsonlSignalStore(settings.SIGNALS_DIR)

    try:
        summary = asyncio.run(
            run_backtest(
                args.inputs,
                settings,
                run_id,
                chunk_size=args.chunk_size,
                store=store,
                simulate=not args.no_sim,
                condition_id=args.condition_id,
                asset_id=args.asset_id,
            )
        )
    except FileNotFoundError as e:
        logger.error("backtest_input_missing", extra={"run_id": run_id, "error": str(e)})
        return 1
    except DislocatorError as e:
        logger.critical(
            "backtest_aborted",
            extra={"run_id": run_id, "error": str(e), "error_type": type(e).__name__},
        )
        return 1
    finally:
        if store is not None:
            store.close()

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(orjson.dumps(summary, option=orjson.OPT_INDENT_2))
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
