"""Live vs replay equivalence: the same events give the same decisions."""

import asyncio
import random

from dislocator.config import SimConfig
from dislocator.consumer import PipelineContext
from dislocator.replay.fingerprint import event_fingerprint, output_fingerprint
from dislocator.replay.harness import ReplayHarness
from dislocator.replay.loader import iter_chunks, load_events
from dislocator.replay.recorder import EventRecorder
from dislocator.sinks import SimulatedExecutionSink
from dislocator.types import ReplayEvent

from conftest import make_book, make_spot

BETA = (0.0, 40.0, 0.0, 0.0)


def _session(seed: int = 3, steps: int = 120) -> list:
    """Arrival-ordered events; every fifth step has a book and spot on the same ts."""
    rng = random.Random(seed)
    price = 100.0
    events = []
    for i in range(steps):
        ts = 10_000 + i * 500
        price *= 1 + rng.gauss(0, 0.001)
        bid = round(rng.uniform(0.40, 0.58), 2)
        book = make_book(ts if i % 5 == 0 else ts + 1, bid, round(bid + 0.02, 2))
        spot = make_spot(ts, round(price, 2))
        events.extend([book, spot] if i % 5 == 0 else [spot, book])
    return events


async def _live_run(consumer, events, output_dir):
    recorder = EventRecorder(output_dir=str(output_dir), buffer_size=16)
    await recorder.start()
    ctx = PipelineContext(mode="live", run_id="live")
    outputs = []
    for event in events:
        recorder.record(event)
        outputs.append(consumer.handle_event(event, None, ctx))
    await recorder.stop()
    return outputs, recorder.file_path


class TestLiveReplayEquivalence:
    def test_recorded_session_replays_identically(self, make_consumer, tmp_path) -> None:
        events = _session()
        live_consumer = make_consumer(beta=BETA)
        live_outputs, path = asyncio.run(_live_run(live_consumer, events, tmp_path))

        replay_consumer = make_consumer(beta=BETA)
        harness = ReplayHarness(replay_consumer, ctx=PipelineContext(mode="backtest", run_id="replay"))
        replay_outputs = []
        for chunk in iter_chunks([path], chunk_size=37):
            replay_outputs.extend(harness.replay(chunk))
        harness.finish()

        assert len(replay_outputs) == len(live_outputs)
        assert output_fingerprint(replay_outputs) == output_fingerprint(live_outputs)
        assert output_fingerprint(replay_outputs, signals_only=False) == output_fingerprint(
            live_outputs, signals_only=False
        )
        assert [o.intent.intent_id for o in replay_outputs if o.intent] == [
            o.intent.intent_id for o in live_outputs if o.intent
        ]
        assert replay_consumer.collision_count == live_consumer.collision_count > 0
        assert replay_consumer.positions.snapshot() == live_consumer.positions.snapshot()

        loaded = load_events([path])
        assert event_fingerprint(loaded) == event_fingerprint([ReplayEvent(e) for e in events])

    def test_replay_is_repeatable_with_simulation(self, make_consumer) -> None:
        events = [ReplayEvent(e) for e in _session(seed=11)]

        def run(order: list[ReplayEvent]) -> str:
            consumer = make_consumer(beta=BETA)
            sim = SimulatedExecutionSink("r", SimConfig(fail_prob=0.2, seed=5))
            harness = ReplayHarness(consumer, sim, feedback=sim)
            outputs = harness.replay(order)
            harness.finish()
            return output_fingerprint(outputs)

        with_ordinals = [ReplayEvent(e.event, i) for i, e in enumerate(events)]
        shuffled = list(with_ordinals)
        random.Random(1).shuffle(shuffled)
        assert run(with_ordinals) == run(shuffled)
