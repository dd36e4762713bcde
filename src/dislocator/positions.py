"""
Position / Intent Manager
=========================

Owns per-instrument inventory and pending exposure and decides whether to
emit an order intent.

Positions are keyed by "condition_id|asset_id" and created lazily.

    inventory    - settled signed size
    pending      - signed size of in-flight (unsettled) intents
    pending_buy  - gross in-flight BUY size
    pending_sell - gross in-flight SELL size

Invariant (checked after every mutation, fatal on breach):
    |inventory| <= cap + EPS and |pending| <= cap + EPS

Every new intent (entry or unwind) must fit the cap in the worst case:
    |inventory + pending +/- size| <= cap
    pending_buy, pending_sell <= cap
    inventory + pending_buy <= cap and inventory - pending_sell >= -cap
so no fill order of the outstanding intents can breach the invariant.

Entry (reason DELTA_SPD):
    side  = BUY if delta_spd > 0 else SELL
    skip  if |delta_spd| < delta_threshold
    skip  if the intent does not fit the cap
    price = best ask for BUY, best bid for SELL (marketable at the touch)
    skip  if the same intent id is already pending for this key

Unwind (reason MM_REBALANCE), only when no entry fired on this event:
    exposure = inventory + pending
    skip  if |exposure| < cap * unwind_start_frac
    skip  if within unwind_cooldown_ms of the last unwind
    size  = order_size, doubled if |exposure| >= cap * unwind_aggressive_frac,
            never more than |exposure| (no flip through zero)
    price = sell: ceil_to_tick(best_bid + edge), buy: floor_to_tick(best_ask - edge)
            with edge = unwind_min_edge_ticks * tick_size
    skip  if the same unwind intent id is still pending
    skip  if the intent does not fit the cap

Feedback:
    apply_fill_event  pending -> inventory for the filled signed size
    apply_fail_event  pending reversed only
    Dedup keys are cleared once nothing is in flight.
"""

import hashlib
import logging
import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from dislocator.config import IntentConfig
from dislocator.dislocation import DislocationSignal
from dislocator.errors import InvariantViolation

logger = logging.getLogger(__name__)

# Float tolerance for cap checks and "pending is zero"
EPS = 1e-9


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class IntentReason(str, Enum):
    DELTA_SPD = "DELTA_SPD"
    MM_REBALANCE = "MM_REBALANCE"


def signed_size(side: Side, size: float) -> float:
    return size if side == Side.BUY else -size


def position_key(condition_id: Optional[str], asset_id: str) -> str:
    return f"{condition_id or ''}|{asset_id}"


def make_intent_id(*parts: object) -> str:
    """
    Deterministic composite intent id.

    Floats are formatted with fixed precision so that equal prices and
    sizes always hash the same.
    """
    rendered = []
    for part in parts:
        if isinstance(part, float):
            rendered.append(f"{part:.10f}")
        elif isinstance(part, Enum):
            rendered.append(str(part.value))
        else:
            rendered.append("" if part is None else str(part))
    digest = hashlib.sha256("|".join(rendered).encode("utf-8")).hexdigest()
    return digest[:24]


def ceil_to_tick(price: float, tick: float) -> float:
    return round(math.ceil(price / tick - 1e-9) * tick, 10)


def floor_to_tick(price: float, tick: float) -> float:
    return round(math.floor(price / tick + 1e-9) * tick, 10)


@dataclass(slots=True)
class Position:
    """Mutable per-instrument position state."""
    inventory: float = 0.0
    pending: float = 0.0
    pending_buy: float = 0.0
    pending_sell: float = 0.0
    last_intent_id: Optional[str] = None
    last_unwind_intent_id: Optional[str] = None
    last_unwind_ts: Optional[int] = None

    @property
    def exposure(self) -> float:
        return self.inventory + self.pending

    @property
    def in_flight(self) -> bool:
        return self.pending_buy > EPS or self.pending_sell > EPS

    def add_pending(self, side: Side, size: float) -> None:
        self.pending += signed_size(side, size)
        if side == Side.BUY:
            self.pending_buy += size
        else:
            self.pending_sell += size

    def release_pending(self, side: Side, size: float) -> None:
        self.pending -= signed_size(side, size)
        if side == Side.BUY:
            self.pending_buy = max(0.0, self.pending_buy - size)
        else:
            self.pending_sell = max(0.0, self.pending_sell - size)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class OrderIntent:
    """Order the strategy wants placed."""
    intent_id: str
    condition_id: Optional[str]
    asset_id: str
    side: Side
    price: float
    size: float
    reason: IntentReason
    created_ts: int

    @property
    def signed_size(self) -> float:
        return signed_size(self.side, self.size)

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "condition_id": self.condition_id,
            "asset_id": self.asset_id,
            "side": self.side.value,
            "price": self.price,
            "size": self.size,
            "reason": self.reason.value,
            "created_ts": self.created_ts,
        }


@dataclass(slots=True, frozen=True)
class FillEvent:
    """Execution feedback: (partial) fill of an intent."""
    intent_id: str
    condition_id: Optional[str]
    asset_id: str
    side: Side
    filled_size: float
    price: float
    timestamp: int
    partial: bool = False


@dataclass(slots=True, frozen=True)
class FailEvent:
    """Execution feedback: intent rejected or cancelled without fill."""
    intent_id: str
    condition_id: Optional[str]
    asset_id: str
    side: Side
    size: float
    timestamp: int
    reason: Optional[str] = None


class PositionManager:
    """
    Inventory-aware intent manager.

    Args:
        config: Thresholds, caps and unwind parameters

    Thread Safety:
        Single writer. Called only from the unified consumer and from
        fill / fail feedback on the same task.
    """

    def __init__(self, config: IntentConfig) -> None:
        self.config = config
        self._positions: dict[str, Position] = {}

        # Statistics
        self._entries = 0
        self._unwinds = 0
        self._rejected: dict[str, int] = {
            "threshold": 0,
            "cap": 0,
            "duplicate": 0,
            "cooldown": 0,
        }

    def get(self, condition_id: Optional[str], asset_id: str) -> Position:
        """Position for the key, created on first access."""
        key = position_key(condition_id, asset_id)
        pos = self._positions.get(key)
        if pos is None:
            pos = Position()
            self._positions[key] = pos
        return pos

    def peek(self, condition_id: Optional[str], asset_id: str) -> Optional[Position]:
        return self._positions.get(position_key(condition_id, asset_id))

    @property
    def positions(self) -> dict[str, Position]:
        return dict(self._positions)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate_entry(
        self,
        condition_id: Optional[str],
        asset_id: str,
        signal: DislocationSignal,
        best_bid: float,
        best_ask: float,
        now_ts: int,
    ) -> Optional[OrderIntent]:
        """
        Decide on an entry intent from a dislocation signal.

        Returns:
            The accepted intent (pending already updated), or None.
        """
        cfg = self.config
        side = Side.BUY if signal.delta_spd > 0 else Side.SELL

        if abs(signal.delta_spd) < cfg.delta_threshold:
            self._rejected["threshold"] += 1
            return None

        pos = self.get(condition_id, asset_id)
        size = cfg.order_size

        if not self._fits_cap(condition_id, asset_id, pos, side, size):
            return None

        price = best_ask if side == Side.BUY else best_bid
        intent_id = make_intent_id(condition_id, asset_id, side, float(price), float(size))

        if pos.last_intent_id == intent_id and pos.in_flight:
            self._rejected["duplicate"] += 1
            return None

        intent = OrderIntent(
            intent_id=intent_id,
            condition_id=condition_id,
            asset_id=asset_id,
            side=side,
            price=price,
            size=size,
            reason=IntentReason.DELTA_SPD,
            created_ts=now_ts,
        )
        pos.add_pending(side, size)
        pos.last_intent_id = intent_id
        self._check_invariant(condition_id, asset_id, pos)
        self._entries += 1

        logger.info(
            "intent_emitted",
            extra={
                "intent": intent.to_dict(),
                "delta_spd": signal.delta_spd,
                "inventory": pos.inventory,
                "pending": pos.pending,
            },
        )
        return intent

    def evaluate_unwind(
        self,
        condition_id: Optional[str],
        asset_id: str,
        best_bid: float,
        best_ask: float,
        now_ts: int,
    ) -> Optional[OrderIntent]:
        """
        Decide on an inventory-reducing intent.

        Returns:
            The accepted unwind intent (pending already updated), or None.
        """
        cfg = self.config
        pos = self.peek(condition_id, asset_id)
        if pos is None:
            return None

        exposure = pos.exposure
        abs_exposure = abs(exposure)
        cap = cfg.inventory_cap
        if abs_exposure <= EPS or abs_exposure < cap * cfg.unwind_start_frac:
            return None

        if pos.last_unwind_ts is not None and now_ts - pos.last_unwind_ts < cfg.unwind_cooldown_ms:
            self._rejected["cooldown"] += 1
            return None

        size = cfg.order_size
        if abs_exposure >= cap * cfg.unwind_aggressive_frac:
            size *= 2
        # Close out exactly rather than flip through zero
        size = min(size, abs_exposure)

        side = Side.SELL if exposure > 0 else Side.BUY
        price = self._unwind_price(side, best_bid, best_ask)
        intent_id = make_intent_id("unwind", condition_id, asset_id, side, float(price), float(size))

        if pos.last_unwind_intent_id == intent_id and pos.in_flight:
            self._rejected["duplicate"] += 1
            return None

        if not self._fits_cap(condition_id, asset_id, pos, side, size):
            return None

        intent = OrderIntent(
            intent_id=intent_id,
            condition_id=condition_id,
            asset_id=asset_id,
            side=side,
            price=price,
            size=size,
            reason=IntentReason.MM_REBALANCE,
            created_ts=now_ts,
        )
        pos.add_pending(side, size)
        pos.last_unwind_intent_id = intent_id
        pos.last_unwind_ts = now_ts
        self._check_invariant(condition_id, asset_id, pos)
        self._unwinds += 1

        logger.info(
            "unwind_intent_emitted",
            extra={
                "intent": intent.to_dict(),
                "exposure": exposure,
                "inventory": pos.inventory,
                "pending": pos.pending,
            },
        )
        return intent

    def _fits_cap(
        self,
        condition_id: Optional[str],
        asset_id: str,
        pos: Position,
        side: Side,
        size: float,
    ) -> bool:
        cap = self.config.inventory_cap + EPS
        buys = pos.pending_buy + (size if side == Side.BUY else 0.0)
        sells = pos.pending_sell + (size if side == Side.SELL else 0.0)
        projected = pos.exposure + signed_size(side, size)

        fits = (
            abs(projected) <= cap
            and buys <= cap
            and sells <= cap
            and pos.inventory + buys <= cap
            and pos.inventory - sells >= -cap
        )
        if not fits:
            self._rejected["cap"] += 1
            logger.debug(
                "intent_rejected_cap",
                extra={
                    "key": position_key(condition_id, asset_id),
                    "side": side.value,
                    "projected": projected,
                    "pending_buy": buys,
                    "pending_sell": sells,
                    "cap": self.config.inventory_cap,
                },
            )
        return fits

    def _unwind_price(self, side: Side, best_bid: float, best_ask: float) -> float:
        tick = self.config.tick_size
        edge = self.config.unwind_min_edge_ticks * tick
        if side == Side.SELL:
            price = ceil_to_tick(best_bid + edge, tick)
        else:
            price = floor_to_tick(best_ask - edge, tick)
        return min(max(price, tick), round(1.0 - tick, 10))

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def apply_fill_event(self, fill: FillEvent) -> Position:
        """Move the filled signed size from pending into inventory."""
        pos = self.get(fill.condition_id, fill.asset_id)
        pos.release_pending(fill.side, fill.filled_size)
        pos.inventory += signed_size(fill.side, fill.filled_size)
        self._settle_dedup(pos)
        self._check_invariant(fill.condition_id, fill.asset_id, pos)

        logger.debug(
            "fill_applied",
            extra={
                "intent_id": fill.intent_id,
                "side": fill.side.value,
                "filled_size": fill.filled_size,
                "partial": fill.partial,
                "inventory": pos.inventory,
                "pending": pos.pending,
            },
        )
        return pos

    def apply_fail_event(self, fail: FailEvent) -> Position:
        """Reverse the pending size of a failed intent."""
        pos = self.get(fail.condition_id, fail.asset_id)
        pos.release_pending(fail.side, fail.size)
        self._settle_dedup(pos)
        self._check_invariant(fail.condition_id, fail.asset_id, pos)

        logger.info(
            "fail_applied",
            extra={
                "intent_id": fail.intent_id,
                "side": fail.side.value,
                "size": fail.size,
                "reason": fail.reason,
                "pending": pos.pending,
            },
        )
        return pos

    @staticmethod
    def _settle_dedup(pos: Position) -> None:
        if not pos.in_flight:
            pos.pending_buy = 0.0
            pos.pending_sell = 0.0
            if abs(pos.pending) <= EPS:
                pos.pending = 0.0
            pos.last_intent_id = None
            pos.last_unwind_intent_id = None

    def _check_invariant(self, condition_id: Optional[str], asset_id: str, pos: Position) -> None:
        cap = self.config.inventory_cap
        if abs(pos.inventory) > cap + EPS or abs(pos.pending) > cap + EPS:
            key = position_key(condition_id, asset_id)
            logger.critical(
                "position_cap_invariant_violated",
                extra={
                    "key": key,
                    "inventory": pos.inventory,
                    "pending": pos.pending,
                    "cap": cap,
                },
            )
            raise InvariantViolation(
                f"position {key} breached cap {cap}: inventory={pos.inventory} pending={pos.pending}",
                key=key,
                inventory=pos.inventory,
                pending=pos.pending,
            )

    def snapshot(self) -> dict:
        """Positions and decision statistics."""
        return {
            "positions": {key: pos.to_dict() for key, pos in sorted(self._positions.items())},
            "entries": self._entries,
            "unwinds": self._unwinds,
            "rejected": dict(self._rejected),
        }
