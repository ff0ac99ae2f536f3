"""
Target-exit and trailing-stop state machine.

A position is in one of two phases:

- GUARDING: no target hit yet; the hard stop loss protects the position
- TRAILING: TP1 has been hit; the stop follows the favourable extremum
  (peak for BUY, trough for PUT_OPTIONS) at a fixed retracement

Each tick evaluate() checks, in order: time exit, the first target not yet
hit, the hard stop (GUARDING) or the trailing stop (TRAILING). The engine only
decides. Target hits with a non-zero exit are committed by the registry when
the exit is actually applied, so a failed swap leaves the target eligible on
the next tick.

Examples:
    >>> engine = TrailingStopEngine()
    >>> engine.evaluate(position, Decimal("110"))   # doctest: +SKIP
    PartialExit(percentage=Decimal('50'), target_index=0)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .groups import ExitStrategy, PositionGroup
from .logging_setup import logger
from .models import Direction, Position, PositionStatus, utcnow

DEFAULT_EXIT_PERCENTAGES = (Decimal('50'), Decimal('30'), Decimal('20'))
FULL = Decimal('100')


class Phase(Enum):
    GUARDING = "guarding"
    TRAILING = "trailing"


@dataclass(frozen=True)
class NoExit:
    pass


@dataclass(frozen=True)
class PartialExit:
    percentage: Decimal
    target_index: int


@dataclass(frozen=True)
class FullExit:
    reason: str


ExitDecision = Union[NoExit, PartialExit, FullExit]


def commit_target_hit(position: Position, target_index: int) -> None:
    """Mark a target hit. Committing TP1 arms the trailing stop (once)."""
    ts = position.trailing_stop
    if 0 <= target_index < len(ts.targets_hit):
        ts.targets_hit[target_index] = True
    if target_index == 0 and not ts.tp1_hit:
        ts.tp1_hit = True
        ts.is_active = True
        logger.info(f"TP1 hit, trailing stop armed | id={position.id} trail_pct={ts.trail_percent}")


def exit_percentage(position: Position, target_index: int) -> Decimal:
    """Share of the remaining amount to exit when target_index is hit.

    Custom per-position percentages win. Otherwise the default table applies,
    except that the last target of the signal (and any index past the table)
    exits everything.
    """
    custom = position.trailing_stop.partial_exit_percentages
    if custom is not None and target_index < len(custom):
        return Decimal(custom[target_index])
    if target_index >= len(position.signal.targets) - 1:
        return FULL
    if target_index < len(DEFAULT_EXIT_PERCENTAGES):
        return DEFAULT_EXIT_PERCENTAGES[target_index]
    return FULL


def phase(position: Position) -> Phase:
    return Phase.TRAILING if position.trailing_stop.is_active else Phase.GUARDING


def _is_expired(position: Position, now: datetime) -> bool:
    return now >= position.signal.max_exit_time


def _within(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    if b == 0:
        return a == b
    return abs(a - b) / b <= tolerance


class TrailingStopEngine:
    """Evaluates exit conditions for registered positions."""

    def __init__(self, group_target_tolerance: Decimal = Decimal('0.01')):
        self.group_target_tolerance = group_target_tolerance
        self._tracked: Dict[str, Position] = {}

    # --- Tracking ---
    def register(self, position: Position) -> None:
        self._tracked[position.id] = position
        logger.debug(f"Exit tracking started | id={position.id} phase={phase(position).value}")

    def unregister(self, position_id: str) -> None:
        if self._tracked.pop(position_id, None) is not None:
            logger.debug(f"Exit tracking stopped | id={position_id}")

    def is_registered(self, position_id: str) -> bool:
        return position_id in self._tracked

    phase = staticmethod(phase)
    exit_percentage = staticmethod(exit_percentage)
    commit_target_hit = staticmethod(commit_target_hit)

    # --- Single position ---
    def evaluate(self, position: Position, price: Decimal, now: Optional[datetime] = None) -> ExitDecision:
        """Decide the exit for one position at the given price."""
        now = now or utcnow()
        position.current_price = price

        if _is_expired(position, now):
            logger.info(
                f"Max exit time reached | id={position.id} deadline={position.signal.max_exit_time.isoformat()}"
            )
            return FullExit("time_exit")

        target_decision = self._check_targets(position, price)
        if target_decision is not None:
            return target_decision

        return self._check_stops(position, price)

    def _check_targets(self, position: Position, price: Decimal) -> Optional[PartialExit]:
        signal = position.signal
        hits = position.trailing_stop.targets_hit
        for index, target in enumerate(signal.targets):
            if index < len(hits) and hits[index]:
                continue
            if not signal.is_target_reached(price, target):
                continue
            pct = exit_percentage(position, index)
            if pct > 0:
                logger.info(
                    f"Target reached | id={position.id} target={index + 1} price={price} "
                    f"target_price={target} exit_pct={pct}"
                )
                return PartialExit(percentage=pct, target_index=index)
            # Zero-percentage target: record the hit and keep looking.
            commit_target_hit(position, index)
        return None

    def _check_stops(self, position: Position, price: Decimal) -> ExitDecision:
        if phase(position) is Phase.GUARDING:
            if position.signal.is_stop_loss_breached(price):
                logger.info(
                    f"Stop loss triggered | id={position.id} direction={position.direction.value} "
                    f"price={price} stop_loss={position.signal.stop_loss}"
                )
                return FullExit("stop_loss")
            return NoExit()
        return self._check_trailing(position, price)

    def _check_trailing(self, position: Position, price: Decimal) -> ExitDecision:
        ts = position.trailing_stop
        direction = position.direction
        if direction is Direction.BUY:
            if ts.peak_price is None or price > ts.peak_price:
                ts.peak_price = price
                logger.debug(f"Peak updated | id={position.id} peak={price}")
            threshold = ts.peak_price * (Decimal(1) - ts.trail_percent)
            breached = price <= threshold
            extremum = ts.peak_price
        elif direction is Direction.PUT_OPTIONS:
            if ts.lowest_price is None or price < ts.lowest_price:
                ts.lowest_price = price
                logger.debug(f"Trough updated | id={position.id} lowest={price}")
            threshold = ts.lowest_price * (Decimal(1) + ts.trail_percent)
            breached = price >= threshold
            extremum = ts.lowest_price
        elif direction is Direction.HOLD:
            return NoExit()
        else:
            raise ValueError(f"Unhandled direction {direction}")

        if breached:
            logger.info(
                f"Trailing stop triggered | id={position.id} price={price} "
                f"extremum={extremum} threshold={threshold}"
            )
            return FullExit("trailing_stop")
        return NoExit()

    # --- Groups ---
    def evaluate_group(
        self,
        group: PositionGroup,
        price: Decimal,
        now: Optional[datetime] = None,
        skip: Iterable[str] = (),
    ) -> List[Tuple[Position, ExitDecision]]:
        """Decide exits for every ACTIVE member of a group.

        Returns one (position, decision) pair per evaluated member. Members
        whose id is in ``skip`` (swaps still in flight) are left out.
        """
        now = now or utcnow()
        skipped = set(skip)
        members = [p for p in group.positions if p.status is PositionStatus.ACTIVE and p.id not in skipped]
        if not members:
            return []

        if group.exit_strategy is ExitStrategy.INDIVIDUAL:
            return [(p, self.evaluate(p, price, now)) for p in members]

        for p in members:
            p.current_price = price

        if any(_is_expired(p, now) for p in members):
            logger.info(f"Group max exit time reached | token_id={group.token_id} members={len(members)}")
            return [(p, FullExit("time_exit")) for p in members]

        if any(p.signal.is_stop_loss_breached(price) for p in members):
            logger.info(f"Group stop loss triggered | token_id={group.token_id} price={price}")
            return [(p, FullExit("stop_loss")) for p in members]

        decisions: Dict[str, ExitDecision] = {}
        for combined in self._reach_order(group, members):
            for p in members:
                if p.id in decisions or not p.signal.is_target_reached(price, combined):
                    continue
                decision = self._match_member_target(p, combined, price)
                if decision is not None:
                    decisions[p.id] = decision

        out: List[Tuple[Position, ExitDecision]] = []
        for p in members:
            decision = decisions.get(p.id)
            if decision is None:
                decision = self._check_trailing(p, price) if phase(p) is Phase.TRAILING else NoExit()
            out.append((p, decision))
        return out

    @staticmethod
    def _reach_order(group: PositionGroup, members: List[Position]) -> List[Decimal]:
        direction = members[0].direction
        if direction is Direction.PUT_OPTIONS:
            return sorted(group.combined_targets, reverse=True)
        if direction is Direction.BUY or direction is Direction.HOLD:
            return sorted(group.combined_targets)
        raise ValueError(f"Unhandled direction {direction}")

    def _match_member_target(self, position: Position, combined: Decimal, price: Decimal) -> Optional[PartialExit]:
        hits = position.trailing_stop.targets_hit
        for index, target in enumerate(position.signal.targets):
            if index < len(hits) and hits[index]:
                continue
            if not _within(target, combined, self.group_target_tolerance):
                continue
            pct = exit_percentage(position, index)
            if pct > 0:
                logger.info(
                    f"Group target reached | id={position.id} target={index + 1} price={price} exit_pct={pct}"
                )
                return PartialExit(percentage=pct, target_index=index)
            commit_target_hit(position, index)
        return None

    def stats(self) -> Dict:
        tracked = list(self._tracked.values())
        active = [p for p in tracked if p.status is PositionStatus.ACTIVE]
        avg = (
            sum((p.trailing_stop.trail_percent for p in tracked), Decimal('0')) / len(tracked)
            if tracked
            else Decimal('0')
        )
        return {
            "total_positions": len(tracked),
            "active_positions": len(active),
            "trailing_stop_active": sum(1 for p in active if p.trailing_stop.is_active),
            "average_trail_percent": float(avg),
        }
