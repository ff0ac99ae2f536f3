"""Admission control and conflict resolution for incoming signals."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union

from .config import AdmissionConfig, ConflictPolicy
from .logging_setup import logger
from .models import Signal, utcnow
from .registry import PositionRegistry, weighted_targets

__all__ = [
    "AdmissionController",
    "Cancel",
    "Decision",
    "Merge",
    "Prioritize",
    "Separate",
    "risk_score",
    "weighted_targets",
]

SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class Cancel:
    reason: str


@dataclass(frozen=True)
class Merge:
    position_id: str
    reason: str


@dataclass(frozen=True)
class Separate:
    reason: str


@dataclass(frozen=True)
class Prioritize:
    priority: Decimal
    conflicting_ids: Tuple[str, ...]
    reason: str


Decision = Union[Cancel, Merge, Separate, Prioritize]


def risk_score(signal: Signal, now: Optional[datetime] = None) -> Decimal:
    """Heuristic risk of a signal; lower is safer.

    - stop-loss proximity: (1 - |price - stop| / price) * 50
    - target count: max(0, 30 - 10 * targets)
    - time to deadline: max(0, 20 - days left)
    """
    now = now or utcnow()
    price = signal.current_price
    stop_distance = abs(price - signal.stop_loss) / price
    score = (Decimal(1) - stop_distance) * 50
    score += max(Decimal(0), Decimal(30 - 10 * len(signal.targets)))
    days_left = Decimal(str((signal.max_exit_time - now).total_seconds())) / SECONDS_PER_DAY
    score += max(Decimal(0), Decimal(20) - days_left)
    return score


class AdmissionController:
    """Decides whether a signal becomes a new position, merges, or is rejected.

    Reads limits from AdmissionConfig and current state from the registry;
    never mutates either.
    """

    def __init__(self, config: AdmissionConfig, registry: PositionRegistry):
        self.config = config
        self.registry = registry

    def evaluate(self, signal: Signal, proposed_size: Decimal, now: Optional[datetime] = None) -> Decision:
        now = now or utcnow()
        cfg = self.config
        existing = self.registry.positions_for_token(signal.token_id)

        open_count = len(self.registry.list_active())
        if open_count >= cfg.max_concurrent_positions:
            return self._log(Cancel(f"Maximum concurrent positions ({cfg.max_concurrent_positions}) reached"), signal)

        if len(existing) >= cfg.max_positions_per_token:
            if cfg.conflict_resolution is ConflictPolicy.MERGE_SIMILAR:
                similar = next(
                    (
                        p
                        for p in existing
                        if p.direction is signal.direction
                        and abs(p.signal.current_price - signal.current_price) / signal.current_price
                        < cfg.merge_price_tolerance
                    ),
                    None,
                )
                if similar is not None:
                    return self._log(
                        Merge(similar.id, f"Merging with similar {signal.direction.value} signal for {signal.token}"),
                        signal,
                    )
            return self._log(
                Cancel(f"Maximum positions per token ({cfg.max_positions_per_token}) reached for {signal.token}"),
                signal,
            )

        if self.registry.total_exposure() + proposed_size > cfg.max_total_exposure:
            return self._log(Cancel(f"Would exceed maximum total exposure ({cfg.max_total_exposure})"), signal)

        if self.registry.token_exposure(signal.token_id) + proposed_size > cfg.max_single_token_exposure:
            return self._log(
                Cancel(f"Would exceed maximum single token exposure ({cfg.max_single_token_exposure}) for {signal.token}"),
                signal,
            )

        opposing = [p for p in existing if signal.direction.opposes(p.direction)]
        if opposing:
            return self._log(self._resolve_conflict(signal, opposing, now), signal)

        return self._log(Separate("No conflicts detected"), signal)

    def _resolve_conflict(self, signal: Signal, opposing, now: datetime) -> Decision:
        ids = tuple(p.id for p in opposing)
        policy = self.config.conflict_resolution
        if policy is ConflictPolicy.FIRST_WINS:
            return Cancel(f"Conflicting signal exists for {signal.token} - first signal takes priority")
        if policy is ConflictPolicy.PRIORITIZE_LATEST:
            return Prioritize(
                priority=Decimal(str(now.timestamp())),
                conflicting_ids=ids,
                reason=f"Prioritizing latest signal for {signal.token}",
            )
        if policy is ConflictPolicy.RISK_BASED:
            existing_risk = risk_score(opposing[0].signal, now)
            new_risk = risk_score(signal, now)
            logger.debug(f"Risk comparison | token={signal.token} existing={existing_risk} new={new_risk}")
            if new_risk < existing_risk:
                return Prioritize(
                    priority=new_risk,
                    conflicting_ids=ids,
                    reason=f"New signal has lower risk score for {signal.token}",
                )
            return Cancel(f"Existing signal has lower risk score for {signal.token}")
        if policy is ConflictPolicy.MERGE_SIMILAR or policy is ConflictPolicy.SEPARATE:
            return Separate(f"Managing conflicting signals separately for {signal.token}")
        raise ValueError(f"Unhandled conflict policy {policy}")

    @staticmethod
    def _log(decision: Decision, signal: Signal) -> Decision:
        logger.info(
            f"Admission decision | token={signal.token} direction={signal.direction.value} "
            f"action={type(decision).__name__} reason={decision.reason}"
        )
        return decision
