"""
Position, signal and trailing-stop state.

This module provides the core dataclasses shared by every component:

- Signal: an immutable trading signal (direction, targets, stop loss, deadline)
- TrailingStopConfig: per-position target/trailing-stop progress
- TargetExit: append-only record of a target-driven partial exit
- Position: a sized position opened from a signal, owned by the registry

All prices and amounts are Decimal; timestamps are timezone-aware UTC.
Serialization (to_dict/from_dict) converts Decimals to strings and datetimes
to ISO-8601 so persisted records round-trip exactly.

Examples:
    >>> from decimal import Decimal
    >>> from datetime import datetime, timezone
    >>> signal = Signal(
    ...     token="COS",
    ...     token_id="contentos",
    ...     direction=Direction.BUY,
    ...     current_price=Decimal("100"),
    ...     targets=(Decimal("110"), Decimal("120")),
    ...     stop_loss=Decimal("90"),
    ...     max_exit_time=datetime(2030, 1, 1, tzinfo=timezone.utc),
    ... )
    >>> signal.is_target_reached(Decimal("111"), Decimal("110"))
    True
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

getcontext().prec = 28


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dec(value: Optional[Any]) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _str(value: Optional[Any]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Direction(Enum):
    """Trade direction carried by a signal."""

    BUY = "Buy"
    PUT_OPTIONS = "Put Options"
    HOLD = "Hold"

    @classmethod
    def parse(cls, raw: str) -> "Direction":
        key = raw.strip().lower().replace("_", " ")
        aliases = {
            "buy": cls.BUY,
            "put options": cls.PUT_OPTIONS,
            "putoptions": cls.PUT_OPTIONS,
            "hold": cls.HOLD,
        }
        if key not in aliases:
            raise ValueError(f"Unknown signal direction: {raw!r}")
        return aliases[key]

    def opposes(self, other: "Direction") -> bool:
        if self is Direction.BUY:
            return other is Direction.PUT_OPTIONS
        if self is Direction.PUT_OPTIONS:
            return other is Direction.BUY
        if self is Direction.HOLD:
            return False
        raise ValueError(f"Unhandled direction {self}")


class PositionStatus(Enum):
    """Position lifecycle states."""

    PENDING = "pending"  # Admitted, entry swap not confirmed
    ACTIVE = "active"  # Entry executed, monitored for exits
    CLOSED = "closed"  # Fully exited on a price condition or manual close
    EXPIRED = "expired"  # Fully exited (or marked) after max_exit_time
    FAILED = "failed"  # Entry swap failed

    @property
    def is_terminal(self) -> bool:
        return self in (PositionStatus.CLOSED, PositionStatus.EXPIRED, PositionStatus.FAILED)


OPEN_STATUSES = (PositionStatus.PENDING, PositionStatus.ACTIVE)


@dataclass(frozen=True)
class Signal:
    """An immutable trading signal.

    Attributes:
        token: Token symbol (e.g. "COS")
        token_id: Price-oracle token id (e.g. "contentos")
        direction: BUY, PUT_OPTIONS or HOLD
        current_price: Price quoted by the signal at emission time
        targets: Profit targets in the order they are reached
        stop_loss: Hard stop-loss price
        max_exit_time: Absolute UTC deadline after which the position is force-exited
        metadata: Free-form trade metadata (timeline, trade tip, tweet link, ...)
    """

    token: str
    token_id: str
    direction: Direction
    current_price: Decimal
    targets: Tuple[Decimal, ...]
    stop_loss: Decimal
    max_exit_time: datetime
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def is_target_reached(self, price: Decimal, target: Decimal) -> bool:
        if self.direction is Direction.BUY:
            return price >= target
        if self.direction is Direction.PUT_OPTIONS:
            return price <= target
        if self.direction is Direction.HOLD:
            return False
        raise ValueError(f"Unhandled direction {self.direction}")

    def is_stop_loss_breached(self, price: Decimal) -> bool:
        if self.direction is Direction.BUY:
            return price <= self.stop_loss
        if self.direction is Direction.PUT_OPTIONS:
            return price >= self.stop_loss
        if self.direction is Direction.HOLD:
            return False
        raise ValueError(f"Unhandled direction {self.direction}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "token_id": self.token_id,
            "direction": self.direction.value,
            "current_price": str(self.current_price),
            "targets": [str(t) for t in self.targets],
            "stop_loss": str(self.stop_loss),
            "max_exit_time": self.max_exit_time.isoformat(),
            "metadata": dict(self.metadata),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Signal":
        return Signal(
            token=d["token"],
            token_id=d["token_id"],
            direction=Direction.parse(d["direction"]),
            current_price=Decimal(d["current_price"]),
            targets=tuple(Decimal(t) for t in d["targets"]),
            stop_loss=Decimal(d["stop_loss"]),
            max_exit_time=parse_timestamp(d["max_exit_time"]),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass
class TrailingStopConfig:
    """Target and trailing-stop progress for one position.

    Attributes:
        trail_percent: Retracement fraction that triggers the trailing stop (0 < p <= 0.5)
        is_active: True once TP1 has been hit and the trailing stop is armed
        tp1_hit: True once the first target has been hit
        targets_hit: One flag per signal target; flags only ever go False -> True
        peak_price: Highest price seen while trailing (BUY)
        lowest_price: Lowest price seen while trailing (PUT_OPTIONS)
        partial_exit_percentages: Optional per-target exit percentages overriding the default table
    """

    trail_percent: Decimal
    is_active: bool = False
    tp1_hit: bool = False
    targets_hit: List[bool] = field(default_factory=list)
    peak_price: Optional[Decimal] = None
    lowest_price: Optional[Decimal] = None
    partial_exit_percentages: Optional[List[Decimal]] = None

    @classmethod
    def for_targets(
        cls,
        count: int,
        trail_percent: Decimal,
        partial_exit_percentages: Optional[List[Decimal]] = None,
    ) -> "TrailingStopConfig":
        config = cls(
            trail_percent=trail_percent,
            targets_hit=[False] * count,
            partial_exit_percentages=list(partial_exit_percentages) if partial_exit_percentages else None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if not (Decimal("0") < self.trail_percent <= Decimal("0.5")):
            raise ValueError(f"trail_percent must be in (0, 0.5], got {self.trail_percent}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trail_percent": str(self.trail_percent),
            "is_active": self.is_active,
            "tp1_hit": self.tp1_hit,
            "targets_hit": list(self.targets_hit),
            "peak_price": _str(self.peak_price),
            "lowest_price": _str(self.lowest_price),
            "partial_exit_percentages": (
                [str(p) for p in self.partial_exit_percentages]
                if self.partial_exit_percentages is not None
                else None
            ),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TrailingStopConfig":
        pcts = d.get("partial_exit_percentages")
        config = TrailingStopConfig(
            trail_percent=Decimal(d["trail_percent"]),
            is_active=bool(d.get("is_active", False)),
            tp1_hit=bool(d.get("tp1_hit", False)),
            targets_hit=[bool(x) for x in d.get("targets_hit", [])],
            peak_price=_dec(d.get("peak_price")),
            lowest_price=_dec(d.get("lowest_price")),
            partial_exit_percentages=[Decimal(p) for p in pcts] if pcts is not None else None,
        )
        config.validate()
        return config


@dataclass
class TargetExit:
    """A single target-driven partial exit (append-only history entry)."""

    target_index: int
    target_price: Decimal
    actual_exit_price: Decimal
    amount_exited: Decimal
    percentage: Decimal
    timestamp: datetime
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_index": self.target_index,
            "target_price": str(self.target_price),
            "actual_exit_price": str(self.actual_exit_price),
            "amount_exited": str(self.amount_exited),
            "percentage": str(self.percentage),
            "timestamp": self.timestamp.isoformat(),
            "tx_hash": self.tx_hash,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TargetExit":
        return TargetExit(
            target_index=int(d["target_index"]),
            target_price=Decimal(d["target_price"]),
            actual_exit_price=Decimal(d["actual_exit_price"]),
            amount_exited=Decimal(d["amount_exited"]),
            percentage=Decimal(d["percentage"]),
            timestamp=parse_timestamp(d["timestamp"]),
            tx_hash=d.get("tx_hash"),
        )


@dataclass
class Position:
    """A sized position opened from a signal.

    Positions are owned by the PositionRegistry; groups only hold references.

    Invariants:
        - 0 <= remaining_amount <= original_amount
        - remaining_amount only decreases, except when a signal is merged in
        - remaining_amount + sum(target exits) + final_exit_amount == original_amount
          (up to rounding)
        - once status is terminal (CLOSED/EXPIRED/FAILED) the position never changes
    """

    id: str
    signal: Signal
    trailing_stop: TrailingStopConfig
    original_amount: Decimal
    remaining_amount: Decimal
    status: PositionStatus = PositionStatus.PENDING
    target_exit_history: List[TargetExit] = field(default_factory=list)
    current_price: Optional[Decimal] = None
    entry_tx_hash: Optional[str] = None
    exit_tx_hash: Optional[str] = None
    token_amount_received: Optional[Decimal] = None
    exit_reason: Optional[str] = None
    exit_price: Optional[Decimal] = None
    final_exit_amount: Decimal = Decimal("0")
    owner: Optional[str] = None
    vault_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    retain_until: Optional[datetime] = None

    @property
    def token_id(self) -> str:
        return self.signal.token_id

    @property
    def direction(self) -> Direction:
        return self.signal.direction

    @property
    def entry_price(self) -> Decimal:
        return self.signal.current_price

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def exited_amount(self) -> Decimal:
        return sum((e.amount_exited for e in self.target_exit_history), Decimal("0")) + self.final_exit_amount

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize position to dictionary for persistence."""
        return {
            "id": self.id,
            "signal": self.signal.to_dict(),
            "trailing_stop": self.trailing_stop.to_dict(),
            "original_amount": str(self.original_amount),
            "remaining_amount": str(self.remaining_amount),
            "status": self.status.value,
            "target_exit_history": [e.to_dict() for e in self.target_exit_history],
            "current_price": _str(self.current_price),
            "entry_tx_hash": self.entry_tx_hash,
            "exit_tx_hash": self.exit_tx_hash,
            "token_amount_received": _str(self.token_amount_received),
            "exit_reason": self.exit_reason,
            "exit_price": _str(self.exit_price),
            "final_exit_amount": str(self.final_exit_amount),
            "owner": self.owner,
            "vault_address": self.vault_address,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "retain_until": _iso(self.retain_until),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Position":
        """Deserialize position from dictionary (inverse of to_dict).

        Raises:
            KeyError: If required keys are missing
            ValueError: If an enum, timestamp or trailing config is invalid
            decimal.InvalidOperation: If a numeric value cannot be converted
        """
        remaining = Decimal(d["remaining_amount"])
        return Position(
            id=d["id"],
            signal=Signal.from_dict(d["signal"]),
            trailing_stop=TrailingStopConfig.from_dict(d["trailing_stop"]),
            original_amount=Decimal(d.get("original_amount") or remaining),
            remaining_amount=remaining,
            status=PositionStatus(d["status"]),
            target_exit_history=[TargetExit.from_dict(e) for e in d.get("target_exit_history") or []],
            current_price=_dec(d.get("current_price")),
            entry_tx_hash=d.get("entry_tx_hash"),
            exit_tx_hash=d.get("exit_tx_hash"),
            token_amount_received=_dec(d.get("token_amount_received")),
            exit_reason=d.get("exit_reason"),
            exit_price=_dec(d.get("exit_price")),
            final_exit_amount=Decimal(d.get("final_exit_amount") or "0"),
            owner=d.get("owner"),
            vault_address=d.get("vault_address"),
            created_at=parse_timestamp(d["created_at"]),
            updated_at=parse_timestamp(d["updated_at"]),
            retain_until=parse_timestamp(d["retain_until"]) if d.get("retain_until") else None,
        )
