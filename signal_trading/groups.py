"""Position groups: per-token aggregation of open positions."""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

from .logging_setup import logger
from .models import Position, PositionStatus


class ExitStrategy(Enum):
    INDIVIDUAL = "individual"
    GROUPED = "grouped"


class GroupStatus(Enum):
    PENDING = "pending"  # only members awaiting entry
    ACTIVE = "active"
    PARTIAL = "partial"  # at least one member has taken a target exit


@dataclass
class PositionGroup:
    """All open positions sharing a token id.

    Members are references to registry-owned positions. Metrics are derived
    from members and recomputed by GroupStore.recompute() on every change.
    """
    token_id: str
    token: str
    positions: List[Position] = field(default_factory=list)
    total_exposure: Decimal = Decimal('0')
    average_entry_price: Decimal = Decimal('0')
    combined_targets: List[Decimal] = field(default_factory=list)
    exit_strategy: ExitStrategy = ExitStrategy.INDIVIDUAL
    status: GroupStatus = GroupStatus.PENDING

    @property
    def active_members(self) -> List[Position]:
        return [p for p in self.positions if p.status is PositionStatus.ACTIVE]

    @property
    def open_members(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    def summary(self) -> Dict:
        return {
            "token_id": self.token_id,
            "token": self.token,
            "positions": [p.id for p in self.positions],
            "total_exposure": float(self.total_exposure),
            "average_entry_price": float(self.average_entry_price),
            "combined_targets": [float(t) for t in self.combined_targets],
            "exit_strategy": self.exit_strategy.value,
            "status": self.status.value,
        }


class GroupStore:
    """Owns the token_id -> PositionGroup map."""

    def __init__(self):
        self._groups: Dict[str, PositionGroup] = {}

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[PositionGroup]:
        return iter(list(self._groups.values()))

    def get(self, token_id: str) -> Optional[PositionGroup]:
        return self._groups.get(token_id)

    def groups(self) -> List[PositionGroup]:
        return list(self._groups.values())

    def total_exposure(self) -> Decimal:
        return sum((g.total_exposure for g in self._groups.values()), Decimal('0'))

    def attach(self, position: Position) -> PositionGroup:
        """Add a position to its token group, creating the group on first member."""
        group = self._groups.get(position.token_id)
        if group is None:
            group = PositionGroup(token_id=position.token_id, token=position.signal.token)
            self._groups[position.token_id] = group
            logger.debug(f"Group created | token_id={position.token_id}")
        if not any(p.id == position.id for p in group.positions):
            group.positions.append(position)
        self.recompute(group)
        return group

    def detach(self, position: Position) -> None:
        """Remove a position from its group; delete the group when no open member remains."""
        group = self._groups.get(position.token_id)
        if group is None:
            return
        group.positions = [p for p in group.positions if p.id != position.id]
        self.recompute(group)
        if not group.positions:
            del self._groups[position.token_id]
            logger.debug(f"Group deleted | token_id={position.token_id}")

    def refresh(self, token_id: str) -> None:
        group = self._groups.get(token_id)
        if group is not None:
            self.recompute(group)

    def recompute(self, group: PositionGroup) -> None:
        """Recalculate exposure, average entry, combined targets and exit strategy."""
        open_members = group.open_members
        group.positions = open_members
        group.total_exposure = sum((p.remaining_amount for p in open_members), Decimal('0'))

        if group.total_exposure > 0:
            weighted = sum((p.entry_price * p.remaining_amount for p in open_members), Decimal('0'))
            group.average_entry_price = weighted / group.total_exposure
        else:
            group.average_entry_price = Decimal('0')

        group.combined_targets = sorted({t for p in open_members for t in p.signal.targets})
        group.exit_strategy = ExitStrategy.GROUPED if len(open_members) > 1 else ExitStrategy.INDIVIDUAL

        if any(p.target_exit_history for p in open_members):
            group.status = GroupStatus.PARTIAL
        elif any(p.status is PositionStatus.ACTIVE for p in open_members):
            group.status = GroupStatus.ACTIVE
        else:
            group.status = GroupStatus.PENDING

    def rebuild(self, positions: Iterable[Position]) -> None:
        """Discard every group and rebuild from the given positions."""
        self._groups.clear()
        for position in positions:
            if position.is_open:
                self.attach(position)
