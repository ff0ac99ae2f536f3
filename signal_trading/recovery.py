"""Crash recovery: rebuild in-memory state from the position store."""
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import InvalidOperation
from typing import List, Optional

from .exceptions import RecoveryError
from .groups import GroupStore
from .logging_setup import logger
from .models import Position, PositionStatus, utcnow
from .persistence_sqlite import PositionStore
from .registry import PositionRegistry
from .trailing_stop import TrailingStopEngine


@dataclass
class RecoveryResult:
    total_recovered: int = 0
    active_count: int = 0
    expired_count: int = 0
    failures: int = 0
    errors: List[RecoveryError] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)


class RecoveryManager:
    """Loads open positions from the store into the registry, groups and engine.

    Running recover() twice is safe: positions already in the registry are
    skipped, so the second run reports nothing recovered.
    """

    def __init__(
        self,
        store: PositionStore,
        registry: PositionRegistry,
        groups: GroupStore,
        engine: TrailingStopEngine,
    ):
        self.store = store
        self.registry = registry
        self.groups = groups
        self.engine = engine

    def recover(self, now: Optional[datetime] = None) -> RecoveryResult:
        now = now or utcnow()
        result = RecoveryResult()

        result.expired_count = self.store.mark_expired_before_now(now)

        for record in self.store.query_active_or_pending():
            position_id = record.get("position_id")
            try:
                position = self._parse(record)
            except RecoveryError as e:
                result.failures += 1
                result.errors.append(e)
                logger.error(f"Position recovery failed | id={position_id} error={e}")
                continue

            if not self.registry.restore(position):
                continue
            result.positions.append(position)

        self.groups.rebuild(self.registry.list_active())

        for position in result.positions:
            if position.status is PositionStatus.ACTIVE:
                self.engine.register(position)
                result.active_count += 1

        result.total_recovered = len(result.positions)
        if result.positions:
            self.store.mark_recovered([p.id for p in result.positions], now)

        logger.info(
            f"Recovery complete | recovered={result.total_recovered} active={result.active_count} "
            f"expired={result.expired_count} failures={result.failures}"
        )
        return result

    @staticmethod
    def _parse(record) -> Position:
        position_id = record.get("position_id")
        try:
            data = json.loads(record["value"])
            position = Position.from_dict(data)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise RecoveryError(position_id, f"unreadable record: {e!r}") from e
        if position.id != position_id:
            raise RecoveryError(position_id, f"record id mismatch ({position.id})")
        if record.get("owner") and not position.owner:
            position.owner = record["owner"]
        if record.get("vault_address") and not position.vault_address:
            position.vault_address = record["vault_address"]
        return position
