"""
Position manager: the façade that wires every component together.

Signal path:  admission -> registry (create/merge) -> entry swap -> store
Monitor path: oracle -> exit engine -> exit swap -> registry -> store

The registry and group store are authoritative in memory; the store is a
durable mirror written through ``asyncio.to_thread``. Work on one token is
serialized by a per-token asyncio.Lock, different tokens run concurrently.

Swaps are bounded by ``execution_timeout_seconds`` but never cancelled. A
swap that outlives the timeout is tracked as in flight; its position is
skipped until the swap finishes and the result is applied at the start of a
later monitoring tick.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .admission import AdmissionController, Cancel, Decision, Merge, Prioritize, Separate
from .config import EngineConfig
from .exceptions import ExecutionError, PersistenceError, SignalTradingError, ValidationError
from .execution import SwapResult, TradeExecutor
from .groups import ExitStrategy, GroupStore, PositionGroup
from .logging_setup import logger
from .models import Direction, Position, PositionStatus, Signal, utcnow
from .persistence_sqlite import PositionStore
from .pnl import realized_pnl
from .price_oracle import PriceOracle
from .recovery import RecoveryManager, RecoveryResult
from .registry import TIME_EXIT_REASON, PositionRegistry
from .signal_parser import parse_signal, signal_summary
from .trailing_stop import ExitDecision, FullExit, NoExit, PartialExit, TrailingStopEngine

PRIORITY_CLOSE_REASON = "priority conflict resolution"


@dataclass
class OperationResult:
    success: bool
    message: str
    position: Optional[Position] = None
    decision: Optional[Decision] = None


@dataclass
class InflightSwap:
    """A swap that outlived the execution timeout and is still running."""
    task: asyncio.Future
    kind: str  # "entry", "merge" or "exit"
    position_id: str
    token_id: str
    price: Optional[Decimal] = None
    decision: Optional[ExitDecision] = None
    signal: Optional[Signal] = None
    size: Optional[Decimal] = None
    started_at: datetime = field(default_factory=utcnow)


class PositionManager:
    """Admits signals, executes entries and exits, and runs monitoring ticks.

    Example:
        manager = PositionManager(config, oracle=oracle, executor=executor, store=store)
        await manager.init()
        result = await manager.add_signal(signal, Decimal("500"))
        await manager.monitor_all_positions()
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        oracle: PriceOracle,
        executor: TradeExecutor,
        store: PositionStore,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.oracle = oracle
        self.executor = executor
        self.store = store
        self.now_fn = now_fn

        trailing = config.trailing
        self.groups = GroupStore()
        self.registry = PositionRegistry(
            self.groups,
            default_trail_pct=trailing.default_trail_pct,
            partial_exit_percentages=trailing.partial_exit_percentages,
            dust_threshold=trailing.dust_threshold,
            dust_thresholds=trailing.dust_thresholds,
            closed_retention=timedelta(seconds=config.monitor.closed_retention_seconds),
        )
        self.engine = TrailingStopEngine(group_target_tolerance=trailing.group_target_tolerance)
        self.admission = AdmissionController(config.admission, self.registry)
        self.recovery = RecoveryManager(store, self.registry, self.groups, self.engine)

        self._token_locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, InflightSwap] = {}
        self.last_recovery: Optional[RecoveryResult] = None
        self.initialized = False

    # --- Lifecycle ---
    async def init(self) -> RecoveryResult:
        """Connect the store and recover open positions.

        Raises:
            PersistenceError: If the store cannot be opened
        """
        await asyncio.to_thread(self.store.connect)
        self.last_recovery = await asyncio.to_thread(self.recovery.recover, self.now_fn())
        self.initialized = True
        logger.info(
            f"Position manager initialized | recovered={self.last_recovery.total_recovered} "
            f"groups={len(self.groups)}"
        )
        return self.last_recovery

    async def close(self) -> None:
        if self._inflight:
            logger.warning(f"Shutting down with swaps in flight | positions={sorted(self._inflight)}")
        await asyncio.to_thread(self.store.close)

    def _lock_for(self, token_id: str) -> asyncio.Lock:
        lock = self._token_locks.get(token_id)
        if lock is None:
            lock = asyncio.Lock()
            self._token_locks[token_id] = lock
        return lock

    async def _persist(self, position: Position) -> None:
        try:
            await asyncio.to_thread(self.store.upsert, position, position.owner, position.vault_address)
        except PersistenceError as e:
            logger.error(f"Failed to persist position | id={position.id} status={position.status.value} error={e}")

    def _vault_for(self, position: Optional[Position] = None, vault_address: Optional[str] = None) -> str:
        if position is not None and position.vault_address:
            return position.vault_address
        return vault_address or self.config.executor.vault_address

    # --- Swaps ---
    def _swap(self, vault_address: str, from_token: str, to_token: str, percentage: Decimal) -> asyncio.Future:
        """Start a swap as a task so a timeout never cancels it."""
        return asyncio.ensure_future(
            self.executor.swap(vault_address, from_token, to_token, percentage, self.config.executor.max_slippage)
        )

    async def _await_swap(self, task: asyncio.Future) -> SwapResult:
        """Wait for a swap up to the execution timeout.

        Raises:
            asyncio.TimeoutError: If the swap is still running (it keeps running)
            ExecutionError: If the swap failed
        """
        return await asyncio.wait_for(asyncio.shield(task), timeout=self.config.monitor.execution_timeout_seconds)

    def _entry_percentage(self, size: Decimal) -> Decimal:
        capital = self.config.executor.total_capital
        if capital <= 0:
            return Decimal('100')
        return min(Decimal('100'), size / capital * Decimal('100'))

    def _exit_percentage(self, position: Position, amount: Decimal) -> Decimal:
        group = self.groups.get(position.token_id)
        base = group.total_exposure if group is not None and group.total_exposure > 0 else position.remaining_amount
        if base <= 0:
            return Decimal('100')
        return min(Decimal('100'), amount / base * Decimal('100'))

    # --- Signals ---
    async def submit_payload(self, payload: Dict[str, Any], size: Decimal, **kwargs) -> OperationResult:
        """Parse a raw signal payload and admit it."""
        try:
            signal = parse_signal(payload)
        except ValidationError as e:
            return OperationResult(False, f"Invalid signal: {e}")
        return await self.add_signal(signal, size, **kwargs)

    async def add_signal(
        self,
        signal: Signal,
        size: Decimal,
        *,
        owner: Optional[str] = None,
        vault_address: Optional[str] = None,
        trail_percent: Optional[Decimal] = None,
        partial_exit_percentages: Optional[List[Decimal]] = None,
    ) -> OperationResult:
        """Admit a signal and open, merge, or reject a position for it."""
        if signal.direction is Direction.HOLD:
            logger.info(f"Hold signal, no position opened | {signal_summary(signal)}")
            return OperationResult(True, f"Hold signal for {signal.token}; no position opened")

        size = Decimal(size)
        async with self._lock_for(signal.token_id):
            now = self.now_fn()
            decision = self.admission.evaluate(signal, size, now)
            try:
                if isinstance(decision, Cancel):
                    return OperationResult(False, decision.reason, decision=decision)
                if isinstance(decision, Merge):
                    return await self._handle_merge(signal, size, decision, now)
                if isinstance(decision, Prioritize):
                    return await self._handle_prioritize(
                        signal, size, decision, now, owner, vault_address, trail_percent, partial_exit_percentages
                    )
                if isinstance(decision, Separate):
                    return await self._open_position(
                        signal, size, decision, now, owner, vault_address, trail_percent, partial_exit_percentages
                    )
                raise ValueError(f"Unhandled admission decision {decision!r}")
            except (SignalTradingError, ValueError) as e:
                logger.error(f"Failed to add signal | token={signal.token} error={e}")
                return OperationResult(False, f"Failed to add signal: {e}", decision=decision)

    async def _open_position(
        self,
        signal: Signal,
        size: Decimal,
        decision: Decision,
        now: datetime,
        owner: Optional[str],
        vault_address: Optional[str],
        trail_percent: Optional[Decimal],
        partial_exit_percentages: Optional[List[Decimal]],
    ) -> OperationResult:
        position = self.registry.create(
            signal,
            size,
            owner=owner,
            vault_address=vault_address or self.config.executor.vault_address or None,
            trail_percent=trail_percent,
            partial_exit_percentages=partial_exit_percentages,
            now=now,
        )
        await self._persist(position)

        task = self._swap(
            self._vault_for(position), self.config.executor.quote_token, signal.token, self._entry_percentage(size)
        )
        try:
            result = await self._await_swap(task)
        except asyncio.TimeoutError:
            self._inflight[position.id] = InflightSwap(task, "entry", position.id, signal.token_id, started_at=now)
            logger.warning(f"Entry swap still in flight | id={position.id} token={signal.token}")
            return OperationResult(True, f"Position created for {signal.token}; entry swap pending", position, decision)
        except ExecutionError as e:
            self.registry.fail(position.id, f"entry swap failed: {e}", now=now)
            await self._persist(position)
            return OperationResult(False, f"Entry swap failed for {signal.token}: {e}", position, decision)

        self._complete_entry(position, result, now)
        await self._persist(position)
        return OperationResult(True, f"Position created successfully for {signal.token}", position, decision)

    def _complete_entry(self, position: Position, result: SwapResult, now: datetime) -> None:
        self.registry.activate(position.id, result.tx_hash, result.amount_out, now=now)
        self.engine.register(position)

    async def _handle_merge(self, signal: Signal, size: Decimal, decision: Merge, now: datetime) -> OperationResult:
        target = self.registry.get(decision.position_id)
        if target is None or not target.is_open:
            return OperationResult(False, "No similar position found to merge with", decision=decision)
        if target.id in self._inflight:
            return OperationResult(False, f"Position {target.id} has a swap in flight", target, decision)

        task = self._swap(
            self._vault_for(target), self.config.executor.quote_token, signal.token, self._entry_percentage(size)
        )
        try:
            result = await self._await_swap(task)
        except asyncio.TimeoutError:
            self._inflight[target.id] = InflightSwap(
                task, "merge", target.id, signal.token_id, signal=signal, size=size, started_at=now
            )
            logger.warning(f"Merge swap still in flight | id={target.id} token={signal.token}")
            return OperationResult(True, f"Merge into {target.id} pending", target, decision)
        except ExecutionError as e:
            return OperationResult(False, f"Merge entry swap failed for {signal.token}: {e}", target, decision)

        self._complete_merge(target, signal, size, result, now)
        await self._persist(target)
        return OperationResult(True, f"Successfully merged positions for {signal.token}", target, decision)

    def _complete_merge(self, position: Position, signal: Signal, size: Decimal, result: SwapResult, now: datetime) -> None:
        self.registry.merge(position.id, signal, size, now=now)
        position.token_amount_received = (position.token_amount_received or Decimal('0')) + result.amount_out

    async def _handle_prioritize(
        self,
        signal: Signal,
        size: Decimal,
        decision: Prioritize,
        now: datetime,
        owner: Optional[str],
        vault_address: Optional[str],
        trail_percent: Optional[Decimal],
        partial_exit_percentages: Optional[List[Decimal]],
    ) -> OperationResult:
        price = await self._current_price(signal.token_id, fallback=signal.current_price)
        for position_id in decision.conflicting_ids:
            position = self.registry.get(position_id)
            if position is None or not position.is_open:
                continue
            closed = await self._close(position, price, PRIORITY_CLOSE_REASON, now)
            if not closed.success:
                logger.warning(
                    f"Prioritized signal rejected, conflicting position not closed | id={position_id} "
                    f"error={closed.message}"
                )
                return OperationResult(
                    False, f"Could not close conflicting position {position_id}: {closed.message}", decision=decision
                )
        return await self._open_position(
            signal, size, decision, now, owner, vault_address, trail_percent, partial_exit_percentages
        )

    # --- Manual close ---
    async def close_position(self, position_id: str, reason: str = "manual", price: Optional[Decimal] = None) -> OperationResult:
        """Fully exit a position at the given (or current oracle) price."""
        position = self.registry.get(position_id)
        if position is None or not position.is_open:
            logger.warning(f"Close requested for unknown or finished position | id={position_id}")
            return OperationResult(False, f"Position {position_id} not found or already closed", position)

        async with self._lock_for(position.token_id):
            if price is None:
                fallback = position.current_price or position.entry_price
                price = await self._current_price(position.token_id, fallback=fallback)
            return await self._close(position, price, reason, self.now_fn())

    async def _close(self, position: Position, price: Decimal, reason: str, now: datetime) -> OperationResult:
        if position.id in self._inflight:
            return OperationResult(False, f"Position {position.id} has a swap in flight", position)
        if position.status is PositionStatus.PENDING:
            # Entry never confirmed, nothing to sell.
            self.registry.close(position.id, price, reason, now=now)
            self.engine.unregister(position.id)
            await self._persist(position)
            return OperationResult(True, f"Pending position {position.id} closed", position)

        applied = await self._execute_exit(position, FullExit(reason), price, now)
        if applied:
            return OperationResult(True, f"Position {position.id} closed ({reason})", position)
        if position.id in self._inflight:
            return OperationResult(False, f"Exit swap for {position.id} still in flight", position)
        return OperationResult(False, f"Exit swap failed for {position.id}", position)

    # --- Exits ---
    async def _execute_exit(self, position: Position, decision: ExitDecision, price: Decimal, now: datetime) -> bool:
        """Swap out of a position and apply the exit. Returns True when applied."""
        if isinstance(decision, PartialExit):
            amount = position.remaining_amount * decision.percentage / Decimal('100')
        elif isinstance(decision, FullExit):
            amount = position.remaining_amount
        else:
            return False

        task = self._swap(
            self._vault_for(position),
            position.signal.token,
            self.config.executor.quote_token,
            self._exit_percentage(position, amount),
        )
        try:
            result = await self._await_swap(task)
        except asyncio.TimeoutError:
            self._inflight[position.id] = InflightSwap(
                task, "exit", position.id, position.token_id, price=price, decision=decision, started_at=now
            )
            logger.warning(f"Exit swap still in flight | id={position.id} decision={decision}")
            return False
        except ExecutionError as e:
            logger.error(f"Exit swap failed, will retry next tick | id={position.id} decision={decision} error={e}")
            return False

        await self._apply_exit(position, decision, price, result.tx_hash, now)
        return True

    async def _apply_exit(
        self, position: Position, decision: ExitDecision, price: Decimal, tx_hash: Optional[str], now: datetime
    ) -> None:
        if isinstance(decision, PartialExit):
            self.registry.apply_partial(
                position.id, decision.percentage, decision.target_index, price, tx_hash=tx_hash, now=now
            )
        elif isinstance(decision, FullExit):
            self.registry.close(position.id, price, decision.reason, exit_tx_hash=tx_hash, now=now)
        else:
            raise ValueError(f"Cannot apply exit decision {decision!r}")

        if position.status.is_terminal:
            self.engine.unregister(position.id)
            pnl = realized_pnl(position)
            logger.info(
                f"Position exited | id={position.id} token={position.signal.token} reason={position.exit_reason} "
                f"exit_price={price} realized_pnl={pnl.realized_pnl:.4f} pnl_pct={pnl.pnl_percent:.2f}"
            )
        await self._persist(position)

    # --- Monitoring ---
    async def monitor_all_positions(self) -> Dict[str, Any]:
        """Run one monitoring pass over every position group."""
        now = self.now_fn()
        await self._settle_inflight(now)
        await self._expire_stale_pending(now)
        self.registry.purge_terminal(now)

        token_ids = [g.token_id for g in self.groups if g.active_members]
        summary: Dict[str, Any] = {"tokens": len(token_ids), "priced": 0, "skipped": [], "exits": 0, "errors": 0}
        if not token_ids:
            return summary

        prices = await self._fetch_prices(token_ids)
        priced = [t for t in token_ids if t in prices]
        summary["priced"] = len(priced)
        summary["skipped"] = [t for t in token_ids if t not in prices]

        results = await asyncio.gather(
            *(self._monitor_token(token_id, prices[token_id], now) for token_id in priced),
            return_exceptions=True,
        )
        for token_id, outcome in zip(priced, results):
            if isinstance(outcome, BaseException):
                summary["errors"] += 1
                logger.opt(exception=outcome).error(f"Monitoring failed for token | token_id={token_id}")
            else:
                summary["exits"] += outcome

        monitored = [p.id for p in self.registry.list_active()]
        try:
            await asyncio.to_thread(self.store.mark_monitored, monitored, now)
        except PersistenceError as e:
            logger.error(f"Failed to record monitoring pass | error={e}")

        logger.debug(f"Monitoring pass complete | {summary}")
        return summary

    async def _monitor_token(self, token_id: str, price: Decimal, now: datetime) -> int:
        exits = 0
        async with self._lock_for(token_id):
            group = self.groups.get(token_id)
            if group is None:
                return 0
            logger.debug(
                f"Monitoring group | token_id={token_id} price={price} members={len(group.positions)} "
                f"strategy={group.exit_strategy.value}"
            )
            decisions = self.engine.evaluate_group(group, price, now, skip=self._inflight.keys())
            for position, decision in decisions:
                if isinstance(decision, NoExit):
                    continue
                if not position.is_open:
                    continue
                if await self._execute_exit(position, decision, price, now):
                    exits += 1
            for position, _ in decisions:
                if position.is_open:
                    await self._persist(position)
        return exits

    async def _expire_stale_pending(self, now: datetime) -> None:
        """Expire PENDING positions past max_exit_time with no entry swap in flight.

        Their entry was never confirmed, so they are closed without a swap.
        """
        stale = [
            p
            for p in self.registry.list_active()
            if p.status is PositionStatus.PENDING and p.id not in self._inflight and now >= p.signal.max_exit_time
        ]
        for position in stale:
            async with self._lock_for(position.token_id):
                if position.status is not PositionStatus.PENDING or position.id in self._inflight:
                    continue
                logger.warning(f"Expiring unconfirmed position past max exit time | id={position.id}")
                self.registry.close(position.id, position.entry_price, TIME_EXIT_REASON, now=now)
                self.engine.unregister(position.id)
                await self._persist(position)

    async def _settle_inflight(self, now: datetime) -> None:
        """Apply results of swaps that finished since the last tick."""
        for position_id, swap in list(self._inflight.items()):
            if not swap.task.done():
                continue
            async with self._lock_for(swap.token_id):
                self._inflight.pop(position_id, None)
                position = self.registry.get(position_id)
                error = swap.task.exception() if not swap.task.cancelled() else ExecutionError("swap cancelled")
                if position is None or not position.is_open:
                    logger.warning(f"In-flight swap finished for a finished position | id={position_id}")
                    continue
                if error is not None:
                    logger.error(f"In-flight {swap.kind} swap failed | id={position_id} error={error}")
                    if swap.kind == "entry":
                        self.registry.fail(position_id, f"entry swap failed: {error}", now=now)
                        await self._persist(position)
                    continue

                result: SwapResult = swap.task.result()
                logger.info(f"In-flight {swap.kind} swap settled | id={position_id} tx={result.tx_hash}")
                if swap.kind == "entry":
                    self._complete_entry(position, result, now)
                    await self._persist(position)
                elif swap.kind == "merge":
                    self._complete_merge(position, swap.signal, swap.size, result, now)
                    await self._persist(position)
                elif swap.kind == "exit":
                    await self._apply_exit(position, swap.decision, swap.price, result.tx_hash, now)
                else:
                    raise ValueError(f"Unknown swap kind {swap.kind}")

    async def _fetch_prices(self, token_ids: List[str]) -> Dict[str, Decimal]:
        timeout = self.config.monitor.price_timeout_seconds
        try:
            return await asyncio.wait_for(self.oracle.get_prices(token_ids), timeout=timeout)
        except Exception as e:
            logger.warning(f"Batch price fetch failed, falling back to per-token | error={e!r}")

        results = await asyncio.gather(
            *(asyncio.wait_for(self.oracle.get_price(t), timeout=timeout) for t in token_ids),
            return_exceptions=True,
        )
        prices: Dict[str, Decimal] = {}
        for token_id, outcome in zip(token_ids, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Price unavailable, skipping token this tick | token_id={token_id} error={outcome!r}")
            elif outcome is None:
                logger.warning(f"Price unavailable, skipping token this tick | token_id={token_id}")
            else:
                prices[token_id] = outcome
        return prices

    async def _current_price(self, token_id: str, fallback: Decimal) -> Decimal:
        try:
            price = await asyncio.wait_for(
                self.oracle.get_price(token_id), timeout=self.config.monitor.price_timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Price lookup failed, using fallback | token_id={token_id} fallback={fallback} error={e!r}")
            return fallback
        return price if price is not None else fallback

    # --- Queries ---
    def get_active_positions(self) -> List[Position]:
        return self.registry.list_active()

    def get_position_groups(self) -> List[PositionGroup]:
        return self.groups.groups()

    def inflight_position_ids(self) -> List[str]:
        return sorted(self._inflight)

    def get_stats(self) -> Dict[str, Any]:
        active = self.registry.list_active()
        by_status: Dict[str, int] = {}
        for p in self.registry.list_all():
            by_status[p.status.value] = by_status.get(p.status.value, 0) + 1
        return {
            "total_positions": len(active),
            "total_exposure": float(self.registry.total_exposure()),
            "position_groups": len(self.groups),
            "grouped_groups": sum(1 for g in self.groups if g.exit_strategy is ExitStrategy.GROUPED),
            "trailing_stop_active": sum(1 for p in active if p.trailing_stop.is_active),
            "inflight_swaps": len(self._inflight),
            "by_status": by_status,
            "exit_engine": self.engine.stats(),
        }
