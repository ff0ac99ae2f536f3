"""
Trade execution interface for vault swaps.

Swaps move a percentage of a vault's balance of one token into another. The
engine never talks to a DEX directly; it goes through a TradeExecutor so that
tests and dry runs can plug in InMemoryExecutor.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from .exceptions import ExecutionError
from .logging_setup import logger


@dataclass(frozen=True)
class SwapResult:
    """Outcome of a confirmed swap."""
    tx_hash: str
    amount_out: Decimal
    fee_tier: Optional[int] = None


class TradeExecutor(ABC):
    """Abstract swap executor.

    All amounts use Decimal. Implementations raise ExecutionError on failure.
    """

    @abstractmethod
    async def swap(
        self,
        vault_address: str,
        from_token: str,
        to_token: str,
        percentage_of_balance: Decimal,
        max_slippage: Decimal,
    ) -> SwapResult:
        """Swap a share of the vault's from_token balance into to_token.

        Args:
            vault_address: Vault holding the funds
            from_token: Symbol sold
            to_token: Symbol bought
            percentage_of_balance: Share of the from_token balance to swap (0-100]
            max_slippage: Maximum accepted slippage in percent

        Returns:
            SwapResult with the transaction hash and amount received

        Raises:
            ExecutionError: If the swap could not be executed
        """
        pass


class InMemoryExecutor(TradeExecutor):
    """Executor used in tests and demos.

    Records every swap. Tests steer behaviour with ``fail_next`` (raise on the
    next N swaps), ``fail_tokens`` (always fail swaps touching a symbol) and
    ``delay`` (seconds to sleep before answering, to simulate a stalled swap).
    """

    def __init__(self, rate: Decimal = Decimal('1')):
        self.rate = rate
        self.swaps: List[Dict] = []
        self.fail_next = 0
        self.fail_tokens = set()
        self.delay: float = 0.0
        self.next_id = 1

    def _gen_hash(self) -> str:
        tx = f"0x{self.next_id:064x}"
        self.next_id += 1
        return tx

    async def swap(
        self,
        vault_address: str,
        from_token: str,
        to_token: str,
        percentage_of_balance: Decimal,
        max_slippage: Decimal,
    ) -> SwapResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ExecutionError(f"Simulated swap failure {from_token}->{to_token}")
        if from_token in self.fail_tokens or to_token in self.fail_tokens:
            raise ExecutionError(f"Swaps for {from_token}->{to_token} are disabled")
        if not (Decimal('0') < percentage_of_balance <= Decimal('100')):
            raise ExecutionError(f"Invalid swap percentage {percentage_of_balance}")

        tx_hash = self._gen_hash()
        amount_out = percentage_of_balance * self.rate
        self.swaps.append(
            {
                "vault_address": vault_address,
                "from_token": from_token,
                "to_token": to_token,
                "percentage": percentage_of_balance,
                "max_slippage": max_slippage,
                "tx_hash": tx_hash,
            }
        )
        logger.debug(f"Simulated swap | {from_token}->{to_token} pct={percentage_of_balance} tx={tx_hash}")
        return SwapResult(tx_hash=tx_hash, amount_out=amount_out, fee_tier=3000)
