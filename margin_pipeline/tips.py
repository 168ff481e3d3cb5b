"""
Relay tip estimation.

Two interchangeable strategies, both exposing `estimate(transactions) -> lamports`:
- PriorityFeeTipEstimator: scales down limit x price already paid by the transactions.
- TipFloorEstimator: picks a percentile from the published landed-tips statistics.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from solders.instruction import Instruction
from solders.transaction import VersionedTransaction

from .compute_budget import decode_compute_budget
from .errors import RpcError, ValidationError
from .utils import get_terminal_colors, sol_to_lamports

logger = logging.getLogger(__name__)

DEFAULT_TIP_STATS_URL = "https://bundles.jito.wtf/api/v1/bundles/tip_floor"

TIP_PERCENTILES = (25, 50, 75, 95, 99)
DEFAULT_TIP_PERCENTILE = 75

# limit * price (micro-lamports) / 1e6 = lamports of priority fee; tip is 30% of that
PRIORITY_FEE_TIP_DIVISOR = 3_000_000


def _instructions_of(tx) -> List[Instruction]:
    """Instructions of a BuiltTransaction, or decompiled from a VersionedTransaction's static keys."""
    if not isinstance(tx, VersionedTransaction):
        return list(tx.instructions)
    keys = tx.message.account_keys
    return [
        Instruction(program_id=keys[ix.program_id_index], data=bytes(ix.data), accounts=[])
        for ix in tx.message.instructions
    ]


def tip_from_priority_fee(tx) -> int:
    """
    Tip amount derived from the compute budget embedded in `tx`.

    The limit and price instructions are found by program id and
    discriminator, wherever they sit in the instruction list.

    Raises:
        ValidationError: If the transaction carries no limit or no price instruction
    """
    values = decode_compute_budget(_instructions_of(tx))
    if values.limit is None or values.price is None:
        raise ValidationError("Transaction has no compute unit limit/price instructions to derive a tip from")
    return values.limit * values.price // PRIORITY_FEE_TIP_DIVISOR


class PriorityFeeTipEstimator:
    """Tip = sum over transactions of limit * price // 3_000_000."""

    async def estimate(self, transactions: Sequence) -> int:
        tip = sum(tip_from_priority_fee(tx) for tx in transactions)
        logger.debug(f"Tip from priority fee: {tip} lamports over {len(transactions)} transaction(s)")
        return tip


@dataclass
class TipFloor:
    """Recently landed tips, in lamports."""
    p25: int
    p50: int
    p75: int
    p95: int
    p99: int
    ema_p50: Optional[int] = None
    time: Optional[str] = None

    def at(self, percentile: int) -> int:
        if percentile not in TIP_PERCENTILES:
            percentile = DEFAULT_TIP_PERCENTILE
        return getattr(self, f"p{percentile}")


class TipStatsClient:
    """Client for the landed-tips statistics endpoint."""

    def __init__(self, url: str = DEFAULT_TIP_STATS_URL, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def _field(entry: Dict[str, Any], percentile: int) -> float:
        snake = f"landed_tips_{percentile}th_percentile"
        camel = f"landedTips{percentile}thPercentile"
        return float(entry[snake] if snake in entry else entry[camel])

    async def get_tip_floor(self) -> TipFloor:
        """
        Fetch the latest tip floor. Values are published in SOL and converted to lamports.

        Raises:
            RpcError: On transport failure or a malformed response
        """
        try:
            response = await self.client.get(self.url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RpcError(f"Tip floor request failed: {e}") from e

        entry = data[0] if isinstance(data, list) and data else data
        try:
            ema = entry.get("ema_landed_tips_50th_percentile", entry.get("emaLandedTips50thPercentile"))
            return TipFloor(
                p25=sol_to_lamports(self._field(entry, 25)),
                p50=sol_to_lamports(self._field(entry, 50)),
                p75=sol_to_lamports(self._field(entry, 75)),
                p95=sol_to_lamports(self._field(entry, 95)),
                p99=sol_to_lamports(self._field(entry, 99)),
                ema_p50=sol_to_lamports(float(ema)) if ema is not None else None,
                time=entry.get("time")
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed tip floor response: {data}") from e

    async def close(self):
        await self.client.aclose()


class TipFloorEstimator:
    """Tip = published landed-tip percentile (25/50/75/95/99; anything else means 75)."""

    def __init__(self, stats_client: TipStatsClient, percentile: int = DEFAULT_TIP_PERCENTILE):
        self.stats_client = stats_client
        self.percentile = percentile if percentile in TIP_PERCENTILES else DEFAULT_TIP_PERCENTILE
        if self.percentile != percentile:
            logger.warning(f"Unsupported tip percentile {percentile}, using {DEFAULT_TIP_PERCENTILE}")

    async def estimate(self, transactions: Sequence = ()) -> int:
        colors = get_terminal_colors()
        floor = await self.stats_client.get_tip_floor()
        tip = floor.at(self.percentile)
        logger.debug(f"Tip floor p{self.percentile}: {colors['YELLOW']}{tip}{colors['RESET']} lamports")
        return tip
