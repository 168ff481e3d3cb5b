"""
Block-engine relay client (JSON-RPC over HTTP) for bundle submission.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from solders.pubkey import Pubkey

from .errors import BundleTimeoutError, SendError
from .utils import get_terminal_colors

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://mainnet.block-engine.jito.wtf/api/v1"

KNOWN_TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]

BUNDLE_LANDED = "Landed"
BUNDLE_FAILED_STATUSES = ("Failed", "Invalid")


@dataclass
class NextLeader:
    current_slot: int
    next_leader_slot: int
    next_leader_identity: Optional[str] = None

    @property
    def slots_until_leader(self) -> int:
        return self.next_leader_slot - self.current_slot


class RelayClient:
    """
    Client for the relay's bundle API.

    Any transport error, HTTP error or JSON-RPC error is raised as SendError.
    Nothing is retried.
    """

    def __init__(
        self,
        relay_url: str = DEFAULT_RELAY_URL,
        uuid: Optional[str] = None,
        tip_accounts: Optional[Sequence[str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            relay_url: Block-engine API base URL
            uuid: Optional auth UUID sent as x-jito-auth
            tip_accounts: Fixed tip-account list; when set the relay is never
                asked for its tip accounts
            timeout: Request timeout in seconds
            client: Preconfigured httpx client (tests)
        """
        self.relay_url = relay_url.rstrip('/')
        self.uuid = uuid
        self._tip_accounts = [Pubkey.from_string(a) for a in tip_accounts] if tip_accounts else None

        headers = {"Content-Type": "application/json"}
        if uuid:
            headers["x-jito-auth"] = uuid
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def _rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        url = f"{self.relay_url}/bundles"
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Relay {method} failed: {e.response.status_code} - {e.response.text}")
            raise SendError(f"Relay {method} failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Relay {method} unreachable: {e}")
            raise SendError(f"Relay {method} unreachable: {e}") from e

        if data.get("error"):
            raise SendError(f"Relay {method} error: {data['error']}")
        return data.get("result")

    async def get_tip_accounts(self) -> List[Pubkey]:
        """Tip accounts published by the relay (fetched once, then reused)."""
        if self._tip_accounts is None:
            result = await self._rpc("getTipAccounts")
            if not result:
                raise SendError("Relay returned no tip accounts")
            self._tip_accounts = [Pubkey.from_string(a) for a in result]
            logger.debug(f"Loaded {len(self._tip_accounts)} relay tip accounts")
        return list(self._tip_accounts)

    async def random_tip_account(self) -> Pubkey:
        return random.choice(await self.get_tip_accounts())

    async def get_next_scheduled_leader(self) -> NextLeader:
        result = await self._rpc("getNextScheduledLeader")
        try:
            return NextLeader(
                current_slot=int(result["currentSlot"]),
                next_leader_slot=int(result["nextLeaderSlot"]),
                next_leader_identity=result.get("nextLeaderIdentity")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SendError(f"Malformed getNextScheduledLeader response: {result}") from e

    async def send_bundle(self, encoded_transactions: Sequence[str]) -> str:
        """
        Submit base64-encoded transactions as one bundle.

        Returns:
            Bundle id
        """
        result = await self._rpc("sendBundle", [list(encoded_transactions), {"encoding": "base64"}])
        if not result:
            raise SendError("Relay accepted bundle but returned no bundle id")
        return str(result)

    async def get_inflight_bundle_statuses(self, bundle_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        result = await self._rpc("getInflightBundleStatuses", [list(bundle_ids)])
        statuses = {}
        for item in (result or {}).get("value") or []:
            statuses[item.get("bundle_id")] = item
        return statuses

    async def confirm_bundle(
        self,
        bundle_id: str,
        timeout: float = 30.0,
        poll_interval: float = 1.0
    ) -> Dict[str, Any]:
        """
        Poll until the bundle lands, fails, or `timeout` passes.

        Returns:
            Final status entry for the bundle

        Raises:
            SendError: Bundle reported Failed or Invalid
            BundleTimeoutError: Still pending after `timeout` seconds
        """
        colors = get_terminal_colors()
        deadline = time.monotonic() + timeout
        while True:
            statuses = await self.get_inflight_bundle_statuses([bundle_id])
            status = statuses.get(bundle_id)
            state = status.get("status") if status else None
            if state == BUNDLE_LANDED:
                logger.info(
                    f"Bundle {colors['CYAN']}{bundle_id}{colors['RESET']} landed "
                    f"in slot {status.get('landed_slot')}"
                )
                return status
            if state in BUNDLE_FAILED_STATUSES:
                logger.error(f"{colors['RED']}Bundle {bundle_id} {state}{colors['RESET']}")
                raise SendError(f"Bundle {bundle_id} {state}", bundle_id=bundle_id)
            if time.monotonic() >= deadline:
                raise BundleTimeoutError(
                    f"Bundle {bundle_id} not confirmed within {timeout}s (last status: {state})",
                    bundle_id=bundle_id
                )
            logger.debug(f"{colors['DIM']}Bundle {bundle_id} status: {state}{colors['RESET']}")
            await asyncio.sleep(poll_interval)

    async def close(self):
        await self.client.aclose()
