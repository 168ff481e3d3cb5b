"""
Solana RPC client for account reads, blockhash, simulation, and sending.

Every method raises a typed error instead of returning None; callers decide
whether to retry. Nothing in here retries on its own.
"""
import asyncio
import logging
from typing import Optional, Dict, Any, List, Sequence, Tuple
from solders.account import Account
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from solders.address_lookup_table_account import AddressLookupTableAccount, AddressLookupTable
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.models import TxOpts

from .errors import RpcError, SendError
from .utils import b64decode_account_data, dedupe, to_pubkey

logger = logging.getLogger(__name__)

# getMultipleAccounts accepts at most 100 keys per request
MAX_ACCOUNTS_PER_REQUEST = 100


class SolanaClient:
    """Client for Solana RPC operations."""

    def __init__(self, rpc_url: str, client: Optional[AsyncClient] = None):
        self.rpc_url = rpc_url
        self.client = client or AsyncClient(rpc_url)

    async def get_multiple_accounts(self, addresses: Sequence) -> Dict[Pubkey, Account]:
        """
        Fetch many accounts in batched requests.

        Chunks are fetched in parallel; if any chunk fails the whole call fails.

        Args:
            addresses: Pubkeys or base58 strings

        Returns:
            Mapping of pubkey -> Account for accounts that exist on-chain
        """
        pubkeys = dedupe(to_pubkey(a) for a in addresses)
        if not pubkeys:
            return {}

        chunks = [
            pubkeys[i:i + MAX_ACCOUNTS_PER_REQUEST]
            for i in range(0, len(pubkeys), MAX_ACCOUNTS_PER_REQUEST)
        ]

        async def _fetch(chunk: List[Pubkey]) -> List[Tuple[Pubkey, Optional[Account]]]:
            resp = await self.client.get_multiple_accounts(chunk, commitment=Confirmed, encoding="base64")
            return list(zip(chunk, resp.value))

        try:
            results = await asyncio.gather(*(_fetch(chunk) for chunk in chunks))
        except Exception as e:
            logger.error(f"Error fetching {len(pubkeys)} accounts: {e}")
            raise RpcError(f"getMultipleAccounts failed: {e}") from e

        accounts: Dict[Pubkey, Account] = {}
        for chunk_result in results:
            for pubkey, account in chunk_result:
                if account is not None:
                    accounts[pubkey] = account
        logger.debug(f"Fetched {len(accounts)}/{len(pubkeys)} accounts in {len(chunks)} request(s)")
        return accounts

    async def get_latest_blockhash(self) -> Hash:
        """
        Get the latest blockhash for transaction building.

        Returns:
            Blockhash as Hash object

        Raises:
            RpcError: If the RPC call fails or returns no value
        """
        try:
            result = await self.client.get_latest_blockhash(commitment=Confirmed)
        except Exception as e:
            logger.error(f"Error getting latest blockhash: {e}")
            raise RpcError(f"getLatestBlockhash failed: {e}") from e
        if not result.value:
            raise RpcError("getLatestBlockhash returned no value")
        return result.value.blockhash

    async def get_recent_prioritization_fees(self, writable_accounts: Sequence) -> List[int]:
        """
        Get recent per-slot prioritization fees observed for the given accounts.

        Args:
            writable_accounts: Accounts locked as writable by the transaction

        Returns:
            List of micro-lamport fees, one per recent slot (zeros included)
        """
        keys = [to_pubkey(a) for a in writable_accounts]
        try:
            response = await self.client.get_recent_prioritization_fees(keys)
        except Exception as e:
            logger.error(f"Error getting recent prioritization fees: {e}")
            raise RpcError(f"getRecentPrioritizationFees failed: {e}") from e
        return [item.prioritization_fee for item in (response.value or [])]

    async def simulate(self, tx: VersionedTransaction) -> Dict[str, Any]:
        """
        Simulate a VersionedTransaction without signature verification.

        An on-chain failure is reported in the "err" field, not raised; the
        builder turns it into a SimulationError.

        Args:
            tx: Transaction (signatures may be placeholders)

        Returns:
            Dict with err, logs, accounts, units_consumed, return_data

        Raises:
            RpcError: If the simulation request itself fails
        """
        try:
            result = await self.client.simulate_transaction(tx, sig_verify=False, commitment=Confirmed)
        except Exception as e:
            logger.error(f"Error simulating transaction: {e}")
            raise RpcError(f"simulateTransaction failed: {e}") from e

        sim_result = {
            "err": result.value.err,
            "logs": result.value.logs or [],
            "accounts": result.value.accounts,
            "units_consumed": result.value.units_consumed,
            "return_data": result.value.return_data
        }
        if result.value.err:
            logger.warning(f"Simulation error: {result.value.err}")
        return sim_result

    async def send_transaction(self, tx: VersionedTransaction, skip_preflight: bool = True) -> str:
        """
        Broadcast a signed VersionedTransaction once.

        Args:
            tx: Signed transaction
            skip_preflight: Skip preflight checks (default: True, the builder already simulated)

        Returns:
            Transaction signature (base58 string)

        Raises:
            SendError: If the RPC rejects the transaction or returns no signature
        """
        opts = TxOpts(skip_preflight=skip_preflight, max_retries=0)
        try:
            result = await self.client.send_transaction(tx, opts=opts)
        except Exception as e:
            logger.error(f"Error sending transaction: {e}")
            raise SendError(f"sendTransaction failed: {e}") from e
        if not result.value:
            raise SendError("sendTransaction returned no signature")
        sig = str(result.value)
        logger.debug(f"Transaction sent: {sig}")
        return sig

    async def get_address_lookup_table_accounts(self, addresses: Sequence) -> List[AddressLookupTableAccount]:
        """
        Resolve Address Lookup Table addresses into AddressLookupTableAccount objects.

        All tables are fetched in one batched read.

        Raises:
            RpcError: If any table is missing or cannot be decoded
        """
        if not addresses:
            return []
        pubkeys = dedupe(to_pubkey(a) for a in addresses)
        accounts = await self.get_multiple_accounts(pubkeys)

        alt_accounts = []
        for pubkey in pubkeys:
            account = accounts.get(pubkey)
            if account is None:
                raise RpcError(f"ALT account {pubkey} not found")
            try:
                table = AddressLookupTable.deserialize(b64decode_account_data(account.data))
            except Exception as e:
                raise RpcError(f"Cannot decode ALT account {pubkey}: {e}") from e
            alt_accounts.append(AddressLookupTableAccount(pubkey, table.addresses))
            logger.debug(f"Loaded ALT account: {pubkey} with {len(table.addresses)} addresses")
        return alt_accounts

    async def close(self):
        """Close RPC client."""
        await self.client.close()
