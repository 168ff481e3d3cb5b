"""
Jupiter API client for quotes and swap instructions.
"""
import httpx
import time
import asyncio
import base64
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass, field
import logging

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .errors import VenueError
from .utils import dedupe, short_key

logger = logging.getLogger(__name__)

VENUE = "jupiter"
DEFAULT_JUPITER_API_URL = "https://api.jup.ag"


class RateLimiter:
    """
    Token bucket rate limiter for Jupiter API requests.

    Only spaces requests out; a request rejected with 429 is not retried.
    """

    def __init__(self, requests_per_second: float = 1.0):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second (0 disables limiting)
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._next_request_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made (respecting rate limit)."""
        # Reserve a slot under the lock, sleep after releasing it
        async with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_request_time)
            self._next_request_time = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            await asyncio.sleep(delay)


class SwapMode:
    EXACT_IN = "ExactIn"
    EXACT_OUT = "ExactOut"


@dataclass
class JupiterQuote:
    """Quote response from Jupiter API."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: int
    swap_mode: str
    slippage_bps: int
    price_impact_pct: float
    route_plan: List[Dict[str, Any]]
    context_slot: Optional[int] = None
    time_taken: Optional[float] = None
    # Full response body, sent back verbatim as quoteResponse
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class SwapAccountMeta:
    """Account metadata for swap instruction."""
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass
class SwapInstruction:
    """Single instruction from Jupiter API."""
    program_id: str
    accounts: List[SwapAccountMeta]
    data: str

    def to_instruction(self) -> Instruction:
        """Convert to a solders Instruction (data is base64 in the API)."""
        try:
            return Instruction(
                program_id=Pubkey.from_string(self.program_id),
                accounts=[
                    AccountMeta(
                        pubkey=Pubkey.from_string(meta.pubkey),
                        is_signer=meta.is_signer,
                        is_writable=meta.is_writable
                    )
                    for meta in self.accounts
                ],
                data=base64.b64decode(self.data)
            )
        except (ValueError, TypeError) as e:
            raise VenueError(f"Malformed instruction from Jupiter: {e}", venue=VENUE) from e


@dataclass
class JupiterSwapInstructionsResponse:
    """Swap instructions response from Jupiter API."""
    compute_budget_instructions: List[SwapInstruction]
    setup_instructions: List[SwapInstruction]
    token_ledger_instruction: Optional[SwapInstruction]
    swap_instruction: SwapInstruction
    cleanup_instruction: Optional[SwapInstruction]
    address_lookup_tables: List[str]
    last_valid_block_height: Optional[int] = None


class JupiterClient:
    """Client for Jupiter Aggregator API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        requests_per_second: float = 1.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Jupiter API client.

        Args:
            api_url: API base URL (default https://api.jup.ag)
            api_key: Jupiter API key, sent in the x-api-key header
            timeout: Request timeout in seconds
            requests_per_second: Rate limit for Jupiter API requests
            client: Preconfigured httpx client (tests)
        """
        self.api_url = (api_url or DEFAULT_JUPITER_API_URL).rstrip('/')
        self.api_key = api_key
        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)

        headers = {}
        if api_key:
            # Jupiter API expects API key in x-api-key header, not Authorization
            headers["x-api-key"] = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        await self.rate_limiter.acquire()
        url = f"{self.api_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                logger.warning(f"Rate limit exceeded (429) from {url}")
            else:
                logger.warning(f"Jupiter request failed: {status} - {e.response.text}")
            raise VenueError(f"Jupiter {path} failed: HTTP {status}", venue=VENUE) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Jupiter request to {url} failed: {e}")
            raise VenueError(f"Jupiter {path} failed: {e}", venue=VENUE) from e

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 50,
        swap_mode: str = SwapMode.EXACT_IN,
        only_direct_routes: bool = False,
        as_legacy: bool = False,
        max_accounts: Optional[int] = None
    ) -> JupiterQuote:
        """
        Get a quote for swapping tokens.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in base units (input for ExactIn, output for ExactOut)
            slippage_bps: Slippage in basis points (1 bps = 0.01%)
            swap_mode: SwapMode.EXACT_IN or SwapMode.EXACT_OUT
            only_direct_routes: Only return direct routes
            as_legacy: Return legacy format
            max_accounts: Cap on accounts used by the route

        Returns:
            JupiterQuote

        Raises:
            VenueError: Request failed or no route
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "swapMode": swap_mode,
            "onlyDirectRoutes": str(only_direct_routes).lower(),
            "asLegacyTransaction": str(as_legacy).lower()
        }
        if max_accounts is not None:
            params["maxAccounts"] = max_accounts

        start_time = time.time()
        data = await self._request("GET", "/swap/v1/quote", params=params)
        try:
            if "outAmount" not in data or "inAmount" not in data:
                raise VenueError(f"Jupiter quote missing amounts: {data.get('error', data)}", venue=VENUE)
            quote = JupiterQuote(
                input_mint=data.get("inputMint", input_mint),
                output_mint=data.get("outputMint", output_mint),
                in_amount=int(data["inAmount"]),
                out_amount=int(data["outAmount"]),
                other_amount_threshold=int(data.get("otherAmountThreshold", data["outAmount"])),
                swap_mode=data.get("swapMode", swap_mode),
                slippage_bps=int(data.get("slippageBps", slippage_bps)),
                price_impact_pct=float(data.get("priceImpactPct", 0)),
                route_plan=data.get("routePlan", []),
                context_slot=data.get("contextSlot"),
                time_taken=time.time() - start_time,
                raw=data
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise VenueError(f"Malformed Jupiter quote: {e}", venue=VENUE) from e
        logger.debug(f"Quote: {short_key(input_mint)} -> {short_key(output_mint)} "
                     f"in={quote.in_amount} out={quote.out_amount} "
                     f"impact={quote.price_impact_pct:.2f}%")
        return quote

    def _parse_accounts(self, accounts_data: Union[List[str], List[Dict[str, Any]]]) -> List[SwapAccountMeta]:
        """
        Parse accounts from Jupiter API response.

        Accounts must be objects: {"pubkey": "...", "isSigner": bool, "isWritable": bool}.
        Bare pubkey strings carry no signer/writable flags and are rejected.
        """
        parsed_accounts = []
        for account_data in accounts_data or []:
            if not isinstance(account_data, dict):
                raise VenueError(
                    f"Unexpected account format: {type(account_data).__name__} (missing isSigner/isWritable flags)",
                    venue=VENUE
                )
            parsed_accounts.append(SwapAccountMeta(
                pubkey=account_data.get("pubkey", ""),
                is_signer=account_data.get("isSigner", False),
                is_writable=account_data.get("isWritable", False)
            ))
        return parsed_accounts

    def _parse_instruction(self, instr_data: Optional[Dict[str, Any]]) -> Optional[SwapInstruction]:
        if not instr_data:
            return None
        return SwapInstruction(
            program_id=instr_data.get("programId", ""),
            accounts=self._parse_accounts(instr_data.get("accounts", [])),
            data=instr_data.get("data", "")
        )

    async def get_swap_instructions(
        self,
        quote: JupiterQuote,
        user_public_key: str,
        wrap_unwrap_sol: bool = True,
        delegate: Optional[str] = None
    ) -> JupiterSwapInstructionsResponse:
        """
        Build swap instructions from a quote.

        Args:
            quote: JupiterQuote from get_quote
            user_public_key: Owner of the swapped token accounts
            wrap_unwrap_sol: Auto wrap/unwrap SOL
            delegate: Authority that signs on the owner's behalf

        Returns:
            JupiterSwapInstructionsResponse

        Raises:
            VenueError: Request failed or response has no swap instruction
        """
        payload = {
            "quoteResponse": quote.raw or {
                "inputMint": quote.input_mint,
                "inAmount": str(quote.in_amount),
                "outputMint": quote.output_mint,
                "outAmount": str(quote.out_amount),
                "otherAmountThreshold": str(quote.other_amount_threshold),
                "swapMode": quote.swap_mode,
                "slippageBps": quote.slippage_bps,
                "priceImpactPct": str(quote.price_impact_pct),
                "routePlan": quote.route_plan
            },
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_unwrap_sol
        }
        if delegate:
            payload["useDelegate"] = True
            payload["delegateWallet"] = delegate

        data = await self._request("POST", "/swap/v1/swap-instructions", json=payload)
        try:
            if data.get("error"):
                raise VenueError(f"Jupiter swap-instructions error: {data['error']}", venue=VENUE)
            if not data.get("swapInstruction"):
                raise VenueError("Jupiter response has no swapInstruction", venue=VENUE)

            # Lookup tables may come as strings or {"accountKey": ...} objects
            raw_alts = data.get("addressLookupTableAddresses") or data.get("addressLookupTables") or []
            address_lookup_tables = []
            for x in raw_alts:
                if isinstance(x, str):
                    address_lookup_tables.append(x)
                elif isinstance(x, dict):
                    for key in ("accountKey", "address", "key"):
                        if isinstance(x.get(key), str):
                            address_lookup_tables.append(x[key])
                            break

            response = JupiterSwapInstructionsResponse(
                compute_budget_instructions=[
                    self._parse_instruction(ix) for ix in data.get("computeBudgetInstructions") or []
                ],
                setup_instructions=[self._parse_instruction(ix) for ix in data.get("setupInstructions") or []],
                token_ledger_instruction=self._parse_instruction(data.get("tokenLedgerInstruction")),
                swap_instruction=self._parse_instruction(data["swapInstruction"]),
                cleanup_instruction=self._parse_instruction(data.get("cleanupInstruction")),
                address_lookup_tables=dedupe(address_lookup_tables),
                last_valid_block_height=data.get("lastValidBlockHeight")
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise VenueError(f"Malformed Jupiter swap-instructions response: {e}", venue=VENUE) from e
        logger.debug(
            f"Swap instructions: {len(response.setup_instructions)} setup, 1 swap, "
            f"{1 if response.cleanup_instruction else 0} cleanup, "
            f"{len(response.address_lookup_tables)} ALTs"
        )
        return response

    async def close(self):
        await self.client.aclose()
