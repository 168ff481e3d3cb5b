"""
Utility functions for the transaction pipeline.
"""
import base64
import sys
from typing import Dict, Iterable, List, TypeVar

from solders.pubkey import Pubkey

T = TypeVar("T")

LAMPORTS_PER_SOL = 1_000_000_000


def get_terminal_colors() -> Dict[str, str]:
    """
    Get ANSI color codes for terminal output.

    Returns empty strings if output is not a TTY (e.g., redirected to file).
    This ensures log files remain clean without ANSI escape codes.

    Returns:
        Dictionary with color codes: GREEN, CYAN, YELLOW, RED, DIM, RESET
    """
    use_color = sys.stdout.isatty()
    return {
        'GREEN': '\033[92m' if use_color else '',   # Amounts, counts, compute units
        'CYAN': '\033[96m' if use_color else '',    # Addresses, venues, signatures
        'YELLOW': '\033[93m' if use_color else '',  # Fees, tips, prices
        'RED': '\033[91m' if use_color else '',     # Errors and failed submissions
        'DIM': '\033[90m' if use_color else '',     # Cache and polling chatter
        'RESET': '\033[0m' if use_color else ''
    }


def to_pubkey(value) -> Pubkey:
    """Accept a Pubkey or a base58 string."""
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(str(value))


def short_key(value) -> str:
    """First 8 characters of an address, for log lines."""
    return f"{str(value)[:8]}..."


def dedupe(items: Iterable[T]) -> List[T]:
    """Deduplicate while preserving first-seen order."""
    seen = set()
    return [item for item in items if not (item in seen or seen.add(item))]


def b64decode_account_data(raw) -> bytes:
    """
    Normalize RPC account data to bytes.

    solana-py may hand back raw bytes, a base64 string, or ["<base64>", "base64"].
    """
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        return base64.b64decode(raw)
    if isinstance(raw, list) and raw and isinstance(raw[0], str):
        return base64.b64decode(raw[0])
    raise TypeError(f"Unexpected account data type: {type(raw)} (expected bytes, str, or list)")


def sol_to_lamports(amount_sol: float) -> int:
    return int(round(amount_sol * LAMPORTS_PER_SOL))
