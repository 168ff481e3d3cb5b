"""
Typed errors raised by the pipeline.

Callers branch on the class to decide between abort (SimulationError),
retry (SendError, RpcError, BundleTimeoutError), re-quote (VenueError)
and fixing their input (ValidationError).
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

PROTOCOL_PROGRAM_ID = "spicyTHtbmarmUxwFSHYpA8G4uP2nRNq38RReMpoZ9c"
AGGREGATOR_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"

# program id -> {code: (name, expected)}
KNOWN_PROGRAM_ERRORS: Dict[str, Dict[int, tuple]] = {
    PROTOCOL_PROGRAM_ID: {
        6017: ("PriceTargetNotReached", True),
        6026: ("LiquidationThresholdNotReached", True),
    },
    AGGREGATOR_PROGRAM_ID: {
        6001: ("SlippageToleranceExceeded", True),
    },
}

_INSTRUCTION_ERROR_RE = re.compile(r"Instruction (\d+):.*?(0x[0-9a-fA-F]+)")
_FAILED_PROGRAM_LOG_RE = re.compile(r"Program (\w+) failed: custom program error: (0x[0-9a-fA-F]+)")


class PipelineError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(PipelineError, ValueError):
    """Missing or malformed input, rejected before any network call."""


class RpcError(PipelineError):
    """Chain RPC read failed (blockhash, accounts, fee samples)."""


@dataclass
class ProgramError:
    """Custom program error decoded from a failed simulation."""
    program_id: Optional[str]
    instruction_index: int
    code: int
    name: Optional[str] = None
    expected: bool = False


class SimulationError(PipelineError):
    """Transaction would fail on-chain; it was never broadcast."""

    def __init__(
        self,
        message: str,
        err: Any = None,
        logs: Optional[List[str]] = None,
        units_consumed: Optional[int] = None,
        program_error: Optional[ProgramError] = None
    ):
        super().__init__(message)
        self.err = err
        self.logs = logs or []
        self.units_consumed = units_consumed
        self.program_error = program_error


class SendError(PipelineError):
    """Broadcast or bundle submission rejected, or the relay is unreachable."""

    def __init__(self, message: str, bundle_id: Optional[str] = None):
        super().__init__(message)
        self.bundle_id = bundle_id


class VenueError(PipelineError):
    """A liquidity venue failed to quote or build a swap."""

    def __init__(self, message: str, venue: Optional[str] = None):
        super().__init__(message)
        self.venue = venue


class AllVenuesFailedError(VenueError):
    """Preferred venue and its single alternate both failed."""

    def __init__(self, errors: Dict[str, Exception]):
        summary = "; ".join(f"{venue}: {error}" for venue, error in errors.items())
        super().__init__(f"All swap venues failed ({summary})")
        self.errors = errors


class BundleTimeoutError(PipelineError, TimeoutError):
    """Bundle confirmation or leader-slot wait exceeded its bound."""

    def __init__(self, message: str, bundle_id: Optional[str] = None):
        super().__init__(message)
        self.bundle_id = bundle_id


def _lookup(program_id: Optional[str], index: int, code: int) -> ProgramError:
    name, expected = KNOWN_PROGRAM_ERRORS.get(program_id or "", {}).get(code, (None, False))
    return ProgramError(
        program_id=program_id,
        instruction_index=index,
        code=code,
        name=name,
        expected=expected
    )


def _program_for(index: int, account_keys: Sequence[Any], program_id_indexes: Sequence[int]) -> Optional[str]:
    if index < 0 or index >= len(program_id_indexes):
        return None
    key_index = program_id_indexes[index]
    if key_index >= len(account_keys):
        return None
    return str(account_keys[key_index])


def _index_and_code(err: Any) -> Optional[tuple]:
    # JSON shape: {"InstructionError": [idx, {"Custom": code}]}
    if isinstance(err, dict):
        if "InstructionError" not in err:
            return None
        index, inner = err["InstructionError"]
        if isinstance(inner, dict) and "Custom" in inner:
            return int(index), int(inner["Custom"])
        return None

    # solders TransactionErrorInstructionError(index, InstructionErrorCustom(code))
    inner = getattr(err, "err", None)
    if hasattr(err, "index") and hasattr(inner, "code"):
        return int(err.index), int(inner.code)

    # Message shape: "Error processing Instruction 3: custom program error: 0x1771"
    match = _INSTRUCTION_ERROR_RE.search(str(err))
    if match:
        return int(match.group(1)), int(match.group(2), 16)
    return None


def parse_program_error(
    err: Any,
    logs: Sequence[str] = (),
    account_keys: Sequence[Any] = (),
    program_id_indexes: Sequence[int] = ()
) -> Optional[ProgramError]:
    """
    Decode a custom program error from a simulation/send error.

    Args:
        err: Raw error (dict, solders error object, or string)
        logs: Simulation logs, used to find the failing program when the
            message keys cannot
        account_keys: Static account keys of the failing message
        program_id_indexes: program_id_index for each compiled instruction

    Returns:
        ProgramError, or None if the error is not a custom program error
    """
    parsed = _index_and_code(err)
    if parsed is None:
        return None
    index, code = parsed

    program_id = _program_for(index, account_keys, program_id_indexes)
    if program_id is None:
        for line in reversed(list(logs)):
            match = _FAILED_PROGRAM_LOG_RE.search(line)
            if match and int(match.group(2), 16) == code:
                program_id = match.group(1)
                break
    return _lookup(program_id, index, code)
