"""Classify RPC and program failures into the orchestrator error taxonomy."""

from __future__ import annotations

import re

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)

from app.core.errors import (
    ChainRejectionError,
    DataIntegrityError,
    OrchestratorError,
    TransientChainError,
)

# Anchor numbers custom program errors from 6000 in declaration order.
PROGRAM_ERROR_NAMES: dict[int, str] = {
    6000: "InvalidFeeConfiguration",
    6001: "InvalidThreshold",
    6002: "InvalidTimeLimit",
    6003: "InvalidStateTransition",
    6004: "InvalidMarketState",
    6005: "MarketPaused",
    6006: "MarketCancelled",
    6011: "ResolutionPeriodNotEnded",
    6012: "DisputePeriodEnded",
    6013: "NoResolutionProposed",
    6016: "Unauthorized",
    6020: "OverflowError",
    6022: "DivisionByZero",
    6027: "InvalidMarketId",
}

# Anchor framework constraint errors (2000-2999) are also deterministic rejections.
_ANCHOR_CONSTRAINT_RANGE = range(2000, 3000)

_HEX_CUSTOM_ERROR = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")
_DECIMAL_CUSTOM_ERROR = re.compile(r"Custom\((\d+)\)")

_TRANSIENT_MARKERS = (
    "blockhash not found",
    "block height exceeded",
    "node is behind",
    "too many requests",
    "timed out",
    "timeout",
    "connection reset",
    "service unavailable",
)


def _program_error_code(message: str) -> int | None:
    match = _HEX_CUSTOM_ERROR.search(message)
    if match:
        return int(match.group(1), 16)
    match = _DECIMAL_CUSTOM_ERROR.search(message)
    if match:
        return int(match.group(1))
    return None


def _is_rejection_code(code: int) -> bool:
    return code >= 6000 or code in _ANCHOR_CONSTRAINT_RANGE


def classify_error(exc: BaseException) -> OrchestratorError:
    """Map an arbitrary exception onto the orchestrator taxonomy.

    Already-classified errors pass through unchanged. Program errors become
    ``ChainRejectionError``; transport failures, expired blockhashes, and
    anything unrecognised become ``TransientChainError`` so the executor's
    bounded retry budget decides their fate.
    """

    if isinstance(exc, OrchestratorError):
        return exc

    message = str(exc)

    if isinstance(exc, (UnconfirmedTxError, TransactionExpiredBlockheightExceededError)):
        return TransientChainError(message or exc.__class__.__name__)

    if isinstance(exc, (httpx.TransportError, SolanaRpcException, TimeoutError)):
        return TransientChainError(message or exc.__class__.__name__)

    code = _program_error_code(message)
    if code is not None and _is_rejection_code(code):
        name = PROGRAM_ERROR_NAMES.get(code)
        label = f"{name} ({code})" if name else str(code)
        return ChainRejectionError(f"Program rejected instruction: {label}", code=code, name=name)

    if isinstance(exc, RPCException):
        lowered = message.lower()
        if any(marker in lowered for marker in _TRANSIENT_MARKERS):
            return TransientChainError(message)
        if "instructionerror" in lowered:
            return ChainRejectionError(message)
        return TransientChainError(message)

    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return DataIntegrityError(message or exc.__class__.__name__)

    return TransientChainError(message or exc.__class__.__name__)


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc).retryable


def error_summary(exc: BaseException) -> str:
    parts = [exc.__class__.__name__]
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        parts.append(f"code={code}")
    message = str(exc)
    if message:
        parts.append(message)
    return ": ".join([parts[0], " ".join(parts[1:])]) if len(parts) > 1 else parts[0]
