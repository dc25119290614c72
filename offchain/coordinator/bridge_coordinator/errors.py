"""
Error taxonomy for the bridge coordinator.

Every failure that reaches the outer boundary (API, CLI, subscribers) is
reduced to one of a fixed set of kinds with a stable user-facing message.
The underlying low-level exception is kept on the classified error for
diagnostics, but never rendered into user text.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
from web3.exceptions import ContractLogicError


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    VALIDATION = "VALIDATION"
    USER_REJECTED = "USER_REJECTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    SOURCE_TX_FAILED = "SOURCE_TX_FAILED"
    ORACLE_ERROR = "ORACLE_ERROR"
    DELIVERY_TIMEOUT = "DELIVERY_TIMEOUT"
    MONITOR_ERROR = "MONITOR_ERROR"
    CHAIN_ERROR = "CHAIN_ERROR"
    UNKNOWN = "UNKNOWN"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "The transfer parameters are invalid. Please check the amount, receiver address and networks.",
    ErrorKind.USER_REJECTED: "The transaction was rejected in your wallet.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds to complete the transaction. Please ensure you have enough tokens and gas.",
    ErrorKind.SOURCE_TX_FAILED: "The source chain transaction failed. No funds were bridged.",
    ErrorKind.ORACLE_ERROR: "Unable to fetch current price data. Please try again later.",
    ErrorKind.DELIVERY_TIMEOUT: "Cross-chain message delivery is taking longer than expected. Check the destination chain explorer before retrying.",
    ErrorKind.MONITOR_ERROR: "We lost track of this transfer. Check the block explorers for its current state.",
    ErrorKind.CHAIN_ERROR: "The network is unavailable or not supported. Please switch networks or try again later.",
    ErrorKind.UNKNOWN: "An error occurred. Please try again later.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Exceptions
# ============================================================================


class BridgeError(Exception):
    """Base for coordinator errors. Subclasses pin the error kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}
        if cause is not None:
            self.__cause__ = cause


class ValidationError(BridgeError):
    """Invalid input, rejected before any network effect."""

    kind = ErrorKind.VALIDATION


class ChainError(BridgeError):
    """Unsupported chain or RPC failure."""

    kind = ErrorKind.CHAIN_ERROR


class OracleError(BridgeError):
    """Proof fetch failed or returned malformed data."""

    kind = ErrorKind.ORACLE_ERROR


class DuplicateError(BridgeError):
    """A transfer with the same (source chain, tx hash) is already tracked."""

    kind = ErrorKind.VALIDATION


class MonitorError(BridgeError):
    """Unexpected failure while watching chains."""

    kind = ErrorKind.MONITOR_ERROR


class TransitionError(BridgeError):
    """A status change that the transfer state machine does not allow."""

    kind = ErrorKind.MONITOR_ERROR


class TransferNotFoundError(BridgeError, LookupError):
    """No transfer is registered under the given id."""

    kind = ErrorKind.VALIDATION


# ============================================================================
# Classification
# ============================================================================


@dataclass(frozen=True)
class ClassifiedError:
    """An error reduced to a kind. `cause` is for diagnostics only."""

    kind: ErrorKind
    message: str
    cause: Optional[BaseException] = field(default=None, repr=False, compare=False)
    timestamp: datetime = field(default_factory=_utcnow, compare=False)

    @property
    def user_message(self) -> str:
        return user_message(self.kind)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view without the underlying cause."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "timestamp": self.timestamp.isoformat(),
        }


USER_REJECTED_CODES = {4001, "ACTION_REJECTED"}

_USER_REJECTED_TEXT = ("user rejected", "user denied", "rejected by user")
_INSUFFICIENT_FUNDS_TEXT = ("insufficient funds",)
_REVERT_TEXT = ("execution reverted", "reverted")
_RELAY_TEXT = ("layerzero", "relay")
_NETWORK_TEXT = ("network", "timeout", "timed out", "connection", "econnrefused")

_REFINABLE_KINDS = {
    ErrorKind.USER_REJECTED,
    ErrorKind.INSUFFICIENT_FUNDS,
    ErrorKind.SOURCE_TX_FAILED,
}


def _extract_code_and_text(raw: Any) -> tuple[Any, str]:
    """Pull an RPC error code and message text out of whatever we were given."""
    if isinstance(raw, str):
        return None, raw

    if isinstance(raw, dict):
        return raw.get("code"), str(raw.get("message", ""))

    code = getattr(raw, "code", None)
    text = str(raw)

    # web3 raises ValueError({"code": ..., "message": ...}) for node errors
    args = getattr(raw, "args", ())
    if args and isinstance(args[0], dict):
        code = args[0].get("code", code)
        text = str(args[0].get("message", text))

    rpc_response = getattr(raw, "rpc_response", None)
    if isinstance(rpc_response, dict) and isinstance(rpc_response.get("error"), dict):
        code = rpc_response["error"].get("code", code)
        text = str(rpc_response["error"].get("message", text))

    return code, text


def _kind_from_raw(raw: Any) -> ErrorKind:
    code, text = _extract_code_and_text(raw)
    lowered = text.lower()

    if code in USER_REJECTED_CODES or any(t in lowered for t in _USER_REJECTED_TEXT):
        return ErrorKind.USER_REJECTED

    if code == "INSUFFICIENT_FUNDS" or any(t in lowered for t in _INSUFFICIENT_FUNDS_TEXT):
        return ErrorKind.INSUFFICIENT_FUNDS

    if isinstance(raw, ContractLogicError) or any(t in lowered for t in _REVERT_TEXT):
        return ErrorKind.SOURCE_TX_FAILED

    if any(t in lowered for t in _RELAY_TEXT):
        return ErrorKind.CHAIN_ERROR

    if isinstance(raw, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorKind.CHAIN_ERROR
    if any(t in lowered for t in _NETWORK_TEXT):
        return ErrorKind.CHAIN_ERROR

    return ErrorKind.UNKNOWN


def classify(raw: Any) -> ClassifiedError:
    """
    Map a heterogeneous error to a ClassifiedError.

    Accepts exceptions, JSON-RPC error dicts and plain strings. Never raises;
    anything unrecognized becomes ErrorKind.UNKNOWN.
    """
    if isinstance(raw, ClassifiedError):
        return raw

    try:
        if isinstance(raw, BridgeError):
            kind = raw.kind
            message = raw.message
            # A chain failure wrapping a wallet or revert error is reported as the latter
            if isinstance(raw, ChainError) and raw.cause is not None:
                refined = _kind_from_raw(raw.cause)
                if refined in _REFINABLE_KINDS:
                    kind = refined
                    message = user_message(kind)
            return ClassifiedError(kind=kind, message=message, cause=raw)

        kind = _kind_from_raw(raw)
    except Exception:
        kind = ErrorKind.UNKNOWN

    cause = raw if isinstance(raw, BaseException) else None
    return ClassifiedError(kind=kind, message=user_message(kind), cause=cause)


def user_message(kind: ErrorKind) -> str:
    """Stable human-readable message for an error kind."""
    return USER_MESSAGES.get(ErrorKind(kind), USER_MESSAGES[ErrorKind.UNKNOWN])
