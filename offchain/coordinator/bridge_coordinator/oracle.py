"""
Price oracle proof client.

Fetches a signed price proof for a set of pair indexes from the oracle's
pull service. The proof is opaque to us; the destination contract verifies it.

Two retry layers exist:
- transport level: httpx retries failed connection attempts (bounded by
  `transport_retries`) beneath a single request;
- application level: `OracleProofClient` retries the whole request with
  exponential backoff, at most `max_attempts` times.
Each application attempt makes exactly one transport request, so the total
number of requests is bounded by max_attempts * (transport_retries + 1).
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field

from .errors import OracleError, ValidationError

logger = structlog.get_logger()

PROOF_METHOD = "supra_getProofV2"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for proof fetches."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay to wait after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed

    Returns:
        base * 2^(attempt-1), capped at max_delay
    """
    return min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)


@dataclass(frozen=True)
class Proof:
    """Signed price proof for one or more pair indexes."""

    proof_bytes: bytes
    pair_indexes: tuple[int, ...]

    @property
    def hex(self) -> str:
        return "0x" + self.proof_bytes.hex()


class OracleTransport(Protocol):
    """Single RPC-style call into the oracle's pull service."""

    async def get_proof(self, pair_indexes: list[int], chain_type: str) -> Any: ...


class OracleRPCError(Exception):
    """Error returned by the oracle's JSON-RPC endpoint."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Oracle RPC Error {code}: {message}")


class HttpOracleTransport:
    """JSON-RPC transport to the oracle pull service over HTTPS."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport_retries: int = 2,
    ):
        self.url = url
        self.timeout = timeout
        self.transport_retries = transport_retries
        self._request_id = 0

    async def get_proof(self, pair_indexes: list[int], chain_type: str) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": PROOF_METHOD,
            "params": [{"pair_indexes": pair_indexes, "chain_type": chain_type}],
        }

        transport = httpx.AsyncHTTPTransport(retries=self.transport_retries)
        async with httpx.AsyncClient(timeout=self.timeout, transport=transport) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
            result = response.json()

        if result.get("error"):
            error = result["error"]
            raise OracleRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")


def _to_bytes(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        return bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
    if isinstance(raw, list):
        return bytes(raw)
    raise OracleError(f"Unsupported proof payload type: {type(raw).__name__}")


def parse_proof_response(response: Any, pair_indexes: Sequence[int]) -> Proof:
    """
    Extract proof bytes from an oracle response.

    Accepts `{"evm": {"proof_bytes": ...}}`, `{"proof_bytes": ...}` or the
    payload itself; the payload may be hex, a byte list or bytes.

    Raises:
        OracleError: if the payload is missing, empty or undecodable
    """
    payload = response
    if isinstance(payload, dict):
        if "evm" in payload:
            payload = payload["evm"]
        if isinstance(payload, dict):
            payload = payload.get("proof_bytes")

    if payload is None:
        raise OracleError("Invalid proof response from oracle: missing proof_bytes")

    try:
        proof_bytes = _to_bytes(payload)
    except (ValueError, TypeError) as e:
        raise OracleError("Invalid proof response from oracle: undecodable proof_bytes", cause=e)

    if not proof_bytes:
        raise OracleError("Invalid proof response from oracle: empty proof_bytes")

    return Proof(proof_bytes=proof_bytes, pair_indexes=tuple(pair_indexes))


def _validate_pair_indexes(pair_indexes: Sequence[int]) -> list[int]:
    indexes = list(pair_indexes)
    if not indexes:
        raise ValidationError("At least one pair index is required")
    for index in indexes:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValidationError(f"Invalid pair index: {index!r}")
    return indexes


class OracleProofClient:
    """
    Fetches proofs with bounded retry.

    Holds no state shared between calls; attempt counters are local to each
    `fetch_proof` call, so concurrent calls for different pairs are safe.
    """

    def __init__(
        self,
        transport: OracleTransport,
        retry: Optional[RetryPolicy] = None,
        chain_type: str = "evm",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.chain_type = chain_type
        self._sleep = sleep

    async def fetch_proof(self, pair_indexes: Sequence[int]) -> Proof:
        """
        Fetch a proof for the given pair indexes.

        Raises:
            ValidationError: if pair_indexes is empty or malformed (no request made)
            OracleError: after max_attempts failed attempts; the last
                underlying error is attached as the cause
        """
        indexes = _validate_pair_indexes(pair_indexes)
        max_attempts = self.retry.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.transport.get_proof(indexes, self.chain_type)
                proof = parse_proof_response(response, indexes)
            except Exception as e:
                last_error = e
                if attempt == max_attempts:
                    break
                delay = backoff_delay(attempt, self.retry)
                logger.warning(
                    "oracle_attempt_failed",
                    pair_indexes=indexes,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retry_in=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                continue

            logger.info(
                "oracle_proof_received",
                pair_indexes=indexes,
                attempt=attempt,
                proof_size=len(proof.proof_bytes),
            )
            return proof

        logger.error(
            "oracle_attempts_exhausted",
            pair_indexes=indexes,
            attempts=max_attempts,
            error=str(last_error),
        )
        raise OracleError(
            f"Proof fetch failed after {max_attempts} attempts",
            cause=last_error,
            details={"pair_indexes": indexes, "attempts": max_attempts},
        )
