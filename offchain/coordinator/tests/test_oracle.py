"""
Tests for the oracle proof client.

Retry is exercised with a scripted transport and a recording sleep, so no
test waits for real backoff.
"""

import json
from typing import Any

import httpx
import pytest

from bridge_coordinator.errors import OracleError, ValidationError
from bridge_coordinator.oracle import (
    PROOF_METHOD,
    HttpOracleTransport,
    OracleRPCError,
    OracleProofClient,
    RetryPolicy,
    backoff_delay,
    parse_proof_response,
)

PROOF_HEX = "0x" + "ab" * 64


class ScriptedTransport:
    """Transport that plays back a list of results (exceptions are raised)."""

    def __init__(self, results: list[Any]):
        self.results = list(results)
        self.calls: list[tuple[list[int], str]] = []

    async def get_proof(self, pair_indexes: list[int], chain_type: str) -> Any:
        self.calls.append((pair_indexes, chain_type))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_client(results: list[Any], **policy: Any) -> tuple[OracleProofClient, ScriptedTransport, RecordingSleep]:
    transport = ScriptedTransport(results)
    sleep = RecordingSleep()
    client = OracleProofClient(transport, retry=RetryPolicy(**policy), sleep=sleep)
    return client, transport, sleep


class TestBackoffDelay:
    """Tests for exponential backoff."""

    def test_doubles_per_attempt(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0)
        assert [backoff_delay(n, policy) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert backoff_delay(5, policy) == 10.0
        assert backoff_delay(50, policy) == 10.0


class TestParseProofResponse:
    """Tests for proof payload extraction."""

    def test_evm_envelope(self) -> None:
        proof = parse_proof_response({"evm": {"proof_bytes": PROOF_HEX}}, [0])
        assert proof.proof_bytes == bytes.fromhex("ab" * 64)
        assert proof.pair_indexes == (0,)
        assert proof.hex == PROOF_HEX

    def test_flat_payload(self) -> None:
        assert parse_proof_response({"proof_bytes": "0102"}, [1]).proof_bytes == b"\x01\x02"

    def test_byte_list_payload(self) -> None:
        assert parse_proof_response({"evm": {"proof_bytes": [1, 2, 3]}}, [1]).proof_bytes == b"\x01\x02\x03"

    @pytest.mark.parametrize(
        "response",
        [None, {}, {"evm": {}}, {"evm": {"proof_bytes": "0x"}}, {"proof_bytes": "zz"}, {"proof_bytes": 12}],
    )
    def test_invalid_payloads(self, response: Any) -> None:
        with pytest.raises(OracleError):
            parse_proof_response(response, [0])


class TestFetchProof:
    """Tests for OracleProofClient.fetch_proof."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self) -> None:
        client, transport, sleep = make_client([{"evm": {"proof_bytes": PROOF_HEX}}])

        proof = await client.fetch_proof([0, 1])

        assert proof.pair_indexes == (0, 1)
        assert transport.calls == [([0, 1], "evm")]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        client, transport, sleep = make_client(
            [ConnectionError("reset"), ConnectionError("reset"), {"evm": {"proof_bytes": PROOF_HEX}}],
            max_attempts=3,
            base_delay=0.5,
        )

        proof = await client.fetch_proof([0])

        assert proof.hex == PROOF_HEX
        assert len(transport.calls) == 3
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhaustion_makes_exactly_max_attempts(self) -> None:
        last = ConnectionError("still down")
        client, transport, sleep = make_client([last], max_attempts=5, base_delay=1.0, max_delay=3.0)

        with pytest.raises(OracleError) as exc_info:
            await client.fetch_proof([0])

        assert len(transport.calls) == 5
        # No sleep after the final attempt; delays non-decreasing and capped
        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]
        assert exc_info.value.cause is last

    @pytest.mark.asyncio
    async def test_malformed_response_is_retried(self) -> None:
        client, transport, _ = make_client([{"evm": {}}, {"evm": {"proof_bytes": PROOF_HEX}}])

        proof = await client.fetch_proof([0])

        assert proof.hex == PROOF_HEX
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_malformed_response_surfaces_as_oracle_error(self) -> None:
        client, _, _ = make_client([{"evm": {"proof_bytes": ""}}], max_attempts=2)

        with pytest.raises(OracleError) as exc_info:
            await client.fetch_proof([0])

        assert isinstance(exc_info.value.cause, OracleError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pair_indexes", [[], [-1], ["0"], [True]])
    async def test_invalid_pair_indexes_make_no_request(self, pair_indexes: list[Any]) -> None:
        client, transport, _ = make_client([{"evm": {"proof_bytes": PROOF_HEX}}])

        with pytest.raises(ValidationError):
            await client.fetch_proof(pair_indexes)

        assert transport.calls == []


class TestHttpOracleTransport:
    """Tests for the JSON-RPC transport."""

    @pytest.mark.asyncio
    async def test_posts_json_rpc_request(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"evm": {"proof_bytes": PROOF_HEX}}})

        monkeypatch.setattr(httpx, "AsyncHTTPTransport", lambda retries=0: httpx.MockTransport(handler))
        transport = HttpOracleTransport("https://oracle.example")

        result = await transport.get_proof([0, 5], "evm")

        assert result == {"evm": {"proof_bytes": PROOF_HEX}}
        assert captured["method"] == PROOF_METHOD
        assert captured["params"] == [{"pair_indexes": [0, 5], "chain_type": "evm"}]

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad pair"}})

        monkeypatch.setattr(httpx, "AsyncHTTPTransport", lambda retries=0: httpx.MockTransport(handler))
        transport = HttpOracleTransport("https://oracle.example")

        with pytest.raises(OracleRPCError, match="bad pair"):
            await transport.get_proof([0], "evm")
