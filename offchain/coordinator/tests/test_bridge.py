"""
Tests for fee estimation and transfer submission.

Amounts must convert to base units exactly, and invalid requests must be
rejected before anything reaches a chain.
"""

from decimal import Decimal

import pytest
from eth_abi import decode, encode

from bridge_coordinator.bridge import (
    ESTIMATE_FEES_SELECTOR,
    MESSAGE_SENT_TOPIC,
    SEND_TOKENS_SELECTOR,
    BridgeService,
    TransferParams,
    correlation_key,
    create_adapter_params,
    parse_amount,
    to_base_units,
)
from bridge_coordinator.chain import Log, MockChainClient, Receipt
from bridge_coordinator.config import NetworkConfig, NetworkTable
from bridge_coordinator.errors import ChainError, ErrorKind, ValidationError, classify
from bridge_coordinator.oracle import Proof

BRIDGE_A = "0x" + "aa" * 20
BRIDGE_B = "0x" + "bb" * 20
RECEIVER = "0x" + "22" * 20
SENDER = "0x" + "11" * 20
NATIVE_FEE = 3 * 10**15

SEND_TOKENS_TYPES = ["uint16", "bytes", "uint256", "address", "address", "bytes", "bytes"]


@pytest.fixture
def networks() -> NetworkTable:
    return NetworkTable(
        [
            NetworkConfig(chain_id="A", name="Alpha", bridge_address=BRIDGE_A, lz_chain_id=101),
            NetworkConfig(chain_id="B", name="Beta", bridge_address=BRIDGE_B, lz_chain_id=102),
        ]
    )


@pytest.fixture
def chains() -> dict[str, MockChainClient]:
    source = MockChainClient("A")
    source.set_call_result(ESTIMATE_FEES_SELECTOR, encode(["uint256", "uint256"], [NATIVE_FEE, 0]))
    return {"A": source, "B": MockChainClient("B")}


@pytest.fixture
def service(networks: NetworkTable, chains: dict[str, MockChainClient]) -> BridgeService:
    return BridgeService(networks, chains)


def params(**overrides) -> TransferParams:
    values = {"source_chain_id": "A", "dest_chain_id": "B", "amount": "1.5", "receiver": RECEIVER}
    values.update(overrides)
    return TransferParams(**values)


class TestAmounts:
    """Tests for amount parsing and base-unit conversion."""

    def test_one_and_a_half_tokens(self) -> None:
        assert to_base_units("1.5") == 1_500_000_000_000_000_000

    def test_smallest_unit(self) -> None:
        assert to_base_units("0.000000000000000001") == 1

    def test_decimal_and_int_inputs(self) -> None:
        assert to_base_units(Decimal("0.1")) == 10**17
        assert to_base_units(2) == 2 * 10**18

    def test_custom_decimals(self) -> None:
        assert to_base_units("1.25", decimals=6) == 1_250_000

    def test_too_many_decimal_places(self) -> None:
        with pytest.raises(ValidationError):
            to_base_units("0.0000000000000000001")

    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "", "NaN", "Infinity", 1.5, True])
    def test_invalid_amounts(self, amount) -> None:
        with pytest.raises(ValidationError, match="Invalid amount"):
            parse_amount(amount)


class TestEncoding:
    """Tests for calldata helpers."""

    def test_adapter_params_layout(self) -> None:
        adapter = create_adapter_params(200_000)
        assert len(adapter) == 34
        assert adapter[:2] == b"\x00\x01"
        assert int.from_bytes(adapter[2:], "big") == 200_000

    def test_correlation_key_prefers_message_id(self) -> None:
        message_id = "0x" + "cd" * 32
        receipt = Receipt(
            tx_hash="0x" + "01" * 32,
            status=1,
            logs=(Log(address=BRIDGE_A, topics=(MESSAGE_SENT_TOPIC, message_id)),),
        )
        assert correlation_key(receipt.tx_hash, receipt, BRIDGE_A) == message_id

    def test_correlation_key_ignores_other_contracts(self) -> None:
        tx_hash = "0x" + "01" * 32
        receipt = Receipt(
            tx_hash=tx_hash,
            status=1,
            logs=(Log(address=BRIDGE_B, topics=(MESSAGE_SENT_TOPIC, "0x" + "cd" * 32)),),
        )
        assert correlation_key(tx_hash, receipt, BRIDGE_A) == tx_hash

    def test_correlation_key_falls_back_to_tx_hash(self) -> None:
        assert correlation_key("0xABCD") == "0xabcd"


class TestValidateParams:
    """Tests for request validation."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": "0"},
            {"amount": "-5"},
            {"receiver": "not-an-address"},
            {"receiver": ""},
            {"sender": "0x123"},
            {"dest_chain_id": "A"},
            {"dest_chain_id": "Z"},
            {"source_chain_id": ""},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_requests_touch_no_chain(
        self,
        service: BridgeService,
        chains: dict[str, MockChainClient],
        overrides: dict,
    ) -> None:
        with pytest.raises(ValidationError):
            await service.submit_transfer(params(**overrides), b"\x01")

        assert chains["A"].calls == []
        assert chains["A"].sent == []

    def test_valid_request_returns_amount(self, service: BridgeService) -> None:
        assert service.validate_params(params()) == Decimal("1.5")


class TestEstimateFee:
    """Tests for BridgeService.estimate_fee."""

    @pytest.mark.asyncio
    async def test_returns_fee(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        fee = await service.estimate_fee("A", "B", "1.5", RECEIVER)

        assert fee.native == NATIVE_FEE
        assert fee.total == NATIVE_FEE
        assert chains["A"].calls[0]["to"] == BRIDGE_A

    @pytest.mark.asyncio
    async def test_unsupported_chain(self, service: BridgeService) -> None:
        with pytest.raises(ChainError):
            await service.estimate_fee("Z", "B", "1", RECEIVER)

    @pytest.mark.asyncio
    async def test_revert_is_chain_error(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        chains["A"].set_call_result(ESTIMATE_FEES_SELECTOR, RuntimeError("execution reverted"))

        with pytest.raises(ChainError) as exc_info:
            await service.estimate_fee("A", "B", "1", RECEIVER)

        assert classify(exc_info.value).kind == ErrorKind.SOURCE_TX_FAILED


class TestSubmitTransfer:
    """Tests for BridgeService.submit_transfer."""

    @pytest.mark.asyncio
    async def test_sends_single_transaction(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        proof = Proof(proof_bytes=b"\xde\xad\xbe\xef", pair_indexes=(0,))

        handle = await service.submit_transfer(params(), proof)

        assert len(chains["A"].sent) == 1
        sent = chains["A"].sent[0]
        assert handle.tx_hash == sent["tx_hash"]
        assert sent["to"] == BRIDGE_A
        assert sent["value"] == NATIVE_FEE
        assert sent["data"][:4] == SEND_TOKENS_SELECTOR

        dst, to_address, amount, refund, zro, adapter, proof_bytes = decode(SEND_TOKENS_TYPES, sent["data"][4:])
        assert dst == 102
        assert to_address == bytes.fromhex("22" * 20)
        assert amount == 1_500_000_000_000_000_000
        assert refund.lower() == RECEIVER
        assert int(zro, 16) == 0
        assert adapter == create_adapter_params()
        assert proof_bytes == b"\xde\xad\xbe\xef"

    @pytest.mark.asyncio
    async def test_refund_to_sender_when_given(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        await service.submit_transfer(params(sender=SENDER), b"\x01")

        refund = decode(SEND_TOKENS_TYPES, chains["A"].sent[0]["data"][4:])[3]
        assert refund.lower() == SENDER

    @pytest.mark.asyncio
    async def test_not_idempotent(self, service: BridgeService) -> None:
        first = await service.submit_transfer(params(), b"\x01")
        second = await service.submit_transfer(params(), b"\x01")

        assert first.tx_hash != second.tx_hash

    @pytest.mark.asyncio
    async def test_empty_proof_rejected(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        with pytest.raises(ValidationError):
            await service.submit_transfer(params(), b"")
        assert chains["A"].sent == []

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        chains["A"].send_error = ValueError({"code": 4001, "message": "User rejected the request."})

        with pytest.raises(ChainError) as exc_info:
            await service.submit_transfer(params(), b"\x01")

        assert classify(exc_info.value).kind == ErrorKind.USER_REJECTED


class TestTransactionStatus:
    """Tests for BridgeService.get_transaction_status."""

    @pytest.mark.asyncio
    async def test_pending_then_mined(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        handle = await service.submit_transfer(params(), b"\x01")
        assert await service.get_transaction_status(handle.tx_hash, "A") == {"status": "pending"}

        chains["A"].mine(handle.tx_hash)
        status = await service.get_transaction_status(handle.tx_hash, "A")
        assert status["status"] == "success"
        assert status["confirmations"] == 1

    @pytest.mark.asyncio
    async def test_reverted(self, service: BridgeService, chains: dict[str, MockChainClient]) -> None:
        handle = await service.submit_transfer(params(), b"\x01")
        chains["A"].mine(handle.tx_hash, status=0)

        assert (await service.get_transaction_status(handle.tx_hash, "A"))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unsupported_chain(self, service: BridgeService) -> None:
        with pytest.raises(ChainError):
            await service.get_transaction_status("0x01", "Z")


class TestBridgeConfig:
    """Tests for BridgeService.get_bridge_config."""

    def test_known_chain(self, service: BridgeService) -> None:
        config = service.get_bridge_config("B")

        assert config.bridge_address == BRIDGE_B
        assert config.lz_chain_id == 102

    def test_unsupported_chain(self, service: BridgeService) -> None:
        with pytest.raises(ChainError):
            service.get_bridge_config("Z")
