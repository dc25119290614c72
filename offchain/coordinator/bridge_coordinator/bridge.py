"""
Fee estimation and source-chain submission for bridge transfers.

The bridge contract is consumed as two opaque calls:
- estimateFees(uint16 dstChainId, bytes toAddress, uint256 amount, bool useZro, bytes adapterParams)
- sendTokens(uint16 dstChainId, bytes toAddress, uint256 amount, address refundAddress,
             address zroPaymentAddress, bytes adapterParams, bytes priceProof) payable
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

import structlog
from eth_abi import decode, encode
from eth_abi.packed import encode_packed
from web3 import Web3

from .chain import ChainClient, Receipt, normalize_hex
from .config import NetworkConfig, NetworkTable
from .errors import BridgeError, ChainError, ValidationError
from .oracle import Proof

logger = structlog.get_logger()

TOKEN_DECIMALS = 18
DEFAULT_GAS_LIMIT = 200_000
ADAPTER_PARAMS_VERSION = 1
ZERO_ADDRESS = "0x" + "00" * 20

ESTIMATE_FEES_SIGNATURE = "estimateFees(uint16,bytes,uint256,bool,bytes)"
SEND_TOKENS_SIGNATURE = "sendTokens(uint16,bytes,uint256,address,address,bytes,bytes)"
MESSAGE_SENT_EVENT = "MessageSent(bytes32,uint16,address,uint256)"
MESSAGE_RECEIVED_EVENT = "MessageReceived(bytes32,address,uint256)"


def function_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def event_topic(signature: str) -> str:
    return normalize_hex(Web3.keccak(text=signature))


ESTIMATE_FEES_SELECTOR = function_selector(ESTIMATE_FEES_SIGNATURE)
SEND_TOKENS_SELECTOR = function_selector(SEND_TOKENS_SIGNATURE)
MESSAGE_SENT_TOPIC = event_topic(MESSAGE_SENT_EVENT)
MESSAGE_RECEIVED_TOPIC = event_topic(MESSAGE_RECEIVED_EVENT)


# ============================================================================
# Amounts and encoding
# ============================================================================


def parse_amount(amount: Union[str, int, Decimal]) -> Decimal:
    """
    Parse a token amount, requiring a finite positive decimal.

    Floats are rejected; pass amounts as strings to keep exact precision.
    """
    if isinstance(amount, (bool, float)):
        raise ValidationError("Invalid amount", details={"amount": repr(amount)})
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError("Invalid amount", details={"amount": str(amount)})

    if not value.is_finite() or value <= 0:
        raise ValidationError("Invalid amount", details={"amount": str(amount)})
    return value


def to_base_units(amount: Union[str, int, Decimal], decimals: int = TOKEN_DECIMALS) -> int:
    """
    Convert a token amount to integer base units with exact precision.

    Examples:
        >>> to_base_units("1.5")
        1500000000000000000
        >>> to_base_units("0.000000000000000001")
        1
    """
    value = parse_amount(amount)
    units = value.scaleb(decimals)
    if units != units.to_integral_value():
        raise ValidationError(
            f"Amount {amount} has more than {decimals} decimal places",
            details={"amount": str(amount)},
        )
    return int(units)


def create_adapter_params(gas_limit: int = DEFAULT_GAS_LIMIT, version: int = ADAPTER_PARAMS_VERSION) -> bytes:
    """Relay adapter parameters: packed (uint16 version, uint256 gasLimit)."""
    return encode_packed(["uint16", "uint256"], [version, gas_limit])


def encode_receiver(address: str) -> bytes:
    """Destination address as packed 20 bytes."""
    return encode_packed(["address"], [Web3.to_checksum_address(address)])


def encode_estimate_fees(lz_dst_chain_id: int, receiver: str, amount_units: int, adapter_params: bytes) -> bytes:
    return ESTIMATE_FEES_SELECTOR + encode(
        ["uint16", "bytes", "uint256", "bool", "bytes"],
        [lz_dst_chain_id, encode_receiver(receiver), amount_units, False, adapter_params],
    )


def encode_send_tokens(
    lz_dst_chain_id: int,
    receiver: str,
    amount_units: int,
    refund_address: str,
    adapter_params: bytes,
    proof_bytes: bytes,
) -> bytes:
    return SEND_TOKENS_SELECTOR + encode(
        ["uint16", "bytes", "uint256", "address", "address", "bytes", "bytes"],
        [
            lz_dst_chain_id,
            encode_receiver(receiver),
            amount_units,
            Web3.to_checksum_address(refund_address),
            ZERO_ADDRESS,
            adapter_params,
            proof_bytes,
        ],
    )


def correlation_key(
    tx_hash: str,
    source_receipt: Optional[Receipt] = None,
    bridge_address: Optional[str] = None,
) -> str:
    """
    Key that ties a destination MessageReceived event to one transfer.

    The message id from the source bridge's MessageSent event is used when the
    receipt carries one; otherwise the source transaction hash itself.
    """
    if source_receipt is not None:
        for log in source_receipt.logs:
            if len(log.topics) < 2 or normalize_hex(log.topics[0]) != MESSAGE_SENT_TOPIC:
                continue
            if bridge_address and normalize_hex(log.address) != normalize_hex(bridge_address):
                continue
            return normalize_hex(log.topics[1])
    return normalize_hex(tx_hash)


# ============================================================================
# Service
# ============================================================================


@dataclass
class TransferParams:
    """User request to bridge `amount` from source to destination chain."""

    source_chain_id: str
    dest_chain_id: str
    amount: Union[str, Decimal]
    receiver: str
    sender: Optional[str] = None
    refund_address: Optional[str] = None


@dataclass(frozen=True)
class Fee:
    """Cross-chain messaging fee in wei."""

    native: int
    auxiliary: int = 0

    @property
    def total(self) -> int:
        return self.native + self.auxiliary


@dataclass(frozen=True)
class TransferHandle:
    """A source transaction accepted into the pending pool."""

    tx_hash: str
    source_chain_id: str
    dest_chain_id: str
    amount: Decimal
    receiver: str
    sender: Optional[str]
    fee: Fee


class BridgeService:
    """Computes fees and submits bridge transfers on the source chain."""

    def __init__(
        self,
        networks: NetworkTable,
        chains: Mapping[str, ChainClient],
        gas_limit: int = DEFAULT_GAS_LIMIT,
        token_decimals: int = TOKEN_DECIMALS,
    ):
        self.networks = networks
        self.chains = chains
        self.gas_limit = gas_limit
        self.token_decimals = token_decimals

    def _chain(self, chain_id: str) -> ChainClient:
        client = self.chains.get(chain_id)
        if client is None:
            raise ChainError(f"No client configured for chain {chain_id}", details={"chain_id": chain_id})
        return client

    def get_bridge_config(self, chain_id: str) -> NetworkConfig:
        """Network record (bridge address, endpoint, explorer) for a chain."""
        return self.networks.get(chain_id)

    def validate_params(self, params: TransferParams) -> Decimal:
        """
        Validate a transfer request without touching the network.

        Returns:
            The parsed amount

        Raises:
            ValidationError: on any invalid field
        """
        if not params.source_chain_id or not params.dest_chain_id:
            raise ValidationError("Invalid chain IDs")

        amount = parse_amount(params.amount)
        to_base_units(amount, self.token_decimals)

        if not params.receiver or not Web3.is_address(params.receiver):
            raise ValidationError("Invalid receiver address", details={"receiver": params.receiver})
        for field_name in ("sender", "refund_address"):
            value = getattr(params, field_name)
            if value is not None and not Web3.is_address(value):
                raise ValidationError(f"Invalid {field_name.replace('_', ' ')}", details={field_name: value})

        if params.source_chain_id == params.dest_chain_id:
            raise ValidationError("Source and destination chains must be different")

        for chain_id in (params.source_chain_id, params.dest_chain_id):
            if chain_id not in self.networks:
                raise ValidationError(
                    f"Unsupported network: {chain_id}",
                    details={"chain_id": chain_id, "supported": self.networks.chain_ids},
                )

        return amount

    async def estimate_fee(
        self,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Union[str, Decimal],
        receiver: str,
    ) -> Fee:
        """
        Query the source bridge for the messaging fee.

        Raises:
            ChainError: if either chain is unsupported or the call reverts
            ValidationError: if amount or receiver cannot be encoded
        """
        source = self.networks.get(source_chain_id)
        dest = self.networks.get(dest_chain_id)
        if not source.bridge_address:
            raise ChainError(f"No bridge contract configured for chain {source_chain_id}")
        if not Web3.is_address(receiver):
            raise ValidationError("Invalid receiver address", details={"receiver": receiver})

        data = encode_estimate_fees(
            dest.lz_chain_id,
            receiver,
            to_base_units(amount, self.token_decimals),
            create_adapter_params(self.gas_limit),
        )

        client = self._chain(source_chain_id)
        try:
            result = await client.call(source.bridge_address, data)
            native_fee, zro_fee = decode(["uint256", "uint256"], result)
        except BridgeError:
            raise
        except Exception as e:
            logger.error(
                "fee_estimation_error",
                source_chain=source_chain_id,
                dest_chain=dest_chain_id,
                error=str(e),
            )
            raise ChainError("Fee estimation failed", cause=e)

        fee = Fee(native=native_fee, auxiliary=zro_fee)
        logger.info(
            "fee_estimated",
            source_chain=source_chain_id,
            dest_chain=dest_chain_id,
            amount=str(amount),
            native_fee=fee.native,
            auxiliary_fee=fee.auxiliary,
        )
        return fee

    async def submit_transfer(self, params: TransferParams, proof: Union[Proof, bytes]) -> TransferHandle:
        """
        Validate, re-estimate the fee and send the source transaction.

        Not idempotent: each successful call broadcasts a new transaction.
        Returns as soon as the transaction is accepted; confirmation is the
        monitor's job.
        """
        amount = self.validate_params(params)
        proof_bytes = proof.proof_bytes if isinstance(proof, Proof) else bytes(proof)
        if not proof_bytes:
            raise ValidationError("Price proof is empty")

        fee = await self.estimate_fee(
            params.source_chain_id,
            params.dest_chain_id,
            amount,
            params.receiver,
        )

        source = self.networks.get(params.source_chain_id)
        dest = self.networks.get(params.dest_chain_id)
        refund_address = params.refund_address or params.sender or params.receiver

        data = encode_send_tokens(
            dest.lz_chain_id,
            params.receiver,
            to_base_units(amount, self.token_decimals),
            refund_address,
            create_adapter_params(self.gas_limit),
            proof_bytes,
        )

        client = self._chain(params.source_chain_id)
        try:
            tx_hash = await client.send_transaction(source.bridge_address, data, value=fee.native)
        except BridgeError:
            raise
        except Exception as e:
            logger.error(
                "transfer_submission_error",
                source_chain=params.source_chain_id,
                dest_chain=params.dest_chain_id,
                error=str(e),
            )
            raise ChainError("Bridge transfer submission failed", cause=e)

        logger.info(
            "transfer_submitted",
            tx_hash=tx_hash,
            source_chain=params.source_chain_id,
            dest_chain=params.dest_chain_id,
            amount=str(amount),
            receiver=params.receiver,
            native_fee=fee.native,
            proof_size=len(proof_bytes),
        )

        return TransferHandle(
            tx_hash=tx_hash,
            source_chain_id=params.source_chain_id,
            dest_chain_id=params.dest_chain_id,
            amount=amount,
            receiver=params.receiver,
            sender=params.sender,
            fee=fee,
        )

    async def get_transaction_status(self, tx_hash: str, chain_id: str) -> dict[str, Any]:
        """Point-in-time status of a transaction: pending, success or failed."""
        self.networks.get(chain_id)
        client = self._chain(chain_id)
        try:
            receipt = await client.get_transaction_receipt(tx_hash)
        except BridgeError:
            raise
        except Exception as e:
            raise ChainError("Transaction status lookup failed", cause=e)

        if receipt is None:
            return {"status": "pending"}

        return {
            "status": "success" if receipt.succeeded else "failed",
            "confirmations": receipt.confirmations,
            "block_number": receipt.block_number,
            "gas_used": receipt.gas_used,
        }
