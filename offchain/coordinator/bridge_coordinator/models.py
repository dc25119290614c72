"""
Pydantic models for API requests and responses.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Health
# ============================================================================

class HealthResponse(BaseModel):
    """Service status."""

    status: str = Field(..., description="ok or degraded")
    version: str
    networks: list[str] = Field(..., description="Supported chain ids")
    connected: list[str] = Field(..., description="Chain ids with a client")
    oracle_url: str
    in_flight: int = Field(..., description="Transfers currently being monitored")


# ============================================================================
# Proof
# ============================================================================

class ProofRequest(BaseModel):
    """Request a price proof from the oracle."""

    pair_indexes: Optional[list[int]] = Field(None, description="Oracle pair indexes; defaults to settings")

    model_config = {"json_schema_extra": {"examples": [{"pair_indexes": [0]}]}}


class ProofResponse(BaseModel):
    pair_indexes: list[int]
    proof_hex: str = Field(..., description="Opaque proof bytes (0x...)")


# ============================================================================
# Fees
# ============================================================================

class FeeEstimateRequest(BaseModel):
    """Request a fee quote for a transfer."""

    source_chain_id: str
    dest_chain_id: str
    amount: str = Field(..., description="Token amount as a decimal string")
    receiver: str = Field(..., description="Receiver address on the destination chain")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "source_chain_id": "11155111",
                    "dest_chain_id": "80002",
                    "amount": "1.5",
                    "receiver": "0x1234567890abcdef1234567890abcdef12345678",
                }
            ]
        }
    }


class FeeEstimateResponse(BaseModel):
    native_fee: str = Field(..., description="Fee in wei, paid as transaction value")
    auxiliary_fee: str
    total_fee: str


# ============================================================================
# Transfers
# ============================================================================

class TransferRequest(BaseModel):
    """Fetch a proof, submit the transfer and start monitoring it."""

    source_chain_id: str
    dest_chain_id: str
    amount: str = Field(..., description="Token amount as a decimal string")
    receiver: str
    sender: Optional[str] = None
    refund_address: Optional[str] = None
    pair_indexes: Optional[list[int]] = None


class TrackRequest(BaseModel):
    """Track a source transaction submitted elsewhere (e.g. a browser wallet)."""

    tx_hash: str = Field(..., description="Source chain transaction hash (0x...)")
    source_chain_id: str
    dest_chain_id: str
    amount: str
    sender: str
    receiver: str


class TransferResponse(BaseModel):
    """Snapshot of a transfer."""

    id: str
    tx_hash: str
    source_chain_id: str
    dest_chain_id: str
    amount: str
    sender: str
    receiver: str
    status: str
    confirmations: int = 0
    source_receipt: Optional[dict[str, Any]] = None
    dest_receipt: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    created_at: str
    updated_at: str
    explorer_url: Optional[str] = None


class TransactionStatusResponse(BaseModel):
    status: str = Field(..., description="pending, success or failed")
    confirmations: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class ErrorResponse(BaseModel):
    kind: str
    message: str
