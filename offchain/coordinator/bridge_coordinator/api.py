"""
Bridge coordinator API - HTTP surface for the frontend.

Provides REST endpoints for:
- Health checks (GET /health)
- Price proofs (POST /proof)
- Fee quotes (POST /fees/estimate)
- Submitting and tracking transfers (POST /transfers, POST /transfers/track)
- Transfer lookups (GET /transfers/{transfer_id}, GET /transfers?address=)
- Transaction status (GET /chains/{chain_id}/transactions/{tx_hash})
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth import STATE_CHANGING
from .bridge import TransferParams
from .config import Settings, get_settings
from .coordinator import BridgeCoordinator
from .errors import (
    BridgeError,
    DuplicateError,
    ErrorKind,
    TransferNotFoundError,
    ValidationError,
    classify,
    user_message,
)
from .models import (
    ErrorResponse,
    FeeEstimateRequest,
    FeeEstimateResponse,
    HealthResponse,
    ProofRequest,
    ProofResponse,
    TrackRequest,
    TransactionStatusResponse,
    TransferRequest,
    TransferResponse,
)
from .registry import TransferRecord
from .store import JournalEntry

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.ORACLE_ERROR: 502,
    ErrorKind.CHAIN_ERROR: 502,
}


def error_status(exc: BridgeError) -> int:
    """HTTP status for a coordinator error."""
    if isinstance(exc, TransferNotFoundError):
        return 404
    if isinstance(exc, DuplicateError):
        return 409
    return _STATUS_BY_KIND.get(classify(exc).kind, 500)


async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    classified = classify(exc)
    # Validation text describes the caller's own input; everything else gets the stable message
    message = exc.message if isinstance(exc, ValidationError) else classified.user_message
    logger.warning(
        "request_failed",
        path=request.url.path,
        kind=classified.kind.value,
        error=str(exc),
    )
    return JSONResponse(
        status_code=error_status(exc),
        content=ErrorResponse(kind=classified.kind.value, message=message).model_dump(),
    )


def get_coordinator(request: Request) -> BridgeCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not initialized")
    return coordinator


def _record_response(coordinator: BridgeCoordinator, record: TransferRecord) -> TransferResponse:
    network = coordinator.networks.get(record.source_chain_id)
    return TransferResponse(**record.to_dict(), explorer_url=network.explorer_tx_url(record.tx_hash))


def _entry_response(entry: JournalEntry) -> TransferResponse:
    data = entry.to_dict()
    error = None
    if entry.error_kind:
        error = {
            "kind": entry.error_kind,
            "message": entry.error_message,
            "user_message": user_message(ErrorKind(entry.error_kind)),
        }
    return TransferResponse(
        id=data["id"],
        tx_hash=data["tx_hash"],
        source_chain_id=data["source_chain_id"],
        dest_chain_id=data["dest_chain_id"],
        amount=data["amount"],
        sender=data["sender"],
        receiver=data["receiver"],
        status=data["status"],
        confirmations=data["confirmations"],
        dest_receipt={"tx_hash": entry.dest_tx_hash} if entry.dest_tx_hash else None,
        error=error,
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def create_app(
    coordinator: Optional[BridgeCoordinator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API application.

    With no coordinator, one is built from settings at startup and shut
    down with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.coordinator = coordinator or BridgeCoordinator.from_settings(settings or get_settings())
        await app.state.coordinator.start()

        logger.info(
            "api_started",
            version=__version__,
            networks=app.state.coordinator.networks.chain_ids,
        )

        yield

        await app.state.coordinator.stop()
        app.state.coordinator = None
        logger.info("api_stopped")

    app = FastAPI(
        title="Bridge Coordinator API",
        description="Cross-chain transfer lifecycle coordinator",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=(settings or get_settings()).allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BridgeError, bridge_error_handler)

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(coordinator: BridgeCoordinator = Depends(get_coordinator)) -> HealthResponse:
        """Service status and configured networks."""
        networks = coordinator.networks.chain_ids
        connected = [chain_id for chain_id in networks if chain_id in coordinator.chains]
        return HealthResponse(
            status="ok" if connected else "degraded",
            version=__version__,
            networks=networks,
            connected=connected,
            oracle_url=coordinator.settings.oracle_url,
            in_flight=coordinator.monitor.in_flight,
        )

    # ========================================================================
    # Proof and Fees
    # ========================================================================

    @app.post("/proof", response_model=ProofResponse)
    async def fetch_proof(
        request: ProofRequest,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> ProofResponse:
        """Fetch a signed price proof from the oracle."""
        proof = await coordinator.fetch_proof(request.pair_indexes)
        return ProofResponse(pair_indexes=list(proof.pair_indexes), proof_hex=proof.hex)

    @app.post("/fees/estimate", response_model=FeeEstimateResponse)
    async def estimate_fee(
        request: FeeEstimateRequest,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> FeeEstimateResponse:
        """Quote the messaging fee for a transfer."""
        fee = await coordinator.estimate_fee(
            request.source_chain_id,
            request.dest_chain_id,
            request.amount,
            request.receiver,
        )
        return FeeEstimateResponse(
            native_fee=str(fee.native),
            auxiliary_fee=str(fee.auxiliary),
            total_fee=str(fee.total),
        )

    # ========================================================================
    # Transfers
    # ========================================================================

    @app.post(
        "/transfers",
        response_model=TransferResponse,
        status_code=202,
        dependencies=STATE_CHANGING,
    )
    async def create_transfer(
        request: TransferRequest,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> TransferResponse:
        """
        Fetch a proof, submit the transfer on the source chain and start monitoring.

        Returns as soon as the source transaction is accepted.
        """
        params = TransferParams(
            source_chain_id=request.source_chain_id,
            dest_chain_id=request.dest_chain_id,
            amount=request.amount,
            receiver=request.receiver,
            sender=request.sender,
            refund_address=request.refund_address,
        )
        record = await coordinator.transfer(params, request.pair_indexes)
        return _record_response(coordinator, record)

    @app.post(
        "/transfers/track",
        response_model=TransferResponse,
        status_code=202,
        dependencies=STATE_CHANGING,
    )
    async def track_transfer(
        request: TrackRequest,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> TransferResponse:
        """Start monitoring a source transaction that was submitted elsewhere."""
        transfer_id = coordinator.track(
            request.tx_hash,
            request.source_chain_id,
            request.dest_chain_id,
            request.amount,
            request.sender,
            request.receiver,
        )
        return _record_response(coordinator, coordinator.get(transfer_id))

    @app.get("/transfers/{transfer_id}", response_model=TransferResponse)
    async def get_transfer(
        transfer_id: str,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> TransferResponse:
        """Current snapshot of a transfer; swept transfers are served from the journal."""
        record = coordinator.get(transfer_id)
        if record is not None:
            return _record_response(coordinator, record)

        entry = coordinator.journal.get(transfer_id) if coordinator.journal else None
        if entry is None:
            raise TransferNotFoundError(f"Unknown transfer {transfer_id}")
        return _entry_response(entry)

    @app.get("/transfers", response_model=list[TransferResponse])
    async def list_transfers(
        address: str = Query(..., description="Sender or receiver address"),
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> list[TransferResponse]:
        """Live transfers where the address is sender or receiver."""
        return [_record_response(coordinator, r) for r in coordinator.transfers_for(address)]

    @app.get(
        "/chains/{chain_id}/transactions/{tx_hash}",
        response_model=TransactionStatusResponse,
    )
    async def transaction_status(
        chain_id: str,
        tx_hash: str,
        coordinator: BridgeCoordinator = Depends(get_coordinator),
    ) -> TransactionStatusResponse:
        """Point-in-time status of any transaction on a supported chain."""
        return TransactionStatusResponse(**await coordinator.transaction_status(tx_hash, chain_id))

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "bridge_coordinator.api:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=False,
    )
