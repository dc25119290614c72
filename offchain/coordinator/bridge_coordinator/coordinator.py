"""
Bridge coordinator.

Composition root: builds the oracle client, bridge service, registry,
monitor and journal from settings and exposes the operations the UI layer
consumes. Nothing here is a process-wide singleton; build one coordinator
and pass it where it is needed.
"""

from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import structlog

from .bridge import ZERO_ADDRESS, BridgeService, Fee, TransferParams
from .bus import Observer
from .chain import ChainClient, EvmChainClient
from .config import NetworkTable, Settings, get_settings
from .errors import BridgeError, DuplicateError, ValidationError
from .monitor import TransactionMonitor
from .oracle import HttpOracleTransport, OracleProofClient, OracleTransport, Proof, RetryPolicy
from .registry import TransferRecord, TransferRegistry, make_transfer_id
from .store import JournalEntry, TransferJournal

logger = structlog.get_logger()


def build_chain_clients(settings: Settings, networks: NetworkTable) -> dict[str, ChainClient]:
    """One web3 client per network that has an RPC endpoint configured."""
    return {
        network.chain_id: EvmChainClient(
            network,
            private_key=settings.private_key,
            poll_interval=settings.log_poll_interval_seconds,
        )
        for network in networks
        if network.rpc_url
    }


class BridgeCoordinator:
    """Oracle, submitter, monitor and journal wired together."""

    def __init__(
        self,
        settings: Settings,
        networks: NetworkTable,
        chains: Mapping[str, ChainClient],
        oracle: OracleProofClient,
        bridge: BridgeService,
        monitor: TransactionMonitor,
        journal: Optional[TransferJournal] = None,
    ):
        self.settings = settings
        self.networks = networks
        self.chains = chains
        self.oracle = oracle
        self.bridge = bridge
        self.monitor = monitor
        self.journal = journal

        self._remove_journal_listener: Optional[Callable[[], None]] = None
        if journal is not None:
            self._remove_journal_listener = monitor.registry.bus.add_listener(journal)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        chains: Optional[Mapping[str, ChainClient]] = None,
        oracle_transport: Optional[OracleTransport] = None,
        journal: Union[TransferJournal, bool] = True,
    ) -> "BridgeCoordinator":
        """
        Build a coordinator from settings.

        Args:
            chains: chain clients by chain id; web3 clients are built for
                every network with an RPC endpoint when omitted
            oracle_transport: defaults to JSON-RPC over HTTPS at oracle_url
            journal: a journal, True to open one at database_url, or False
        """
        settings = settings or get_settings()
        networks = settings.network_table()
        if chains is None:
            chains = build_chain_clients(settings, networks)

        transport = oracle_transport or HttpOracleTransport(
            settings.oracle_url,
            timeout=settings.oracle_timeout_seconds,
            transport_retries=settings.oracle_transport_retries,
        )
        oracle = OracleProofClient(
            transport,
            retry=RetryPolicy(
                max_attempts=settings.oracle_max_attempts,
                base_delay=settings.oracle_base_delay_seconds,
                max_delay=settings.oracle_max_delay_seconds,
            ),
            chain_type=settings.oracle_chain_type,
        )

        bridge = BridgeService(
            networks,
            chains,
            gas_limit=settings.default_gas_limit,
            token_decimals=settings.token_decimals,
        )
        monitor = TransactionMonitor(
            TransferRegistry(),
            networks,
            chains,
            delivery_timeout=settings.delivery_timeout_seconds,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            min_confirmations=settings.min_confirmations,
            sweep_interval=settings.sweep_interval_seconds,
            max_record_age=settings.max_record_age_seconds,
        )

        if journal is True:
            journal = TransferJournal(settings.database_url)
        elif journal is False:
            journal = None

        logger.info(
            "coordinator_initialized",
            networks=networks.chain_ids,
            connected=list(chains),
            oracle_url=settings.oracle_url,
            journal=journal is not None,
        )
        return cls(settings, networks, chains, oracle, bridge, monitor, journal)

    async def start(self) -> None:
        await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
        if self._remove_journal_listener is not None:
            self._remove_journal_listener()
            self._remove_journal_listener = None
        if self.journal is not None:
            self.journal.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_proof(self, pair_indexes: Optional[Sequence[int]] = None) -> Proof:
        return await self.oracle.fetch_proof(
            self.settings.default_pair_indexes if pair_indexes is None else pair_indexes
        )

    async def estimate_fee(
        self,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Union[str, Decimal],
        receiver: str,
    ) -> Fee:
        return await self.bridge.estimate_fee(source_chain_id, dest_chain_id, amount, receiver)

    def track(
        self,
        tx_hash: str,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Union[str, Decimal],
        sender: str,
        receiver: str,
    ) -> str:
        """Start monitoring a source transaction. Returns the transfer id."""
        transfer_id = self.monitor.track(tx_hash, source_chain_id, dest_chain_id, amount, sender, receiver)
        if self.journal is not None:
            self.journal.record(self.monitor.get(transfer_id))
        return transfer_id

    async def transfer(
        self,
        params: TransferParams,
        pair_indexes: Optional[Sequence[int]] = None,
    ) -> TransferRecord:
        """
        Full flow: fetch a proof, submit on the source chain, start monitoring.

        Invalid parameters, and chains the monitor could not watch, are
        rejected before the oracle is contacted. Once the source transaction
        is submitted the flow is never retried, and a tracking failure is
        reported as a FAILED transfer rather than raised.
        """
        self.bridge.validate_params(params)
        self.monitor.preflight(params.source_chain_id, params.dest_chain_id)
        proof = await self.fetch_proof(pair_indexes)
        handle = await self.bridge.submit_transfer(params, proof)

        fields = (
            handle.tx_hash,
            handle.source_chain_id,
            handle.dest_chain_id,
            handle.amount,
            self._sender_for(params),
            handle.receiver,
        )
        try:
            transfer_id = self.track(*fields)
        except DuplicateError:
            transfer_id = make_transfer_id(handle.source_chain_id, handle.tx_hash)
        except BridgeError as e:
            logger.error(
                "track_after_submit_failed",
                tx_hash=handle.tx_hash,
                source_chain=handle.source_chain_id,
                error=str(e),
            )
            transfer_id = self.monitor.record_failure(*fields, cause=e)
        return self.monitor.get(transfer_id)

    def _sender_for(self, params: TransferParams) -> str:
        if params.sender:
            return params.sender
        account = getattr(self.chains.get(params.source_chain_id), "account", None)
        return account.address if account is not None else ZERO_ADDRESS

    def subscribe(self, transfer_id: str, observer: Observer) -> Callable[[], None]:
        return self.monitor.subscribe(transfer_id, observer)

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        return self.monitor.get(transfer_id)

    async def wait(self, transfer_id: str) -> Optional[TransferRecord]:
        return await self.monitor.wait(transfer_id)

    def transfers_for(self, address: str) -> list[TransferRecord]:
        return self.monitor.transfers_for(address)

    def history(self, address: Optional[str] = None, limit: int = 50) -> list[JournalEntry]:
        """Journaled transfers, newest first; empty when no journal is configured."""
        if self.journal is None:
            return []
        if address:
            return self.journal.by_address(address)[:limit]
        return self.journal.recent(limit)

    async def transaction_status(self, tx_hash: str, chain_id: str) -> dict[str, Any]:
        if not tx_hash:
            raise ValidationError("Transaction hash is required")
        return await self.bridge.get_transaction_status(tx_hash, chain_id)
