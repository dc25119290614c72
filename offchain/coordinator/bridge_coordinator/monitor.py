"""
Transaction monitor.

One asyncio task per tracked transfer:

1. wait for the source transaction to be confirmed
2. reverted -> FAILED (SOURCE_TX_FAILED)
3. otherwise CONFIRMING, then watch the destination bridge for the
   MessageReceived event carrying this transfer's correlation key, raced
   against the delivery timeout
4. event -> COMPLETED; timeout -> FAILED (DELIVERY_TIMEOUT); anything
   unexpected -> FAILED (MONITOR_ERROR)

Every path ends in a terminal state. Unsubscribing never cancels a task;
only `stop` does, at shutdown.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Mapping, Optional, Union

import structlog

from .bridge import MESSAGE_RECEIVED_TOPIC, correlation_key, parse_amount
from .bus import Observer
from .chain import ChainClient, Receipt
from .config import NetworkTable
from .errors import ChainError, ClassifiedError, ErrorKind, MonitorError, user_message
from .registry import TransferRecord, TransferRegistry, TransferStatus

logger = structlog.get_logger()

DEFAULT_DELIVERY_TIMEOUT = 600.0
DEFAULT_MAX_RECORD_AGE = 24 * 60 * 60.0


class TransactionMonitor:
    """Tracks submitted transfers through to a terminal state."""

    def __init__(
        self,
        registry: TransferRegistry,
        networks: NetworkTable,
        chains: Mapping[str, ChainClient],
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        confirmation_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        min_confirmations: int = 1,
        sweep_interval: float = 3600.0,
        max_record_age: float = DEFAULT_MAX_RECORD_AGE,
    ):
        self.registry = registry
        self.networks = networks
        self.chains = chains
        self.delivery_timeout = delivery_timeout
        self.confirmation_timeout = confirmation_timeout
        self.min_confirmations = min_confirmations
        self.sweep_interval = sweep_interval
        self.max_record_age = max_record_age

        self._tasks: dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def start(self) -> None:
        """Start the periodic sweeper."""
        if self.is_running:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(
            "monitor_started",
            sweep_interval=self.sweep_interval,
            max_record_age=self.max_record_age,
            delivery_timeout=self.delivery_timeout,
        )

    async def stop(self) -> None:
        """Stop the sweeper and cancel in-flight monitoring tasks."""
        logger.info("monitor_stopping", in_flight=len(self._tasks))

        tasks = list(self._tasks.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def track(
        self,
        tx_hash: str,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Union[str, Decimal],
        sender: str,
        receiver: str,
    ) -> str:
        """
        Register a submitted transfer and start monitoring it.

        Must be called from within a running event loop.

        Returns:
            The transfer id, before any monitoring has happened

        Raises:
            DuplicateError: if the source tx is already tracked
            ValidationError: if a field is malformed or both chains are the same
            ChainError: if either chain is not supported or has no client
        """
        self.preflight(source_chain_id, dest_chain_id)

        record = self.registry.create(
            tx_hash=tx_hash,
            source_chain_id=source_chain_id,
            dest_chain_id=dest_chain_id,
            amount=parse_amount(amount),
            sender=sender,
            receiver=receiver,
        )

        task = asyncio.get_running_loop().create_task(self._monitor(record.id))
        self._tasks[record.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record.id, None))

        logger.info(
            "transfer_tracked",
            transfer_id=record.id,
            tx_hash=record.tx_hash,
            source_chain=source_chain_id,
            dest_chain=dest_chain_id,
        )
        return record.id

    def preflight(self, source_chain_id: str, dest_chain_id: str) -> None:
        """
        Check that a transfer between two chains could be monitored.

        Submitters call this before broadcasting so that nothing is sent
        that `track` would then refuse.

        Raises:
            ChainError: if either chain is not supported or has no client, or
                the destination has no bridge contract
        """
        for chain_id in (source_chain_id, dest_chain_id):
            self.networks.get(chain_id)
            if chain_id not in self.chains:
                raise ChainError(f"No client configured for chain {chain_id}", details={"chain_id": chain_id})
        if not self.networks.get(dest_chain_id).bridge_address:
            raise ChainError(f"No bridge contract configured for chain {dest_chain_id}")

    def record_failure(
        self,
        tx_hash: str,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Union[str, Decimal],
        sender: str,
        receiver: str,
        cause: BaseException,
    ) -> str:
        """
        Register a submitted transfer that cannot be monitored as FAILED.

        Used when tracking fails after the source transaction was already
        broadcast, so the submission still has a record to look up.
        """
        record = self.registry.create(
            tx_hash=tx_hash,
            source_chain_id=source_chain_id,
            dest_chain_id=dest_chain_id,
            amount=parse_amount(amount),
            sender=sender,
            receiver=receiver,
        )
        self._fail(record.id, ErrorKind.MONITOR_ERROR, user_message(ErrorKind.MONITOR_ERROR), cause=cause)
        return record.id

    def subscribe(self, transfer_id: str, observer: Observer):
        """See `TransferRegistry.subscribe`."""
        return self.registry.subscribe(transfer_id, observer)

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        return self.registry.get(transfer_id)

    def transfers_for(self, address: str) -> list[TransferRecord]:
        return self.registry.by_address(address)

    def sweep(self, max_age: Union[float, timedelta, None] = None) -> list[str]:
        return self.registry.sweep(self.max_record_age if max_age is None else max_age)

    async def wait(self, transfer_id: str) -> Optional[TransferRecord]:
        """Wait for the monitoring task of a transfer to finish, then return its record."""
        task = self._tasks.get(transfer_id)
        if task is not None:
            await asyncio.wait({task})
        return self.registry.get(transfer_id)

    # ------------------------------------------------------------------
    # Monitoring task
    # ------------------------------------------------------------------

    async def _monitor(self, transfer_id: str) -> None:
        record = self.registry.get(transfer_id)
        source = self.chains[record.source_chain_id]
        dest = self.chains[record.dest_chain_id]
        source_bridge = self.networks.get(record.source_chain_id).bridge_address
        dest_bridge = self.networks.get(record.dest_chain_id).bridge_address

        try:
            try:
                receipt = await asyncio.wait_for(
                    source.wait_for_confirmation(record.tx_hash, self.min_confirmations),
                    self.confirmation_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "source_confirmation_timeout",
                    transfer_id=transfer_id,
                    timeout=self.confirmation_timeout,
                )
                self._fail(
                    transfer_id,
                    ErrorKind.MONITOR_ERROR,
                    f"Source transaction not confirmed within {self.confirmation_timeout}s",
                )
                return

            if not receipt.succeeded:
                self._fail(
                    transfer_id,
                    ErrorKind.SOURCE_TX_FAILED,
                    "Source transaction reverted",
                    source_receipt=receipt,
                    confirmations=receipt.confirmations,
                )
                return

            self.registry.update(
                transfer_id,
                TransferStatus.CONFIRMING,
                confirmations=receipt.confirmations,
                source_receipt=receipt,
            )

            key = correlation_key(record.tx_hash, receipt, source_bridge)
            try:
                dest_receipt = await asyncio.wait_for(
                    self._await_delivery(dest, dest_bridge, key),
                    self.delivery_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "delivery_timeout",
                    transfer_id=transfer_id,
                    correlation_key=key,
                    timeout=self.delivery_timeout,
                )
                self._fail(
                    transfer_id,
                    ErrorKind.DELIVERY_TIMEOUT,
                    f"No delivery observed on chain {record.dest_chain_id} within {self.delivery_timeout}s",
                )
                return

            self.registry.update(transfer_id, TransferStatus.COMPLETED, dest_receipt=dest_receipt)

        except Exception as e:
            logger.error(
                "monitor_error",
                transfer_id=transfer_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._fail(transfer_id, ErrorKind.MONITOR_ERROR, user_message(ErrorKind.MONITOR_ERROR), cause=e)

    async def _await_delivery(self, dest: ChainClient, bridge_address: str, key: str) -> Receipt:
        """Block until the destination bridge emits MessageReceived for `key`."""
        stream = dest.subscribe_to_event(bridge_address, [MESSAGE_RECEIVED_TOPIC, key])
        try:
            async for log in stream:
                receipt = await dest.get_transaction_receipt(log.tx_hash) if log.tx_hash else None
                if receipt is None:
                    receipt = Receipt(
                        tx_hash=log.tx_hash or "",
                        status=1,
                        block_number=log.block_number,
                        logs=(log,),
                    )
                logger.info(
                    "delivery_observed",
                    chain_id=dest.chain_id,
                    correlation_key=key,
                    dest_tx_hash=receipt.tx_hash,
                )
                return receipt
            raise MonitorError("Destination event stream closed before delivery")
        finally:
            await stream.close()

    def _fail(
        self,
        transfer_id: str,
        kind: ErrorKind,
        message: str,
        cause: Optional[BaseException] = None,
        source_receipt: Optional[Receipt] = None,
        confirmations: Optional[int] = None,
    ) -> None:
        self.registry.update(
            transfer_id,
            TransferStatus.FAILED,
            confirmations=confirmations,
            source_receipt=source_receipt,
            error=ClassifiedError(kind=kind, message=message, cause=cause),
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("sweep_error", error=str(e))
