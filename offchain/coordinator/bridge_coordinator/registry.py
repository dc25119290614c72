"""
Transfer registry.

Owns every TransferRecord. All mutations go through `update`, which applies
the state machine and then notifies observers before returning:

    PENDING ──▶ CONFIRMING ──▶ COMPLETED
       │             │
       └──▶ FAILED ◀─┘

COMPLETED and FAILED are terminal. Updates arriving after a terminal state are
ignored.
"""

import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Union

import structlog
from web3 import Web3

from .bus import Observer, StatusBus
from .chain import Receipt, normalize_hex
from .errors import (
    ClassifiedError,
    DuplicateError,
    TransferNotFoundError,
    TransitionError,
    ValidationError,
)

logger = structlog.get_logger()


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED})

ALLOWED_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({TransferStatus.CONFIRMING, TransferStatus.FAILED}),
    TransferStatus.CONFIRMING: frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED}),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.FAILED: frozenset(),
}

TX_HASH_RE = re.compile(r"^0[xX][0-9a-fA-F]{64}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_transfer_id(source_chain_id: str, tx_hash: str) -> str:
    """Deterministic id for a transfer: `<source chain>-<tx hash>`."""
    return f"{source_chain_id}-{normalize_hex(tx_hash)}"


def validate_transfer_fields(
    tx_hash: str,
    source_chain_id: str,
    dest_chain_id: str,
    sender: str,
    receiver: str,
) -> None:
    """
    Check the fields a TransferRecord is keyed and matched on.

    Raises:
        ValidationError: on a malformed tx hash or address, or when both
            chains are the same
    """
    if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash):
        raise ValidationError("Invalid transaction hash", details={"tx_hash": tx_hash})
    if not source_chain_id or not dest_chain_id:
        raise ValidationError("Invalid chain IDs")
    if source_chain_id == dest_chain_id:
        raise ValidationError("Source and destination chains must be different")
    for field_name, value in (("sender", sender), ("receiver", receiver)):
        if not value or not Web3.is_address(value):
            raise ValidationError(f"Invalid {field_name} address", details={field_name: value})


@dataclass(frozen=True)
class TransferRecord:
    """Snapshot of one cross-chain transfer."""

    id: str
    tx_hash: str
    source_chain_id: str
    dest_chain_id: str
    amount: Decimal
    sender: str
    receiver: str
    status: TransferStatus = TransferStatus.PENDING
    confirmations: int = 0
    source_receipt: Optional[Receipt] = None
    dest_receipt: Optional[Receipt] = None
    error: Optional[ClassifiedError] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def involves(self, address: str) -> bool:
        address = address.lower()
        return self.sender.lower() == address or self.receiver.lower() == address

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tx_hash": self.tx_hash,
            "source_chain_id": self.source_chain_id,
            "dest_chain_id": self.dest_chain_id,
            "amount": str(self.amount),
            "sender": self.sender,
            "receiver": self.receiver,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "source_receipt": self.source_receipt.to_dict() if self.source_receipt else None,
            "dest_receipt": self.dest_receipt.to_dict() if self.dest_receipt else None,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


_UNSET: Any = object()


class TransferRegistry:
    """
    Exclusive owner of transfer records and their observers.

    Records are immutable snapshots; `update` swaps in a new snapshot under a
    lock and publishes it while still holding the lock, so observers of one
    transfer see its transitions in order and exactly once.
    """

    def __init__(
        self,
        bus: Optional[StatusBus] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.bus = bus or StatusBus()
        self._clock = clock
        self._records: dict[str, TransferRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, transfer_id: object) -> bool:
        return transfer_id in self._records

    def create(
        self,
        tx_hash: str,
        source_chain_id: str,
        dest_chain_id: str,
        amount: Decimal,
        sender: str,
        receiver: str,
    ) -> TransferRecord:
        """
        Register a new PENDING transfer.

        Raises:
            ValidationError: if a field is malformed (see `validate_transfer_fields`)
            DuplicateError: if (source_chain_id, tx_hash) is already registered
        """
        validate_transfer_fields(tx_hash, source_chain_id, dest_chain_id, sender, receiver)
        transfer_id = make_transfer_id(source_chain_id, tx_hash)
        with self._lock:
            if transfer_id in self._records:
                raise DuplicateError(
                    f"Transfer {transfer_id} is already tracked",
                    details={"transfer_id": transfer_id},
                )
            now = self._clock()
            record = TransferRecord(
                id=transfer_id,
                tx_hash=normalize_hex(tx_hash),
                source_chain_id=source_chain_id,
                dest_chain_id=dest_chain_id,
                amount=amount,
                sender=sender,
                receiver=receiver,
                created_at=now,
                updated_at=now,
            )
            self._records[transfer_id] = record

        logger.info(
            "transfer_registered",
            transfer_id=transfer_id,
            source_chain=source_chain_id,
            dest_chain=dest_chain_id,
            amount=str(amount),
        )
        return record

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        return self._records.get(transfer_id)

    def records(self) -> list[TransferRecord]:
        with self._lock:
            return list(self._records.values())

    def by_address(self, address: str) -> list[TransferRecord]:
        """Transfers where `address` is sender or receiver (case-insensitive)."""
        return [r for r in self.records() if r.involves(address)]

    def update(
        self,
        transfer_id: str,
        status: TransferStatus,
        *,
        confirmations: Optional[int] = None,
        source_receipt: Optional[Receipt] = None,
        dest_receipt: Optional[Receipt] = None,
        error: Union[ClassifiedError, None] = _UNSET,
    ) -> Optional[TransferRecord]:
        """
        Apply a status transition and notify observers.

        Returns:
            The new snapshot, or None if the transfer is unknown or already
            terminal (the update is dropped and nobody is notified)

        Raises:
            TransitionError: if the edge is not in the state machine, or the
                receipt/error fields do not fit the target status
        """
        if dest_receipt is not None and status != TransferStatus.COMPLETED:
            raise TransitionError("Destination receipt may only be set on COMPLETED")
        if error is not _UNSET and error is not None and status != TransferStatus.FAILED:
            raise TransitionError("Error may only be set on FAILED")
        if status == TransferStatus.FAILED and (error is _UNSET or error is None):
            raise TransitionError("FAILED requires a classified error")

        with self._lock:
            current = self._records.get(transfer_id)
            if current is None:
                logger.warning("update_for_unknown_transfer", transfer_id=transfer_id, status=status.value)
                return None

            if current.is_terminal:
                logger.debug(
                    "update_after_terminal_ignored",
                    transfer_id=transfer_id,
                    current=current.status.value,
                    requested=status.value,
                )
                return None

            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise TransitionError(
                    f"Illegal transition {current.status.value} -> {status.value}",
                    details={"transfer_id": transfer_id},
                )

            changes: dict[str, Any] = {"status": status, "updated_at": self._clock()}
            if confirmations is not None:
                changes["confirmations"] = max(confirmations, current.confirmations)
            if source_receipt is not None and current.source_receipt is None:
                changes["source_receipt"] = source_receipt
            if dest_receipt is not None:
                changes["dest_receipt"] = dest_receipt
            if status == TransferStatus.FAILED:
                changes["error"] = error

            record = replace(current, **changes)
            self._records[transfer_id] = record

            logger.info(
                "transfer_status_changed",
                transfer_id=transfer_id,
                previous=current.status.value,
                status=status.value,
                error_kind=record.error.kind.value if record.error else None,
            )
            self.bus.publish(transfer_id, record)

        return record

    def subscribe(self, transfer_id: str, observer: Observer) -> Callable[[], None]:
        """
        Observe every transition of a transfer.

        A transfer that is already terminal is delivered to the observer
        immediately and no registration takes place.

        Raises:
            TransferNotFoundError: if the id is unknown
        """
        with self._lock:
            record = self._records.get(transfer_id)
            if record is None:
                raise TransferNotFoundError(f"Unknown transfer {transfer_id}")

            if record.is_terminal:
                self.bus.deliver(transfer_id, observer, record)
                return lambda: None

            return self.bus.subscribe(transfer_id, observer)

    def sweep(self, max_age: Union[timedelta, float], now: Optional[datetime] = None) -> list[str]:
        """
        Remove terminal transfers created more than `max_age` ago.

        Non-terminal transfers are never removed, whatever their age.

        Returns:
            Ids of removed transfers
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = (now or self._clock()) - max_age

        removed: list[str] = []
        with self._lock:
            for transfer_id, record in list(self._records.items()):
                if record.is_terminal and record.created_at < cutoff:
                    del self._records[transfer_id]
                    self.bus.drop(transfer_id)
                    removed.append(transfer_id)

        if removed:
            logger.info("transfers_swept", removed=len(removed), remaining=len(self._records))
        return removed
