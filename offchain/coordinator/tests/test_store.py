"""
Tests for the transfer journal (SQLite).
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bridge_coordinator.chain import Receipt
from bridge_coordinator.errors import ClassifiedError, ErrorKind
from bridge_coordinator.registry import TransferRegistry, TransferStatus
from bridge_coordinator.store import TransferJournal, parse_database_url

SENDER = "0x" + "1A" * 20
RECEIVER = "0x" + "22" * 20


@pytest.fixture
def journal(tmp_path):
    journal = TransferJournal(f"sqlite:///{tmp_path}/journal.db")
    yield journal
    journal.close()


@pytest.fixture
def registry(journal: TransferJournal) -> TransferRegistry:
    registry = TransferRegistry()
    registry.bus.add_listener(journal)
    return registry


def create(registry: TransferRegistry, journal: TransferJournal, tx_hash: str = "0x" + "01" * 32) -> str:
    record = registry.create(tx_hash, "A", "B", Decimal("1.5"), SENDER, RECEIVER)
    journal.record(record)
    return record.id


class TestParseDatabaseUrl:
    """Tests for URL normalization."""

    def test_postgres_scheme_rewritten(self) -> None:
        assert parse_database_url("postgres://u:p@h/db") == "postgresql://u:p@h/db"

    def test_sqlite_unchanged(self) -> None:
        assert parse_database_url("sqlite:///./x.db") == "sqlite:///./x.db"


class TestTransferJournal:
    """Tests for journaling transfer snapshots."""

    def test_new_transfer_is_pending(self, registry: TransferRegistry, journal: TransferJournal) -> None:
        transfer_id = create(registry, journal)

        entry = journal.get(transfer_id)

        assert entry.status == "PENDING"
        assert entry.amount == Decimal("1.5")
        assert entry.source_chain_id == "A"

    def test_transitions_are_journaled(self, registry: TransferRegistry, journal: TransferJournal) -> None:
        transfer_id = create(registry, journal)
        registry.update(transfer_id, TransferStatus.CONFIRMING, confirmations=3)
        registry.update(
            transfer_id,
            TransferStatus.COMPLETED,
            dest_receipt=Receipt(tx_hash="0x" + "cd" * 32, status=1),
        )

        entry = journal.get(transfer_id)

        assert entry.status == "COMPLETED"
        assert entry.confirmations == 3
        assert entry.dest_tx_hash == "0x" + "cd" * 32
        assert entry.error_kind is None

    def test_failure_kind_is_journaled(self, registry: TransferRegistry, journal: TransferJournal) -> None:
        transfer_id = create(registry, journal)
        registry.update(
            transfer_id,
            TransferStatus.FAILED,
            error=ClassifiedError(kind=ErrorKind.SOURCE_TX_FAILED, message="Source transaction reverted"),
        )

        entry = journal.get(transfer_id)

        assert entry.status == "FAILED"
        assert entry.error_kind == "SOURCE_TX_FAILED"
        assert entry.to_dict()["error_message"] == "Source transaction reverted"

    def test_survives_sweep(self, registry: TransferRegistry, journal: TransferJournal) -> None:
        transfer_id = create(registry, journal)
        registry.update(
            transfer_id,
            TransferStatus.FAILED,
            error=ClassifiedError(kind=ErrorKind.DELIVERY_TIMEOUT, message="late"),
        )

        registry.sweep(timedelta(0), now=datetime.now(timezone.utc) + timedelta(seconds=1))

        assert registry.get(transfer_id) is None
        assert journal.get(transfer_id).status == "FAILED"

    def test_by_address_and_recent(self, registry: TransferRegistry, journal: TransferJournal) -> None:
        first = create(registry, journal, "0x" + "01" * 32)
        second = create(registry, journal, "0x" + "02" * 32)

        by_sender = journal.by_address(SENDER.lower())
        assert {e.transfer_id for e in by_sender} == {first, second}
        assert journal.by_address("0x" + "99" * 20) == []
        assert len(journal.recent(limit=1)) == 1

    def test_unknown_transfer(self, journal: TransferJournal) -> None:
        assert journal.get("A-0xdead") is None
