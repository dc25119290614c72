"""
Bridge Coordinator

Drives a cross-chain token transfer through its lifecycle: fetches a signed
price proof from the oracle, quotes and submits the transfer on the source
chain, then watches both chains until the message is delivered or the
transfer fails. Status changes are pushed to subscribers as they happen.

Usage:
    # Quote a transfer
    bridge-coordinator fee 11155111 80002 1.5 0x...

    # Bridge and wait for delivery
    bridge-coordinator bridge 11155111 80002 1.5 0x... --wait

    # Run the HTTP API
    bridge-coordinator serve
"""

__version__ = "0.1.0"

from .bridge import BridgeService, Fee, TransferHandle, TransferParams
from .bus import StatusBus
from .chain import EvmChainClient, MockChainClient, Receipt
from .config import NetworkConfig, NetworkTable, Settings
from .coordinator import BridgeCoordinator
from .errors import BridgeError, ClassifiedError, ErrorKind, classify, user_message
from .monitor import TransactionMonitor
from .oracle import OracleProofClient, Proof, RetryPolicy
from .registry import TransferRecord, TransferRegistry, TransferStatus
from .store import TransferJournal

__all__ = [
    "__version__",
    "BridgeService",
    "Fee",
    "TransferHandle",
    "TransferParams",
    "StatusBus",
    "EvmChainClient",
    "MockChainClient",
    "Receipt",
    "NetworkConfig",
    "NetworkTable",
    "Settings",
    "BridgeCoordinator",
    "BridgeError",
    "ClassifiedError",
    "ErrorKind",
    "classify",
    "user_message",
    "TransactionMonitor",
    "OracleProofClient",
    "Proof",
    "RetryPolicy",
    "TransferRecord",
    "TransferRegistry",
    "TransferStatus",
    "TransferJournal",
]
