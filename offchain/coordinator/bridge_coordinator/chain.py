"""
Chain access layer.

Narrow, chain-scoped operations the coordinator needs from an EVM network:
send a transaction, read-only call, wait for confirmations, stream logs,
fetch receipts. `EvmChainClient` implements them over JSON-RPC with web3;
`MockChainClient` is an in-memory chain for tests.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, Union

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from .config import NetworkConfig
from .errors import ChainError

logger = structlog.get_logger()

TopicFilter = Sequence[Optional[str]]


def normalize_hex(value: Union[str, bytes]) -> str:
    """Lowercase 0x-prefixed hex for comparisons."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = value.lower()
    return value if value.startswith("0x") else "0x" + value


@dataclass(frozen=True)
class Log:
    """An event log emitted on some chain."""

    address: str
    topics: tuple[str, ...]
    data: str = "0x"
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None

    def matches(self, address: str, topics: TopicFilter) -> bool:
        """Check the log against an address and positional topic filter (None = any)."""
        if normalize_hex(self.address) != normalize_hex(address):
            return False
        if len(topics) > len(self.topics):
            return False
        for expected, actual in zip(topics, self.topics):
            if expected is not None and normalize_hex(expected) != normalize_hex(actual):
                return False
        return True


@dataclass(frozen=True)
class Receipt:
    """Mined transaction receipt."""

    tx_hash: str
    status: int
    confirmations: int = 0
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    logs: tuple[Log, ...] = field(default=(), repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "confirmations": self.confirmations,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
        }


_CLOSED = object()


class LogStream:
    """
    Async iterator over logs with an explicit close.

    Producers call `push` (or `fail` to surface an error to the consumer);
    the consumer iterates with `async for` and calls `close` when done.
    """

    def __init__(self, on_close: Optional[Callable[[], Any]] = None):
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, log: Log) -> None:
        if not self._closed:
            self._queue.put_nowait(log)

    def fail(self, error: BaseException) -> None:
        if not self._closed:
            self._queue.put_nowait(error)

    def end(self) -> None:
        """Signal that no more logs will arrive."""
        if not self._closed:
            self._queue.put_nowait(_CLOSED)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self.on_close is not None:
            result = self.on_close()
            if asyncio.iscoroutine(result):
                await result

    def __aiter__(self) -> "LogStream":
        return self

    async def __anext__(self) -> Log:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class ChainClient(Protocol):
    """Operations the coordinator consumes from one chain."""

    chain_id: str

    async def send_transaction(self, to: str, data: bytes, value: int = 0) -> str: ...

    async def call(self, to: str, data: bytes) -> bytes: ...

    async def wait_for_confirmation(self, tx_hash: str, min_confirmations: int = 1) -> Receipt: ...

    def subscribe_to_event(self, address: str, topics: TopicFilter) -> LogStream: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]: ...


# ============================================================================
# EVM over JSON-RPC
# ============================================================================


def _log_from_raw(raw: Any) -> Log:
    return Log(
        address=raw["address"],
        topics=tuple(normalize_hex(Web3.to_hex(t)) for t in raw["topics"]),
        data=Web3.to_hex(raw["data"]),
        block_number=raw.get("blockNumber"),
        tx_hash=normalize_hex(Web3.to_hex(raw["transactionHash"])),
        log_index=raw.get("logIndex"),
    )


def _receipt_from_raw(raw: Any, confirmations: int) -> Receipt:
    return Receipt(
        tx_hash=normalize_hex(Web3.to_hex(raw["transactionHash"])),
        status=int(raw["status"]),
        confirmations=confirmations,
        block_number=raw.get("blockNumber"),
        gas_used=raw.get("gasUsed"),
        logs=tuple(_log_from_raw(log) for log in raw.get("logs", [])),
    )


class EvmChainClient:
    """Async EVM client scoped to one configured network."""

    def __init__(
        self,
        network: NetworkConfig,
        private_key: Optional[str] = None,
        poll_interval: float = 2.0,
    ):
        if not network.rpc_url:
            raise ChainError(f"No RPC endpoint configured for chain {network.chain_id}")

        self.network = network
        self.chain_id = network.chain_id
        self.poll_interval = poll_interval
        self.w3 = AsyncWeb3(AsyncHTTPProvider(network.rpc_url))
        self.account = Account.from_key(private_key) if private_key else None

        logger.info(
            "evm_client_initialized",
            chain_id=network.chain_id,
            rpc_url=network.rpc_url,
            sender=self.account.address if self.account else None,
        )

    @property
    def address(self) -> str:
        """Get signer address."""
        if not self.account:
            raise ChainError("No private key configured")
        return self.account.address

    async def check_connectivity(self) -> bool:
        """Check if the RPC endpoint is reachable."""
        try:
            await self.w3.eth.block_number
            return True
        except Exception:
            return False

    async def send_transaction(self, to: str, data: bytes, value: int = 0) -> str:
        """Sign and broadcast a transaction. Returns once it is in the pending pool."""
        sender = self.address

        tx: dict[str, Any] = {
            "chainId": await self.w3.eth.chain_id,
            "nonce": await self.w3.eth.get_transaction_count(sender),
            "to": Web3.to_checksum_address(to),
            "value": value,
            "data": data,
            "gasPrice": await self.w3.eth.gas_price,
        }
        tx["gas"] = await self.w3.eth.estimate_gas({**tx, "from": sender})

        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return normalize_hex(Web3.to_hex(tx_hash))

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self.w3.eth.call({"to": Web3.to_checksum_address(to), "data": data})
        return bytes(result)

    async def wait_for_confirmation(self, tx_hash: str, min_confirmations: int = 1) -> Receipt:
        """Poll until the transaction is mined with at least `min_confirmations`."""
        while True:
            try:
                raw = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                raw = None

            if raw is not None:
                current = await self.w3.eth.block_number
                confirmations = current - raw["blockNumber"] + 1
                if confirmations >= min_confirmations:
                    return _receipt_from_raw(raw, confirmations)

            await asyncio.sleep(self.poll_interval)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        current = await self.w3.eth.block_number
        return _receipt_from_raw(raw, current - raw["blockNumber"] + 1)

    def subscribe_to_event(self, address: str, topics: TopicFilter) -> LogStream:
        """Stream logs from the current block onward until the stream is closed."""
        stream = LogStream()
        task = asyncio.get_running_loop().create_task(self._poll_logs(address, topics, stream))

        async def stop_polling() -> None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        stream.on_close = stop_polling
        return stream

    async def _poll_logs(self, address: str, topics: TopicFilter, stream: LogStream) -> None:
        try:
            from_block = await self.w3.eth.block_number
            while not stream.closed:
                to_block = await self.w3.eth.block_number
                if to_block >= from_block:
                    raw_logs = await self.w3.eth.get_logs(
                        {
                            "address": Web3.to_checksum_address(address),
                            "topics": list(topics),
                            "fromBlock": from_block,
                            "toBlock": to_block,
                        }
                    )
                    for raw in raw_logs:
                        stream.push(_log_from_raw(raw))
                    from_block = to_block + 1
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("log_poll_error", chain_id=self.chain_id, address=address, error=str(e))
            stream.fail(e)


# ============================================================================
# In-memory chain
# ============================================================================


class MockChainClient:
    """
    In-memory chain for testing without a node.

    Transactions stay pending until `mine` is called; logs are delivered with
    `emit` and replayed to subscriptions opened later.
    """

    def __init__(self, chain_id: str):
        self.chain_id = chain_id
        self.sent: list[dict[str, Any]] = []
        self.calls: list[dict[str, Any]] = []
        self.send_error: Optional[Exception] = None
        self._block_number = 0
        self._call_results: dict[bytes, Union[bytes, Exception]] = {}
        self._receipts: dict[str, Receipt] = {}
        self._confirmation_errors: dict[str, Exception] = {}
        self._waiters: dict[str, list[asyncio.Future[Receipt]]] = {}
        self._logs: list[Log] = []
        self._streams: list[tuple[str, tuple[Optional[str], ...], LogStream]] = []

    @property
    def block_number(self) -> int:
        return self._block_number

    def set_call_result(self, selector: bytes, result: Union[bytes, Exception]) -> None:
        """Return `result` (or raise it) for calls whose data starts with `selector`."""
        self._call_results[bytes(selector)] = result

    async def call(self, to: str, data: bytes) -> bytes:
        self.calls.append({"to": to, "data": data})
        result = self._call_results.get(bytes(data[:4]))
        if result is None:
            raise ChainError(f"execution reverted: no mock result for selector 0x{data[:4].hex()}")
        if isinstance(result, Exception):
            raise result
        return result

    async def send_transaction(self, to: str, data: bytes, value: int = 0) -> str:
        if self.send_error is not None:
            raise self.send_error
        tx_hash = normalize_hex(Web3.keccak(text=f"{self.chain_id}:{len(self.sent)}"))
        self.sent.append({"tx_hash": tx_hash, "to": to, "data": data, "value": value})
        return tx_hash

    def mine(self, tx_hash: str, status: int = 1, logs: Sequence[Log] = ()) -> Receipt:
        """Include a transaction in a new block and wake anyone waiting on it."""
        self._block_number += 1
        tx_hash = normalize_hex(tx_hash)
        receipt = Receipt(
            tx_hash=tx_hash,
            status=status,
            confirmations=1,
            block_number=self._block_number,
            gas_used=21_000,
            logs=tuple(logs),
        )
        self._receipts[tx_hash] = receipt
        for waiter in self._waiters.pop(tx_hash, []):
            if not waiter.done():
                waiter.set_result(receipt)
        return receipt

    def fail_confirmation(self, tx_hash: str, error: Exception) -> None:
        """Make waiting on `tx_hash` raise `error`."""
        tx_hash = normalize_hex(tx_hash)
        self._confirmation_errors[tx_hash] = error
        for waiter in self._waiters.pop(tx_hash, []):
            if not waiter.done():
                waiter.set_exception(error)

    async def wait_for_confirmation(self, tx_hash: str, min_confirmations: int = 1) -> Receipt:
        tx_hash = normalize_hex(tx_hash)
        if tx_hash in self._confirmation_errors:
            raise self._confirmation_errors[tx_hash]
        if tx_hash in self._receipts:
            return self._receipts[tx_hash]
        waiter: asyncio.Future[Receipt] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(tx_hash, []).append(waiter)
        return await waiter

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self._receipts.get(normalize_hex(tx_hash))

    def emit(self, log: Log, status: int = 1) -> Log:
        """Emit a log in a new block. A receipt for its transaction is recorded too."""
        self._block_number += 1
        tx_hash = normalize_hex(log.tx_hash or Web3.keccak(text=f"{self.chain_id}:log:{len(self._logs)}"))
        log = Log(
            address=log.address,
            topics=tuple(normalize_hex(t) for t in log.topics),
            data=log.data,
            block_number=self._block_number,
            tx_hash=tx_hash,
            log_index=0,
        )
        self._logs.append(log)
        self._receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            status=status,
            confirmations=1,
            block_number=self._block_number,
            logs=(log,),
        )
        for address, topics, stream in self._streams:
            if log.matches(address, topics):
                stream.push(log)
        return log

    def subscribe_to_event(self, address: str, topics: TopicFilter) -> LogStream:
        topics = tuple(topics)
        stream = LogStream()
        entry = (address, topics, stream)
        stream.on_close = lambda: self._streams.remove(entry)
        self._streams.append(entry)
        for log in self._logs:
            if log.matches(address, topics):
                stream.push(log)
        return stream

    @property
    def open_subscriptions(self) -> int:
        return len(self._streams)
