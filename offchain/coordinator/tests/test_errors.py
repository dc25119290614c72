"""
Tests for error classification.

classify must be total: any input maps to a kind, nothing raises, and user
messages never carry the raw error text.
"""

import httpx
import pytest

from bridge_coordinator.errors import (
    USER_MESSAGES,
    BridgeError,
    ChainError,
    ClassifiedError,
    DuplicateError,
    ErrorKind,
    OracleError,
    TransitionError,
    ValidationError,
    classify,
    user_message,
)


class TestUserMessage:
    """Tests for the kind -> message mapping."""

    def test_every_kind_has_a_message(self) -> None:
        for kind in ErrorKind:
            assert kind in USER_MESSAGES
            assert user_message(kind)

    def test_accepts_kind_value(self) -> None:
        assert user_message("DELIVERY_TIMEOUT") == user_message(ErrorKind.DELIVERY_TIMEOUT)


class TestClassifyRawErrors:
    """Tests for wallet, RPC and network errors."""

    def test_wallet_rejection_code(self) -> None:
        assert classify({"code": 4001, "message": "User rejected the request."}).kind == ErrorKind.USER_REJECTED

    def test_ethers_action_rejected(self) -> None:
        assert classify({"code": "ACTION_REJECTED", "message": "denied"}).kind == ErrorKind.USER_REJECTED

    def test_user_denied_text(self) -> None:
        err = ValueError("MetaMask Tx Signature: User denied transaction signature.")
        assert classify(err).kind == ErrorKind.USER_REJECTED

    def test_insufficient_funds_rpc_error(self) -> None:
        raw = {"code": -32603, "message": "insufficient funds for gas * price + value"}
        assert classify(raw).kind == ErrorKind.INSUFFICIENT_FUNDS

    def test_web3_value_error_with_rpc_dict(self) -> None:
        err = ValueError({"code": -32000, "message": "insufficient funds for transfer"})
        assert classify(err).kind == ErrorKind.INSUFFICIENT_FUNDS

    def test_execution_reverted(self) -> None:
        assert classify("execution reverted: LzApp: invalid source").kind == ErrorKind.SOURCE_TX_FAILED

    def test_relay_failure_text(self) -> None:
        assert classify(RuntimeError("LayerZero: not enough native for fees")).kind == ErrorKind.CHAIN_ERROR

    def test_network_failure(self) -> None:
        assert classify(ConnectionError("connection refused")).kind == ErrorKind.CHAIN_ERROR
        assert classify(httpx.ConnectError("boom")).kind == ErrorKind.CHAIN_ERROR

    def test_unmatched_falls_back_to_unknown(self) -> None:
        assert classify(KeyError("something odd")).kind == ErrorKind.UNKNOWN
        assert classify(None).kind == ErrorKind.UNKNOWN
        assert classify(object()).kind == ErrorKind.UNKNOWN

    def test_message_does_not_leak_raw_error(self) -> None:
        secret = "node at http://user:pw@10.0.0.1 said: insufficient funds"
        classified = classify(RuntimeError(secret))
        assert classified.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert "10.0.0.1" not in classified.message
        assert "10.0.0.1" not in classified.user_message

    def test_cause_retained(self) -> None:
        err = RuntimeError("network down")
        assert classify(err).cause is err


class TestClassifyBridgeErrors:
    """Tests for coordinator exceptions."""

    @pytest.mark.parametrize(
        "error,kind",
        [
            (ValidationError("Invalid amount"), ErrorKind.VALIDATION),
            (DuplicateError("already tracked"), ErrorKind.VALIDATION),
            (OracleError("exhausted"), ErrorKind.ORACLE_ERROR),
            (ChainError("Unsupported network: 1"), ErrorKind.CHAIN_ERROR),
            (TransitionError("illegal"), ErrorKind.MONITOR_ERROR),
            (BridgeError("generic"), ErrorKind.UNKNOWN),
        ],
    )
    def test_kind_from_exception_class(self, error: BridgeError, kind: ErrorKind) -> None:
        assert classify(error).kind == kind

    def test_chain_error_refined_by_wallet_rejection(self) -> None:
        error = ChainError("submission failed", cause=ValueError({"code": 4001, "message": "rejected"}))
        assert classify(error).kind == ErrorKind.USER_REJECTED

    def test_chain_error_not_refined_by_network_cause(self) -> None:
        error = ChainError("fee estimation failed", cause=ConnectionError("reset"))
        assert classify(error).kind == ErrorKind.CHAIN_ERROR

    def test_cause_is_chained(self) -> None:
        cause = RuntimeError("low level")
        error = OracleError("failed", cause=cause)
        assert error.__cause__ is cause
        assert error.cause is cause

    def test_already_classified_passes_through(self) -> None:
        classified = ClassifiedError(kind=ErrorKind.DELIVERY_TIMEOUT, message="late")
        assert classify(classified) is classified


class TestClassifiedError:
    """Tests for the serialized form."""

    def test_to_dict_omits_cause(self) -> None:
        classified = classify(RuntimeError("execution reverted"))
        data = classified.to_dict()
        assert data["kind"] == "SOURCE_TX_FAILED"
        assert data["user_message"] == user_message(ErrorKind.SOURCE_TX_FAILED)
        assert "cause" not in data
        assert "timestamp" in data
