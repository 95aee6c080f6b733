from decimal import Decimal

import pytest
import requests

from conftest import SENDER, WALLET, FakeLedger, make_tx_id, transfer_tx
from surgebot.errors import (
    AmountMismatch,
    ReceiverMismatch,
    RPCError,
    TransactionFailed,
    TransactionNotFound,
    TransientLedgerError,
)
from surgebot.solana import (
    SolanaRPC,
    Transfer,
    format_sol,
    lamports_to_sol,
    sol_to_lamports,
    verify_transaction,
)

ONE_SOL = 1_000_000_000
TX = make_tx_id(1)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def ledger_with(tx):
    ledger = FakeLedger()
    ledger.add(TX, tx)
    return ledger


def test_sol_conversions():
    assert sol_to_lamports("1") == ONE_SOL
    assert sol_to_lamports(Decimal("0.1")) == 100_000_000
    assert sol_to_lamports(Decimal("4.5") * Decimal("0.9")) == 4_050_000_000
    assert lamports_to_sol(250_000_000) == Decimal("0.25")
    assert format_sol(4_050_000_000) == "4.05"
    assert format_sol(10 * ONE_SOL) == "10"
    assert format_sol(0) == "0"


def test_exact_amount_is_accepted():
    transfer = verify_transaction(ledger_with(transfer_tx(ONE_SOL)), TX, ONE_SOL, WALLET)
    assert transfer == Transfer(ONE_SOL, SENDER)


def test_one_lamport_short_is_rejected():
    with pytest.raises(AmountMismatch) as excinfo:
        verify_transaction(ledger_with(transfer_tx(ONE_SOL - 1)), TX, ONE_SOL, WALLET)
    assert excinfo.value.expected == ONE_SOL
    assert excinfo.value.actual == ONE_SOL - 1
    assert excinfo.value.reason == "amount_mismatch"


def test_overpayment_is_accepted():
    transfer = verify_transaction(ledger_with(transfer_tx(2 * ONE_SOL)), TX, ONE_SOL, WALLET)
    assert transfer.lamports == 2 * ONE_SOL


def test_transfer_to_other_wallet_is_rejected():
    tx = transfer_tx(5 * ONE_SOL, destination=SENDER, source=WALLET)
    with pytest.raises(ReceiverMismatch) as excinfo:
        verify_transaction(ledger_with(tx), TX, ONE_SOL, WALLET)
    assert excinfo.value.reason == "receiver_mismatch"


def test_unknown_transaction():
    with pytest.raises(TransactionNotFound):
        verify_transaction(FakeLedger(), TX, ONE_SOL, WALLET)


def test_failed_transaction_is_rejected():
    tx = transfer_tx(ONE_SOL, err={"InstructionError": [0, "Custom"]})
    with pytest.raises(TransactionFailed):
        verify_transaction(ledger_with(tx), TX, ONE_SOL, WALLET)


def test_inner_instruction_transfer_counts():
    transfer = verify_transaction(ledger_with(transfer_tx(ONE_SOL, inner=True)), TX, ONE_SOL, WALLET)
    assert transfer.lamports == ONE_SOL


def test_malformed_signature_is_not_found():
    ledger = FakeLedger()
    ledger.error = RPCError(-32602, "Invalid param: WrongSize")
    with pytest.raises(TransactionNotFound):
        verify_transaction(ledger, TX, ONE_SOL, WALLET)


def test_rpc_failure_is_transient():
    ledger = FakeLedger()
    ledger.error = RPCError(-32005, "Node is behind")
    with pytest.raises(TransientLedgerError):
        verify_transaction(ledger, TX, ONE_SOL, WALLET)


def test_rpc_get_transaction_request():
    session = FakeSession(FakeResponse(payload={"jsonrpc": "2.0", "id": 1, "result": transfer_tx(ONE_SOL)}))
    rpc = SolanaRPC("https://rpc.example", commitment="finalized", timeout=5, session=session)

    result = rpc.get_transaction(TX)

    assert result["meta"]["err"] is None
    url, payload, timeout = session.requests[0]
    assert url == "https://rpc.example"
    assert timeout == 5
    assert payload["method"] == "getTransaction"
    assert payload["params"][0] == TX
    assert payload["params"][1] == {
        "encoding": "jsonParsed",
        "commitment": "finalized",
        "maxSupportedTransactionVersion": 0,
    }


def test_rpc_null_result():
    rpc = SolanaRPC("https://rpc.example", session=FakeSession(FakeResponse(payload={"result": None})))
    assert rpc.get_transaction(TX) is None


@pytest.mark.parametrize("response,error", [
    (FakeResponse(status_code=429), None),
    (FakeResponse(status_code=503), None),
    (FakeResponse(status_code=200, payload=None), None),
    (None, requests.exceptions.ConnectTimeout("timed out")),
    (None, requests.exceptions.ConnectionError("refused")),
])
def test_rpc_transport_errors_are_transient(response, error):
    rpc = SolanaRPC("https://rpc.example", session=FakeSession(response, error))
    with pytest.raises(TransientLedgerError):
        rpc.get_transaction(TX)


def test_rpc_error_payload():
    payload = {"error": {"code": -32602, "message": "Invalid param"}}
    rpc = SolanaRPC("https://rpc.example", session=FakeSession(FakeResponse(payload=payload)))
    with pytest.raises(RPCError) as excinfo:
        rpc.get_transaction(TX)
    assert excinfo.value.code == -32602
