"""Solana JSON-RPC client and transfer verification.

``verify_transaction`` is the only place that decides whether a transaction
id proves a payment. It returns the matching transfer or raises one of the
``VerificationError`` subclasses. Anything that stops us from getting an
answer (timeouts, HTTP 429/5xx, RPC errors) raises ``TransientLedgerError``
so callers can tell "try again" apart from "rejected".
"""
import logging
from collections import namedtuple
from decimal import ROUND_HALF_UP, Decimal

import requests

from .errors import (
    AmountMismatch,
    ReceiverMismatch,
    RPCError,
    TransactionFailed,
    TransactionNotFound,
    TransientLedgerError,
)

logger = logging.getLogger("surgebot.solana")

LAMPORTS_PER_SOL = 1_000_000_000
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# JSON-RPC "invalid params": the signature itself is malformed
INVALID_PARAMS = -32602

Transfer = namedtuple("Transfer", ["lamports", "sender"])


def sol_to_lamports(amount):
    """SOL (str, int or Decimal) -> integer lamports"""
    lamports = Decimal(str(amount)) * LAMPORTS_PER_SOL
    return int(lamports.to_integral_value(rounding=ROUND_HALF_UP))


def lamports_to_sol(lamports):
    return (Decimal(int(lamports)) / LAMPORTS_PER_SOL).normalize()


def format_sol(lamports):
    return f"{lamports_to_sol(lamports):f}"


class SolanaRPC:
    def __init__(self, url, commitment="finalized", timeout=15, session=None):
        self.url = url
        self.commitment = commitment
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_id = 0

    def call(self, method, params):
        """Send one JSON-RPC request and return its ``result``"""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("RPC %s failed: %s", method, e)
            raise TransientLedgerError() from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("RPC %s returned HTTP %s", method, response.status_code)
            raise TransientLedgerError()

        try:
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.HTTPError, ValueError) as e:
            logger.error("RPC %s bad response: %s", method, e)
            raise TransientLedgerError() from e

        error = data.get("error")
        if error:
            logger.warning("RPC %s error: %s", method, error)
            raise RPCError(error.get("code"), error.get("message"))

        return data.get("result")

    def get_transaction(self, signature):
        """Parsed transaction for signature, or None when the ledger doesn't know it"""
        return self.call("getTransaction", [
            signature,
            {
                "encoding": "jsonParsed",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            },
        ])


def _is_system_transfer(instruction):
    if instruction.get("program") != "system" and instruction.get("programId") != SYSTEM_PROGRAM_ID:
        return False
    parsed = instruction.get("parsed")
    return isinstance(parsed, dict) and parsed.get("type") in ("transfer", "transferWithSeed")


def iter_transfers(tx):
    """Yield (source, destination, lamports) for every native SOL transfer, inner ones included"""
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])

    for instruction in instructions:
        if not _is_system_transfer(instruction):
            continue
        info = instruction["parsed"].get("info") or {}
        yield info.get("source"), info.get("destination"), int(info.get("lamports") or 0)


def verify_transaction(ledger, tx_id, expected_lamports, receiver):
    """Check that tx_id is a successful transfer of at least expected_lamports to receiver"""
    try:
        tx = ledger.get_transaction(tx_id)
    except RPCError as e:
        if e.code == INVALID_PARAMS:
            raise TransactionNotFound() from e
        raise

    if not tx:
        raise TransactionNotFound()

    if (tx.get("meta") or {}).get("err") is not None:
        raise TransactionFailed()

    matches = [(lamports, source) for source, destination, lamports in iter_transfers(tx)
               if destination == receiver]
    if not matches:
        raise ReceiverMismatch()

    lamports, sender = max(matches, key=lambda match: match[0])
    if lamports < expected_lamports:
        raise AmountMismatch(expected_lamports, lamports)

    # Overpayment is accepted as-is
    return Transfer(lamports, sender)
