from datetime import datetime

import pytest

from surgebot.db import Database
from surgebot.main import SurgeBot
from surgebot.solana import SYSTEM_PROGRAM_ID

WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
SENDER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
PAYOUT_WALLET = "7EcDhSYGxXyscszYEp35KHN8vvw3svAuLKTzXwCFLtV"
ADMIN_ID = 1000

NOW = datetime(2026, 1, 1, 12, 0, 0)


def make_tx_id(n):
    return f"5Tx{n}".ljust(88, "K")


def transfer_tx(lamports, destination=WALLET, source=SENDER, err=None, inner=False):
    """A getTransaction(jsonParsed) result holding one system transfer"""
    instruction = {
        "program": "system",
        "programId": SYSTEM_PROGRAM_ID,
        "parsed": {
            "type": "transfer",
            "info": {"source": source, "destination": destination, "lamports": lamports},
        },
    }
    tx = {
        "slot": 1,
        "meta": {"err": err, "innerInstructions": []},
        "transaction": {"message": {"instructions": []}},
    }
    if inner:
        tx["meta"]["innerInstructions"].append({"index": 0, "instructions": [instruction]})
    else:
        tx["transaction"]["message"]["instructions"].append(instruction)
    return tx


class FakeLedger:
    def __init__(self):
        self.transactions = {}
        self.calls = []
        self.error = None

    def add(self, tx_id, tx):
        self.transactions[tx_id] = tx

    def get_transaction(self, signature):
        self.calls.append(signature)
        if self.error is not None:
            raise self.error
        return self.transactions.get(signature)


class FakeTelegram:
    def __init__(self):
        self.sent = []
        self.failing = set()
        self.answered = []

    def send_message(self, chat_id, text, reply_markup=None, parse_mode="HTML"):
        if chat_id in self.failing:
            return False
        self.sent.append((chat_id, text, reply_markup))
        return True

    def answer_callback(self, callback_query_id, text=None):
        self.answered.append(callback_query_id)

    def send_request(self, method, params=None):
        if method == "getMe":
            return {"ok": True, "result": {"username": "SurgeTestBot"}}
        return None

    def messages_to(self, chat_id):
        return [text for sent_to, text, _ in self.sent if sent_to == chat_id]

    def markups_to(self, chat_id):
        return [markup for sent_to, _, markup in self.sent if sent_to == chat_id]


def message(user_id, text, username=None, update_id=1):
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "chat": {"id": user_id, "type": "private"},
            "from": {"id": user_id, "username": username or f"user{user_id}", "first_name": "Test"},
            "text": text,
        },
    }


def callback(user_id, data, update_id=1):
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb{update_id}",
            "from": {"id": user_id, "username": f"user{user_id}"},
            "message": {"message_id": 1, "chat": {"id": user_id}},
            "data": data,
        },
    }


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "surge.db"))


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def telegram():
    return FakeTelegram()


@pytest.fixture
def bot(db, telegram, ledger):
    return SurgeBot(
        telegram,
        db,
        ledger,
        admin_ids=[ADMIN_ID],
        wallet_address=WALLET,
        log_channel_id=0,
        support_email="support@example.com",
        referral_percent=10,
        session_ttl_minutes=60,
        workers=1,
        broadcast_delay=0,
    )


@pytest.fixture
def pay(bot, ledger):
    """Walk a user through the purchase flow up to operator verification"""

    def _pay(user_id, plan="monthly", tx_id=None, lamports=None, renewal=False, tv_username="trader_one"):
        tx_id = tx_id or make_tx_id(user_id)
        bot.db.add_user(user_id, f"user{user_id}")
        state = bot.payments.select_plan(user_id, plan, renewal=renewal)
        bot.payments.proceed_to_payment(user_id)
        bot.payments.confirm_paid(user_id)
        ledger.add(tx_id, transfer_tx(state.plan.price if lamports is None else lamports))
        bot.payments.submit_tx_id(user_id, tx_id)
        bot.payments.submit_external_username(user_id, tv_username)
        return tx_id

    return _pay
