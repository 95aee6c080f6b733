"""Subscription purchase flow.

A user walks through these states, one per stored session::

    PlanSelected -> AwaitingPayment -> AwaitingTxId
        -> AwaitingExternalUsername -> PendingAdminVerification

The session is cleared when an operator verifies or rejects the payment, or
when the user cancels. A transaction row only exists once the ledger has
confirmed the transfer, and its tx_id can never be stored twice.
"""
import logging
import re
import sqlite3
from collections import namedtuple
from datetime import timedelta

from . import plans
from .db import from_db, to_db, utcnow
from .errors import (
    AlreadySubscribed,
    AlreadyVerified,
    DuplicateTransaction,
    InvalidFormat,
    InvalidUsername,
    MissingExternalUsername,
    NoPlanSelected,
    NoSubscription,
    SessionExpired,
    TransactionRejected,
    UnknownTransaction,
    UnknownUser,
    UsernameRequired,
    WrongStep,
)
from .solana import verify_transaction

logger = logging.getLogger("surgebot.payments")

TXID_RE = re.compile(r"^[A-Za-z0-9]{50,}$")
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 64

PlanSelected = namedtuple("PlanSelected", ["plan"])
AwaitingPayment = namedtuple("AwaitingPayment", ["plan"])
AwaitingTxId = namedtuple("AwaitingTxId", ["plan"])
AwaitingExternalUsername = namedtuple("AwaitingExternalUsername", ["plan", "tx_id"])
PendingAdminVerification = namedtuple("PendingAdminVerification", ["plan", "tx_id"])
AwaitingWalletAddress = namedtuple("AwaitingWalletAddress", [])

STATES = {
    cls.__name__: cls for cls in (
        PlanSelected,
        AwaitingPayment,
        AwaitingTxId,
        AwaitingExternalUsername,
        PendingAdminVerification,
        AwaitingWalletAddress,
    )
}

Activation = namedtuple("Activation", ["user_id", "tx_id", "plan_name", "start_date", "end_date", "reward"])


class SessionStore:
    """Per-user conversation state, kept in the database so restarts don't lose it"""

    def __init__(self, db, ttl_minutes=1440):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes)

    def get(self, user_id, now=None):
        """Current state or None. A stale session is dropped and reported once as SessionExpired"""
        row = self.db.get_session(user_id)
        if not row:
            return None

        now = now or utcnow()
        # Sessions holding a stored payment never expire
        if not row["tx_id"] and from_db(row["updated_at"]) + self.ttl < now:
            self.clear(user_id)
            raise SessionExpired()

        state_cls = STATES.get(row["state"])
        if state_cls is None:
            logger.warning("Dropping session with unknown state %r for user %s", row["state"], user_id)
            self.clear(user_id)
            return None

        values = {}
        if "plan" in state_cls._fields:
            values["plan"] = plans.PlanSnapshot(
                row["plan_key"], row["plan_name"], row["price"], row["duration_days"], bool(row["is_renewal"])
            )
        if "tx_id" in state_cls._fields:
            values["tx_id"] = row["tx_id"]
        return state_cls(**values)

    def set(self, user_id, state, conn=None):
        plan = getattr(state, "plan", None)
        fields = {
            "state": type(state).__name__,
            "plan_key": plan.key if plan else None,
            "plan_name": plan.name if plan else None,
            "price": plan.price if plan else None,
            "duration_days": plan.duration_days if plan else None,
            "is_renewal": int(plan.is_renewal) if plan else None,
            "tx_id": getattr(state, "tx_id", None),
            "updated_at": to_db(utcnow()),
        }
        if conn is not None:
            self.db.save_session(conn, user_id, fields)
        else:
            with self.db.connection() as conn:
                self.db.save_session(conn, user_id, fields)

    def clear(self, user_id, conn=None):
        if conn is not None:
            return self.db.delete_session(conn, user_id)
        with self.db.connection() as conn:
            return self.db.delete_session(conn, user_id)


def subscription_window(user, duration_days, now):
    """(start, end) for a newly completed payment.

    An active subscription that has not ended yet is extended from its current
    end date; otherwise the new period starts now.
    """
    end_date = from_db(user.get("end_date"))
    if user.get("is_active") and end_date and end_date > now:
        start_date = from_db(user.get("start_date")) or now
        return start_date, end_date + timedelta(days=duration_days)
    return now, now + timedelta(days=duration_days)


class PaymentFlow:
    def __init__(self, db, sessions, ledger, wallet_address, referrals):
        self.db = db
        self.sessions = sessions
        self.ledger = ledger
        self.wallet_address = wallet_address
        self.referrals = referrals

    def current_state(self, user_id):
        """Session state, restoring the username step for a paid transaction whose session was lost"""
        state = self.sessions.get(user_id)
        if state is not None:
            return state

        tx = self.db.get_unfinished_transaction(user_id)
        if tx is None:
            return None
        plan = plans.PlanSnapshot(tx["plan"], tx["plan_name"], tx["amount"], tx["duration_days"],
                                  bool(tx["is_renewal"]))
        state = AwaitingExternalUsername(plan, tx["tx_id"])
        self.sessions.set(user_id, state)
        logger.info("Restored username step for user %s (%s)", user_id, tx["tx_id"])
        return state

    def _guard_paid_step(self, user_id):
        """A verified payment still waiting for its username cannot be abandoned"""
        try:
            state = self.current_state(user_id)
        except SessionExpired:
            return None
        if isinstance(state, AwaitingExternalUsername):
            raise UsernameRequired()
        return state

    def _require(self, user_id, *expected):
        state = self.current_state(user_id)
        if state is None:
            raise NoPlanSelected()
        if not isinstance(state, expected):
            raise WrongStep()
        return state

    def select_plan(self, user_id, plan_key, renewal=False):
        """Start (or restart) a purchase with a frozen copy of the plan"""
        plan = plans.snapshot(plan_key, renewal=renewal)
        self._guard_paid_step(user_id)

        user = self.db.get_user(user_id)
        end_date = from_db(user.get("end_date")) if user else None
        if renewal and end_date is None:
            raise NoSubscription()
        if not renewal and user and user["is_active"] and end_date and end_date > utcnow():
            raise AlreadySubscribed()

        state = PlanSelected(plan)
        self.sessions.set(user_id, state)
        return state

    def proceed_to_payment(self, user_id):
        state = self._require(user_id, PlanSelected, AwaitingPayment)
        new_state = AwaitingPayment(state.plan)
        self.sessions.set(user_id, new_state)
        return new_state

    def confirm_paid(self, user_id):
        state = self._require(user_id, AwaitingPayment, AwaitingTxId)
        new_state = AwaitingTxId(state.plan)
        self.sessions.set(user_id, new_state)
        return new_state

    def submit_tx_id(self, user_id, text):
        """Verify the transfer on-chain and record it. Returns (new state, transfer)"""
        state = self._require(user_id, AwaitingTxId)

        tx_id = (text or "").strip()
        if not TXID_RE.match(tx_id):
            raise InvalidFormat()

        # Replays are refused before the ledger is asked
        if self.db.transaction_exists(tx_id):
            raise DuplicateTransaction()

        transfer = verify_transaction(self.ledger, tx_id, state.plan.price, self.wallet_address)

        new_state = AwaitingExternalUsername(state.plan, tx_id)
        try:
            with self.db.transaction() as conn:
                self.db.insert_transaction(conn, tx_id, user_id, state.plan, transfer.lamports, transfer.sender)
                self.sessions.set(user_id, new_state, conn=conn)
        except sqlite3.IntegrityError:
            raise DuplicateTransaction()

        logger.info("User %s submitted %s for %s (%s lamports)", user_id, tx_id, state.plan.key, transfer.lamports)
        return new_state, transfer

    def submit_external_username(self, user_id, text):
        state = self._require(user_id, AwaitingExternalUsername)

        username = (text or "").strip().lstrip("@")
        if len(username) < MIN_USERNAME_LENGTH or len(username) > MAX_USERNAME_LENGTH or " " in username:
            raise InvalidUsername()

        new_state = PendingAdminVerification(state.plan, state.tx_id)
        with self.db.transaction() as conn:
            self.db.set_tv_username(conn, user_id, username)
            self.sessions.set(user_id, new_state, conn=conn)
        return new_state

    def cancel(self, user_id):
        """Drop the session. A stored transaction stays pending for the operator"""
        state = self._guard_paid_step(user_id)
        if state is not None:
            self.sessions.clear(user_id)
        return state

    def verify_payment(self, tx_id, now=None):
        """Operator confirmation: activate the subscription and credit the referrer, once"""
        now = now or utcnow()
        tx_id = (tx_id or "").strip()

        with self.db.transaction() as conn:
            tx = self.db.fetch_transaction(conn, tx_id)
            if tx is None:
                raise UnknownTransaction()
            if tx["status"] == "completed":
                raise AlreadyVerified()
            if tx["status"] == "failed":
                raise TransactionRejected()

            user = self.db.fetch_user(conn, tx["user_id"])
            if user is None:
                raise UnknownUser()
            if not user["tv_username"]:
                raise MissingExternalUsername()

            if not self.db.mark_transaction_completed(conn, tx_id, now):
                raise AlreadyVerified()

            start_date, end_date = subscription_window(user, tx["duration_days"], now)
            self.db.activate_subscription(conn, user["telegram_id"], tx["plan"], tx["plan_name"],
                                          start_date, end_date)

            reward = None
            if user["referred_by"] and user["referred_by"] != user["telegram_id"]:
                reward = self.referrals.credit(conn, user["referred_by"], user["telegram_id"],
                                               tx_id, tx["amount"], now)

            self.db.delete_session(conn, user["telegram_id"], tx_id=tx_id)

        logger.info("Transaction %s verified, user %s active until %s", tx_id, user["telegram_id"], end_date)
        return Activation(user["telegram_id"], tx_id, tx["plan_name"], start_date, end_date, reward)

    def reject_payment(self, tx_id, reason=None, now=None):
        """Operator rejection of a pending transaction. Returns the transaction row"""
        now = now or utcnow()
        tx_id = (tx_id or "").strip()

        with self.db.transaction() as conn:
            tx = self.db.fetch_transaction(conn, tx_id)
            if tx is None:
                raise UnknownTransaction()
            if tx["status"] == "completed":
                raise AlreadyVerified()
            if not self.db.mark_transaction_failed(conn, tx_id, reason, now):
                raise TransactionRejected()
            self.db.delete_session(conn, tx["user_id"], tx_id=tx_id)

        logger.info("Transaction %s rejected: %s", tx_id, reason or "-")
        return tx
