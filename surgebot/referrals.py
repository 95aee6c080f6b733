import logging
import re
import secrets
import sqlite3
import string
from collections import namedtuple
from datetime import timezone

from .db import utcnow
from .errors import InvalidWalletAddress, NoPayoutAddress, NoPendingRewards, UnknownUser

logger = logging.getLogger("surgebot.referrals")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
WALLET_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

Reward = namedtuple("Reward", ["beneficiary_id", "source_user_id", "tx_id", "amount"])
Redemption = namedtuple("Redemption", ["user_id", "amount", "count", "payout_reference", "wallet_address"])


def generate_code():
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class ReferralLedger:
    def __init__(self, db, percent=10):
        self.db = db
        self.percent = percent

    def get_or_create_code(self, user_id, username=None, attempts=10):
        """The user's referral code; generated on first request and never changed"""
        user = self.db.get_user(user_id)
        if user is None:
            self.db.add_user(user_id, username)
            user = self.db.get_user(user_id)
        if user["referral_code"]:
            return user["referral_code"]

        for _ in range(attempts):
            code = generate_code()
            try:
                if self.db.set_referral_code(user_id, code):
                    return code
                # Assigned concurrently
                return self.db.get_user(user_id)["referral_code"]
            except sqlite3.IntegrityError:
                logger.info("Referral code collision on %s, retrying", code)

        raise RuntimeError(f"Could not allocate a unique referral code for user {user_id}")

    def attribute(self, user_id, code):
        """Link user_id to the owner of code. Returns the referrer id, or None if nothing changed"""
        code = (code or "").strip().upper()
        if not code:
            return None
        referrer = self.db.get_user_by_referral_code(code)
        if referrer is None or referrer["telegram_id"] == user_id:
            return None
        if self.db.set_referred_by(user_id, referrer["telegram_id"]):
            logger.info("User %s referred by %s", user_id, referrer["telegram_id"])
            return referrer["telegram_id"]
        return None

    def reward_for(self, amount):
        return int(amount) * self.percent // 100

    def credit(self, conn, referrer_id, source_user_id, tx_id, amount, now=None):
        """Record the referrer's reward for a completed transaction, at most once per tx_id"""
        reward = self.reward_for(amount)
        if reward <= 0:
            return None
        if not self.db.insert_reward(conn, referrer_id, source_user_id, tx_id, reward, now or utcnow()):
            return None
        return Reward(referrer_id, source_user_id, tx_id, reward)

    def set_wallet(self, user_id, address):
        address = (address or "").strip()
        if not WALLET_RE.match(address):
            raise InvalidWalletAddress()
        self.db.set_wallet_address(user_id, address)
        return address

    def summary(self, user_id):
        """User row plus their pending rewards"""
        user = self.db.get_user(user_id)
        if user is None:
            raise UnknownUser()
        return user, self.db.get_pending_rewards(user_id)

    def request_redemption(self, user_id):
        """Check that a payout can be made. Returns (user, pending amount, reward count)"""
        user, pending = self.summary(user_id)
        if not user["wallet_address"]:
            raise NoPayoutAddress()
        if not pending:
            raise NoPendingRewards()
        return user, sum(reward["amount"] for reward in pending), len(pending)

    def redeem(self, user_id, payout_reference=None, now=None):
        """Operator confirmation that pending rewards were paid out"""
        now = now or utcnow()
        with self.db.transaction() as conn:
            user = self.db.fetch_user(conn, user_id)
            if user is None:
                raise UnknownUser()
            if not user["wallet_address"]:
                raise NoPayoutAddress()
            pending = self.db.get_pending_rewards(user_id, conn=conn)
            if not pending:
                raise NoPendingRewards()

            reference = payout_reference or f"PAID_{int(now.replace(tzinfo=timezone.utc).timestamp())}"
            amount = self.db.mark_rewards_paid(conn, user_id, [reward["id"] for reward in pending], reference, now)

        logger.info("Paid %s lamports of rewards to %s (%s)", amount, user_id, reference)
        return Redemption(user_id, amount, len(pending), reference, user["wallet_address"])
