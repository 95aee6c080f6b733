"""Periodic subscription sweeps.

``check_subscriptions`` expires lapsed subscriptions and reminds users whose
access ends within a day. ``check_revocations`` asks operators to remove
TradingView access for expired users. Both record what they sent in
``sweep_notifications`` so a restart does not repeat a notice.
"""
import html
import logging
import threading
from datetime import timedelta

from .db import from_db, utcnow
from .telegram import inline_keyboard

logger = logging.getLogger("surgebot.monitor")

EXPIRING = "expiring"
EXPIRED = "expired"
REVOKE = "revoke"

REMINDER_WINDOW = timedelta(hours=24)


class SubscriptionMonitor:
    def __init__(self, db, bot, check_interval_minutes=60, admin_interval_minutes=30, retention_days=7):
        self.db = db
        self.bot = bot
        self.check_interval = check_interval_minutes * 60
        self.admin_interval = admin_interval_minutes * 60
        self.retention = timedelta(days=retention_days)
        self._check_lock = threading.Lock()
        self._revoke_lock = threading.Lock()
        self._stop = threading.Event()
        self.threads = []

    def check_subscriptions(self, now=None):
        """Expire lapsed subscriptions and send reminders. Returns (expired, reminded), or None if skipped"""
        if not self._check_lock.acquire(blocking=False):
            logger.info("Subscription check already running, skipped")
            return None
        try:
            return self._check_subscriptions(now or utcnow())
        finally:
            self._check_lock.release()

    def _check_subscriptions(self, now):
        expired = 0
        for user in self.db.get_expired_users(now):
            user_id = user["telegram_id"]
            # Only the sweep that flips the flag sends the notice
            if not self.db.deactivate_subscription(user_id, user["end_date"], now):
                continue
            expired += 1
            self.db.record_notification(user_id, user["end_date"], EXPIRED, now)
            self.bot.send_message(
                user_id,
                f"❌ Your {html.escape(user['plan_name'] or 'SURGE')} subscription has expired.\n\n"
                "Use /renew to get 10% off your next period.",
            )
            self.bot.send_log(f"[EXPIRED] user: @{user['username']} (ID: {user_id})")

        reminded = 0
        for user in self.db.get_expiring_users(now, now + REMINDER_WINDOW):
            user_id = user["telegram_id"]
            if self.db.has_notification(user_id, user["end_date"], EXPIRING):
                continue

            hours_left = max(1, int((from_db(user["end_date"]) - now).total_seconds() // 3600))
            sent = self.bot.send_message(
                user_id,
                f"⚠️ Your {html.escape(user['plan_name'] or 'SURGE')} subscription expires in about "
                f"{hours_left} hour(s) ({user['end_date']} UTC).\n\n"
                "Use /renew to extend it with a 10% discount.",
            )
            # Recorded only after delivery so a failed reminder is retried next run
            if sent:
                self.db.record_notification(user_id, user["end_date"], EXPIRING, now)
                reminded += 1
                self.bot.send_log(f"[REMINDER] user: @{user['username']} (ID: {user_id}), expires: {user['end_date']}")

        if expired or reminded:
            logger.info("Subscription check: %s expired, %s reminded", expired, reminded)
        return expired, reminded

    def check_revocations(self, now=None):
        """Ask operators to revoke access for expired users. Returns the number of users reported"""
        if not self._revoke_lock.acquire(blocking=False):
            logger.info("Revocation check already running, skipped")
            return None
        try:
            return self._check_revocations(now or utcnow())
        finally:
            self._revoke_lock.release()

    def _check_revocations(self, now):
        reported = 0
        for user in self.db.get_revocation_candidates(now):
            user_id = user["telegram_id"]
            if self.db.has_notification(user_id, user["end_date"], REVOKE):
                continue

            text = (
                "🔒 <b>Access to revoke</b>\n\n"
                f"User: @{html.escape(user['username'] or 'unknown')} (ID: <code>{user_id}</code>)\n"
                f"TradingView: <code>{html.escape(user['tv_username'])}</code>\n"
                f"Plan: {html.escape(user['plan_name'] or '-')}\n"
                f"Expired: {user['end_date']} UTC"
            )
            keyboard = inline_keyboard([[("✅ Access removed", f"processed_{user_id}")]])
            sent, failed = self.bot.notify_admins(text, keyboard)
            if sent:
                self.db.record_notification(user_id, user["end_date"], REVOKE, now)
                reported += 1

        pruned = self.db.prune_notifications(now - self.retention)
        if pruned:
            logger.info("Pruned %s stale notifications", pruned)
        return reported

    def acknowledge(self, user_id, now=None):
        """Operator confirmed the revocation for user_id. Returns the number of notices closed"""
        return self.db.acknowledge_notifications(user_id, REVOKE, now or utcnow())

    def _loop(self, job, interval, name):
        while not self._stop.is_set():
            try:
                job()
            except Exception as e:
                logger.exception("%s failed", name)
                self.bot.send_log(f"[ERROR] {name}: {e}")
            self._stop.wait(interval)

    def start(self):
        """Run both sweeps on background threads"""
        self._stop.clear()
        for job, interval, name in (
            (self.check_subscriptions, self.check_interval, "Subscription check"),
            (self.check_revocations, self.admin_interval, "Revocation check"),
        ):
            thread = threading.Thread(target=self._loop, args=(job, interval, name), name=name, daemon=True)
            thread.start()
            self.threads.append(thread)

    def stop(self):
        self._stop.set()
