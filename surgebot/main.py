#!/usr/bin/env python3
import html
import logging
import sqlite3
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import requests

from . import config
from .db import Database, from_db, to_db, utcnow
from .errors import SurgeError, UnknownUser, VerificationError
from .logger import setup_logger
from .monitor import SubscriptionMonitor
from .payments import (
    AwaitingExternalUsername,
    AwaitingPayment,
    AwaitingTxId,
    AwaitingWalletAddress,
    PaymentFlow,
    PendingAdminVerification,
    PlanSelected,
    SessionStore,
)
from .plans import PLANS, renewal_price
from .referrals import ReferralLedger
from .solana import SolanaRPC, format_sol, sol_to_lamports
from .telegram import TelegramAPI, inline_keyboard, reply_keyboard

logger = logging.getLogger("surgebot")

ACCESS_DENIED = "⛔ Access denied."
GENERIC_ERROR = "❌ Something went wrong. Please try again."

USER_LOCK_POOL = 64

BUTTON_PLANS = "📋 Plans"
BUTTON_STATUS = "ℹ️ My status"
BUTTON_REFERRAL = "🤝 Referral"
BUTTON_HELP = "🆘 Help"

MAIN_MENU = reply_keyboard([
    [BUTTON_PLANS, BUTTON_STATUS],
    [BUTTON_REFERRAL, BUTTON_HELP],
])


def _sol(price):
    """Catalog price (SOL) as display text"""
    return format_sol(sol_to_lamports(price))


def _duration(days):
    if days >= 36500:
        return "Lifetime"
    if days == 1:
        return "1 day"
    return f"{days} days"


def _when(value):
    if not value:
        return "-"
    if not isinstance(value, str):
        value = to_db(value)
    return f"{value} UTC"


def _update_user_id(update):
    for key in ("message", "callback_query"):
        if key in update:
            return (update[key].get("from") or {}).get("id")
    return None


class SurgeBot:
    def __init__(self, api, db, ledger, admin_ids=None, wallet_address=None, log_channel_id=None,
                 support_email=None, referral_percent=None, session_ttl_minutes=None, workers=None,
                 broadcast_delay=0.05):
        """Wire the flows together around one Telegram client and one database"""
        self.api = api
        self.db = db
        self.admin_ids = set(config.ADMIN_IDS if admin_ids is None else admin_ids)
        self.wallet_address = wallet_address or config.SOLANA_WALLET_ADDRESS
        self.log_channel_id = config.LOG_CHANNEL_ID if log_channel_id is None else log_channel_id
        self.support_email = support_email or config.SUPPORT_EMAIL
        self.workers = workers or config.WORKER_THREADS
        self.broadcast_delay = broadcast_delay

        self.sessions = SessionStore(db, session_ttl_minutes or config.SESSION_TTL_MINUTES)
        self.referrals = ReferralLedger(
            db, config.REFERRAL_PERCENT if referral_percent is None else referral_percent
        )
        self.payments = PaymentFlow(db, self.sessions, ledger, self.wallet_address, self.referrals)
        self.monitor = SubscriptionMonitor(
            db,
            self,
            check_interval_minutes=config.CHECK_INTERVAL_MINUTES,
            admin_interval_minutes=config.ADMIN_CHECK_INTERVAL_MINUTES,
            retention_days=config.NOTIFICATION_RETENTION_DAYS,
        )

        self.running = False
        self.executor = None
        self._bot_username = None
        # Updates of one user are serialized on a lock picked from a fixed pool
        self._user_locks = [threading.Lock() for _ in range(USER_LOCK_POOL)]

        self.commands = {
            "/start": self.handle_start,
            "/plans": self.handle_plans,
            "/plan": self.handle_plan,
            "/renew": self.handle_renew,
            "/pay": self.handle_pay,
            "/paid": self.handle_paid,
            "/cancel": self.handle_cancel,
            "/status": self.handle_status,
            "/referral": self.handle_referral,
            "/affiliate": self.handle_referral,
            "/wallet": self.handle_wallet,
            "/redeem": self.handle_redeem,
            "/help": self.handle_help,
        }
        self.admin_commands = {
            "/verify_payment": self.handle_verify_payment,
            "/reject_payment": self.handle_reject_payment,
            "/pending": self.handle_pending,
            "/pay_rewards": self.handle_pay_rewards,
            "/broadcast": self.handle_broadcast,
            "/user": self.handle_user_lookup,
            "/stats": self.handle_stats,
            "/processed": self.handle_processed,
        }
        self.buttons = {
            BUTTON_PLANS: self.handle_plans,
            BUTTON_STATUS: self.handle_status,
            BUTTON_REFERRAL: self.handle_referral,
            BUTTON_HELP: self.handle_help,
        }

    # --- outgoing ---

    def send_message(self, chat_id, text, reply_markup=None):
        """Send a message, True on success. Delivery errors never reach the caller"""
        try:
            return self.api.send_message(chat_id, text, reply_markup)
        except Exception as e:
            logger.error("Sending message to %s failed: %s", chat_id, e)
            return False

    def send_log(self, text):
        """Write to the log and, when configured, to the operator log channel"""
        logger.info(text)
        if self.log_channel_id:
            timestamp = utcnow().strftime("%Y-%m-%d %H:%M:%S")
            self.send_message(self.log_channel_id, html.escape(f"[{timestamp}] {text}"))

    def notify_admins(self, text, reply_markup=None):
        """Send text to every operator. Returns (sent, failed)"""
        sent = failed = 0
        for admin_id in sorted(self.admin_ids):
            if self.send_message(admin_id, text, reply_markup):
                sent += 1
            else:
                failed += 1
        return sent, failed

    def broadcast(self, text):
        """Send text to every known user. Returns (sent, failed)"""
        sent = failed = 0
        for user_id in self.db.get_all_user_ids():
            if self.send_message(user_id, text):
                sent += 1
            else:
                failed += 1
            if self.broadcast_delay:
                time.sleep(self.broadcast_delay)
        return sent, failed

    def is_admin(self, user_id):
        return user_id in self.admin_ids

    def bot_username(self):
        if self._bot_username is None:
            result = self.api.send_request("getMe")
            if result and result.get("ok"):
                self._bot_username = result["result"].get("username")
        return self._bot_username

    # --- update routing ---

    def _run_handler(self, chat_id, handler, *args):
        """Run a handler and turn expected failures into a reply"""
        try:
            handler(*args)
        except SurgeError as e:
            self.send_message(chat_id, e.message)
        except sqlite3.Error as e:
            logger.exception("Database error")
            self.send_log(f"[ERROR] Database: {e}")
            self.send_message(chat_id, GENERIC_ERROR)

    def process_message(self, message):
        """Route a text message to a command, a menu button or the current flow step"""
        chat_id = message["chat"]["id"]
        sender = message.get("from") or {}
        text = (message.get("text") or "").strip()
        if not sender.get("id") or not text:
            return
        self._run_handler(chat_id, self._route_message, chat_id, sender, text)

    def _route_message(self, chat_id, sender, text):
        user_id = sender["id"]
        self.db.add_user(user_id, sender.get("username"), sender.get("first_name"))

        if text.startswith("/"):
            command, _, args = text.partition(" ")
            command = command.split("@", 1)[0].lower()
            args = args.strip()

            if command in self.admin_commands:
                if not self.is_admin(user_id):
                    self.send_log(f"[SECURITY] Unauthorized {command} from {user_id}")
                    self.send_message(chat_id, ACCESS_DENIED)
                    return
                self.admin_commands[command](chat_id, sender, args)
                return

            handler = self.commands.get(command)
            if handler:
                handler(chat_id, sender, args)
            else:
                self.send_message(chat_id, "❓ Unknown command. Use /help to see what I can do.")
            return

        if text in self.buttons:
            self.buttons[text](chat_id, sender, "")
            return

        self.handle_text(chat_id, sender, text)

    def process_callback_query(self, callback_query):
        """Route an inline button press"""
        sender = callback_query.get("from") or {}
        user_id = sender.get("id")
        data = callback_query.get("data") or ""
        chat_id = ((callback_query.get("message") or {}).get("chat") or {}).get("id") or user_id

        try:
            if data.startswith("plan_"):
                self._run_handler(chat_id, self._select_plan, chat_id, user_id, data[len("plan_"):], False)
            elif data.startswith("renew_"):
                self._run_handler(chat_id, self._select_plan, chat_id, user_id, data[len("renew_"):], True)
            elif data == "proceed_to_payment":
                self._run_handler(chat_id, self.handle_pay, chat_id, sender, "")
            elif data == "payment_done":
                self._run_handler(chat_id, self.handle_paid, chat_id, sender, "")
            elif data == "cancel_payment":
                self._run_handler(chat_id, self.handle_cancel, chat_id, sender, "")
            elif data == "redeem_rewards":
                self._run_handler(chat_id, self.handle_redeem, chat_id, sender, "")
            elif data.startswith("processed_"):
                if not self.is_admin(user_id):
                    self.send_message(chat_id, ACCESS_DENIED)
                else:
                    self._run_handler(chat_id, self.handle_processed, chat_id, sender, data[len("processed_"):])
            else:
                logger.warning("Unknown callback data %r from %s", data, user_id)
        finally:
            self.api.answer_callback(callback_query["id"])

    def handle_update(self, update):
        """Process a single update from getUpdates"""
        try:
            if "message" in update:
                self.process_message(update["message"])
            elif "callback_query" in update:
                self.process_callback_query(update["callback_query"])
        except Exception as e:
            logger.exception("Unhandled error in update %s", update.get("update_id"))
            self.send_log(f"[ERROR] Update {update.get('update_id')}: {e}")

    def _user_lock(self, user_id):
        return self._user_locks[hash(user_id) % len(self._user_locks)]

    def dispatch(self, update):
        """Hand an update to the worker pool; one user's updates never run concurrently"""
        lock = self._user_lock(_update_user_id(update))

        def task():
            with lock:
                self.handle_update(update)

        if self.executor is None:
            task()
        else:
            self.executor.submit(task)

    # --- user commands ---

    def handle_start(self, chat_id, sender, args):
        """/start [referral code]"""
        user_id = sender["id"]
        if args:
            referrer_id = self.referrals.attribute(user_id, args)
            if referrer_id:
                name = html.escape(sender.get("username") or sender.get("first_name") or str(user_id))
                self.send_message(referrer_id, f"🎉 {name} joined SURGE with your referral link!")
                self.send_log(f"[REFERRAL] {user_id} referred by {referrer_id}")

        first_name = html.escape(sender.get("first_name") or "trader")
        text = (
            f"👋 Welcome to <b>SURGE</b>, {first_name}!\n\n"
            "Get access to the SURGE TradingView indicator, paid in SOL.\n\n"
            "📋 /plans - choose a plan\n"
            "ℹ️ /status - your subscription\n"
            "🤝 /referral - earn 10% for every friend who subscribes\n"
            "🆘 /help - all commands"
        )
        self.send_message(chat_id, text, MAIN_MENU)

    def handle_plans(self, chat_id, sender, args):
        lines = ["📋 <b>SURGE plans</b>\n"]
        buttons = []
        for key, plan in PLANS.items():
            lines.append(f"• <b>{plan['name']}</b>: {_sol(plan['price'])} SOL / {_duration(plan['days'])}")
            buttons.append([(f"{plan['name']} - {_sol(plan['price'])} SOL", f"plan_{key}")])
        lines.append("\nAlready subscribed? Use /renew for 10% off.")
        self.send_message(chat_id, "\n".join(lines), inline_keyboard(buttons))

    def handle_plan(self, chat_id, sender, args):
        """/plan <key>"""
        if not args:
            self.handle_plans(chat_id, sender, args)
            return
        self._select_plan(chat_id, sender["id"], args.lower(), False)

    def handle_renew(self, chat_id, sender, args):
        """/renew [key]"""
        if args:
            self._select_plan(chat_id, sender["id"], args.lower(), True)
            return

        lines = ["🔄 <b>Renew with 10% off</b>\n"]
        buttons = []
        for key, plan in PLANS.items():
            price = renewal_price(key)
            if price is None:
                continue
            lines.append(f"• <b>{plan['name']}</b>: <s>{_sol(plan['price'])}</s> {_sol(price)} SOL / "
                         f"{_duration(plan['days'])}")
            buttons.append([(f"{plan['name']} - {_sol(price)} SOL", f"renew_{key}")])
        self.send_message(chat_id, "\n".join(lines), inline_keyboard(buttons))

    def _select_plan(self, chat_id, user_id, plan_key, renewal):
        state = self.payments.select_plan(user_id, plan_key, renewal=renewal)
        plan = state.plan
        text = (
            f"✅ You selected <b>{html.escape(plan.name)}</b>\n\n"
            f"💰 Price: {format_sol(plan.price)} SOL\n"
            f"⏱ Duration: {_duration(plan.duration_days)}"
        )
        keyboard = inline_keyboard([
            [("💳 Proceed to payment", "proceed_to_payment")],
            [("❌ Cancel", "cancel_payment")],
        ])
        self.send_message(chat_id, text, keyboard)

    def handle_pay(self, chat_id, sender, args):
        state = self.payments.proceed_to_payment(sender["id"])
        text = (
            f"💳 <b>Payment for {html.escape(state.plan.name)}</b>\n\n"
            f"Send exactly <b>{format_sol(state.plan.price)} SOL</b> to:\n"
            f"<code>{self.wallet_address}</code>\n\n"
            "When the transfer is done, press the button below and send the transaction ID (TXID)."
        )
        keyboard = inline_keyboard([
            [("✅ I've paid", "payment_done")],
            [("❌ Cancel", "cancel_payment")],
        ])
        self.send_message(chat_id, text, keyboard)

    def handle_paid(self, chat_id, sender, args):
        self.payments.confirm_paid(sender["id"])
        self.send_message(
            chat_id,
            "📝 Please send the transaction ID (TXID) of your payment.\n\n"
            "You can copy it from your wallet or from Solscan.",
        )

    def handle_cancel(self, chat_id, sender, args):
        state = self.payments.cancel(sender["id"])
        if state is None:
            self.send_message(chat_id, "ℹ️ Nothing to cancel.", MAIN_MENU)
        elif isinstance(state, PendingAdminVerification):
            self.send_message(
                chat_id,
                "❌ Cancelled. Your submitted payment is still being reviewed by our team.",
                MAIN_MENU,
            )
        else:
            self.send_message(chat_id, "❌ Payment cancelled.", MAIN_MENU)

    def handle_status(self, chat_id, sender, args):
        user = self.db.get_user(sender["id"])
        end_date = from_db(user["end_date"]) if user else None
        now = utcnow()

        if user and user["is_active"] and end_date and end_date > now:
            days_left = (end_date - now).days
            text = (
                "✅ <b>Subscription active</b>\n\n"
                f"Plan: {html.escape(user['plan_name'] or user['plan'] or '-')}\n"
                f"Valid until: {_when(user['end_date'])}\n"
                f"Days left: {days_left}"
            )
        elif end_date:
            text = f"❌ Your subscription expired on {_when(user['end_date'])}.\n\nUse /renew to extend it."
        else:
            text = "❌ You don't have an active subscription.\n\nUse /plans to choose one."

        if user and user["tv_username"]:
            text += f"\nTradingView: <code>{html.escape(user['tv_username'])}</code>"

        try:
            state = self.payments.current_state(sender["id"])
        except SurgeError:
            state = None
        if isinstance(state, PendingAdminVerification):
            text += "\n\n⏳ Your payment is being verified by our team."
        elif state is not None and hasattr(state, "plan"):
            text += f"\n\n🛒 Purchase in progress: {html.escape(state.plan.name)} (/cancel to stop)"

        self.send_message(chat_id, text)

    def handle_referral(self, chat_id, sender, args):
        user_id = sender["id"]
        code = self.referrals.get_or_create_code(user_id, sender.get("username"))
        user, pending = self.referrals.summary(user_id)

        bot_username = self.bot_username()
        link = f"https://t.me/{bot_username}?start={code}" if bot_username else f"/start {code}"
        wallet = f"<code>{user['wallet_address']}</code>" if user["wallet_address"] else "not set (/wallet)"

        text = (
            "🤝 <b>Referral program</b>\n\n"
            f"Earn {self.referrals.percent}% of every payment made by users you invite.\n\n"
            f"Your code: <code>{code}</code>\n"
            f"Your link: {link}\n\n"
            f"👥 Users joined: {user['referred_users']}\n"
            f"💳 Paid referrals: {user['total_referrals']}\n"
            f"⏳ Pending: {format_sol(user['pending_earnings'])} SOL\n"
            f"💰 Paid out: {format_sol(user['total_earnings'])} SOL\n"
            f"👛 Wallet: {wallet}"
        )
        keyboard = inline_keyboard([[("💸 Redeem rewards", "redeem_rewards")]]) if pending else None
        self.send_message(chat_id, text, keyboard)

    def handle_wallet(self, chat_id, sender, args):
        """/wallet [address]"""
        user_id = sender["id"]
        if args:
            address = self.referrals.set_wallet(user_id, args)
            self.send_message(chat_id, f"✅ Wallet saved: <code>{address}</code>")
            return

        try:
            state = self.payments.current_state(user_id)
        except SurgeError:
            state = None
        if state is not None and not isinstance(state, AwaitingWalletAddress):
            self.send_message(chat_id, "ℹ️ Send /wallet followed by your Solana address, e.g. <code>/wallet ADDRESS</code>")
            return

        self.sessions.set(user_id, AwaitingWalletAddress())
        self.send_message(chat_id, "👛 Please send the Solana wallet address for your referral payouts.")

    def handle_redeem(self, chat_id, sender, args):
        user, amount, count = self.referrals.request_redemption(sender["id"])
        text = (
            "💸 <b>Reward redemption request</b>\n\n"
            f"User: @{html.escape(user['username'] or 'unknown')} (ID: <code>{user['telegram_id']}</code>)\n"
            f"Amount: {format_sol(amount)} SOL ({count} rewards)\n"
            f"Wallet: <code>{user['wallet_address']}</code>\n\n"
            f"After paying, confirm with:\n<code>/pay_rewards {user['telegram_id']}</code>"
        )
        self.notify_admins(text)
        self.send_log(f"[REDEEM] {user['telegram_id']} requested {format_sol(amount)} SOL")
        self.send_message(
            chat_id,
            f"✅ Your request to redeem {format_sol(amount)} SOL has been sent. "
            "You'll be notified once it is paid.",
        )

    def handle_help(self, chat_id, sender, args):
        text = (
            "🆘 <b>Help</b>\n\n"
            "/plans - available plans\n"
            "/plan &lt;name&gt; - choose a plan\n"
            "/renew - renew with 10% off\n"
            "/pay - payment details for the chosen plan\n"
            "/paid - send your transaction ID\n"
            "/cancel - cancel the current purchase\n"
            "/status - your subscription\n"
            "/referral - your referral code and earnings\n"
            "/wallet - set your payout wallet\n"
            "/redeem - request a payout of your rewards\n\n"
            f"Questions? Contact {html.escape(self.support_email)}"
        )
        if self.is_admin(sender.get("id")):
            text += (
                "\n\n<b>Admin</b>\n"
                "/pending, /verify_payment &lt;txid&gt;, /reject_payment &lt;txid&gt; [reason],\n"
                "/pay_rewards &lt;user_id&gt; [ref], /broadcast &lt;text&gt;, /user &lt;id|@name&gt;,\n"
                "/stats, /processed &lt;user_id&gt;"
            )
        self.send_message(chat_id, text, MAIN_MENU)

    def handle_text(self, chat_id, sender, text):
        """Free text, interpreted by the user's current step"""
        user_id = sender["id"]
        state = self.payments.current_state(user_id)

        if isinstance(state, AwaitingTxId):
            self._submit_tx_id(chat_id, sender, text)
        elif isinstance(state, AwaitingExternalUsername):
            self._submit_external_username(chat_id, sender, text)
        elif isinstance(state, AwaitingWalletAddress):
            address = self.referrals.set_wallet(user_id, text)
            self.sessions.clear(user_id)
            self.send_message(chat_id, f"✅ Wallet saved: <code>{address}</code>")
        elif isinstance(state, PendingAdminVerification):
            self.send_message(chat_id, "⏳ Your payment is being verified by our team. We'll message you soon.")
        elif isinstance(state, (PlanSelected, AwaitingPayment)):
            self.send_message(chat_id, "ℹ️ Use /pay for payment details, then /paid to send your TXID.")
        else:
            self.send_message(chat_id, "ℹ️ Use /plans to choose a plan or /help for all commands.", MAIN_MENU)

    def _submit_tx_id(self, chat_id, sender, text):
        user_id = sender["id"]
        self.send_message(chat_id, "🔍 Verifying your transaction on the Solana network...")
        try:
            state, transfer = self.payments.submit_tx_id(user_id, text)
        except VerificationError as e:
            self.send_log(f"[PAYMENT] TXID from {user_id} rejected: {e.reason}")
            raise

        self.send_log(f"[PAYMENT] {user_id} paid {format_sol(transfer.lamports)} SOL for {state.plan.key}")
        self.send_message(
            chat_id,
            f"✅ Payment of {format_sol(transfer.lamports)} SOL found on-chain!\n\n"
            "Please send your <b>TradingView username</b> so we can grant you access.",
        )

    def _submit_external_username(self, chat_id, sender, text):
        user_id = sender["id"]
        state = self.payments.submit_external_username(user_id, text)
        tx = self.db.get_transaction(state.tx_id)
        user = self.db.get_user(user_id)

        admin_text = (
            "💳 <b>New payment to verify</b>\n\n"
            f"User: @{html.escape(user['username'] or 'unknown')} (ID: <code>{user_id}</code>)\n"
            f"Plan: {html.escape(state.plan.name)}\n"
            f"Amount: {format_sol(tx['amount'])} SOL (paid {format_sol(tx['paid_amount'] or 0)} SOL)\n"
            f"TradingView: <code>{html.escape(user['tv_username'])}</code>\n"
            f"TXID: <code>{state.tx_id}</code>\n\n"
            f"Verify: <code>/verify_payment {state.tx_id}</code>\n"
            f"Reject: <code>/reject_payment {state.tx_id}</code>"
        )
        sent, failed = self.notify_admins(admin_text)
        if not sent:
            logger.error("No operator could be notified about %s", state.tx_id)

        self.send_message(
            chat_id,
            "✅ Thank you! Your payment is being verified by our team.\n"
            "You'll get a message as soon as your access is active.",
            MAIN_MENU,
        )

    # --- operator commands ---

    def handle_verify_payment(self, chat_id, sender, args):
        """/verify_payment <txid>"""
        if not args:
            self.send_message(chat_id, "Usage: /verify_payment &lt;txid&gt;")
            return

        activation = self.payments.verify_payment(args.split()[0])
        self.send_message(
            activation.user_id,
            "🎉 <b>Payment verified!</b>\n\n"
            f"Plan: {html.escape(activation.plan_name)}\n"
            f"Valid until: {_when(activation.end_date)}\n\n"
            "Your TradingView access will be granted shortly.",
        )
        if activation.reward:
            self.send_message(
                activation.reward.beneficiary_id,
                f"💰 You earned {format_sol(activation.reward.amount)} SOL from a referral! "
                "Use /referral to see your rewards.",
            )

        self.send_log(f"[VERIFIED] {activation.tx_id} user {activation.user_id} until {to_db(activation.end_date)}")
        self.send_message(
            chat_id,
            f"✅ Verified. User <code>{activation.user_id}</code> is active until {_when(activation.end_date)}.",
        )

    def handle_reject_payment(self, chat_id, sender, args):
        """/reject_payment <txid> [reason]"""
        if not args:
            self.send_message(chat_id, "Usage: /reject_payment &lt;txid&gt; [reason]")
            return

        tx_id, _, reason = args.partition(" ")
        reason = reason.strip() or None
        tx = self.payments.reject_payment(tx_id, reason)
        self.send_message(
            tx["user_id"],
            f"❌ Your payment <code>{tx_id}</code> was rejected."
            + (f"\nReason: {html.escape(reason)}" if reason else "")
            + f"\n\nContact {html.escape(self.support_email)} if you think this is a mistake.",
        )
        self.send_log(f"[REJECTED] {tx_id} user {tx['user_id']}: {reason or '-'}")
        self.send_message(chat_id, f"✅ Transaction <code>{tx_id}</code> rejected.")

    def handle_pending(self, chat_id, sender, args):
        pending = self.db.get_pending_transactions()
        if not pending:
            self.send_message(chat_id, "✅ No pending payments.")
            return

        lines = [f"⏳ <b>Pending payments ({len(pending)})</b>\n"]
        for tx in pending:
            lines.append(
                f"• @{html.escape(tx['username'] or 'unknown')} (<code>{tx['user_id']}</code>), "
                f"{html.escape(tx['plan_name'])}, {format_sol(tx['amount'])} SOL, "
                f"TV: {html.escape(tx['tv_username'] or '-')}\n"
                f"  <code>{tx['tx_id']}</code>"
            )
        self.send_message(chat_id, "\n".join(lines))

    def handle_pay_rewards(self, chat_id, sender, args):
        """/pay_rewards <user_id> [payout reference]"""
        parts = args.split()
        if not parts or not parts[0].isdigit():
            self.send_message(chat_id, "Usage: /pay_rewards &lt;user_id&gt; [payout_ref]")
            return

        redemption = self.referrals.redeem(int(parts[0]), parts[1] if len(parts) > 1 else None)
        self.send_message(
            redemption.user_id,
            f"✅ Your referral rewards of {format_sol(redemption.amount)} SOL have been sent to "
            f"<code>{redemption.wallet_address}</code>.\nReference: <code>{html.escape(redemption.payout_reference)}</code>",
        )
        self.send_log(f"[PAYOUT] {format_sol(redemption.amount)} SOL to {redemption.user_id} "
                      f"({redemption.payout_reference})")
        self.send_message(
            chat_id,
            f"✅ Marked {redemption.count} rewards ({format_sol(redemption.amount)} SOL) as paid.",
        )

    def handle_broadcast(self, chat_id, sender, args):
        """/broadcast <text>"""
        if not args:
            self.send_message(chat_id, "Usage: /broadcast &lt;text&gt;")
            return

        sent, failed = self.broadcast(args)
        self.send_log(f"[BROADCAST] sent {sent}, failed {failed}")
        self.send_message(chat_id, f"📢 Broadcast finished.\n\n✅ Sent: {sent}\n❌ Failed: {failed}")

    def handle_user_lookup(self, chat_id, sender, args):
        """/user <id|@username>"""
        if not args:
            self.send_message(chat_id, "Usage: /user &lt;id|@username&gt;")
            return

        user = self.db.find_user(args)
        if user is None:
            raise UnknownUser()

        status = "✅ active" if user["is_active"] else "❌ inactive"
        text = (
            "👤 <b>User</b>\n\n"
            f"ID: <code>{user['telegram_id']}</code>\n"
            f"Username: @{html.escape(user['username'] or '-')}\n"
            f"Status: {status}\n"
            f"Plan: {html.escape(user['plan_name'] or '-')}\n"
            f"Start: {_when(user['start_date'])}\n"
            f"End: {_when(user['end_date'])}\n"
            f"TradingView: {html.escape(user['tv_username'] or '-')}\n"
            f"Wallet: {user['wallet_address'] or '-'}\n"
            f"Referral code: {user['referral_code'] or '-'}\n"
            f"Referred by: {user['referred_by'] or '-'}\n"
            f"Referrals: {user['referred_users']} joined, {user['total_referrals']} paid\n"
            f"Earnings: {format_sol(user['pending_earnings'])} SOL pending, "
            f"{format_sol(user['total_earnings'])} SOL paid\n"
            f"Joined: {_when(user['joined_at'])}"
        )
        self.send_message(chat_id, text)

    def handle_stats(self, chat_id, sender, args):
        stats = self.db.get_database_stats()
        plans = "\n".join(f"  • {html.escape(plan)}: {count}" for plan, count in sorted(stats["plans"].items()))
        text = (
            "📊 <b>Statistics</b>\n\n"
            f"👥 Users: {stats['total_users']}\n"
            f"✅ Active subscriptions: {stats['active_users']}\n"
            f"⏳ Pending payments: {stats['pending_transactions']}\n"
            f"💳 Completed payments: {stats['completed_transactions']}\n"
            f"💰 Revenue: {format_sol(stats['revenue'])} SOL\n"
            f"🤝 Unpaid rewards: {format_sol(stats['pending_rewards'])} SOL"
        )
        if plans:
            text += f"\n\nActive by plan:\n{plans}"
        self.send_message(chat_id, text)

    def handle_processed(self, chat_id, sender, args):
        """/processed <user_id>: operator removed the user's TradingView access"""
        if not args.strip().isdigit():
            self.send_message(chat_id, "Usage: /processed &lt;user_id&gt;")
            return

        user_id = int(args.strip())
        closed = self.monitor.acknowledge(user_id)
        if closed:
            self.send_log(f"[REVOKED] access for {user_id} removed by {sender.get('id')}")
            self.send_message(chat_id, f"✅ User <code>{user_id}</code> marked as processed.")
        else:
            self.send_message(chat_id, f"ℹ️ Nothing open for user <code>{user_id}</code>.")

    # --- main loop ---

    def run(self):
        """Long-poll Telegram and dispatch updates until interrupted"""
        self.running = True
        self.executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="update")
        self.monitor.start()

        offset = None
        self.send_log("[BOT] Started")

        try:
            while self.running:
                try:
                    updates = self.api.get_updates(offset, timeout=30)
                except requests.exceptions.Timeout:
                    time.sleep(1)
                    continue
                except requests.exceptions.RequestException as e:
                    logger.warning("Network error while polling: %s", e)
                    time.sleep(3)
                    continue

                for update in updates:
                    offset = update["update_id"] + 1
                    self.dispatch(update)

        except KeyboardInterrupt:
            logger.info("Stopping...")
        finally:
            self.running = False
            self.monitor.stop()
            self.executor.shutdown(wait=True)
            self.send_log("[BOT] Stopped")


def create_bot():
    """Build the bot from config"""
    api = TelegramAPI(config.TOKEN)
    db = Database(config.DATABASE_PATH)
    ledger = SolanaRPC(config.SOLANA_RPC_URL, commitment=config.SOLANA_COMMITMENT, timeout=config.RPC_TIMEOUT)
    return SurgeBot(api, db, ledger)


def main():
    setup_logger("surgebot")

    try:
        config.validate()
    except RuntimeError as e:
        logger.critical("Configuration error: %s", e)
        sys.exit(1)

    try:
        create_bot().run()
    except Exception:
        logger.critical("Fatal error, shutting down", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
