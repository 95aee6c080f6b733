import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

# Timestamps are naive UTC, stored as sortable text
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db(value):
    return value.strftime(TIME_FORMAT) if value else None


def from_db(value):
    return datetime.strptime(value, TIME_FORMAT) if value else None


class Database:
    def __init__(self, db_path="data/surge.db"):
        """Open the database, creating tables on first run"""
        self.db_path = db_path
        self.init_database()

    def init_database(self):
        """Create the database and its tables"""
        folder = os.path.dirname(self.db_path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_id INTEGER UNIQUE NOT NULL,
                    username TEXT,
                    first_name TEXT,
                    plan TEXT,
                    plan_name TEXT,
                    start_date TEXT,
                    end_date TEXT,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    tv_username TEXT,
                    wallet_address TEXT,
                    referral_code TEXT UNIQUE,
                    referred_by INTEGER,
                    total_earnings INTEGER NOT NULL DEFAULT 0,
                    pending_earnings INTEGER NOT NULL DEFAULT 0,
                    total_referrals INTEGER NOT NULL DEFAULT 0,
                    referred_users INTEGER NOT NULL DEFAULT 0,
                    joined_at TEXT NOT NULL,
                    last_seen TEXT
                )
            ''')

            # Amounts are lamports
            conn.execute('''
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tx_id TEXT UNIQUE NOT NULL,
                    user_id INTEGER NOT NULL,
                    plan TEXT NOT NULL,
                    plan_name TEXT NOT NULL,
                    duration_days INTEGER NOT NULL,
                    is_renewal INTEGER NOT NULL DEFAULT 0,
                    amount INTEGER NOT NULL,
                    paid_amount INTEGER,
                    sender TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    note TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    FOREIGN KEY (user_id) REFERENCES users (telegram_id)
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS referral_rewards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    beneficiary_id INTEGER NOT NULL,
                    source_user_id INTEGER NOT NULL,
                    tx_id TEXT UNIQUE NOT NULL,
                    amount INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    payout_reference TEXT,
                    created_at TEXT NOT NULL,
                    paid_at TEXT
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS sessions (
                    user_id INTEGER PRIMARY KEY,
                    state TEXT NOT NULL,
                    plan_key TEXT,
                    plan_name TEXT,
                    price INTEGER,
                    duration_days INTEGER,
                    is_renewal INTEGER,
                    tx_id TEXT,
                    updated_at TEXT NOT NULL
                )
            ''')

            # One row per (user, subscription end, notice kind)
            conn.execute('''
                CREATE TABLE IF NOT EXISTS sweep_notifications (
                    user_id INTEGER NOT NULL,
                    end_date TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    notified_at TEXT NOT NULL,
                    acknowledged_at TEXT,
                    PRIMARY KEY (user_id, end_date, kind)
                )
            ''')

            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_end_date ON users (is_active, end_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_status ON transactions (status, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_rewards_beneficiary ON referral_rewards (beneficiary_id, status)")

    @contextmanager
    def connection(self):
        """Connection that commits on success and is always closed"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE transaction: holds the write lock until commit or rollback"""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # --- users ---

    def add_user(self, telegram_id, username=None, first_name=None):
        """Add a user, or refresh username and last_seen. Returns True for new users"""
        now = to_db(utcnow())
        with self.connection() as conn:
            try:
                conn.execute('''
                    INSERT INTO users (telegram_id, username, first_name, joined_at, last_seen)
                    VALUES (?, ?, ?, ?, ?)
                ''', (telegram_id, username, first_name, now, now))
                return True
            except sqlite3.IntegrityError:
                conn.execute('''
                    UPDATE users SET username = COALESCE(?, username),
                                     first_name = COALESCE(?, first_name),
                                     last_seen = ?
                    WHERE telegram_id = ?
                ''', (username, first_name, now, telegram_id))
                return False

    def fetch_user(self, conn, telegram_id):
        row = conn.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)).fetchone()
        return dict(row) if row else None

    def get_user(self, telegram_id):
        """User as a dict, or None"""
        with self.connection() as conn:
            return self.fetch_user(conn, telegram_id)

    def find_user(self, query):
        """Look a user up by telegram id or @username"""
        query = str(query).strip()
        with self.connection() as conn:
            if query.lstrip("-").isdigit():
                row = conn.execute("SELECT * FROM users WHERE telegram_id = ?", (int(query),)).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM users WHERE username = ? COLLATE NOCASE",
                    (query.lstrip("@"),),
                ).fetchone()
            return dict(row) if row else None

    def get_user_by_referral_code(self, code):
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE referral_code = ?", (code,)).fetchone()
            return dict(row) if row else None

    def set_referral_code(self, telegram_id, code):
        """Assign code if the user has none yet. Raises IntegrityError if code is taken"""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE users SET referral_code = ? WHERE telegram_id = ? AND referral_code IS NULL",
                (code, telegram_id),
            )
            return cursor.rowcount == 1

    def set_referred_by(self, telegram_id, referrer_id):
        """Record the referrer once and bump their referred_users counter"""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET referred_by = ? WHERE telegram_id = ? AND referred_by IS NULL",
                (referrer_id, telegram_id),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE users SET referred_users = referred_users + 1 WHERE telegram_id = ?",
                (referrer_id,),
            )
            return True

    def set_tv_username(self, conn, telegram_id, tv_username):
        conn.execute("UPDATE users SET tv_username = ? WHERE telegram_id = ?", (tv_username, telegram_id))

    def set_wallet_address(self, telegram_id, address):
        with self.connection() as conn:
            conn.execute("UPDATE users SET wallet_address = ? WHERE telegram_id = ?", (address, telegram_id))

    def activate_subscription(self, conn, telegram_id, plan, plan_name, start_date, end_date):
        conn.execute('''
            UPDATE users SET plan = ?, plan_name = ?, start_date = ?, end_date = ?, is_active = 1
            WHERE telegram_id = ?
        ''', (plan, plan_name, to_db(start_date), to_db(end_date), telegram_id))

    def deactivate_subscription(self, telegram_id, end_date, now):
        """Flip an expired subscription to inactive. True only for the caller that flipped it"""
        with self.connection() as conn:
            cursor = conn.execute('''
                UPDATE users SET is_active = 0
                WHERE telegram_id = ? AND is_active = 1 AND end_date = ? AND end_date <= ?
            ''', (telegram_id, end_date, to_db(now)))
            return cursor.rowcount == 1

    def get_all_user_ids(self):
        with self.connection() as conn:
            return [row[0] for row in conn.execute("SELECT telegram_id FROM users ORDER BY id")]

    def get_expiring_users(self, now, until):
        """Active users whose subscription ends within (now, until]"""
        with self.connection() as conn:
            rows = conn.execute('''
                SELECT * FROM users
                WHERE is_active = 1 AND end_date > ? AND end_date <= ?
                ORDER BY end_date
            ''', (to_db(now), to_db(until))).fetchall()
            return [dict(row) for row in rows]

    def get_expired_users(self, now):
        """Users still marked active after their end date"""
        with self.connection() as conn:
            rows = conn.execute('''
                SELECT * FROM users WHERE is_active = 1 AND end_date <= ? ORDER BY end_date
            ''', (to_db(now),)).fetchall()
            return [dict(row) for row in rows]

    def get_revocation_candidates(self, now):
        """Expired users whose TradingView access may still need revoking"""
        with self.connection() as conn:
            rows = conn.execute('''
                SELECT * FROM users
                WHERE is_active = 0 AND end_date IS NOT NULL AND end_date <= ?
                  AND tv_username IS NOT NULL AND tv_username != ''
                ORDER BY end_date
            ''', (to_db(now),)).fetchall()
            return [dict(row) for row in rows]

    # --- transactions ---

    def transaction_exists(self, tx_id):
        with self.connection() as conn:
            return conn.execute("SELECT 1 FROM transactions WHERE tx_id = ?", (tx_id,)).fetchone() is not None

    def insert_transaction(self, conn, tx_id, user_id, plan, paid_amount, sender):
        """Store a verified proof of payment. Raises IntegrityError on a duplicate tx_id"""
        now = to_db(utcnow())
        conn.execute('''
            INSERT INTO transactions (tx_id, user_id, plan, plan_name, duration_days, is_renewal,
                                      amount, paid_amount, sender, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
        ''', (tx_id, user_id, plan.key, plan.name, plan.duration_days, int(plan.is_renewal),
              plan.price, paid_amount, sender, now, now))

    def fetch_transaction(self, conn, tx_id):
        row = conn.execute("SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)).fetchone()
        return dict(row) if row else None

    def get_transaction(self, tx_id):
        with self.connection() as conn:
            return self.fetch_transaction(conn, tx_id)

    def get_unfinished_transaction(self, user_id):
        """Latest pending transaction of a user who has not given a TradingView username yet"""
        with self.connection() as conn:
            row = conn.execute('''
                SELECT t.* FROM transactions t
                JOIN users u ON u.telegram_id = t.user_id
                WHERE t.user_id = ? AND t.status = 'pending'
                  AND (u.tv_username IS NULL OR u.tv_username = '')
                ORDER BY t.created_at DESC, t.id DESC
                LIMIT 1
            ''', (user_id,)).fetchone()
            return dict(row) if row else None

    def mark_transaction_completed(self, conn, tx_id, now):
        """pending -> completed; False if another caller got there first"""
        cursor = conn.execute('''
            UPDATE transactions SET status = 'completed', completed_at = ?, updated_at = ?
            WHERE tx_id = ? AND status = 'pending'
        ''', (to_db(now), to_db(now), tx_id))
        return cursor.rowcount == 1

    def mark_transaction_failed(self, conn, tx_id, note, now):
        cursor = conn.execute('''
            UPDATE transactions SET status = 'failed', note = ?, updated_at = ?
            WHERE tx_id = ? AND status = 'pending'
        ''', (note, to_db(now), tx_id))
        return cursor.rowcount == 1

    def get_pending_transactions(self, limit=20):
        """Oldest pending transactions first, with the payer's username"""
        with self.connection() as conn:
            rows = conn.execute('''
                SELECT t.*, u.username, u.tv_username FROM transactions t
                LEFT JOIN users u ON u.telegram_id = t.user_id
                WHERE t.status = 'pending'
                ORDER BY t.created_at, t.id
                LIMIT ?
            ''', (limit,)).fetchall()
            return [dict(row) for row in rows]

    # --- referral rewards ---

    def insert_reward(self, conn, beneficiary_id, source_user_id, tx_id, amount, now):
        """Store a reward once per transaction. Returns False if it already existed"""
        cursor = conn.execute('''
            INSERT OR IGNORE INTO referral_rewards (beneficiary_id, source_user_id, tx_id, amount, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', (beneficiary_id, source_user_id, tx_id, amount, to_db(now)))
        if cursor.rowcount != 1:
            return False
        conn.execute('''
            UPDATE users SET pending_earnings = pending_earnings + ?, total_referrals = total_referrals + 1
            WHERE telegram_id = ?
        ''', (amount, beneficiary_id))
        return True

    def get_pending_rewards(self, beneficiary_id, conn=None):
        query = '''
            SELECT * FROM referral_rewards WHERE beneficiary_id = ? AND status = 'pending'
            ORDER BY created_at, id
        '''
        if conn is not None:
            return [dict(row) for row in conn.execute(query, (beneficiary_id,))]
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(query, (beneficiary_id,))]

    def mark_rewards_paid(self, conn, beneficiary_id, reward_ids, payout_reference, now):
        """Settle the given pending rewards and move their sum from pending to total earnings"""
        total = 0
        for reward_id in reward_ids:
            cursor = conn.execute('''
                UPDATE referral_rewards SET status = 'paid', payout_reference = ?, paid_at = ?
                WHERE id = ? AND beneficiary_id = ? AND status = 'pending'
            ''', (payout_reference, to_db(now), reward_id, beneficiary_id))
            if cursor.rowcount == 1:
                total += conn.execute(
                    "SELECT amount FROM referral_rewards WHERE id = ?", (reward_id,)
                ).fetchone()[0]
        conn.execute('''
            UPDATE users SET pending_earnings = pending_earnings - ?, total_earnings = total_earnings + ?
            WHERE telegram_id = ?
        ''', (total, total, beneficiary_id))
        return total

    # --- sessions ---

    def get_session(self, user_id):
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE user_id = ?", (user_id,)).fetchone()
            return dict(row) if row else None

    def save_session(self, conn, user_id, fields):
        columns = ["user_id"] + list(fields)
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT OR REPLACE INTO sessions ({', '.join(columns)}) VALUES ({placeholders})",
            [user_id] + list(fields.values()),
        )

    def delete_session(self, conn, user_id, tx_id=None):
        """Drop the session; with tx_id, only if it still points at that transaction"""
        if tx_id is None:
            cursor = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
        else:
            cursor = conn.execute("DELETE FROM sessions WHERE user_id = ? AND tx_id = ?", (user_id, tx_id))
        return cursor.rowcount > 0

    # --- sweep notifications ---

    def has_notification(self, user_id, end_date, kind):
        with self.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM sweep_notifications WHERE user_id = ? AND end_date = ? AND kind = ?",
                (user_id, end_date, kind),
            ).fetchone()
            return row is not None

    def record_notification(self, user_id, end_date, kind, now):
        """Returns False when this notice was already recorded"""
        with self.connection() as conn:
            cursor = conn.execute('''
                INSERT OR IGNORE INTO sweep_notifications (user_id, end_date, kind, notified_at)
                VALUES (?, ?, ?, ?)
            ''', (user_id, end_date, kind, to_db(now)))
            return cursor.rowcount == 1

    def acknowledge_notifications(self, user_id, kind, now):
        with self.connection() as conn:
            cursor = conn.execute('''
                UPDATE sweep_notifications SET acknowledged_at = ?
                WHERE user_id = ? AND kind = ? AND acknowledged_at IS NULL
            ''', (to_db(now), user_id, kind))
            return cursor.rowcount

    def prune_notifications(self, before):
        """Forget notices older than before that no longer match the user's current end date"""
        with self.connection() as conn:
            cursor = conn.execute('''
                DELETE FROM sweep_notifications
                WHERE notified_at < ?
                  AND end_date IS NOT (SELECT u.end_date FROM users u
                                       WHERE u.telegram_id = sweep_notifications.user_id)
            ''', (to_db(before),))
            return cursor.rowcount

    # --- stats ---

    def get_database_stats(self, now=None):
        """Counters for the /stats command"""
        now = to_db(now or utcnow())
        with self.connection() as conn:
            stats = {}
            stats["total_users"] = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            stats["active_users"] = conn.execute(
                "SELECT COUNT(*) FROM users WHERE is_active = 1 AND end_date > ?", (now,)
            ).fetchone()[0]
            stats["pending_transactions"] = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = 'pending'"
            ).fetchone()[0]
            stats["completed_transactions"] = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = 'completed'"
            ).fetchone()[0]
            stats["revenue"] = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM transactions WHERE status = 'completed'"
            ).fetchone()[0]
            stats["pending_rewards"] = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM referral_rewards WHERE status = 'pending'"
            ).fetchone()[0]
            stats["plans"] = {
                row[0]: row[1] for row in conn.execute(
                    "SELECT plan, COUNT(*) FROM users WHERE is_active = 1 AND plan IS NOT NULL GROUP BY plan"
                )
            }
            return stats
