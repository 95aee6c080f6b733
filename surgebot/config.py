# SURGE Bot configuration
import os

from dotenv import load_dotenv

load_dotenv()


def _getenv(key, default=None):
    value = os.getenv(key)
    return value if (value is not None and value != "") else default


def _as_int(value, default):
    if value is None or value == "":
        return default
    return int(value)


def _as_list(value):
    """Comma-separated ids -> list of ints"""
    if not value:
        return []
    return [int(item) for item in value.split(",") if item.strip()]


# Bot token from @BotFather
TOKEN = _getenv("BOT_TOKEN", "")

# Operator ids (allow-list)
ADMIN_IDS = _as_list(_getenv("ADMIN_IDS"))

# Channel for operator logs (optional)
LOG_CHANNEL_ID = _as_int(_getenv("LOG_CHANNEL_ID"), None)

SUPPORT_EMAIL = _getenv("SUPPORT_EMAIL", "support@surge-ai.com")

# Storage
DATABASE_PATH = _getenv("DATABASE_PATH", "data/surge.db")

# Solana
SOLANA_RPC_URL = _getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
SOLANA_WALLET_ADDRESS = _getenv("SOLANA_WALLET_ADDRESS", "")
SOLANA_COMMITMENT = _getenv("SOLANA_COMMITMENT", "finalized")
RPC_TIMEOUT = _as_int(_getenv("RPC_TIMEOUT"), 15)

# Background sweeps (minutes)
CHECK_INTERVAL_MINUTES = _as_int(_getenv("CHECK_INTERVAL_MINUTES"), 60)
ADMIN_CHECK_INTERVAL_MINUTES = _as_int(_getenv("ADMIN_CHECK_INTERVAL_MINUTES"), 30)
NOTIFICATION_RETENTION_DAYS = _as_int(_getenv("NOTIFICATION_RETENTION_DAYS"), 7)

# Sessions idle longer than this are treated as expired
SESSION_TTL_MINUTES = _as_int(_getenv("SESSION_TTL_MINUTES"), 1440)

# Threads handling updates
WORKER_THREADS = _as_int(_getenv("WORKER_THREADS"), 8)

# Referrer's share of each completed payment, percent
REFERRAL_PERCENT = _as_int(_getenv("REFERRAL_PERCENT"), 10)

# Logging
LOG_LEVEL = _getenv("LOG_LEVEL", "INFO")
LOG_DIR = _getenv("LOG_DIR", "logs")
ENV = _getenv("BOT_ENV", "development")


def validate():
    """Fail fast when a required setting is missing"""
    missing = []
    if not TOKEN:
        missing.append("BOT_TOKEN")
    elif ":" not in TOKEN:
        raise RuntimeError("Invalid BOT_TOKEN format, expected '<id>:<secret>'")
    if not ADMIN_IDS:
        missing.append("ADMIN_IDS")
    if not SOLANA_WALLET_ADDRESS:
        missing.append("SOLANA_WALLET_ADDRESS")
    if SOLANA_COMMITMENT not in ("finalized", "confirmed"):
        raise RuntimeError("SOLANA_COMMITMENT must be 'finalized' or 'confirmed'")

    if missing:
        raise RuntimeError("Missing required settings: " + ", ".join(missing))
