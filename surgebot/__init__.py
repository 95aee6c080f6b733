"""SURGE subscription bot: SOL payments, TradingView access and referrals over Telegram."""

__version__ = "1.0.0"
