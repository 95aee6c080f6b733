"""Errors reported back to users and operators.

Every error carries a ready-to-send ``message``. Handlers raise them and the
update router in ``main.py`` turns them into a reply, so a failed step never
changes the caller's state.
"""


class SurgeError(Exception):
    """Base class for errors that are shown to the person who triggered them"""

    message = "❌ Something went wrong. Please try again."

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


# --- user input ---

class InvalidFormat(SurgeError):
    message = "❌ Please provide a valid Solana transaction ID (letters and digits, at least 50 characters)."


class DuplicateTransaction(SurgeError):
    message = "❌ This transaction ID has already been used. Please contact support if this is an error."


class InvalidUsername(SurgeError):
    message = "❌ Please send a valid TradingView username (at least 3 characters)."


class InvalidWalletAddress(SurgeError):
    message = "❌ Invalid Solana wallet address. Please try again."


class UnknownPlan(SurgeError):
    message = "❌ Unknown plan. Use /plans to see the available plans."


class AlreadySubscribed(SurgeError):
    message = "ℹ️ You already have an active subscription. Use /renew to extend it."


class NoSubscription(SurgeError):
    message = "ℹ️ You don't have a subscription to renew yet. Use /plans to pick one."


# --- ledger verification ---

class VerificationError(SurgeError):
    """Definitive rejection of a proof of payment"""

    reason = "unknown"


class TransactionNotFound(VerificationError):
    reason = "not_found"
    message = ("❌ Transaction not found on the Solana network. "
               "Check the TXID, or wait until it is finalized and send it again.")


class TransactionFailed(VerificationError):
    reason = "failed"
    message = "❌ This transaction failed on-chain. Please send the TXID of a successful transfer."


class ReceiverMismatch(VerificationError):
    reason = "receiver_mismatch"
    message = "❌ This transaction does not send SOL to our wallet address."


class AmountMismatch(VerificationError):
    reason = "amount_mismatch"

    def __init__(self, expected, actual):
        from .solana import format_sol

        self.expected = expected
        self.actual = actual
        super().__init__(
            f"❌ Amount too low: expected {format_sol(expected)} SOL, "
            f"received {format_sol(actual)} SOL."
        )


class TransientLedgerError(SurgeError):
    """The ledger could not be queried; nothing was decided"""

    message = "⏳ The Solana network is not responding right now. Please send the TXID again in a minute."


class RPCError(TransientLedgerError):
    def __init__(self, code, detail):
        self.code = code
        self.detail = detail
        super().__init__()


# --- session state ---

class SessionError(SurgeError):
    pass


class NoPlanSelected(SessionError):
    message = "❌ No plan selected. Please choose a plan first with /plans."


class SessionExpired(SessionError):
    message = "⌛ Your session has expired. Please choose a plan again with /plans."


class UsernameRequired(SessionError):
    message = ("📝 Your payment is already confirmed on-chain. "
               "Please send your TradingView username to finish the purchase.")


class WrongStep(SessionError):
    message = "❌ That action is not available right now. Use /status to see where you are, or /cancel to start over."


# --- operator actions and rewards ---

class UnknownTransaction(SurgeError):
    message = "❌ Transaction not found."


class AlreadyVerified(SurgeError):
    message = "ℹ️ Transaction already verified."


class TransactionRejected(SurgeError):
    message = "❌ Transaction was rejected and cannot be verified."


class MissingExternalUsername(SurgeError):
    message = "❌ The user has not provided a TradingView username yet."


class UnknownUser(SurgeError):
    message = "❌ User not found."


class NoPendingRewards(SurgeError):
    message = "ℹ️ There are no pending rewards to redeem."


class NoPayoutAddress(SurgeError):
    message = "❌ Please set your wallet address first with /wallet."
