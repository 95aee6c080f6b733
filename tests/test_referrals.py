import re

import pytest

from conftest import NOW, PAYOUT_WALLET, make_tx_id
from surgebot.errors import InvalidWalletAddress, NoPayoutAddress, NoPendingRewards
from surgebot.referrals import ReferralLedger

REFERRER = 7
USER = 42


@pytest.fixture
def referred(bot):
    """USER referred by REFERRER"""
    bot.db.add_user(REFERRER, "referrer")
    code = bot.referrals.get_or_create_code(REFERRER)
    bot.db.add_user(USER, "buyer")
    assert bot.referrals.attribute(USER, code) == REFERRER
    return code


def test_code_is_six_alphanumeric_and_stable(bot, db):
    code = bot.referrals.get_or_create_code(REFERRER, "referrer")

    assert re.fullmatch(r"[A-Z0-9]{6}", code)
    assert bot.referrals.get_or_create_code(REFERRER) == code
    assert ReferralLedger(db).get_or_create_code(REFERRER) == code
    assert db.get_user(REFERRER)["referral_code"] == code


def test_codes_are_unique_per_user(bot):
    codes = {bot.referrals.get_or_create_code(user_id) for user_id in range(1, 30)}
    assert len(codes) == 29


def test_attribution_is_set_once(bot, referred):
    bot.db.add_user(8)
    other = bot.referrals.get_or_create_code(8)

    assert bot.referrals.attribute(USER, other) is None
    assert bot.db.get_user(USER)["referred_by"] == REFERRER
    assert bot.db.get_user(REFERRER)["referred_users"] == 1


def test_attribution_ignores_self_and_unknown_codes(bot):
    code = bot.referrals.get_or_create_code(REFERRER)
    assert bot.referrals.attribute(REFERRER, code) is None
    assert bot.referrals.attribute(USER, "ZZZZZZ") is None
    assert bot.referrals.attribute(USER, "") is None
    assert bot.db.get_user(REFERRER)["referred_by"] is None


def test_code_match_is_case_insensitive(bot):
    code = bot.referrals.get_or_create_code(REFERRER)
    bot.db.add_user(USER)
    assert bot.referrals.attribute(USER, code.lower()) == REFERRER


def test_referrer_gets_ten_percent(bot, pay, referred):
    tx_id = pay(USER)
    activation = bot.payments.verify_payment(tx_id, now=NOW)

    assert activation.reward.amount == 100_000_000
    assert activation.reward.beneficiary_id == REFERRER
    referrer = bot.db.get_user(REFERRER)
    assert referrer["pending_earnings"] == 100_000_000
    assert referrer["total_referrals"] == 1
    assert referrer["total_earnings"] == 0


def test_each_payment_is_rewarded(bot, pay, referred):
    bot.payments.verify_payment(pay(USER, tx_id=make_tx_id(1)), now=NOW)
    bot.payments.verify_payment(pay(USER, tx_id=make_tx_id(2), renewal=True), now=NOW)

    referrer = bot.db.get_user(REFERRER)
    assert referrer["pending_earnings"] == 100_000_000 + 90_000_000
    assert referrer["total_referrals"] == 2


def test_no_reward_without_referrer(bot, pay):
    activation = bot.payments.verify_payment(pay(USER), now=NOW)
    assert activation.reward is None


def test_reward_rounds_down_to_lamports(bot):
    assert bot.referrals.reward_for(4_050_000_000) == 405_000_000
    assert bot.referrals.reward_for(9) == 0


def test_wallet_validation(bot):
    bot.db.add_user(REFERRER)
    for bad in ("", "short", "0OIl" * 10, PAYOUT_WALLET + "-"):
        with pytest.raises(InvalidWalletAddress):
            bot.referrals.set_wallet(REFERRER, bad)

    assert bot.referrals.set_wallet(REFERRER, f" {PAYOUT_WALLET} ") == PAYOUT_WALLET
    assert bot.db.get_user(REFERRER)["wallet_address"] == PAYOUT_WALLET


def test_redeem_requires_wallet_and_rewards(bot, pay, referred):
    with pytest.raises(NoPayoutAddress):
        bot.referrals.request_redemption(REFERRER)

    bot.referrals.set_wallet(REFERRER, PAYOUT_WALLET)
    with pytest.raises(NoPendingRewards):
        bot.referrals.request_redemption(REFERRER)
    with pytest.raises(NoPendingRewards):
        bot.referrals.redeem(REFERRER)


def test_redeem_moves_pending_to_total(bot, pay, referred):
    bot.payments.verify_payment(pay(USER), now=NOW)
    bot.referrals.set_wallet(REFERRER, PAYOUT_WALLET)

    user, amount, count = bot.referrals.request_redemption(REFERRER)
    assert (amount, count) == (100_000_000, 1)

    redemption = bot.referrals.redeem(REFERRER, now=NOW)

    assert redemption.amount == 100_000_000
    assert redemption.wallet_address == PAYOUT_WALLET
    assert redemption.payout_reference == "PAID_1767268800"
    referrer = bot.db.get_user(REFERRER)
    assert referrer["pending_earnings"] == 0
    assert referrer["total_earnings"] == 100_000_000
    assert bot.db.get_pending_rewards(REFERRER) == []

    with pytest.raises(NoPendingRewards):
        bot.referrals.redeem(REFERRER)


def test_redeem_with_payout_reference(bot, pay, referred):
    bot.payments.verify_payment(pay(USER), now=NOW)
    bot.referrals.set_wallet(REFERRER, PAYOUT_WALLET)

    redemption = bot.referrals.redeem(REFERRER, payout_reference="3xSigOfPayout")
    assert redemption.payout_reference == "3xSigOfPayout"
