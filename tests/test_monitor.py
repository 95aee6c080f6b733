from datetime import timedelta

from conftest import ADMIN_ID, NOW
from surgebot.db import to_db
from surgebot.monitor import SubscriptionMonitor

USER = 42


def activate(db, user_id, end_date, tv_username="trader_one", start_date=None):
    db.add_user(user_id, f"user{user_id}")
    with db.transaction() as conn:
        db.activate_subscription(conn, user_id, "monthly", "Monthly Plan",
                                 start_date or end_date - timedelta(days=30), end_date)
        if tv_username:
            db.set_tv_username(conn, user_id, tv_username)


def test_expiry_is_announced_exactly_once(bot, telegram):
    activate(bot.db, USER, NOW - timedelta(seconds=1))

    assert bot.monitor.check_subscriptions(now=NOW) == (1, 0)
    assert bot.monitor.check_subscriptions(now=NOW + timedelta(minutes=1)) == (0, 0)

    assert bot.db.get_user(USER)["is_active"] == 0
    expired = [text for text in telegram.messages_to(USER) if "has expired" in text]
    assert len(expired) == 1


def test_restarted_monitor_does_not_repeat_expiry(bot, db, telegram):
    activate(db, USER, NOW - timedelta(seconds=1))
    bot.monitor.check_subscriptions(now=NOW)

    fresh = SubscriptionMonitor(db, bot)
    assert fresh.check_subscriptions(now=NOW) == (0, 0)
    assert len([text for text in telegram.messages_to(USER) if "has expired" in text]) == 1


def test_reminder_within_a_day(bot, telegram):
    activate(bot.db, USER, NOW + timedelta(hours=5))
    activate(bot.db, 43, NOW + timedelta(days=3))

    assert bot.monitor.check_subscriptions(now=NOW) == (0, 1)
    assert bot.monitor.check_subscriptions(now=NOW + timedelta(hours=1)) == (0, 0)

    reminders = telegram.messages_to(USER)
    assert len(reminders) == 1
    assert "about 5 hour(s)" in reminders[0]
    assert telegram.messages_to(43) == []
    assert bot.db.get_user(USER)["is_active"] == 1


def test_failed_reminder_is_retried(bot, telegram):
    activate(bot.db, USER, NOW + timedelta(hours=5))
    telegram.failing.add(USER)

    assert bot.monitor.check_subscriptions(now=NOW) == (0, 0)

    telegram.failing.clear()
    assert bot.monitor.check_subscriptions(now=NOW + timedelta(hours=1)) == (0, 1)


def test_overlapping_sweep_is_skipped(bot):
    activate(bot.db, USER, NOW - timedelta(seconds=1))

    bot.monitor._check_lock.acquire()
    try:
        assert bot.monitor.check_subscriptions(now=NOW) is None
    finally:
        bot.monitor._check_lock.release()

    assert bot.db.get_user(USER)["is_active"] == 1


def test_revocation_notice_sent_once(bot, telegram):
    activate(bot.db, USER, NOW - timedelta(days=1))
    bot.monitor.check_subscriptions(now=NOW)

    assert bot.monitor.check_revocations(now=NOW) == 1
    assert bot.monitor.check_revocations(now=NOW + timedelta(minutes=30)) == 0

    notices = telegram.messages_to(ADMIN_ID)
    assert len(notices) == 1
    assert "trader_one" in notices[0]
    markup = telegram.markups_to(ADMIN_ID)[0]
    assert markup["inline_keyboard"][0][0]["callback_data"] == f"processed_{USER}"


def test_revocation_survives_restart_and_retention(bot, db):
    activate(db, USER, NOW - timedelta(days=1))
    bot.monitor.check_subscriptions(now=NOW)
    bot.monitor.check_revocations(now=NOW)

    fresh = SubscriptionMonitor(db, bot, retention_days=7)
    assert fresh.check_revocations(now=NOW + timedelta(days=30)) == 0

    assert fresh.acknowledge(USER, now=NOW) == 1
    assert fresh.check_revocations(now=NOW + timedelta(days=60)) == 0


def test_new_expiry_after_renewal_is_reported_again(bot, db, telegram):
    activate(db, USER, NOW - timedelta(days=1))
    bot.monitor.check_subscriptions(now=NOW)
    bot.monitor.check_revocations(now=NOW)

    second_end = NOW + timedelta(days=30)
    activate(db, USER, second_end)
    later = second_end + timedelta(hours=1)
    bot.monitor.check_subscriptions(now=later)

    assert bot.monitor.check_revocations(now=later) == 1
    assert len(telegram.messages_to(ADMIN_ID)) == 2


def test_stale_records_are_pruned_after_renewal(bot, db):
    first_end = NOW - timedelta(days=1)
    activate(db, USER, first_end)
    bot.monitor.check_subscriptions(now=NOW)
    bot.monitor.check_revocations(now=NOW)

    activate(db, USER, NOW + timedelta(days=365))
    bot.monitor.check_revocations(now=NOW + timedelta(days=8))

    assert not db.has_notification(USER, to_db(first_end), "revoke")


def test_user_without_tradingview_is_not_reported(bot, telegram):
    activate(bot.db, USER, NOW - timedelta(days=1), tv_username=None)
    bot.monitor.check_subscriptions(now=NOW)

    assert bot.monitor.check_revocations(now=NOW) == 0
    assert telegram.messages_to(ADMIN_ID) == []


def test_revocation_retried_when_no_operator_reachable(bot, telegram):
    activate(bot.db, USER, NOW - timedelta(days=1))
    bot.monitor.check_subscriptions(now=NOW)
    telegram.failing.add(ADMIN_ID)

    assert bot.monitor.check_revocations(now=NOW) == 0

    telegram.failing.clear()
    assert bot.monitor.check_revocations(now=NOW + timedelta(minutes=30)) == 1
