"""
Tests for the daily usage counter and abuse heuristics.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import seed_user
from shared.usage import (
    check_and_increment,
    check_chat_limit,
    detect_abuse,
    get_usage_analytics,
    get_usage_status,
    local_date,
    next_midnight,
    reset_daily_usage,
)

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


class _SnapshotReads:
    """Usage table whose get_item returns the item as it was at construction."""

    def __init__(self, table, key):
        self._table = table
        self._snapshot = table.get_item(Key=key)

    def get_item(self, **kwargs):
        return self._snapshot

    def __getattr__(self, name):
        return getattr(self._table, name)


@pytest.fixture
def usage_table(mock_dynamodb):
    return mock_dynamodb.Table("steadycoach-usage")


class TestLocalDay:
    """Tests for timezone-aware day boundaries."""

    def test_local_date_uses_user_timezone(self):
        late_evening_utc = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        assert local_date("UTC", late_evening_utc) == "2026-03-10"
        assert local_date("America/New_York", late_evening_utc) == "2026-03-09"

    def test_next_midnight_in_utc(self):
        assert next_midnight("UTC", NOW) == "2026-03-11T00:00:00+00:00"

    def test_unknown_timezone_falls_back_to_utc(self):
        assert local_date("Not/AZone", NOW) == "2026-03-10"


class TestCheckAndIncrement:
    """Tests for check_and_increment()."""

    def test_counts_messages_until_limit(self, usage_table):
        for i in range(20):
            result = check_and_increment(usage_table, "user_1", "grace_period", now=NOW)
            assert result["allowed"], f"message {i + 1} should be allowed"

        result = check_and_increment(usage_table, "user_1", "grace_period", now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "daily_limit_reached"
        assert result["current_usage"] == 20
        assert result["remaining"] == 0

    def test_first_message_creates_day_record(self, usage_table):
        result = check_and_increment(usage_table, "user_1", "premium", now=NOW)

        assert result["current_usage"] == 1
        assert result["remaining"] == 99
        assert result["daily_limit"] == 100
        item = usage_table.get_item(Key={"pk": "user_1", "sk": "2026-03-10"})["Item"]
        assert item["date"] == "2026-03-10"
        assert item["reset_at"] == "2026-03-11T00:00:00+00:00"

    @pytest.mark.parametrize("status", ["free", "past_due", "suspended"])
    def test_statuses_without_chat_write_nothing(self, usage_table, status):
        result = check_and_increment(usage_table, "user_1", status, now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "chat_not_available"
        assert "Item" not in usage_table.get_item(Key={"pk": "user_1", "sk": "2026-03-10"})

    def test_blocked_user_is_rejected(self, usage_table):
        usage_table.put_item(
            Item={"pk": "user_1", "sk": "2026-03-10", "date": "2026-03-10", "chat_messages": 1, "blocked": True}
        )

        result = check_and_increment(usage_table, "user_1", "premium", now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "blocked"
        assert result["is_blocked"] is True

    def test_new_day_starts_fresh(self, usage_table):
        for _ in range(20):
            check_and_increment(usage_table, "user_1", "grace_period", now=NOW)

        result = check_and_increment(usage_table, "user_1", "grace_period", now=NOW + timedelta(days=1))

        assert result["allowed"]
        assert result["current_usage"] == 1


class TestReadOnlyViews:
    """Tests for check_chat_limit() and get_usage_status()."""

    def test_check_does_not_increment(self, usage_table):
        check_and_increment(usage_table, "user_1", "premium", now=NOW)

        result = check_chat_limit(usage_table, "user_1", "premium", now=NOW)

        assert result["allowed"]
        assert result["current_usage"] == 1

    def test_usage_status(self, usage_table):
        for _ in range(3):
            check_and_increment(usage_table, "user_1", "premium", now=NOW)

        status = get_usage_status(usage_table, "user_1", "premium", now=NOW)

        assert status["date"] == "2026-03-10"
        assert status["current_usage"] == 3
        assert status["remaining"] == 97
        assert status["is_blocked"] is False


class TestDetectAbuse:
    """Tests for detect_abuse()."""

    def test_rapid_messages_add_warning(self, usage_table):
        for i in range(11):
            check_and_increment(usage_table, "user_1", "premium", now=NOW + timedelta(seconds=i))

        result = detect_abuse(usage_table, "user_1", "premium", now=NOW + timedelta(seconds=11))

        assert result["is_abusive"]
        assert result["reasons"] == ["rapid_messages"]
        assert result["warnings"] == 1
        assert result["blocked"] is False

    def test_messages_outside_window_are_trimmed(self, usage_table):
        for i in range(11):
            check_and_increment(usage_table, "user_1", "premium", now=NOW + timedelta(seconds=i))

        result = detect_abuse(usage_table, "user_1", "premium", now=NOW + timedelta(minutes=5))

        assert result["is_abusive"] is False
        item = usage_table.get_item(Key={"pk": "user_1", "sk": "2026-03-10"})["Item"]
        assert item["recent_messages"] == []

    def test_third_warning_blocks(self, usage_table):
        usage_table.put_item(
            Item={
                "pk": "user_1",
                "sk": "2026-03-10",
                "date": "2026-03-10",
                "chat_messages": 90,
                "warnings": 2,
                "blocked": False,
                "recent_messages": [],
            }
        )

        # 90 messages is far over the grace_period quota of 20
        result = detect_abuse(usage_table, "user_1", "grace_period", now=NOW)

        assert result["reasons"] == ["excessive_daily_usage"]
        assert result["warnings"] == 3
        assert result["blocked"] is True
        assert check_and_increment(usage_table, "user_1", "premium", now=NOW)["reason"] == "blocked"

    def test_no_record_is_not_abusive(self, usage_table):
        assert detect_abuse(usage_table, "user_1", "premium", now=NOW)["is_abusive"] is False

    def test_concurrent_checks_do_not_lose_warnings(self, usage_table):
        key = {"pk": "user_1", "sk": "2026-03-10"}
        usage_table.put_item(
            Item={**key, "date": "2026-03-10", "chat_messages": 90, "warnings": 1,
                  "blocked": False, "recent_messages": []}
        )
        stale = _SnapshotReads(usage_table, key)

        detect_abuse(usage_table, "user_1", "grace_period", now=NOW)
        result = detect_abuse(stale, "user_1", "grace_period", now=NOW)

        assert result["warnings"] == 3
        assert result["blocked"] is True
        item = usage_table.get_item(Key=key)["Item"]
        assert item["warnings"] == 3
        assert item["blocked"] is True

    def test_trim_keeps_message_counted_after_read(self, usage_table):
        earlier = NOW - timedelta(minutes=5)
        for i in range(11):
            check_and_increment(usage_table, "user_1", "premium", now=earlier + timedelta(seconds=i))
        key = {"pk": "user_1", "sk": "2026-03-10"}
        stale = _SnapshotReads(usage_table, key)
        check_and_increment(usage_table, "user_1", "premium", now=NOW)

        result = detect_abuse(stale, "user_1", "premium", now=NOW)

        assert result["is_abusive"] is False
        item = usage_table.get_item(Key=key)["Item"]
        assert len(item["recent_messages"]) == 12
        assert int(NOW.timestamp()) in [int(ts) for ts in item["recent_messages"]]


class TestResetDailyUsage:
    """Tests for reset_daily_usage()."""

    def test_resets_counters_and_lifts_blocks(self, usage_table):
        usage_table.put_item(
            Item={"pk": "user_1", "sk": "2026-03-09", "date": "2026-03-09", "chat_messages": 40,
                  "warnings": 3, "blocked": True, "recent_messages": [1, 2]}
        )
        usage_table.put_item(
            Item={"pk": "user_2", "sk": "2026-03-10", "date": "2026-03-10", "chat_messages": 5}
        )

        result = reset_daily_usage(usage_table, "2026-03-09")

        assert result == {"date": "2026-03-09", "reset": 1, "errors": 0}
        item = usage_table.get_item(Key={"pk": "user_1", "sk": "2026-03-09"})["Item"]
        assert item["chat_messages"] == 0
        assert item["blocked"] is False
        assert item["warnings"] == 3
        assert "recent_messages" not in item
        other = usage_table.get_item(Key={"pk": "user_2", "sk": "2026-03-10"})["Item"]
        assert other["chat_messages"] == 5

    def test_local_day_still_running_is_not_reset(self, usage_table):
        # 17:00 in Los Angeles on 2026-10-19 when the UTC job fires
        job_time = datetime(2026, 10, 20, 0, 0, 30, tzinfo=timezone.utc)
        for _ in range(20):
            check_and_increment(usage_table, "user_la", "grace_period", "America/Los_Angeles",
                                now=job_time - timedelta(seconds=30))
        check_and_increment(usage_table, "user_utc", "grace_period", "UTC",
                            now=datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc))

        result = reset_daily_usage(usage_table, "2026-10-19", now=job_time)

        assert result["reset"] == 1
        assert usage_table.get_item(Key={"pk": "user_utc", "sk": "2026-10-19"})["Item"]["chat_messages"] == 0
        la_item = usage_table.get_item(Key={"pk": "user_la", "sk": "2026-10-19"})["Item"]
        assert la_item["chat_messages"] == 20
        later = check_and_increment(usage_table, "user_la", "grace_period", "America/Los_Angeles",
                                    now=job_time + timedelta(minutes=5))
        assert later["allowed"] is False
        assert later["reason"] == "daily_limit_reached"

    def test_local_day_is_reset_once_it_ends(self, usage_table):
        for _ in range(20):
            check_and_increment(usage_table, "user_la", "grace_period", "America/Los_Angeles",
                                now=datetime(2026, 10, 20, 0, 0, tzinfo=timezone.utc))

        # Midnight in Los Angeles is 07:00 UTC during daylight saving time
        result = reset_daily_usage(
            usage_table, "2026-10-19", now=datetime(2026, 10, 20, 7, 0, 1, tzinfo=timezone.utc)
        )

        assert result["reset"] == 1
        assert usage_table.get_item(Key={"pk": "user_la", "sk": "2026-10-19"})["Item"]["chat_messages"] == 0


class TestUsageAnalytics:
    """Tests for get_usage_analytics()."""

    def test_totals_by_status_and_day(self, billing_env):
        seed_user(billing_env, "user_1", "one@example.com", status="premium")
        seed_user(billing_env, "user_2", "two@example.com", status="grace_period")
        table = billing_env["dynamodb"].Table("steadycoach-usage")
        for user_id, day, count in [
            ("user_1", "2026-03-09", 10),
            ("user_1", "2026-03-10", 4),
            ("user_2", "2026-03-10", 6),
        ]:
            table.put_item(Item={"pk": user_id, "sk": day, "date": day, "chat_messages": count})

        result = get_usage_analytics(
            table, billing_env["dynamodb"].Table("steadycoach-users"), "2026-03-09", "2026-03-10"
        )

        assert result["total_users"] == 2
        assert result["total_messages"] == 20
        assert result["usage_by_status"]["premium"]["messages"] == 14
        assert result["usage_by_status"]["grace_period"]["messages"] == 6
        assert result["daily_breakdown"] == [
            {"date": "2026-03-09", "users": 1, "messages": 10},
            {"date": "2026-03-10", "users": 2, "messages": 10},
        ]

    def test_rejects_large_range(self, mock_dynamodb):
        with pytest.raises(ValueError):
            get_usage_analytics(
                mock_dynamodb.Table("steadycoach-usage"),
                mock_dynamodb.Table("steadycoach-users"),
                "2026-01-01",
                "2026-06-01",
            )
