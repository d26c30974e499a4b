"""
Compliance stats: daily series, per-reminder performance and day detail.
"""
from datetime import date, datetime

from conftest import make_reminder

from medkiosk.stats import completion_rate, daily_stats, day_detail, reminder_performance, window_dates

MONDAY = date(2026, 10, 19)


def completion(reminder, day, status="completed"):
    return {
        "reminderId": reminder["id"],
        "status": status,
        "scheduledFor": f"{day}T{reminder['time']}:00",
        "scheduledDate": day,
        "completedAt": f"{day}T{reminder['time']}:30",
    }


def test_window_dates_oldest_first_ending_today():
    dates = window_dates(MONDAY, 3)
    assert dates == [date(2026, 10, 17), date(2026, 10, 18), MONDAY]


def test_completion_rate_rounds_half_up():
    assert completion_rate(0, 0) == 0
    assert completion_rate(1, 3) == 33
    assert completion_rate(2, 3) == 67
    assert completion_rate(1, 2) == 50
    assert completion_rate(5, 4) == 100


class TestDailyStats:
    def test_counts_expected_by_weekday(self):
        daily = make_reminder(title="Daily")
        weekdays = make_reminder(title="Weekdays", days=["mon", "tue", "wed", "thu", "fri"])
        completions = [
            completion(daily, "2026-10-19"),
            completion(weekdays, "2026-10-19", "skipped"),
            completion(daily, "2026-10-18", "skipped"),
        ]
        result = daily_stats([daily, weekdays], completions, MONDAY, 2)
        assert result == [
            {"date": "2026-10-18", "expected": 1, "completed": 0, "skipped": 1},
            {"date": "2026-10-19", "expected": 2, "completed": 1, "skipped": 1},
        ]

    def test_ignores_inactive_and_unexpected_records(self):
        paused = make_reminder(title="Paused", active=False)
        weekend = make_reminder(title="Weekend", days=["sat", "sun"])
        completions = [completion(paused, "2026-10-19"), completion(weekend, "2026-10-19")]
        result = daily_stats([paused, weekend], completions, MONDAY, 1)
        assert result == [{"date": "2026-10-19", "expected": 0, "completed": 0, "skipped": 0}]


class TestReminderPerformance:
    def test_rates_and_missed(self):
        good = make_reminder(title="Good")
        poor = make_reminder(title="Poor", time="20:00")
        completions = [completion(good, d) for d in ("2026-10-17", "2026-10-18", "2026-10-19")]
        completions.append(completion(poor, "2026-10-19", "skipped"))
        rows = reminder_performance([good, poor], completions, MONDAY, 3)
        assert [r["title"] for r in rows] == ["Poor", "Good"]
        poor_row, good_row = rows
        assert poor_row["expected"] == 3
        assert poor_row["skipped"] == 1
        assert poor_row["missed"] == 2
        assert poor_row["completionRate"] == 0
        assert good_row["completionRate"] == 100
        assert good_row["missed"] == 0

    def test_includes_inactive_and_never_scheduled(self):
        paused = make_reminder(title="Paused", active=False, days=["mon"])
        never = make_reminder(title="Never", days=["wed"])
        rows = reminder_performance([paused, never], [], MONDAY, 1)
        by_title = {r["title"]: r for r in rows}
        assert by_title["Paused"]["expected"] == 1
        assert by_title["Paused"]["active"] is False
        assert by_title["Never"]["expected"] == 0
        assert by_title["Never"]["completionRate"] == 0


class TestDayDetail:
    def test_statuses_and_summary(self):
        taken = make_reminder(title="Taken", time="07:00")
        skipped = make_reminder(title="Skipped", time="08:00")
        forgotten = make_reminder(title="Forgotten", time="09:00")
        later = make_reminder(title="Later", time="21:00")
        completions = [completion(taken, "2026-10-19"), completion(skipped, "2026-10-19", "skipped")]
        detail = day_detail([later, forgotten, skipped, taken], completions, MONDAY, datetime(2026, 10, 19, 12, 0))
        assert detail["date"] == "2026-10-19"
        assert detail["dayOfWeek"] == "mon"
        assert [(r["title"], r["status"]) for r in detail["reminders"]] == [
            ("Taken", "completed"),
            ("Skipped", "skipped"),
            ("Forgotten", "missed"),
            ("Later", "pending"),
        ]
        assert detail["reminders"][0]["completedAt"] == "2026-10-19T07:00:30"
        assert detail["reminders"][2]["completedAt"] is None
        assert detail["summary"] == {"total": 4, "completed": 1, "skipped": 1, "missed": 1, "pending": 1}

    def test_inactive_only_with_record(self):
        paused_done = make_reminder(title="Paused done", active=False)
        paused_silent = make_reminder(title="Paused silent", active=False)
        completions = [completion(paused_done, "2026-10-18")]
        detail = day_detail([paused_done, paused_silent], completions, date(2026, 10, 18), datetime(2026, 10, 19, 8, 0))
        assert [r["title"] for r in detail["reminders"]] == ["Paused done"]

    def test_past_day_without_records_is_all_missed(self):
        reminder = make_reminder(days=["sun"])
        detail = day_detail([reminder], [], date(2026, 10, 18), datetime(2026, 10, 19, 8, 0))
        assert detail["summary"]["missed"] == 1
        assert detail["summary"]["pending"] == 0
