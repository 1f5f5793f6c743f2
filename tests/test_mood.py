from datetime import date, datetime, timedelta

import pytest

from errors import ConflictError, NotFoundError, ValidationError
from models import User, db
from mood import mood_trend, parse_log_date, summarize_moods


def _days_ago(clock, days):
    return (clock.now - timedelta(days=days)).isoformat()


def _user(user_id):
    return db.session.get(User, user_id)


def test_log_mood_returns_scored_entry(portal, make_student):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "good", notes="Slept well")

    assert entry["mood"] == "good"
    assert entry["moodScore"] == 4
    assert entry["needsSupport"] is False
    assert entry["notes"] == "Slept well"
    assert _user(user_id).mood_log_count == 1


def test_second_log_same_day_conflicts(portal, make_student, clock):
    user_id = make_student()
    portal.mood.log_mood(user_id, "good")
    clock.advance(hours=3)

    with pytest.raises(ConflictError):
        portal.mood.log_mood(user_id, "okay")

    assert portal.store.count_mood_entries(user_id=user_id) == 1
    assert _user(user_id).mood_log_count == 1


def test_same_day_is_per_user(portal, make_student):
    first, second = make_student(), make_student()
    portal.mood.log_mood(first, "good")
    portal.mood.log_mood(second, "good")

    assert portal.store.count_mood_entries() == 2


@pytest.mark.parametrize("mood,notes", [
    ("happy", None),
    (None, None),
    ("good", "x" * 501),
    ("good", 42),
])
def test_log_mood_rejects_bad_input(portal, make_student, mood, notes):
    user_id = make_student()
    with pytest.raises(ValidationError):
        portal.mood.log_mood(user_id, mood, notes=notes)
    assert portal.store.count_mood_entries(user_id=user_id) == 0


def test_notes_at_limit_are_accepted(portal, make_student):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "okay", notes="x" * 500)
    assert len(entry["notes"]) == 500


def test_struggling_mood_is_flagged(portal, make_student, caplog):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "struggling", notes="private words")

    assert entry["needsSupport"] is True
    assert "may need support" in caplog.text
    assert "private words" not in caplog.text


def test_stats_with_no_entries(portal, make_student):
    stats = portal.mood.compute_stats(make_student())
    assert stats == {
        "total": 0,
        "averageScore": 0,
        "moodDistribution": {},
        "needsSupportCount": 0,
        "recentTrend": "stable",
    }


def test_stats_detect_decline_over_two_weeks(portal, make_student, clock):
    user_id = make_student()
    moods = ["excellent"] * 7 + ["struggling"] * 7
    for offset, mood in enumerate(moods):
        portal.mood.log_mood(user_id, mood, date=_days_ago(clock, 13 - offset))

    stats = portal.mood.compute_stats(user_id, 30)

    assert stats["total"] == 14
    assert stats["averageScore"] == 3
    assert stats["moodDistribution"] == {"excellent": 7, "struggling": 7}
    assert stats["needsSupportCount"] == 7
    assert stats["recentTrend"] == "declining"


def test_stats_window_excludes_old_entries(portal, make_student, clock):
    user_id = make_student()
    portal.mood.log_mood(user_id, "good", date=_days_ago(clock, 40))
    portal.mood.log_mood(user_id, "okay", date=_days_ago(clock, 2))

    assert portal.mood.compute_stats(user_id, 30)["total"] == 1
    assert portal.mood.compute_stats(user_id, 60)["total"] == 2


def test_stats_window_must_be_positive(portal, make_student):
    with pytest.raises(ValidationError):
        portal.mood.compute_stats(make_student(), 0)


def test_trend_needs_two_full_weeks():
    assert mood_trend([5] * 7 + [1] * 6) == "stable"
    assert mood_trend([1] * 7 + [5] * 7) == "improving"
    assert mood_trend([5] * 7 + [1] * 7) == "declining"
    assert mood_trend([3] * 14) == "stable"
    # Only the latest 14 scores count
    assert mood_trend([1] * 10 + [3] * 14) == "stable"


def test_trend_threshold_is_exclusive():
    # A difference of exactly half a point is still stable
    assert mood_trend([3] * 7 + [3, 3, 3, 4, 4, 4, 3.5]) == "stable"


def test_summarize_respects_support_moods():
    stats = summarize_moods(["okay", "difficult"], needs_support_moods=("okay",))
    assert stats["needsSupportCount"] == 1
    assert stats["averageScore"] == 2.5


def test_update_notes(portal, make_student, clock):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "okay")
    clock.advance(minutes=5)

    updated = portal.mood.update_notes(entry["id"], user_id, "Feeling better now")

    assert updated["notes"] == "Feeling better now"
    assert updated["updatedAt"] == clock.now.isoformat()


def test_update_notes_of_other_user_is_not_found(portal, make_student):
    owner, other = make_student(), make_student()
    entry = portal.mood.log_mood(owner, "okay")

    with pytest.raises(NotFoundError):
        portal.mood.update_notes(entry["id"], other, "hijack")


def test_delete_entry_frees_the_day(portal, make_student):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "okay")

    portal.mood.delete_entry(entry["id"], user_id)

    assert _user(user_id).mood_log_count == 0
    portal.mood.log_mood(user_id, "good")
    assert portal.store.count_mood_entries(user_id=user_id) == 1


def test_delete_missing_entry(portal, make_student):
    with pytest.raises(NotFoundError):
        portal.mood.delete_entry(999, make_student())


def test_history_is_newest_first_and_paged(portal, make_student, clock):
    user_id = make_student()
    for days, mood in ((3, "okay"), (2, "good"), (1, "excellent")):
        portal.mood.log_mood(user_id, mood, date=_days_ago(clock, days))

    result = portal.mood.history(user_id, days=30, page=1, limit=2)

    assert [log["mood"] for log in result["moodLogs"]] == ["excellent", "good"]
    assert result["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}


def test_parse_log_date_variants():
    now = datetime(2024, 3, 11, 9, 0)
    assert parse_log_date(None, now) == now
    assert parse_log_date("", now) == now
    assert parse_log_date("2024-03-10T08:30:00", now) == datetime(2024, 3, 10, 8, 30)
    assert parse_log_date(date(2024, 3, 9), now) == datetime(2024, 3, 9)
    assert parse_log_date("2024-03-10T08:30:00Z", now).tzinfo is None
    with pytest.raises(ValidationError):
        parse_log_date("yesterday", now)
    with pytest.raises(ValidationError):
        parse_log_date(12345, now)


def test_delete_rolls_back_counter_when_delete_fails(portal, make_student, monkeypatch):
    user_id = make_student()
    entry = portal.mood.log_mood(user_id, "okay")

    def broken_delete(record):
        raise RuntimeError("delete failed")

    monkeypatch.setattr(portal.store, "delete", broken_delete)
    with pytest.raises(RuntimeError):
        portal.mood.delete_entry(entry["id"], user_id)
    db.session.rollback()

    assert _user(user_id).mood_log_count == 1
    assert portal.store.count_mood_entries(user_id=user_id) == 1
