import logging
from collections import Counter
from datetime import date, datetime, time, timedelta

from errors import NotFoundError, ValidationError
from models import (
    DEFAULT_NEEDS_SUPPORT_MOODS,
    MAX_NOTES_LENGTH,
    MOOD_SCORES,
    MOODS,
    MoodEntry,
)
from store import pagination

logger = logging.getLogger(__name__)

TREND_WINDOW = 7
TREND_THRESHOLD = 0.5


# -----------------------------
# Analytics (pure)
# -----------------------------
def _mean(values):
    return sum(values) / len(values) if values else 0


def mood_trend(scores):
    """Compare the mean of the last 7 scores with the mean of the 7 before.

    Needs at least 14 scores; anything shorter is "stable".
    """
    if len(scores) < 2 * TREND_WINDOW:
        return "stable"
    recent = _mean(scores[-TREND_WINDOW:])
    previous = _mean(scores[-2 * TREND_WINDOW:-TREND_WINDOW])
    if recent > previous + TREND_THRESHOLD:
        return "improving"
    if recent < previous - TREND_THRESHOLD:
        return "declining"
    return "stable"


def summarize_moods(moods, needs_support_moods=DEFAULT_NEEDS_SUPPORT_MOODS):
    """Stats for mood values ordered oldest to newest."""
    scores = [MOOD_SCORES.get(mood, 0) for mood in moods]
    return {
        "total": len(scores),
        "averageScore": _mean(scores),
        "moodDistribution": dict(Counter(moods)),
        "needsSupportCount": sum(1 for mood in moods if mood in needs_support_moods),
        "recentTrend": mood_trend(scores),
    }


def parse_log_date(value, now):
    """Turn the optional `date` field of a mood log into a local datetime."""
    if value is None or value == "":
        return now
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time())
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("Invalid mood data", ["Date must be an ISO-8601 date"])
    else:
        raise ValidationError("Invalid mood data", ["Date must be an ISO-8601 date"])

    if parsed.tzinfo is not None:
        # Day boundaries are local midnight
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _window(days):
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ValidationError("days must be a whole number")
    if days < 1:
        raise ValidationError("days must be at least 1")
    return days


# -----------------------------
# Service
# -----------------------------
class MoodService:
    def __init__(self, store, clock=datetime.now, needs_support_moods=DEFAULT_NEEDS_SUPPORT_MOODS):
        self.store = store
        self.clock = clock
        self.needs_support_moods = tuple(needs_support_moods)

    def _validate_notes(self, notes, errors):
        if notes is None:
            return ""
        if not isinstance(notes, str):
            errors.append("Notes must be text")
            return ""
        if len(notes) > MAX_NOTES_LENGTH:
            errors.append(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")
        return notes

    def log_mood(self, user_id, mood, notes=None, date=None):
        errors = []
        if not mood:
            errors.append("Mood is required")
        elif mood not in MOODS:
            errors.append("Invalid mood value")
        notes = self._validate_notes(notes, errors)
        if errors:
            raise ValidationError("Invalid mood data", errors)

        now = self.clock()
        logged_for = parse_log_date(date, now)
        entry = MoodEntry(
            user_id=user_id,
            mood=mood,
            notes=notes,
            date=logged_for,
            entry_date=logged_for.date(),
            timestamp=now,
        )
        # Counter and entry commit together; the (user, day) unique constraint
        # rejects a second entry and rolls both back
        self.store.increment_user_counter(user_id, "mood_log_count", 1, commit=False)
        self.store.add_mood_entry(entry)

        if entry.needs_support(self.needs_support_moods):
            logger.warning("User %s logged a '%s' mood and may need support", user_id, mood)
        return entry.to_dict(self.needs_support_moods)

    def update_notes(self, entry_id, user_id, notes):
        errors = []
        notes = self._validate_notes(notes, errors)
        if errors:
            raise ValidationError("Invalid mood data", errors)

        entry = self.store.get_mood_entry(entry_id, user_id=user_id)
        if entry is None:
            raise NotFoundError("Mood log not found")
        entry.notes = notes
        entry.updated_at = self.clock()
        self.store.commit()
        return entry.to_dict(self.needs_support_moods)

    def delete_entry(self, entry_id, user_id):
        entry = self.store.get_mood_entry(entry_id, user_id=user_id)
        if entry is None:
            raise NotFoundError("Mood log not found")
        self.store.increment_user_counter(user_id, "mood_log_count", -1, commit=False)
        self.store.delete(entry)

    def history(self, user_id, days=30, page=1, limit=50):
        days = _window(days)
        now = self.clock()
        since = now - timedelta(days=days)
        entries = self.store.find_mood_entries(
            user_id,
            since=since,
            until=now,
            newest_first=True,
            offset=(page - 1) * limit,
            limit=limit,
        )
        total = self.store.count_mood_entries(user_id, since=since, until=now)
        return {
            "moodLogs": [entry.to_dict(self.needs_support_moods) for entry in entries],
            "pagination": pagination(page, limit, total),
        }

    def entries_in_window(self, user_id, window_days=30):
        now = self.clock()
        since = now - timedelta(days=_window(window_days))
        return self.store.find_mood_entries(user_id, since=since, until=now)

    def compute_stats(self, user_id, window_days=30):
        entries = self.entries_in_window(user_id, window_days)
        return summarize_moods([entry.mood for entry in entries], self.needs_support_moods)
