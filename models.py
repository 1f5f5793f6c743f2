from datetime import datetime, timedelta

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy

from errors import StateError

db = SQLAlchemy()

ROLES = ("student", "admin")

MOOD_SCORES = {
    "excellent": 5,
    "good": 4,
    "okay": 3,
    "difficult": 2,
    "struggling": 1,
}
MOODS = tuple(MOOD_SCORES)
MOOD_EMOJIS = {
    "excellent": "😊",
    "good": "🙂",
    "okay": "😐",
    "difficult": "😟",
    "struggling": "😢",
}
DEFAULT_NEEDS_SUPPORT_MOODS = ("difficult", "struggling")
MAX_NOTES_LENGTH = 500

SESSION_CATEGORIES = (
    "Academic Stress",
    "Social Anxiety",
    "Depression & Mood",
    "Relationship Issues",
    "Identity & Self-Esteem",
    "Life Transitions",
)
URGENCY_LEVELS = ("low", "medium", "high")
SESSION_STATUSES = ("pending", "active", "completed", "cancelled")
OPEN_STATUSES = ("pending", "active")
MESSAGE_SENDERS = ("user", "counselor")

# Terminal states map to an empty set: a closed session never reopens.
ALLOWED_TRANSITIONS = {
    "pending": {"active", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="student")
    first_name = db.Column(db.String(64), nullable=False, default="")
    last_name = db.Column(db.String(64), nullable=False, default="")
    student_id = db.Column(db.String(32), nullable=True)
    year_level = db.Column(db.Integer, nullable=True)
    course = db.Column(db.String(120), nullable=True)
    emergency_contact = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.now)
    last_login = db.Column(db.DateTime, nullable=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    deactivated_by = db.Column(db.Integer, nullable=True)

    # Lifetime counters kept on the profile
    completed_sessions = db.Column(db.Integer, nullable=False, default=0)
    mood_log_count = db.Column(db.Integer, nullable=False, default=0)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def public_profile(self):
        profile = {}
        if self.role == "student":
            profile = {
                "yearLevel": self.year_level,
                "course": self.course,
                "emergencyContact": self.emergency_contact,
                "counselingSessions": self.completed_sessions or 0,
                "moodLogs": self.mood_log_count or 0,
            }
        return {
            "id": self.id,
            "email": self.email,
            "type": self.role,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "studentId": self.student_id,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "lastLogin": _iso(self.last_login),
            "profile": profile,
        }

    def __repr__(self):
        return f"<User id={self.id} {self.email} ({self.role})>"


class MoodEntry(db.Model):
    __tablename__ = "mood_entries"
    __table_args__ = (
        db.UniqueConstraint("user_id", "entry_date", name="uq_mood_entry_user_day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    mood = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.Text, nullable=False, default="")
    # `date` is the moment the mood refers to, `entry_date` its local calendar day
    date = db.Column(db.DateTime, nullable=False, index=True)
    entry_date = db.Column(db.Date, nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.now)
    updated_at = db.Column(db.DateTime, nullable=True)

    @property
    def score(self):
        return MOOD_SCORES.get(self.mood, 0)

    @property
    def emoji(self):
        return MOOD_EMOJIS.get(self.mood, "😐")

    def needs_support(self, moods=DEFAULT_NEEDS_SUPPORT_MOODS):
        return self.mood in moods

    def to_dict(self, needs_support_moods=DEFAULT_NEEDS_SUPPORT_MOODS):
        return {
            "id": self.id,
            "userId": self.user_id,
            "mood": self.mood,
            "notes": self.notes or "",
            "date": _iso(self.date),
            "timestamp": _iso(self.timestamp),
            "updatedAt": _iso(self.updated_at),
            "moodScore": self.score,
            "moodEmoji": self.emoji,
            "needsSupport": self.needs_support(needs_support_moods),
        }

    def __repr__(self):
        return f"<MoodEntry user={self.user_id} {self.entry_date} {self.mood}>"


class CounselingSession(db.Model):
    __tablename__ = "counseling_sessions"
    # One pending-or-active session per user, checked by the database on insert
    __table_args__ = (
        db.Index(
            "uq_open_session_per_user",
            "user_id",
            unique=True,
            sqlite_where=db.text("status IN ('pending', 'active')"),
            postgresql_where=db.text("status IN ('pending', 'active')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    category = db.Column(db.String(64), nullable=False)
    urgency = db.Column(db.String(16), nullable=False, default="medium")
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    counselor_id = db.Column(db.String(64), nullable=True)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    rating = db.Column(db.Integer, nullable=True)
    feedback = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    messages = db.relationship(
        "SessionMessage",
        order_by="SessionMessage.id",
        cascade="all, delete-orphan",
        lazy=True,
    )

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    def _transition(self, target, now):
        if target not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise StateError(f"Cannot move a {self.status} session to {target}")
        self.status = target
        self.updated_at = now

    def _closing_time(self, now):
        # Never end before the last message
        if self.messages and self.messages[-1].timestamp > now:
            return self.messages[-1].timestamp
        return now

    def complete(self, now, rating=None, feedback=None):
        self._transition("completed", now)
        self.end_time = self._closing_time(now)
        if rating is not None:
            self.rating = rating
            self.feedback = feedback or ""

    def cancel(self, now):
        self._transition("cancelled", now)
        self.end_time = self._closing_time(now)

    def add_message(self, sender, text, now):
        # Timestamps stay strictly increasing even if the clock stalls
        if self.messages and now <= self.messages[-1].timestamp:
            now = self.messages[-1].timestamp + timedelta(microseconds=1)
        message = SessionMessage(sender=sender, message=text, timestamp=now)
        self.messages.append(message)
        self.updated_at = now
        return message

    def duration_minutes(self, now=None):
        """Whole minutes from start to end (or `now` while still running)."""
        if not self.start_time:
            return 0
        end = self.end_time or now or datetime.now()
        seconds = (end - self.start_time).total_seconds()
        return max(int(seconds / 60 + 0.5), 0)

    def to_dict(self, now=None):
        return {
            "id": self.id,
            "userId": self.user_id,
            "category": self.category,
            "urgency": self.urgency,
            "status": self.status,
            "counselorId": self.counselor_id,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "messages": [m.to_dict() for m in self.messages],
            "rating": self.rating,
            "feedback": self.feedback or "",
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "duration": self.duration_minutes(now),
        }

    def __repr__(self):
        return f"<CounselingSession id={self.id} user={self.user_id} {self.status}>"


class SessionMessage(db.Model):
    __tablename__ = "session_messages"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("counseling_sessions.id"), nullable=False, index=True
    )
    sender = db.Column(db.String(16), nullable=False)
    message = db.Column(db.Text, nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.now)

    def to_dict(self):
        return {
            "sender": self.sender,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }


class Bookmark(db.Model):
    __tablename__ = "bookmarks"
    __table_args__ = (
        db.UniqueConstraint("user_id", "resource_id", name="uq_bookmark_user_resource"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    resource_id = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
