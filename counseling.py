import logging
import random
from datetime import datetime
from functools import partial

from crisis import CrisisDetector, support_prompt
from errors import NotFoundError, StateError, ValidationError
from models import (
    MESSAGE_SENDERS,
    SESSION_CATEGORIES,
    SESSION_STATUSES,
    URGENCY_LEVELS,
    CounselingSession,
)
from store import pagination

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_FEEDBACK_LENGTH = 1000

COUNSELOR_RESPONSES = (
    "I understand how you're feeling. That sounds really challenging.",
    "Can you tell me more about what's been on your mind?",
    "It's completely normal to feel that way. You're not alone.",
    "What do you think might help you feel better about this situation?",
    "Have you considered talking to someone close to you about this?",
    "Let's explore some strategies that might help you cope with these feelings.",
    "Thank you for sharing that with me. It takes courage to open up.",
    "How has this been affecting your daily life?",
    "What are some things that usually help you feel better?",
    "Would you like to talk about some coping strategies?",
)

CONCERN_RESPONSE = (
    "I'm really concerned about what you're sharing. It sounds like you're going "
    "through a very difficult time. Please know that you're not alone, and there "
    "are people who want to help. Would it be okay if we talked about connecting "
    "you with professional support right now?"
)

# (trigger words, replies), checked in order
TOPIC_RESPONSES = (
    (
        ("exam", "study", "grade", "academic"),
        (
            "Academic pressure can be really overwhelming. What specific aspect of "
            "your studies is causing you the most stress?",
            "It sounds like you're dealing with a lot of academic pressure. Have you "
            "tried breaking down your tasks into smaller, manageable goals?",
            "Academic stress is very common among students. Let's talk about some "
            "strategies that might help you manage it better.",
        ),
    ),
    (
        ("social", "friend", "people", "anxiety"),
        (
            "Social situations can feel really challenging. What specific social "
            "situations make you feel most anxious?",
            "It's understandable to feel anxious around people sometimes. Can you tell "
            "me more about when these feelings are strongest?",
            "Many students struggle with social anxiety. You're definitely not alone "
            "in feeling this way.",
        ),
    ),
)
CONCERN_WORDS = ("hurt", "kill", "suicide", "end it all")


def pick_counselor_reply(message, rng=random):
    """Choose a simulated peer-counselor reply for a student's message."""
    lowered = (message or "").lower()
    if any(word in lowered for word in CONCERN_WORDS):
        return CONCERN_RESPONSE
    for triggers, replies in TOPIC_RESPONSES:
        if any(word in lowered for word in triggers):
            return rng.choice(replies)
    return rng.choice(COUNSELOR_RESPONSES)


class CounselingService:
    """Lifecycle of peer-counseling sessions.

    pending -> active -> completed, with cancellation allowed from pending or
    active. Matching and counselor replies are deferred tasks; each one checks
    the session is still in the status it was queued for before touching it.
    """

    def __init__(
        self,
        store,
        queue,
        clock=datetime.now,
        rng=None,
        detector=None,
        match_delay_ms=2000,
        reply_delay_ms=(1000, 3000),
        crisis_prompt_delay_ms=500,
        counselor_id="peer-counselor-001",
    ):
        self.store = store
        self.queue = queue
        self.clock = clock
        self.rng = rng or random.Random()
        self.detector = detector or CrisisDetector()
        self.match_delay_ms = match_delay_ms
        self.reply_delay_ms = reply_delay_ms
        self.crisis_prompt_delay_ms = crisis_prompt_delay_ms
        self.counselor_id = counselor_id

    @classmethod
    def from_config(cls, config, store, queue, clock=datetime.now):
        return cls(
            store,
            queue,
            clock=clock,
            detector=CrisisDetector(config["CRISIS_KEYWORDS"]),
            match_delay_ms=config["COUNSELOR_MATCH_DELAY_MS"],
            reply_delay_ms=(config["COUNSELOR_REPLY_MIN_MS"], config["COUNSELOR_REPLY_MAX_MS"]),
            crisis_prompt_delay_ms=config["CRISIS_PROMPT_DELAY_MS"],
            counselor_id=config["DEFAULT_COUNSELOR_ID"],
        )

    # -----------------------------
    # Requests & matching
    # -----------------------------
    def request_session(self, user_id, category, urgency="medium"):
        errors = []
        if category not in SESSION_CATEGORIES:
            errors.append("Invalid category")
        if urgency not in URGENCY_LEVELS:
            errors.append("Invalid urgency level")
        if errors:
            raise ValidationError("Validation failed", errors)

        now = self.clock()
        session = CounselingSession(
            user_id=user_id,
            category=category,
            urgency=urgency,
            status="pending",
            feedback="",
            created_at=now,
            updated_at=now,
        )
        # Check and insert happen in one statement via the partial unique index
        self.store.add_session(session)

        self.queue.schedule(
            self.match_delay_ms,
            session.id,
            "pending",
            self._complete_match,
            name="match",
        )
        logger.info("Session %s requested by user %s (%s, %s)", session.id, user_id, category, urgency)
        return session.to_dict(now)

    def _drop_stale(self, task):
        self.store.rollback()
        logger.info(
            "Dropping stale %s task for session %s (no longer %s)",
            task.name,
            task.session_id,
            task.expected_status,
        )
        return False

    def _complete_match(self, task):
        now = self.clock()
        # Status check and write are one UPDATE
        matched = self.store.claim_session(
            task.session_id,
            task.expected_status,
            {"status": "active", "counselor_id": self.counselor_id, "start_time": now, "updated_at": now},
        )
        if not matched:
            return self._drop_stale(task)
        self.store.commit()
        logger.info("Session %s matched with %s", task.session_id, self.counselor_id)
        return True

    # -----------------------------
    # Chat
    # -----------------------------
    def _reply_delay(self):
        low, high = self.reply_delay_ms
        return low + self.rng.random() * (high - low)

    def send_message(self, session_id, user_id, sender, message):
        errors = []
        if sender not in MESSAGE_SENDERS:
            errors.append("Invalid sender")
        if not isinstance(message, str) or not message.strip():
            errors.append("Message is required")
        elif len(message) > MAX_MESSAGE_LENGTH:
            errors.append(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
        if errors:
            raise ValidationError("Validation failed", errors)

        session = self.store.get_session(session_id, user_id=user_id, statuses=("active",))
        if session is None:
            raise NotFoundError("Active session not found")

        sent = session.add_message(sender, message, self.clock())
        self.store.commit()

        crisis = False
        if sender == "user":
            reply = pick_counselor_reply(message, self.rng)
            self.queue.schedule(
                self._reply_delay(),
                session.id,
                "active",
                partial(self._deliver_reply, reply),
                name="reply",
            )
            crisis = self.detector.scan(message)
            if crisis:
                # Never log the message body
                logger.warning("Crisis phrase detected in session %s (user %s)", session.id, user_id)

        result = {"message": sent.to_dict(), "crisisDetected": crisis}
        if crisis:
            result["supportPrompt"] = support_prompt(self.crisis_prompt_delay_ms)
        return result

    def _deliver_reply(self, reply, task):
        now = self.clock()
        # Locks the row in the expected status until the reply is committed
        if not self.store.claim_session(task.session_id, task.expected_status, {"updated_at": now}):
            return self._drop_stale(task)
        session = self.store.get_session(task.session_id)
        session.add_message("counselor", reply, now)
        self.store.commit()
        return True

    # -----------------------------
    # Closing
    # -----------------------------
    def end_session(self, session_id, user_id, rating=None, feedback=None):
        errors = []
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, int):
                errors.append("Rating must be a whole number")
            elif not 1 <= rating <= 5:
                errors.append("Rating must be between 1 and 5")
        if feedback is not None and (not isinstance(feedback, str) or len(feedback) > MAX_FEEDBACK_LENGTH):
            errors.append(f"Feedback must be text of at most {MAX_FEEDBACK_LENGTH} characters")
        if errors:
            raise ValidationError("Validation failed", errors)

        session = self.store.get_session(session_id, user_id=user_id)
        if session is None:
            raise NotFoundError("Session not found")
        if session.status != "active":
            raise StateError(f"Active session not found: session is {session.status}, not active")

        now = self.clock()
        session.complete(now, rating, feedback)
        self.store.increment_user_counter(user_id, "completed_sessions", 1, commit=False)
        self.store.commit()
        self.queue.cancel_for(session.id)
        logger.info("Session %s completed after %d min", session.id, session.duration_minutes(now))
        return session.to_dict(now)

    def cancel_session(self, session_id, user_id):
        session = self.store.get_session(session_id, user_id=user_id)
        if session is None:
            raise NotFoundError("Session not found")
        if not session.is_open:
            raise StateError(f"Session is already {session.status}")

        now = self.clock()
        session.cancel(now)
        self.store.commit()
        self.queue.cancel_for(session.id)
        logger.info("Session %s cancelled by user %s", session.id, user_id)
        return session.to_dict(now)

    # -----------------------------
    # Queries
    # -----------------------------
    def current_session(self, user_id):
        session = self.store.find_open_session(user_id)
        return session.to_dict(self.clock()) if session else None

    def list_sessions(self, user_id, status=None, page=1, limit=10):
        if status and status not in SESSION_STATUSES:
            raise ValidationError("Invalid session status")
        now = self.clock()
        sessions = self.store.find_sessions(
            user_id=user_id, status=status, offset=(page - 1) * limit, limit=limit
        )
        total = self.store.count_sessions(user_id=user_id, status=status)
        return {
            "sessions": [session.to_dict(now) for session in sessions],
            "pagination": pagination(page, limit, total),
        }

    def duration(self, session_id, user_id):
        session = self.store.get_session(session_id, user_id=user_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session.duration_minutes(self.clock())
