"""Persistence for the portal.

Services talk to :class:`PortalStore`; :class:`SqlAlchemyStore` is the one
implementation, backed by Flask-SQLAlchemy. Uniqueness rules (one mood entry
per user and day, one open counseling session per user, one bookmark per
resource) live in the schema, so an insert that breaks one is rejected
atomically and surfaces here as :class:`ConflictError`.
"""
import logging
from abc import ABC, abstractmethod

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from errors import ConflictError
from models import Bookmark, CounselingSession, MoodEntry, OPEN_STATUSES, User, db

logger = logging.getLogger(__name__)

USER_COUNTERS = ("completed_sessions", "mood_log_count")


class PortalStore(ABC):
    # -----------------------------
    # Users
    # -----------------------------
    @abstractmethod
    def get_user(self, user_id): ...

    @abstractmethod
    def find_user_by_email(self, email): ...

    @abstractmethod
    def add_user(self, user): ...

    @abstractmethod
    def find_users(self, role=None, search=None, active=True, offset=0, limit=None): ...

    @abstractmethod
    def count_users(self, role=None, search=None, active=True): ...

    @abstractmethod
    def increment_user_counter(self, user_id, field, delta=1, commit=True): ...

    # -----------------------------
    # Mood entries
    # -----------------------------
    @abstractmethod
    def add_mood_entry(self, entry): ...

    @abstractmethod
    def get_mood_entry(self, entry_id, user_id=None): ...

    @abstractmethod
    def find_mood_entries(self, user_id=None, since=None, until=None, moods=None,
                          newest_first=False, offset=0, limit=None): ...

    @abstractmethod
    def count_mood_entries(self, user_id=None, since=None, until=None, moods=None): ...

    # -----------------------------
    # Counseling sessions
    # -----------------------------
    @abstractmethod
    def add_session(self, session): ...

    @abstractmethod
    def get_session(self, session_id, user_id=None, statuses=None): ...

    @abstractmethod
    def claim_session(self, session_id, expected_status, values): ...

    @abstractmethod
    def find_open_session(self, user_id): ...

    @abstractmethod
    def find_sessions(self, user_id=None, status=None, category=None, offset=0, limit=None): ...

    @abstractmethod
    def count_sessions(self, user_id=None, status=None, category=None): ...

    # -----------------------------
    # Bookmarks
    # -----------------------------
    @abstractmethod
    def get_bookmark(self, user_id, resource_id): ...

    @abstractmethod
    def add_bookmark(self, bookmark): ...

    @abstractmethod
    def bookmarked_ids(self, user_id): ...

    # -----------------------------
    # Generic
    # -----------------------------
    @abstractmethod
    def delete(self, record): ...

    @abstractmethod
    def commit(self): ...

    @abstractmethod
    def rollback(self): ...


class SqlAlchemyStore(PortalStore):
    def __init__(self, database=db):
        self.db = database

    @property
    def session(self):
        return self.db.session

    def _insert(self, record, conflict_message):
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("Insert rejected by unique constraint: %s", exc.orig)
            raise ConflictError(conflict_message) from exc
        return record

    # -----------------------------
    # Users
    # -----------------------------
    def get_user(self, user_id):
        return self.session.get(User, user_id)

    def find_user_by_email(self, email):
        return User.query.filter_by(email=(email or "").strip().lower()).first()

    def add_user(self, user):
        return self._insert(user, "User with this email already exists")

    def _user_query(self, role=None, search=None, active=True):
        query = User.query
        if active is not None:
            query = query.filter(User.is_active.is_(active))
        if role:
            query = query.filter(User.role == role)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                User.email.ilike(pattern),
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
            ))
        return query

    def find_users(self, role=None, search=None, active=True, offset=0, limit=None):
        query = self._user_query(role, search, active).order_by(
            User.created_at.desc(), User.id.desc()
        )
        return _page(query, offset, limit).all()

    def count_users(self, role=None, search=None, active=True):
        return self._user_query(role, search, active).count()

    def increment_user_counter(self, user_id, field, delta=1, commit=True):
        if field not in USER_COUNTERS:
            raise ValueError(f"Unknown user counter: {field}")
        column = getattr(User, field)
        # Single UPDATE statement; counters never drop below zero
        updated = User.query.filter(User.id == user_id).update(
            {column: db.case((column + delta < 0, 0), else_=column + delta)},
            synchronize_session="fetch",
        )
        if commit:
            self.session.commit()
        return updated

    # -----------------------------
    # Mood entries
    # -----------------------------
    def add_mood_entry(self, entry):
        return self._insert(entry, "Mood already logged for this date")

    def get_mood_entry(self, entry_id, user_id=None):
        query = MoodEntry.query.filter(MoodEntry.id == entry_id)
        if user_id is not None:
            query = query.filter(MoodEntry.user_id == user_id)
        return query.first()

    def _mood_query(self, user_id=None, since=None, until=None, moods=None):
        query = MoodEntry.query
        if user_id is not None:
            query = query.filter(MoodEntry.user_id == user_id)
        if since is not None:
            query = query.filter(MoodEntry.date >= since)
        if until is not None:
            query = query.filter(MoodEntry.date <= until)
        if moods:
            query = query.filter(MoodEntry.mood.in_(list(moods)))
        return query

    def find_mood_entries(self, user_id=None, since=None, until=None, moods=None,
                          newest_first=False, offset=0, limit=None):
        query = self._mood_query(user_id, since, until, moods)
        if newest_first:
            query = query.order_by(MoodEntry.date.desc(), MoodEntry.id.desc())
        else:
            query = query.order_by(MoodEntry.date.asc(), MoodEntry.id.asc())
        return _page(query, offset, limit).all()

    def count_mood_entries(self, user_id=None, since=None, until=None, moods=None):
        return self._mood_query(user_id, since, until, moods).count()

    # -----------------------------
    # Counseling sessions
    # -----------------------------
    def add_session(self, session):
        return self._insert(
            session, "You already have an active or pending counseling session"
        )

    def get_session(self, session_id, user_id=None, statuses=None):
        query = CounselingSession.query.filter(CounselingSession.id == session_id)
        if user_id is not None:
            query = query.filter(CounselingSession.user_id == user_id)
        if statuses:
            query = query.filter(CounselingSession.status.in_(list(statuses)))
        return query.first()

    def claim_session(self, session_id, expected_status, values):
        """Apply `values` only if the session is still in `expected_status`.

        One conditional UPDATE, left uncommitted so the caller can stage more
        changes in the same transaction. Returns False when the status moved on.
        """
        updated = CounselingSession.query.filter(
            CounselingSession.id == session_id,
            CounselingSession.status == expected_status,
        ).update(values, synchronize_session="fetch")
        return updated == 1

    def find_open_session(self, user_id):
        return CounselingSession.query.filter(
            CounselingSession.user_id == user_id,
            CounselingSession.status.in_(OPEN_STATUSES),
        ).first()

    def _session_query(self, user_id=None, status=None, category=None):
        query = CounselingSession.query
        if user_id is not None:
            query = query.filter(CounselingSession.user_id == user_id)
        if status:
            query = query.filter(CounselingSession.status == status)
        if category:
            query = query.filter(CounselingSession.category == category)
        return query

    def find_sessions(self, user_id=None, status=None, category=None, offset=0, limit=None):
        query = self._session_query(user_id, status, category).order_by(
            CounselingSession.created_at.desc(), CounselingSession.id.desc()
        )
        return _page(query, offset, limit).all()

    def count_sessions(self, user_id=None, status=None, category=None):
        return self._session_query(user_id, status, category).count()

    # -----------------------------
    # Bookmarks
    # -----------------------------
    def get_bookmark(self, user_id, resource_id):
        return Bookmark.query.filter_by(user_id=user_id, resource_id=resource_id).first()

    def add_bookmark(self, bookmark):
        return self._insert(bookmark, "Resource already bookmarked")

    def bookmarked_ids(self, user_id):
        rows = (
            Bookmark.query.filter_by(user_id=user_id)
            .order_by(Bookmark.created_at.asc(), Bookmark.id.asc())
            .all()
        )
        return [row.resource_id for row in rows]

    # -----------------------------
    # Generic
    # -----------------------------
    def delete(self, record):
        self.session.delete(record)
        self.session.commit()

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()


def _page(query, offset=0, limit=None):
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query


def pagination(page, limit, total):
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": -(-total // limit) if limit else 0,
    }
