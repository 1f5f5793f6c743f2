import logging
from collections import Counter, OrderedDict
from datetime import datetime, timedelta

from errors import NotFoundError, ValidationError
from models import DEFAULT_NEEDS_SUPPORT_MOODS, MOOD_SCORES, SESSION_STATUSES
from store import pagination

logger = logging.getLogger(__name__)

SUPPORT_LOOKBACK_DAYS = 7


class AdminService:
    def __init__(self, store, clock=datetime.now, needs_support_moods=DEFAULT_NEEDS_SUPPORT_MOODS):
        self.store = store
        self.clock = clock
        self.needs_support_moods = tuple(needs_support_moods)

    def _support_entries(self, now):
        since = now - timedelta(days=SUPPORT_LOOKBACK_DAYS)
        return self.store.find_mood_entries(since=since, until=now, moods=self.needs_support_moods)

    # -----------------------------
    # Dashboard
    # -----------------------------
    def dashboard_stats(self):
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # `until` is inclusive
        end_of_day = start_of_day + timedelta(days=1, microseconds=-1)
        struggling = {entry.user_id for entry in self._support_entries(now)}

        recent_users = self.store.find_users(role="student", limit=5)
        recent_sessions = self.store.find_sessions(limit=5)
        return {
            "stats": {
                "totalUsers": self.store.count_users(role="student"),
                "activeSessions": self.store.count_sessions(status="active"),
                "totalSessions": self.store.count_sessions(),
                "todayMoodLogs": self.store.count_mood_entries(since=start_of_day, until=end_of_day),
                "strugglingUsers": len(struggling),
            },
            "recentActivity": {
                "users": [
                    {
                        "id": user.id,
                        "email": user.email,
                        "firstName": user.first_name,
                        "lastName": user.last_name,
                        "createdAt": user.created_at.isoformat() if user.created_at else None,
                    }
                    for user in recent_users
                ],
                "sessions": [
                    {
                        "id": session.id,
                        "userId": session.user_id,
                        "category": session.category,
                        "status": session.status,
                        "createdAt": session.created_at.isoformat(),
                    }
                    for session in recent_sessions
                ],
            },
        }

    # -----------------------------
    # Users
    # -----------------------------
    def list_users(self, role=None, search=None, page=1, limit=20):
        if role == "all":
            role = None
        users = self.store.find_users(role=role, search=search, offset=(page - 1) * limit, limit=limit)
        total = self.store.count_users(role=role, search=search)
        items = []
        for user in users:
            item = user.public_profile()
            item["stats"] = {
                "counselingSessions": self.store.count_sessions(user_id=user.id, status="completed"),
                "moodLogs": self.store.count_mood_entries(user_id=user.id),
            }
            items.append(item)
        return {"users": items, "pagination": pagination(page, limit, total)}

    def _get_user(self, user_id):
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def deactivate_user(self, user_id, admin_id):
        user = self._get_user(user_id)
        user.is_active = False
        user.deactivated_at = self.clock()
        user.deactivated_by = admin_id
        self.store.commit()
        logger.info("User %s deactivated by admin %s", user_id, admin_id)
        return user.public_profile()

    def reactivate_user(self, user_id):
        user = self._get_user(user_id)
        user.is_active = True
        user.deactivated_at = None
        user.deactivated_by = None
        self.store.commit()
        logger.info("User %s reactivated", user_id)
        return user.public_profile()

    # -----------------------------
    # Sessions
    # -----------------------------
    def list_sessions(self, status=None, category=None, page=1, limit=20):
        if status and status not in SESSION_STATUSES:
            raise ValidationError("Invalid session status")
        now = self.clock()
        sessions = self.store.find_sessions(
            status=status, category=category, offset=(page - 1) * limit, limit=limit
        )
        total = self.store.count_sessions(status=status, category=category)

        owners = {}
        items = []
        for session in sessions:
            if session.user_id not in owners:
                owners[session.user_id] = self.store.get_user(session.user_id)
            owner = owners[session.user_id]
            item = session.to_dict(now)
            item.pop("messages")
            item["messageCount"] = len(session.messages)
            item["userEmail"] = owner.email if owner else "Unknown"
            item["userName"] = owner.full_name if owner else ""
            items.append(item)
        return {"sessions": items, "pagination": pagination(page, limit, total)}

    # -----------------------------
    # Mood analytics
    # -----------------------------
    def mood_analytics(self, days=30):
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise ValidationError("days must be a whole number")
        if days < 1:
            raise ValidationError("days must be at least 1")

        now = self.clock()
        entries = self.store.find_mood_entries(since=now - timedelta(days=days), until=now)

        distribution = [
            {"mood": mood, "count": count}
            for mood, count in Counter(entry.mood for entry in entries).most_common()
        ]

        by_day = OrderedDict()
        for entry in entries:
            by_day.setdefault(entry.entry_date, []).append(MOOD_SCORES.get(entry.mood, 0))
        daily = [
            {
                "date": day.isoformat(),
                "count": len(scores),
                "averageScore": round(sum(scores) / len(scores), 2),
            }
            for day, scores in sorted(by_day.items())
        ]

        # Entries come back oldest first, so the last one per user is the latest
        needing = OrderedDict()
        for entry in self._support_entries(now):
            row = needing.setdefault(entry.user_id, {"userId": entry.user_id, "count": 0})
            row["count"] += 1
            row["latestMood"] = entry.mood
            row["latestDate"] = entry.date.isoformat()
        users_needing_support = sorted(needing.values(), key=lambda row: row["count"], reverse=True)

        return {
            "moodDistribution": distribution,
            "dailyTrends": daily,
            "usersNeedingSupport": users_needing_support,
            "period": f"{days} days",
        }
