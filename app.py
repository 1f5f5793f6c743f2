import atexit
import logging
from datetime import datetime
from functools import wraps
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_login import (
    LoginManager, login_user, login_required,
    logout_user, current_user
)
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash

from admin import AdminService
from config import Config
from counseling import CounselingService
from errors import AuthError, ForbiddenError, PortalError, ValidationError
from models import User, db
from mood import MoodService, summarize_moods
from report_generator import generate_mood_report_pdf
from resources import ResourceService
from scheduler import DeferredTaskQueue, TaskRunner
from store import SqlAlchemyStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("wellness-portal")

login_manager = LoginManager()
api = Blueprint("api", __name__, url_prefix="/api")

MIN_PASSWORD_LENGTH = 6
MAX_PAGE_SIZE = 100


# -----------------------------
# Services
# -----------------------------
class Portal:
    """Services shared by every request of one app."""

    def __init__(self, config, clock=datetime.now):
        self.clock = clock
        self.store = SqlAlchemyStore(db)
        self.queue = DeferredTaskQueue(clock)
        self.mood = MoodService(self.store, clock, config["NEEDS_SUPPORT_MOODS"])
        self.counseling = CounselingService.from_config(config, self.store, self.queue, clock)
        self.resources = ResourceService(self.store)
        self.admin = AdminService(self.store, clock, config["NEEDS_SUPPORT_MOODS"])
        self.runner = None


def portal() -> Portal:
    return current_app.extensions["portal"]


# -----------------------------
# Auth helpers
# -----------------------------
@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    raise AuthError("Access denied. Please log in.")


def role_required(role):
    def decorator(view):
        @wraps(view)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role != role:
                raise ForbiddenError(f"Access denied. {role.capitalize()} privileges required.")
            return view(*args, **kwargs)
        return wrapped
    return decorator


student_required = role_required("student")
admin_required = role_required("admin")


def ensure_default_admin(config):
    if User.query.filter_by(role="admin").first():
        return
    admin = User(
        email=config["ADMIN_EMAIL"].strip().lower(),
        password_hash=generate_password_hash(config["ADMIN_PASSWORD"]),
        role="admin",
        first_name="Portal",
        last_name="Administrator",
    )
    db.session.add(admin)
    db.session.commit()
    logger.info("Default admin user created (%s)", admin.email)


# -----------------------------
# Request helpers
# -----------------------------
def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(name, default, minimum=1, maximum=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a whole number")
    if value < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


def _text(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _secret(data, key):
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _as_int(value):
    # Form posts send numbers as strings
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return value


def _ok(data=None, message=None, status=200):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def _viewer_id():
    """Id of the logged-in student, or None for anonymous/admin viewers."""
    if current_user.is_authenticated and current_user.role == "student":
        return current_user.id
    return None


def _validate_email(email, errors):
    if not email or "@" not in email:
        errors.append("A valid email address is required")
        return
    domain = email.rsplit("@", 1)[1]
    if domain not in current_app.config["ALLOWED_EMAIL_DOMAINS"]:
        errors.append("Only university email addresses are allowed")


def _validate_year_level(value, errors):
    value = _as_int(value)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 4:
        errors.append("Year level must be between 1 and 4")
        return None
    return value


# -----------------------------
# Health
# -----------------------------
@api.route("/health")
def health():
    return jsonify({
        "status": "OK",
        "timestamp": portal().clock().isoformat(),
        "version": "1.0.0",
    })


# -----------------------------
# Auth Routes
# -----------------------------
@api.route("/auth/register", methods=["POST"])
def register():
    data = _body()
    email = _text(data, "email").lower()
    password = _secret(data, "password")
    first_name = _text(data, "firstName")
    last_name = _text(data, "lastName")

    errors = []
    _validate_email(email, errors)
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not first_name:
        errors.append("First name is required for students")
    if not last_name:
        errors.append("Last name is required for students")
    year_level = _validate_year_level(data.get("yearLevel"), errors)
    if errors:
        raise ValidationError("Validation failed", errors)

    store = portal().store
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        role="student",
        first_name=first_name,
        last_name=last_name,
        student_id=_text(data, "studentId") or None,
        year_level=year_level,
        course=_text(data, "course") or None,
        created_at=portal().clock(),
    )
    store.add_user(user)
    login_user(user)
    logger.info("Student registered: %s", email)
    return _ok({"user": user.public_profile()}, "Registration successful", 201)


@api.route("/auth/login", methods=["POST"])
def login():
    data = _body()
    email = _text(data, "email").lower()
    password = _secret(data, "password")

    user = portal().store.find_user_by_email(email)
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        raise AuthError("Invalid email or password")

    login_user(user)
    user.last_login = portal().clock()
    db.session.commit()
    return _ok({"user": user.public_profile()}, "Login successful")


@api.route("/auth/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return _ok(message="Logout successful")


@api.route("/auth/verify")
@login_required
def verify():
    return _ok({"user": current_user.public_profile()}, "Session is valid")


# -----------------------------
# Users
# -----------------------------
@api.route("/users/profile")
@login_required
def get_profile():
    return _ok({"user": current_user.public_profile()})


@api.route("/users/profile", methods=["PUT"])
@student_required
def update_profile():
    data = _body()
    errors = []
    for field in ("firstName", "lastName"):
        if field in data and not _text(data, field):
            errors.append(f"{field} cannot be empty")
    year_level = _validate_year_level(data.get("yearLevel"), errors)
    contact = data.get("emergencyContact")
    if contact is not None and not isinstance(contact, dict):
        errors.append("emergencyContact must be an object")
    if errors:
        raise ValidationError("Validation failed", errors)

    user = current_user
    if _text(data, "firstName"):
        user.first_name = _text(data, "firstName")
    if _text(data, "lastName"):
        user.last_name = _text(data, "lastName")
    if _text(data, "studentId"):
        user.student_id = _text(data, "studentId")
    if year_level is not None:
        user.year_level = year_level
    if _text(data, "course"):
        user.course = _text(data, "course")
    if contact is not None:
        user.emergency_contact = contact
    db.session.commit()
    return _ok({"user": user.public_profile()}, "Profile updated successfully")


@api.route("/users/change-password", methods=["PUT"])
@login_required
def change_password():
    data = _body()
    current_password = _secret(data, "currentPassword")
    new_password = _secret(data, "newPassword")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            "Validation failed",
            [f"New password must be at least {MIN_PASSWORD_LENGTH} characters long"],
        )
    if not check_password_hash(current_user.password_hash, current_password):
        raise ValidationError("Current password is incorrect")

    current_user.password_hash = generate_password_hash(new_password)
    db.session.commit()
    return _ok(message="Password changed successfully")


@api.route("/users/stats")
@student_required
def user_stats():
    services = portal()
    user_id = current_user.id
    return _ok({
        "counselingSessions": services.store.count_sessions(user_id=user_id, status="completed"),
        "resourcesBookmarked": services.resources.bookmark_count(user_id),
        "moodLogs": services.store.count_mood_entries(user_id=user_id),
    })


@api.route("/users/account", methods=["DELETE"])
@login_required
def deactivate_account():
    user = current_user._get_current_object()
    user.is_active = False
    user.deactivated_at = portal().clock()
    db.session.commit()
    logout_user()
    logger.info("User %s deactivated their account", user.id)
    return _ok(message="Account deactivated successfully")


# -----------------------------
# Mood Tracking
# -----------------------------
@api.route("/mood/log", methods=["POST"])
@student_required
def log_mood():
    data = _body()
    entry = portal().mood.log_mood(
        current_user.id,
        data.get("mood"),
        notes=data.get("notes"),
        date=data.get("date"),
    )
    return _ok({"moodLog": entry}, "Mood logged successfully", 201)


@api.route("/mood/log/<int:entry_id>", methods=["PUT"])
@student_required
def update_mood(entry_id):
    entry = portal().mood.update_notes(entry_id, current_user.id, _body().get("notes"))
    return _ok({"moodLog": entry}, "Mood log updated successfully")


@api.route("/mood/log/<int:entry_id>", methods=["DELETE"])
@student_required
def delete_mood(entry_id):
    portal().mood.delete_entry(entry_id, current_user.id)
    return _ok(message="Mood log deleted successfully")


@api.route("/mood/history")
@student_required
def mood_history():
    result = portal().mood.history(
        current_user.id,
        days=_int_arg("days", 30),
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 50, maximum=MAX_PAGE_SIZE),
    )
    return _ok(result)


@api.route("/mood/stats")
@student_required
def mood_stats():
    stats = portal().mood.compute_stats(current_user.id, _int_arg("days", 30))
    return _ok({"stats": stats})


@api.route("/mood/report.pdf")
@student_required
def mood_report():
    days = _int_arg("days", 30)
    services = portal()
    entries = services.mood.entries_in_window(current_user.id, days)
    stats = summarize_moods([e.mood for e in entries], services.mood.needs_support_moods)
    pdf_buffer = generate_mood_report_pdf(current_user, entries, stats, days)
    return send_file(
        pdf_buffer,
        as_attachment=True,
        download_name="mood_report.pdf",
        mimetype="application/pdf"
    )


# -----------------------------
# Counseling
# -----------------------------
@api.route("/counseling/request", methods=["POST"])
@student_required
def request_counseling():
    data = _body()
    session = portal().counseling.request_session(
        current_user.id, data.get("category"), data.get("urgency") or "medium"
    )
    return _ok({"session": session}, "Counseling session requested successfully", 201)


@api.route("/counseling/sessions")
@student_required
def list_counseling_sessions():
    result = portal().counseling.list_sessions(
        current_user.id,
        status=request.args.get("status") or None,
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 10, maximum=MAX_PAGE_SIZE),
    )
    return _ok(result)


@api.route("/counseling/current")
@student_required
def current_counseling_session():
    return _ok({"session": portal().counseling.current_session(current_user.id)})


@api.route("/counseling/sessions/<int:session_id>/message", methods=["POST"])
@student_required
def send_counseling_message(session_id):
    data = _body()
    result = portal().counseling.send_message(
        session_id, current_user.id, data.get("sender") or "user", data.get("message")
    )
    return _ok(result, "Message sent successfully")


@api.route("/counseling/sessions/<int:session_id>/end", methods=["POST"])
@student_required
def end_counseling_session(session_id):
    data = _body()
    session = portal().counseling.end_session(
        session_id,
        current_user.id,
        rating=_as_int(data.get("rating")),
        feedback=data.get("feedback"),
    )
    return _ok({"session": session}, "Session ended successfully")


@api.route("/counseling/sessions/<int:session_id>/cancel", methods=["POST"])
@student_required
def cancel_counseling_session(session_id):
    session = portal().counseling.cancel_session(session_id, current_user.id)
    return _ok({"session": session}, "Session cancelled successfully")


# -----------------------------
# Resources
# -----------------------------
@api.route("/resources")
def list_resources():
    result = portal().resources.list_resources(
        resource_type=request.args.get("type"),
        search=request.args.get("search"),
        user_id=_viewer_id(),
    )
    return _ok(result)


@api.route("/resources/types/list")
def resource_types():
    return _ok({"types": portal().resources.types()})


@api.route("/resources/bookmarks/list")
@student_required
def bookmarked_resources():
    return _ok(portal().resources.bookmarks(current_user.id))


@api.route("/resources/<resource_id>")
def get_resource(resource_id):
    resource = portal().resources.get_resource(resource_id, user_id=_viewer_id())
    return _ok({"resource": resource})


@api.route("/resources/<resource_id>/bookmark", methods=["POST"])
@student_required
def toggle_bookmark(resource_id):
    result = portal().resources.toggle_bookmark(resource_id, current_user.id)
    action = result.pop("action")
    return _ok(result, f"Resource bookmark {action} successfully")


# -----------------------------
# Admin
# -----------------------------
@api.route("/admin/stats")
@admin_required
def admin_stats():
    return _ok(portal().admin.dashboard_stats())


@api.route("/admin/users")
@admin_required
def admin_users():
    result = portal().admin.list_users(
        role=request.args.get("type") or None,
        search=request.args.get("search") or None,
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 20, maximum=MAX_PAGE_SIZE),
    )
    return _ok(result)


@api.route("/admin/sessions")
@admin_required
def admin_sessions():
    result = portal().admin.list_sessions(
        status=request.args.get("status") or None,
        category=request.args.get("category") or None,
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 20, maximum=MAX_PAGE_SIZE),
    )
    return _ok(result)


@api.route("/admin/users/<int:user_id>/deactivate", methods=["PUT"])
@admin_required
def admin_deactivate_user(user_id):
    if user_id == current_user.id:
        raise ValidationError("Admins cannot deactivate their own account here")
    user = portal().admin.deactivate_user(user_id, current_user.id)
    return _ok({"user": user}, "User deactivated successfully")


@api.route("/admin/users/<int:user_id>/reactivate", methods=["PUT"])
@admin_required
def admin_reactivate_user(user_id):
    user = portal().admin.reactivate_user(user_id)
    return _ok({"user": user}, "User reactivated successfully")


@api.route("/admin/analytics/mood")
@admin_required
def admin_mood_analytics():
    return _ok(portal().admin.mood_analytics(_int_arg("days", 30)))


# -----------------------------
# App Setup
# -----------------------------
def _register_error_handlers(app):
    @app.errorhandler(PortalError)
    def handle_portal_error(exc):
        return jsonify(exc.to_dict()), exc.status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({
            "success": False,
            "error": exc.name.lower().replace(" ", "_"),
            "message": exc.description,
        }), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        db.session.rollback()
        return jsonify({
            "success": False,
            "error": "internal_error",
            "message": "Internal server error",
        }), 500


def create_app(config_object=Config, clock=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    db.init_app(app)
    login_manager.init_app(app)

    services = Portal(app.config, clock or datetime.now)
    app.extensions["portal"] = services

    app.register_blueprint(api)
    _register_error_handlers(app)

    # Create DB if not exists
    with app.app_context():
        db.create_all()
        ensure_default_admin(app.config)

    if app.config.get("START_TASK_RUNNER"):
        services.runner = TaskRunner(services.queue, app, app.config["TASK_POLL_INTERVAL_MS"])
        services.runner.start()
        atexit.register(services.runner.shutdown)

    return app


# -----------------------------
# Run App
# -----------------------------
if __name__ == "__main__":
    create_app().run(debug=True, use_reloader=False)
