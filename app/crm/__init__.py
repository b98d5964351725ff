import logging
import os
from datetime import timedelta

from flask import Flask, current_app, flash, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv

from app.crm.config import load_config
from app.crm.db import init_db, teardown_db_session
from app.crm.routes import bp as routes_bp
from app.crm.auth import bp as auth_bp, load_current_user
from app.crm.admin import bp as admin_bp
from app.crm.modules.dashboard.admin import bp as dashboard_bp
from app.crm.modules.leads.admin import bp as leads_bp
from app.crm.modules.funnel.admin import bp as funnel_bp
from app.crm.modules.customers.admin import bp as customers_bp
from app.crm.modules.cross_sell.admin import bp as cross_sell_bp
from app.crm.modules.tasks.admin import bp as tasks_bp
from app.crm.modules.territories.admin import bp as territories_bp
from app.crm.modules.kra.admin import bp as kra_bp
from app.crm.modules.gamification.admin import bp as gamification_bp
from app.crm.modules.reports.admin import bp as reports_bp
from app.crm.rbac import navigation, user_has_permission
from app.crm.security import ensure_csrf_token, validate_csrf
from app.crm.utils import format_inr

logger = logging.getLogger(__name__)

# (blueprint, url prefix); feature modules mount at the root
_BLUEPRINTS = (
    (routes_bp, None),
    (auth_bp, "/auth"),
    (admin_bp, "/admin"),
    (dashboard_bp, None),
    (leads_bp, None),
    (funnel_bp, None),
    (customers_bp, None),
    (cross_sell_bp, None),
    (tasks_bp, None),
    (territories_bp, None),
    (kra_bp, None),
    (gamification_bp, None),
    (reports_bp, None),
)

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")
_UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def _check_production_config(app: Flask) -> None:
    """Refuse to boot production on sqlite or the placeholder secret."""
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _dateformat(value, format: str = "%Y-%m-%d") -> str:
    if value is None:
        return "—"
    if hasattr(value, "strftime"):
        return value.strftime(format)
    return str(value)


def _register_template_helpers(app: Flask) -> None:
    @app.context_processor
    def _inject_globals() -> dict:
        user = getattr(g, "current_user", None)
        return {
            "csrf_token": ensure_csrf_token(),
            "has_perm": lambda key: user_has_permission(user, key),
            "nav": navigation(user),
        }

    app.add_template_filter(_dateformat, "dateformat")
    app.add_template_filter(format_inr, "inr")


def _csrf_guard():
    if request.path.startswith(_UNGUARDED_PREFIXES):
        return None
    ensure_csrf_token()
    session.permanent = True
    if not current_app.config.get("CSRF_ENABLED") or request.method not in _UNSAFE_METHODS:
        return None
    # login/logout carry no session state worth forging
    if (request.endpoint or "").startswith("auth."):
        return None
    if validate_csrf(request):
        return None
    logger.warning("CSRF check failed (path=%s request_id=%s)", request.path, getattr(g, "request_id", None))
    return render_template("errors/400.html", message="CSRF token missing or invalid."), 400


def _dispose_engine_after_fork(app: Flask) -> None:
    # gunicorn forks after create_app(); pooled connections must not cross the fork.
    if not hasattr(os, "register_at_fork"):
        return

    def _after_fork_child():
        engine = app.extensions.get("sqlalchemy_engine")
        if engine:
            engine.dispose()
            app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_after_fork_child)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        flash("Request too large. Maximum size is 5MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _check_production_config(app)

    init_db(app)
    _dispose_engine_after_fork(app)

    for bp, prefix in _BLUEPRINTS:
        app.register_blueprint(bp, url_prefix=prefix)

    _register_template_helpers(app)
    app.before_request(_csrf_guard)
    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)
    _register_error_handlers(app)

    logger.info("create_app() complete (env=%s)", app.config.get("ENV"))
    return app
