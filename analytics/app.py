import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from flask import Blueprint, Flask, Response, current_app, jsonify, request

from . import config
from .enrich import anonymize_ip, client_ip, is_private_ip, lookup_geo, parse_user_agent
from .errors import ValidationError, is_retryable
from .metrics import RequestMetrics
from .resilience import ResilientExecutor
from .sites import resolve_site_id
from .store import VisitRecord, VisitStore, make_engine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

UNAVAILABLE_MESSAGE = "Service temporarily unavailable, please retry"

bp = Blueprint("analytics", __name__)


@dataclass
class Services:
    """
    Per-process collaborators, built once by create_app().
    """
    store: VisitStore
    executor: ResilientExecutor
    geo_lookup: Callable[[str], dict | None]
    metrics: RequestMetrics


def _services() -> Services:
    return current_app.extensions["analytics"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _param(source, name: str) -> str | None:
    value = source.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


# -----------------------------------------------------------------------------
# CORS
# -----------------------------------------------------------------------------
def pick_cors_origin(request_origin: str | None, allowed_origins: list[str]) -> str | None:
    """
    Return allowed origin if it matches our allowlist.
    """
    if not request_origin:
        return None
    if "*" in allowed_origins:
        return "*"
    for allowed in allowed_origins:
        if request_origin == allowed:
            return allowed
    return None


@bp.after_app_request
def add_cors_headers(resp):
    origin = pick_cors_origin(request.headers.get("Origin"), current_app.config["CORS_ALLOW_ORIGINS"])

    if origin:
        req_method = request.headers.get("Access-Control-Request-Method", "GET,POST,OPTIONS")
        req_headers = request.headers.get("Access-Control-Request-Headers", "Content-Type")

        resp.headers["Access-Control-Allow-Origin"] = origin
        if origin != "*":
            resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = req_method
        resp.headers["Access-Control-Allow-Headers"] = req_headers
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp


@bp.before_app_request
def count_request():
    _services().metrics.record_request()


@bp.app_errorhandler(ValidationError)
def validation_failed(exc):
    return jsonify({"error": str(exc)}), exc.status_code


def _failure(exc: Exception, message: str):
    """
    Map an error that came out of the executor to a JSON response.
    Transient errors only get here once retries are exhausted.
    """
    logger.exception("%s: %s", message, exc)
    _services().metrics.record_error()
    if is_retryable(exc):
        return jsonify({"error": UNAVAILABLE_MESSAGE}), 503
    return jsonify({"error": message}), 500


# -----------------------------------------------------------------------------
# Tracking
# -----------------------------------------------------------------------------
def build_visit_record(req, site_id: str, referrer: str | None, geo_lookup, anonymize: bool = False, salt: str = "") -> VisitRecord:
    ua_string = req.headers.get("User-Agent", "")
    ip = client_ip(req)
    geo = (geo_lookup(ip) if ip else None) or {}
    ua = parse_user_agent(ua_string)
    logger.debug("visit for %s from %s, geo=%s", site_id, ip, geo or None)

    stored_ip = ip
    if anonymize and ip:
        stored_ip = anonymize_ip(ip, salt)

    return VisitRecord(
        site_id=site_id[:255],
        ip_address=stored_ip[:80] if stored_ip else None,
        city=geo.get("city"),
        country=geo.get("country"),
        country_code=geo.get("country_code"),
        browser=ua["browser"],
        os=ua["os"],
        device=ua["device"],
        referrer=referrer[:500] if referrer else None,
        user_agent=ua_string,
    )


async def _track(site_id_param: str | None, referrer_param: str | None):
    svc = _services()
    cfg = current_app.config

    referrer = referrer_param or request.headers.get("Referer")
    site_id = resolve_site_id(site_id_param, referrer, request.headers.get("Host"))
    if not site_id:
        raise ValidationError("site_id is required")

    record = build_visit_record(
        request, site_id, referrer, svc.geo_lookup,
        anonymize=cfg["ANONYMIZE_IP"], salt=cfg["IP_SALT"],
    )
    try:
        await svc.executor.execute(lambda: svc.store.insert_visit(record), cfg["TRACK_RETRY"])
    except Exception as e:
        return _failure(e, "Tracking failed")

    svc.metrics.record_tracking()
    return None


@bp.route("/api/track", methods=["POST", "OPTIONS"])
async def track_post():
    """
    Body example:
      { "site_id": "mbh.photos", "referrer": "https://www.google.com/" }
    Both fields are optional; the site falls back to the Referer / Host header.
    """
    if request.method == "OPTIONS":
        return ("", 200)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    failed = await _track(_param(data, "site_id"), _param(data, "referrer"))
    if failed:
        return failed
    return jsonify({"success": True})


@bp.route("/api/track", methods=["GET"])
async def track_get():
    """
    Same as the POST variant, for <img>/beacon style embedding.
    """
    failed = await _track(_param(request.args, "site_id"), _param(request.args, "referrer"))
    if failed:
        return failed
    resp = jsonify({"success": True})
    resp.headers.update(NO_CACHE_HEADERS)
    return resp


# -----------------------------------------------------------------------------
# Stats
# -----------------------------------------------------------------------------
@bp.route("/api/stats")
async def stats():
    svc = _services()
    site_id = _param(request.args, "site_id")
    try:
        result = await svc.executor.execute(
            lambda: svc.store.fetch_stats(site_id),
            current_app.config["STATS_RETRY"],
        )
    except Exception as e:
        return _failure(e, "Failed to fetch stats")
    return jsonify(result)


# -----------------------------------------------------------------------------
# Health / readiness / metrics
# -----------------------------------------------------------------------------
async def _check_datastore(policy) -> Exception | None:
    """
    Check the datastore through the executor. A round trip that succeeded
    within HEALTH_CACHE_SECONDS answers for it, so bursts of health checks don't each
    hit the database. Returns the failure, if any.
    """
    svc = _services()
    if svc.executor.connectivity.is_likely_connected(current_app.config["HEALTH_CACHE_SECONDS"]):
        return None
    try:
        await svc.executor.execute(svc.store.ping, policy)
    except Exception as e:
        logger.warning("%s failed: %s", policy.label, e)
        return e
    return None


@bp.route("/health")
async def health():
    """
    Liveness. Retries long enough to ride out blips, short enough that the
    orchestrator can restart us in reasonable time.
    """
    error = await _check_datastore(current_app.config["HEALTH_RETRY"])
    if error is None:
        return jsonify({
            "status": "healthy",
            "timestamp": _now_iso(),
            "database": "connected",
        })
    return jsonify({
        "status": "unhealthy",
        "timestamp": _now_iso(),
        "database": "disconnected",
        "error": str(error) or "Unknown error",
    }), 503


@bp.route("/ready")
async def ready():
    """
    Readiness. Keeps retrying through a full cold start of the database
    before taking this instance out of rotation.
    """
    error = await _check_datastore(current_app.config["READY_RETRY"])
    if error is None:
        return jsonify({"status": "ready"})
    return jsonify({"status": "not ready", "reason": str(error) or "Database unavailable"}), 503


@bp.route("/metrics")
def metrics():
    return Response(_services().metrics.render_prometheus(), mimetype="text/plain")


@bp.route("/api/debug/ip")
def debug_ip():
    """
    What IP the proxy chain resolves to, and what GeoIP makes of it.
    """
    ip = client_ip(request)
    if is_private_ip(ip):
        note = "Private/local IP detected - GeoIP lookup will not work for private IPs"
    else:
        note = "Public IP detected"
    geo = _services().geo_lookup(ip) if ip else None
    if geo is not None:
        geo = {"city": geo["city"], "country": geo["country"], "countryCode": geo["country_code"]}
    return jsonify({
        "resolvedIp": ip,
        "xForwardedFor": request.headers.get("X-Forwarded-For"),
        "xRealIp": request.headers.get("X-Real-IP"),
        "remoteAddress": request.remote_addr,
        "geoData": geo,
        "note": note,
    })


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(overrides: dict | None = None, *, store=None, executor=None, geo_lookup=None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(config.as_flask_config())
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"], format=LOG_FORMAT)

    if store is None:
        engine = make_engine(
            app.config["DATABASE_URL"],
            pool_size=app.config["DB_POOL_SIZE"],
            max_overflow=app.config["DB_MAX_OVERFLOW"],
            pool_timeout=app.config["DB_POOL_TIMEOUT"],
        )
        store = VisitStore(engine)
    if geo_lookup is None:
        geo_path = app.config["GEOIP_DB_PATH"]

        def geo_lookup(ip):
            return lookup_geo(ip, geo_path)

    app.extensions["analytics"] = Services(
        store=store,
        executor=executor or ResilientExecutor(),
        geo_lookup=geo_lookup,
        metrics=RequestMetrics(),
    )
    app.register_blueprint(bp)
    return app


def main():
    # Dev mode, container uses gunicorn -c gunicorn.conf.py "analytics.app:create_app()"
    create_app().run(host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    main()
