import logging
import math
import os
import time
import uuid

import requests
from dotenv import load_dotenv
from flask import Flask, Response, g, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from aadt_estimator import serialize_for_result
from aadt_sources import DEFAULT_SEARCH_RADIUS_M, lookup_aadt
from arcgis_http import ArcGISQueryError, ArcGISRateLimitError
from google_places import (
    DEFAULT_DEVELOPMENTS_RADIUS_M,
    DEFAULT_PLACES_RADIUS_M,
    GoogleMapsProxy,
)
from tc_trace import TraceContext, clear_trace, set_trace

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected upstream failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            if exc_type is not None and issubclass(
                exc_type,
                (requests.exceptions.RequestException, ArcGISQueryError, ArcGISRateLimitError),
            ):
                sentry_sdk.add_breadcrumb(category="upstream", message=msg, level="warning")
                return None
            if exc_type is ValueError and "Invalid" in msg:
                sentry_sdk.add_breadcrumb(category="input", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Real client IP behind the platform proxy, for rate limiting and logs.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every route fans out to paid or shared upstream APIs.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

CORS_ALLOW_ORIGIN = os.environ.get("CORS_ALLOW_ORIGIN", "*")

if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "/geocode, /places and /developments will fail until it is configured."
    )


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _maps_proxy() -> GoogleMapsProxy:
    # requests.Session is not thread-safe; one proxy per request.
    return GoogleMapsProxy(os.environ.get("GOOGLE_MAPS_API_KEY"))


def _parse_lat_lng():
    """Read lat/lng query params.

    Returns ((lat, lng), None) or (None, (json_response, status)).
    """
    lat_raw = request.args.get("lat", "").strip()
    lng_raw = request.args.get("lng", "").strip()
    if not lat_raw or not lng_raw:
        return None, (jsonify({"error": "Missing lat/lng"}), 400)
    try:
        lat = float(lat_raw)
        lng = float(lng_raw)
    except ValueError:
        return None, (jsonify({"error": "Invalid lat/lng"}), 400)
    if not (math.isfinite(lat) and math.isfinite(lng)) or abs(lat) > 90 or abs(lng) > 180:
        return None, (jsonify({"error": "Invalid lat/lng"}), 400)
    return (lat, lng), None


def _parse_radius(default: int):
    """Optional positive integer radius in meters; None when malformed."""
    raw = request.args.get("radius", "").strip()
    if not raw:
        return default
    try:
        radius = int(float(raw))
    except (ValueError, OverflowError):
        return None
    return radius if radius > 0 else None


def _proxy_json(method, *args, **kwargs):
    """Call a GoogleMapsProxy method and pass its response through.

    Network and decode failures map to 500.
    """
    with _maps_proxy() as proxy:
        try:
            status, body = getattr(proxy, method)(*args, **kwargs)
        except (requests.exceptions.RequestException, ValueError) as err:
            logger.warning("Google Maps proxy call failed", exc_info=True)
            return jsonify({"error": str(err)}), 500
    return jsonify(body), (200 if 200 <= status < 300 else status)


# ---------------------------------------------------------------------------
# Request hooks
# ---------------------------------------------------------------------------

@app.before_request
def _set_request_context():
    g.request_id = uuid.uuid4().hex[:10]
    if request.method == "OPTIONS":
        return Response(status=204)


@app.after_request
def _add_cors_headers(response):
    response.headers["Access-Control-Allow-Origin"] = CORS_ALLOW_ORIGIN
    response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/")
@limiter.exempt
def index():
    return "OK"


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


@app.route("/geocode")
def geocode():
    address = request.args.get("address", "").strip()
    if not address:
        return jsonify({"error": "Missing address"}), 400
    return _proxy_json("geocode", address)


@app.route("/places")
def places():
    """Nearby competitor sites."""
    coords, error = _parse_lat_lng()
    if error:
        return error
    radius = _parse_radius(DEFAULT_PLACES_RADIUS_M)
    if radius is None:
        return jsonify({"error": "Invalid radius"}), 400
    lat, lng = coords
    return _proxy_json("places_nearby", lat, lng, radius=radius)


@app.route("/developments")
def developments():
    """Planned or proposed sites from a Places text search."""
    coords, error = _parse_lat_lng()
    if error:
        return error
    radius = _parse_radius(DEFAULT_DEVELOPMENTS_RADIUS_M)
    if radius is None:
        return jsonify({"error": "Invalid radius"}), 400
    lat, lng = coords
    return _proxy_json("planned_developments", lat, lng, radius=radius)


@app.route("/aadt")
def aadt():
    """Best AADT estimate near lat/lng from the station and volume map layers."""
    coords, error = _parse_lat_lng()
    if error:
        return error
    radius = _parse_radius(DEFAULT_SEARCH_RADIUS_M)
    if radius is None:
        return jsonify({"error": "Invalid radius"}), 400
    lat, lng = coords

    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    t0 = time.time()
    try:
        lookup = lookup_aadt(lat, lng, radius_m=radius)
    except ArcGISQueryError as err:
        logger.warning("AADT lookup failed for %.5f,%.5f: %s", lat, lng, err)
        return jsonify({"error": "AADT data unavailable", "detail": str(err)}), 502
    finally:
        trace_ctx.log_summary()
        clear_trace()

    logger.info(
        "AADT lookup %.5f,%.5f radius=%dm candidates=%d in %dms",
        lat, lng, radius, lookup.result.candidate_count,
        int((time.time() - t0) * 1000),
    )
    return jsonify(serialize_for_result(lookup.result, lookup.search))


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Too many requests. Please wait and try again."}), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
