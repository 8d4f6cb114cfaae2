import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenant_billing.extensions import db
from tenant_billing.providers import get_provider

health_bp = Blueprint("health", __name__)


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "error", "error": str(e)}
    return {"status": "ok", "latency_ms": round((time.time() - start) * 1000, 2)}


def _check_redis():
    url = current_app.config.get("CELERY_BROKER_URL") or current_app.config.get("REDIS_URL")
    if current_app.testing or not url or not url.startswith(("redis://", "rediss://")):
        return {"status": "skipped", "reason": "broker is not redis"}

    start = time.time()
    try:
        redis.from_url(url, socket_connect_timeout=2).ping()
    except redis.exceptions.RedisError as e:
        return {"status": "error", "error": str(e)}
    return {"status": "ok", "latency_ms": round((time.time() - start) * 1000, 2)}


@health_bp.route("/health")
def health():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
    }
    overall = "ok"
    for check in checks.values():
        if check["status"] == "error":
            overall = "degraded"

    return jsonify({
        "status": overall,
        "timestamp": int(time.time()),
        "provider": get_provider().name,
        "environment": current_app.config.get("ENVIRONMENT", "unknown"),
        "version": current_app.config.get("APP_VERSION"),
        "checks": checks,
    }), 200 if overall == "ok" else 503
