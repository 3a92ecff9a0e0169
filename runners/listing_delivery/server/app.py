"""HTTP surface for the delivery runner (Flask)."""

from __future__ import annotations

import hmac
import logging
import time
from functools import wraps
from typing import Any

from flask import Flask, g, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from .. import errors
from ..app import VERSION, AppContext
from ..errors import DeliveryError
from ..manifest import normalize_payload, validate_hosts
from ..session_manager import storage_state_status
from ..storage_state import save_storage_state
from .ratelimit import SlidingWindowLimiter

logger = logging.getLogger("delivery.http")

_SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}

_STATUS_BY_CODE = {
    errors.INVALID_MANIFEST: 400,
    errors.HOST_NOT_ALLOWED: 400,
    errors.UNAUTHORIZED: 401,
    errors.RUN_NOT_FOUND: 404,
    errors.RATE_LIMITED: 429,
}

_TRUTHY = {"1", "true", "yes", "on"}


def error_response(error: DeliveryError, status: int | None = None, headers: dict[str, str] | None = None):  # noqa: ANN201
    body = {"error": {"code": error.code, "message": error.message, "retryable": bool(error.retryable)}}
    response = jsonify(body)
    response.status_code = status or _STATUS_BY_CODE.get(error.code, 500)
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response


def create_app(ctx: AppContext, *, limiter: SlidingWindowLimiter | None = None) -> Flask:
    config = ctx.config
    app = Flask("listing_delivery")
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024
    app.extensions["delivery"] = ctx
    rate_limiter = limiter or SlidingWindowLimiter(config.rate_limit_max_requests, config.rate_limit_window)

    def client_ip() -> str:
        if config.trust_proxy:
            forwarded = request.headers.get("X-Forwarded-For", "")
            if forwarded.strip():
                return forwarded.split(",")[0].strip()
        return request.remote_addr or "unknown"

    def require_auth(view):  # noqa: ANN001, ANN202
        @wraps(view)
        def wrapper(*args: Any, **kwargs: Any):  # noqa: ANN202
            header = request.headers.get("Authorization", "")
            scheme, _, token = header.partition(" ")
            if not header:
                message = "Missing Authorization header"
            elif scheme.lower() != "bearer" or not token.strip():
                message = "Invalid Authorization header format. Expected: Bearer <token>"
            elif not config.auth_token or not hmac.compare_digest(token.strip(), config.auth_token):
                message = "Invalid bearer token"
            else:
                return view(*args, **kwargs)
            logger.warning("unauthorized path=%s ip=%s", request.path, client_ip())
            return error_response(DeliveryError(errors.UNAUTHORIZED, message, False))

        return wrapper

    @app.before_request
    def _start_timer() -> None:
        g.started = time.monotonic()

    @app.after_request
    def _finalize(response):  # noqa: ANN001, ANN202
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        for header, value in (getattr(g, "rate_headers", None) or {}).items():
            response.headers.setdefault(header, value)
        elapsed_ms = (time.monotonic() - getattr(g, "started", time.monotonic())) * 1000
        logger.info(
            "http method=%s path=%s status=%d ms=%.1f", request.method, request.path, response.status_code, elapsed_ms
        )
        return response

    @app.errorhandler(DeliveryError)
    def _delivery_error(exc: DeliveryError):  # noqa: ANN202
        return error_response(exc)

    @app.errorhandler(404)
    def _not_found(_exc: Exception):  # noqa: ANN202
        return error_response(DeliveryError(errors.RUN_NOT_FOUND, "Not found", False), 404)

    @app.errorhandler(413)
    def _too_large(_exc: Exception):  # noqa: ANN202
        return error_response(DeliveryError(errors.INVALID_MANIFEST, "Request body too large", False), 413)

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):  # noqa: ANN202
        if isinstance(exc, HTTPException):
            return error_response(DeliveryError(errors.INVALID_MANIFEST, exc.description or exc.name, False), exc.code)
        logger.exception("http_unhandled path=%s", request.path)
        return error_response(DeliveryError(errors.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}", True), 500)

    @app.get("/health")
    def health():  # noqa: ANN202
        return jsonify({"status": "ok", "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), "version": VERSION})

    @app.get("/ready")
    def ready():  # noqa: ANN202
        report = ctx.readiness()
        response = jsonify(report)
        response.status_code = 503 if report["status"] == "unhealthy" else 200
        return response

    @app.post("/deliver")
    @require_auth
    def deliver():  # noqa: ANN202
        decision = rate_limiter.check(client_ip())
        g.rate_headers = decision.headers()
        if not decision.allowed:
            logger.warning("rate_limited ip=%s", client_ip())
            return error_response(
                DeliveryError(errors.RATE_LIMITED, f"Too many requests; retry in {decision.reset_seconds}s", True),
                headers={"Retry-After": str(decision.reset_seconds)},
            )

        payload = request.get_json(silent=True)
        if payload is None:
            raise DeliveryError(errors.INVALID_MANIFEST, "Request body must be JSON", False)
        wants_deliver = str(request.args.get("deliver", "")).strip().lower() in _TRUTHY
        manifest = normalize_payload(payload, deliver=wants_deliver, safe_mode=config.safe_mode)
        validate_hosts(manifest, config.is_host_allowed)

        ref = ctx.orchestrator.submit(manifest)
        body: dict[str, Any] = ref.to_dict()
        if config.public_base_url:
            body["status_url"] = f"{config.public_base_url}/status/{ref.run_id}"
        response = jsonify(body)
        response.status_code = 202 if ref.created else 200
        return response

    @app.get("/status/<run_id>")
    @require_auth
    def status(run_id: str):  # noqa: ANN202
        run = ctx.orchestrator.get_status(run_id)
        if run is None:
            raise DeliveryError(errors.RUN_NOT_FOUND, f"Run {run_id} not found", False)
        return jsonify(run.public_dict())

    @app.get("/evidence/<run_id>/<filename>")
    @require_auth
    def evidence(run_id: str, filename: str):  # noqa: ANN202
        path = ctx.evidence.resolve(run_id, filename)
        if path is None or path.suffix != ".png":
            raise DeliveryError(errors.RUN_NOT_FOUND, "Evidence file not found", False)
        return send_file(path, mimetype="image/png", as_attachment=True, download_name=filename)

    @app.get("/auth/status")
    @require_auth
    def auth_status():  # noqa: ANN202
        return jsonify(storage_state_status(config.storage_state_path))

    @app.put("/auth/storage-state")
    @require_auth
    def put_storage_state():  # noqa: ANN202
        payload = request.get_json(silent=True)
        try:
            result = save_storage_state(payload, config.storage_state_path)
        except ValueError as exc:
            raise DeliveryError(errors.INVALID_MANIFEST, f"Invalid storage state: {exc}", False) from exc
        logger.info("storage_state_updated cookies=%s", result.get("cookie_count"))
        return jsonify(result)

    return app


__all__ = ["create_app", "error_response"]
