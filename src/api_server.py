"""
HTTP API of the checkout bot.

Endpoints:
    GET  /api/v1/health                           liveness
    POST /api/v1/payments/webhook                 provider status notifications (signed)
    POST /api/v1/subscriptions/sweep              run the expiry sweep now (admin key)
    GET  /api/v1/subscribers/{handle}/status      subscription status by handle (admin key)

Admin endpoints take the key from X-API-Key, `Authorization: Bearer <key>`
or the `api_key` query parameter.

Webhook response: {"status": "ok", "outcome": "applied|duplicate|ignored|unknown_order"}
"""

import hmac
import json
import logging
from datetime import date, datetime

from aiohttp import web

from checkout.errors import OrderNotFound, SignatureInvalid, StoreUnavailable
from checkout.maintenance import ExpirySweeper
from checkout.reconciler import WebhookReconciler
from checkout.repository import OrderRepository
from config import CFG


logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Signature", "x-nowpayments-sig")

RECONCILER_KEY = web.AppKey("reconciler", WebhookReconciler)
SWEEPER_KEY = web.AppKey("sweeper", ExpirySweeper)
REPOSITORY_KEY = web.AppKey("repository", OrderRepository)
ADMIN_API_KEY = web.AppKey("admin_api_key", str)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


def _extract_api_key_from_request(request: web.Request) -> str:
    """Extract API key from X-API-Key header, Bearer auth, or query param."""
    header_key = str(request.headers.get("X-API-Key") or "").strip()
    if header_key:
        return header_key

    auth_header = str(request.headers.get("Authorization") or "").strip()
    if auth_header.lower().startswith("bearer "):
        bearer = auth_header[7:].strip()
        if bearer:
            return bearer

    query_key = str(request.query.get("api_key") or "").strip()
    if query_key:
        return query_key

    return ""


def _check_admin(request: web.Request) -> web.Response | None:
    """None when the request carries the admin key, otherwise the error response."""
    expected = request.app[ADMIN_API_KEY]
    if not expected:
        return _error("Admin API disabled", 403)
    provided = _extract_api_key_from_request(request)
    if not provided or not hmac.compare_digest(provided, expected):
        return _error("Invalid API key", 401)
    return None


def _extract_signature(request: web.Request) -> str | None:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "service": "checkoutbot-api",
    })


async def payment_webhook_handler(request: web.Request) -> web.Response:
    """
    Provider status push.

    401 on a bad signature (nothing is applied), 400 on a malformed body,
    200 for applied, duplicate, informational and unknown-order callbacks,
    503 when the order store is down so the provider retries.
    """
    raw_body = await request.read()
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return _error("Invalid JSON", 400)
    if not isinstance(payload, dict):
        return _error("Invalid JSON", 400)

    reconciler = request.app[RECONCILER_KEY]
    try:
        result = await reconciler.handle_callback(raw_body, _extract_signature(request))
    except SignatureInvalid:
        return _error("Invalid signature", 401)
    except ValueError:
        return _error("Invalid JSON", 400)
    except OrderNotFound as error:
        return web.json_response({"status": "ok", "outcome": "unknown_order", "order_id": error.order_id})
    except StoreUnavailable:
        logger.exception("Order store unavailable while applying payment callback")
        return _error("Store unavailable", 503)

    return web.json_response({
        "status": "ok",
        "outcome": result.outcome,
        "order_id": result.order_id,
    })


async def sweep_handler(request: web.Request) -> web.Response:
    """Run the expiry sweep; optional ?as_of=YYYY-MM-DD."""
    denied = _check_admin(request)
    if denied is not None:
        return denied

    raw_as_of = str(request.query.get("as_of") or "").strip()
    try:
        as_of = date.fromisoformat(raw_as_of) if raw_as_of else None
    except ValueError:
        return _error("as_of must be YYYY-MM-DD", 400)

    try:
        result = await request.app[SWEEPER_KEY].sweep(as_of)
    except StoreUnavailable:
        logger.exception("Order store unavailable during manual sweep")
        return _error("Store unavailable", 503)

    return web.json_response({
        "status": "ok",
        "as_of": result.as_of.isoformat() if result.as_of else None,
        "count": result.count,
        "handles": result.handles,
    })


async def subscriber_status_handler(request: web.Request) -> web.Response:
    """Subscription status for a handle (with or without the leading @)."""
    denied = _check_admin(request)
    if denied is not None:
        return denied

    handle = str(request.match_info.get("handle") or "").strip()
    if not handle:
        return _error("handle is required", 400)
    if not handle.startswith(("@", "tg:")):
        handle = f"@{handle}"

    try:
        subscriber = await request.app[REPOSITORY_KEY].get_subscriber(handle)
    except StoreUnavailable:
        logger.exception("Order store unavailable while reading subscriber %s", handle)
        return _error("Store unavailable", 503)
    if subscriber is None:
        return _error("Subscriber not found", 404)

    return web.json_response({
        "status": "ok",
        "handle": subscriber.handle,
        "subscription_status": subscriber.subscription_status,
        "plan_id": subscriber.plan_id,
        "expires_on": subscriber.expires_on,
        "review_reason": subscriber.review_reason,
    })


def create_api_app(
    *,
    reconciler: WebhookReconciler,
    sweeper: ExpirySweeper,
    repository: OrderRepository,
    admin_api_key: str | None = None,
) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application()
    app[RECONCILER_KEY] = reconciler
    app[SWEEPER_KEY] = sweeper
    app[REPOSITORY_KEY] = repository
    app[ADMIN_API_KEY] = CFG.admin_api_key if admin_api_key is None else admin_api_key

    app.router.add_get("/api/v1/health", health_handler)
    app.router.add_post("/api/v1/payments/webhook", payment_webhook_handler)
    app.router.add_post("/api/v1/subscriptions/sweep", sweep_handler)
    app.router.add_get("/api/v1/subscribers/{handle}/status", subscriber_status_handler)

    # Root for simple uptime probes
    app.router.add_get("/", health_handler)

    return app


async def start_api_server(app: web.Application, port: int | None = None) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    port = CFG.api_port if port is None else port
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    logger.info("API server started on port %s", port)

    return runner


async def stop_api_server(runner: web.AppRunner) -> None:
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
