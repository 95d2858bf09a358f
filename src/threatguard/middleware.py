"""aiohttp middleware running every request through the threat engine.

Modes:

- ``enforce``: deny blocked sources and denied decisions with a 403.
- ``strict``: as ``enforce``, and also deny above risk 0.5 and require
  step-up verification above 0.3.
- ``monitor``: analyse in the background, never block.

The decision is attached as ``request["threat_decision"]`` and the log
correlation id as ``request["request_id"]`` for handlers.
Detection failures never fail the request.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from aiohttp import web

from threatguard.behavior.models import BehaviorSample
from threatguard.detection.models import Action, RequestDescriptor
from threatguard.dispatcher import REASON_THREAT_DETECTED, Decision
from threatguard.engine import ThreatEngine
from threatguard.errors import SecurityViolation
from threatguard.logging import get_logger, request_context

log = get_logger("threatguard.middleware")

MODES = frozenset({"enforce", "strict", "monitor"})

# Paths under these prefixes are never analysed
STATIC_PREFIXES = ("/static/", "/favicon.ico")

# Risk above which the response carries alert headers
ALERT_HEADER_RISK = 0.3
STRICT_DENY_RISK = 0.5
STRICT_STEP_UP_RISK = 0.3

_MAX_BODY_BYTES = 1024 * 1024
_MAX_RECORD_COUNT_BYTES = 5 * 1024 * 1024


async def descriptor_from_request(
    request: web.Request, *, max_body_bytes: int = _MAX_BODY_BYTES
) -> RequestDescriptor:
    """Build a :class:`RequestDescriptor` from an aiohttp request.

    The identity of an authenticated user is read from ``request["user_id"]``
    and ``request["user_role"]``, set by an earlier auth middleware. Bodies
    larger than *max_body_bytes* are not read.
    """
    body: str | None = None
    length = request.content_length
    if request.can_read_body and (length is None or length <= max_body_bytes):
        body = await request.text()

    user_id = request.get("user_id")
    return RequestDescriptor(
        method=request.method,
        path=request.path,
        source=request.remote or "unknown",
        headers={k: v for k, v in request.headers.items()},
        query={k: v for k, v in request.query.items()},
        body=body,
        params=dict(request.match_info),
        user_id=str(user_id) if user_id is not None else None,
        user_role=request.get("user_role"),
        content_length=length,
        secure=request.secure,
    )


def behavior_sample_from_request(
    request: web.Request, descriptor: RequestDescriptor
) -> BehaviorSample | None:
    """Behaviour sample for an authenticated request, keyed by hashed source address."""
    if descriptor.user_id is None:
        return None
    fingerprint = request.headers.get("X-Device-Fingerprint") or request.headers.get(
        "User-Agent", ""
    )
    return BehaviorSample.from_raw(
        ip=descriptor.source,
        device_fingerprint=fingerprint,
        auth_method=request.get("auth_method", "session"),
    )


def _forbidden(reason_code: str) -> web.Response:
    return web.json_response({"error": "Forbidden", "code": reason_code}, status=403)


def _should_skip(path: str, skip_paths: frozenset[str]) -> bool:
    return path in skip_paths or path.startswith(STATIC_PREFIXES)


def _response_size(response: web.StreamResponse) -> int | None:
    if isinstance(response, web.Response) and isinstance(response.body, bytes | bytearray):
        return len(response.body)
    return response.content_length


async def _record_count(
    request: web.Request, response: web.StreamResponse, size: int
) -> int | None:
    explicit = request.get("record_count")
    if explicit is not None:
        return int(explicit)
    if (
        not isinstance(response, web.Response)
        or response.content_type != "application/json"
        or size > _MAX_RECORD_COUNT_BYTES
        or not isinstance(response.body, bytes | bytearray)
    ):
        return None
    try:
        payload = await asyncio.to_thread(json.loads, response.body)
    except ValueError:
        return None
    return len(payload) if isinstance(payload, list) else None


def create_threat_middleware(
    engine: ThreatEngine,
    *,
    mode: str = "enforce",
    skip_paths: frozenset[str] | None = None,
) -> Any:
    """Create the threat detection middleware.

    Args:
        engine: The engine every request is analysed by.
        mode: ``enforce`` (default), ``strict`` or ``monitor``.
        skip_paths: Paths never analysed; defaults to the configured set.
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {sorted(MODES)}, got: {mode}")
    skipped = skip_paths if skip_paths is not None else engine.settings.skip_path_set
    background: set[asyncio.Task[Decision]] = set()

    async def _guarded(
        request: web.Request, handler: Any, descriptor: RequestDescriptor
    ) -> web.StreamResponse:
        if mode == "monitor":
            task = asyncio.create_task(engine.analyze_request(descriptor))
            background.add(task)
            task.add_done_callback(background.discard)
            return await handler(request)  # type: ignore[no-any-return]

        decision = await engine.analyze_request(
            descriptor, behavior=behavior_sample_from_request(request, descriptor)
        )
        if mode == "strict" and not decision.deny:
            if decision.risk > STRICT_DENY_RISK:
                decision.action = Action.BLOCK
                decision.reason_code = REASON_THREAT_DETECTED
            elif decision.risk > STRICT_STEP_UP_RISK:
                decision.step_up_required = True
        request["threat_decision"] = decision

        if decision.deny:
            log.info("request_denied", reason_code=decision.reason_code)
            return _forbidden(decision.reason_code or REASON_THREAT_DETECTED)

        try:
            response: web.StreamResponse = await handler(request)
        except SecurityViolation as e:
            log.info("request_denied", reason_code=e.reason_code)
            return _forbidden(e.reason_code)

        if decision.risk > ALERT_HEADER_RISK and not response.prepared:
            response.headers["X-Security-Alert"] = "true"
            response.headers["X-Risk-Score"] = f"{decision.risk:.2f}"

        size = _response_size(response)
        if size is not None:
            await engine.check_response(
                descriptor, size, record_count=await _record_count(request, response, size)
            )
        return response

    @web.middleware
    async def threat_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        if _should_skip(request.path, skipped):
            return await handler(request)  # type: ignore[no-any-return]

        try:
            descriptor = await descriptor_from_request(request)
        except Exception as e:
            log.warning("request_descriptor_failed", path=request.path, error=str(e))
            return await handler(request)  # type: ignore[no-any-return]

        # Events logged while this request is handled carry its source and path
        with request_context(
            source_id=descriptor.source,
            path=descriptor.path,
            method=descriptor.method,
            user_id=descriptor.user_id,
        ) as request_id:
            request["request_id"] = request_id
            return await _guarded(request, handler, descriptor)

    return threat_middleware
