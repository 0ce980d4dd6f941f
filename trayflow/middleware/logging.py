"""Structured logging setup and the per-request log context.

Each request is tagged with a request id (``x-request-id``, generated when
absent) and a transition source (``x-trayflow-source``: the rack scanner,
automation job or UI that issued it, ``api`` by default).  Both are bound
to the structlog context; the source also ends up on transition audit rows.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from trayflow.config import LogFormat, get_settings

REQUEST_ID_HEADER = "x-request-id"
SOURCE_HEADER = "x-trayflow-source"
DEFAULT_SOURCE = "api"

# Matches crop_stage_transitions.source.
MAX_SOURCE_LENGTH = 50

# Probes hit these every few seconds; keep them out of info-level output.
_PROBE_PATHS = frozenset({"/health", "/health/ready"})

_configured = False


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
	event_dict.setdefault("service", "trayflow")
	return event_dict


def configure_structured_logging() -> None:
	"""Configure stdlib logging and structlog for this process (idempotent)."""
	global _configured
	if _configured:
		return

	settings = get_settings()
	log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

	if settings.log_format == LogFormat.json:
		renderer: Any = structlog.processors.JSONRenderer()
		logging.basicConfig(level=log_level, format="%(message)s")
	else:
		renderer = structlog.dev.ConsoleRenderer()
		logging.basicConfig(level=log_level)

	structlog.configure(
		processors=[
			structlog.contextvars.merge_contextvars,
			structlog.processors.add_log_level,
			structlog.processors.TimeStamper(fmt="iso", utc=True),
			_add_service,
			structlog.processors.format_exc_info,
			renderer,
		],
		wrapper_class=structlog.make_filtering_bound_logger(log_level),
		logger_factory=structlog.PrintLoggerFactory(),
		cache_logger_on_first_use=True,
	)
	_configured = True


def _source_from(request: Request) -> str:
	raw = (request.headers.get(SOURCE_HEADER) or "").strip()
	return raw[:MAX_SOURCE_LENGTH] or DEFAULT_SOURCE


def request_source(request: Request) -> str:
	"""Transition source recorded for this request."""
	return getattr(request.state, "source", None) or _source_from(request)


def _route_template(request: Request) -> str:
	# Group log lines by route ("/api/v1/crops/{crop_id}") rather than by id.
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next):  # type: ignore[override]
		request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
		source = _source_from(request)
		request.state.request_id = request_id
		request.state.source = source

		structlog.contextvars.clear_contextvars()
		structlog.contextvars.bind_contextvars(request_id=request_id, source=source)

		logger = structlog.get_logger("trayflow.request")
		start = time.perf_counter()

		try:
			response = await call_next(request)
		except Exception as exc:
			logger.exception(
				"http_request_failed",
				method=request.method,
				route=_route_template(request),
				duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
				error=str(exc),
			)
			raise

		response.headers[REQUEST_ID_HEADER] = request_id
		log = logger.debug if request.url.path in _PROBE_PATHS else logger.info
		log(
			"http_request",
			method=request.method,
			route=_route_template(request),
			status_code=response.status_code,
			duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
		)
		return response
