# FILE: permit_vault/middleware.py
from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .logging import bind, reset, scrub_dict

_ADDR_RE = re.compile(r"0x[0-9a-fA-F]{40}")
_ID_RE = re.compile(r"^[0-9a-fA-F]{8,64}$")


def _default_path_normalizer(path: str) -> str:
    """Collapse addresses and long numeric segments to keep label cardinality bounded."""
    p = _ADDR_RE.sub(":addr", path)
    return re.sub(r"/\d{4,}", "/:id", p)


# --------------------------------
# Request context middleware
# --------------------------------


@dataclass
class RequestContextConfig:
    request_id_header: str = "X-Request-Id"
    caller_header: str = "X-Caller-Address"
    # Accept an upstream request id if it matches _ID_RE.
    accept_upstream_request_id: bool = True
    id_length: int = 32
    # Emit a DEBUG "http.start" line with (scrubbed) request headers.
    log_headers: bool = True
    logger_name: str = "permit_vault.http"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, exposes it on request.state and the response, and
    binds req_id/path/method (plus the claimed caller) into the logging context
    for the duration of the request.
    """

    def __init__(self, app, *, config: Optional[RequestContextConfig] = None):
        super().__init__(app)
        self._cfg = config or RequestContextConfig()
        self._log = logging.getLogger(self._cfg.logger_name)

    def _request_id(self, request: Request) -> str:
        if self._cfg.accept_upstream_request_id:
            v = (request.headers.get(self._cfg.request_id_header) or "").strip()
            if v and _ID_RE.fullmatch(v):
                return v[: self._cfg.id_length]
        return uuid.uuid4().hex[: self._cfg.id_length]

    async def dispatch(self, request: Request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        caller = request.headers.get(self._cfg.caller_header)
        bind(req_id=rid, path=request.url.path, method=request.method, caller=caller)
        if self._cfg.log_headers and self._log.isEnabledFor(logging.DEBUG):
            self._log.debug("http.start", extra={"headers": scrub_dict(dict(request.headers))})
        try:
            response = await call_next(request)
        finally:
            reset()
        response.headers.setdefault(self._cfg.request_id_header, rid)
        return response


# --------------------------------
# Metrics middleware
# --------------------------------


@dataclass
class MetricsConfig:
    counter: Counter
    histogram: Histogram
    path_normalizer: Callable[[str], str] = _default_path_normalizer
    # Paths that are not worth a time series.
    skip_paths: tuple = ("/metrics",)
    route_aliases: Dict[str, str] = field(default_factory=dict)
    logger_name: str = "permit_vault.http"


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus counter + histogram + one structured log line per request.

      - Counter:   pv_http_requests_total{route, status}
      - Histogram: pv_http_request_latency_seconds{route}
    """

    def __init__(self, app, counter: Counter, histogram: Histogram, *, config: Optional[MetricsConfig] = None):
        super().__init__(app)
        self._cfg = config or MetricsConfig(counter=counter, histogram=histogram)
        self.counter = counter
        self.hist = histogram
        self._log = logging.getLogger(self._cfg.logger_name)

    def _route_label(self, path: str) -> str:
        for prefix, alias in self._cfg.route_aliases.items():
            if path.startswith(prefix):
                return alias
        return self._cfg.path_normalizer(path)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self._cfg.skip_paths:
            return await call_next(request)

        route = self._route_label(path)
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            return response
        finally:
            dt = time.perf_counter() - t0
            status = "ok" if status_code < 400 else "err"
            self.counter.labels(route=route, status=status).inc()
            self.hist.labels(route=route).observe(dt)
            self._log.info(
                "http.finish",
                extra={
                    "route": route,
                    "status": status_code,
                    "latency_ms": round(dt * 1000.0, 3),
                    "req_id": getattr(request.state, "request_id", None),
                },
            )
