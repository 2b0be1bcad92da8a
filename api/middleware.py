"""
api/middleware.py

Protection layer for the reconciler API. Apply, destroy and cancel change
real state, so they are throttled and guarded more tightly than reads.

  1. RateLimitMiddleware   per-IP token buckets, one per request class
                           RATE_LIMIT_READ_RPM  (default 60)
                           RATE_LIMIT_WRITE_RPM (default 4)
  2. require_api_key       X-API-Key must equal API_KEY; unset key → 503
  3. job_slots             running-job caps, reserved by the endpoints
                           MAX_CONCURRENT_JOBS (default 1)
                           MAX_JOBS_PER_IP     (default 1)
  4. write_audit           one line per mutating call in RECONCILER_AUDIT_LOG
                           2026-02-27T12:34:56Z  APPLY  1.2.3.4  resources=3
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

_RATE_READ_RPM:  int           = int(os.getenv("RATE_LIMIT_READ_RPM",  "60"))
_RATE_WRITE_RPM: int           = int(os.getenv("RATE_LIMIT_WRITE_RPM", "4"))
_MAX_CONCURRENT: int           = int(os.getenv("MAX_CONCURRENT_JOBS",   "1"))
_MAX_PER_IP:     int           = int(os.getenv("MAX_JOBS_PER_IP",       "1"))
_AUDIT_FILE:     str           = os.getenv("RECONCILER_AUDIT_LOG",      "audit.log")
_API_KEY:        Optional[str] = os.getenv("API_KEY")

# (method, path prefix, path suffix) triples that count as writes
_WRITE_RULES: Tuple[Tuple[str, str, str], ...] = (
    ("POST", "/apply",   ""),
    ("POST", "/destroy", ""),
    ("POST", "/jobs/",   "/cancel"),
)

# ─────────────────────────────────────────────────────────────────────────────
# Audit log
# ─────────────────────────────────────────────────────────────────────────────

audit_logger = logging.getLogger("reconciler.audit")
audit_logger.setLevel(logging.INFO)
audit_logger.propagate = False
if not audit_logger.handlers:
    _handler = logging.FileHandler(_AUDIT_FILE, encoding="utf-8", delay=True)
    _handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(_handler)


def write_audit(operation: str, ip: str, extra: str = "") -> None:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    fields = [stamp, operation.upper(), ip] + ([extra] if extra else [])
    audit_logger.info("  ".join(fields))


# ─────────────────────────────────────────────────────────────────────────────
# 1.  Rate limiting
# ─────────────────────────────────────────────────────────────────────────────

class _Bucket:
    """Token bucket refilled continuously at `per_minute` tokens per minute."""
    __slots__ = ("capacity", "rate", "tokens", "stamp")

    def __init__(self, per_minute: int) -> None:
        self.capacity = float(per_minute)
        self.rate     = per_minute / 60.0
        self.tokens   = self.capacity
        self.stamp    = time.monotonic()

    def take(self) -> bool:
        now         = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.stamp) * self.rate)
        self.stamp  = now
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True


def is_write(method: str, path: str) -> bool:
    return any(
        method == m and path.startswith(prefix) and path.endswith(suffix)
        for m, prefix, suffix in _WRITE_RULES
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Separate read and write budgets per client IP."""

    def __init__(self, app, **kwargs) -> None:
        super().__init__(app, **kwargs)
        self._lock = threading.Lock()
        self._limits = {"read": _RATE_READ_RPM, "write": _RATE_WRITE_RPM}
        self._buckets: Dict[Tuple[str, str], _Bucket] = {}

    def _allow(self, ip: str, request_class: str) -> bool:
        with self._lock:
            bucket = self._buckets.get((ip, request_class))
            if bucket is None:
                bucket = self._buckets[(ip, request_class)] = _Bucket(self._limits[request_class])
            return bucket.take()

    async def dispatch(self, request: Request, call_next: Callable):
        ip = _get_client_ip(request)
        request_class = "write" if is_write(request.method, request.url.path) else "read"

        if not self._allow(ip, request_class):
            write_audit("RATE_LIMITED", ip, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"detail": (
                    f"Rate limit exceeded ({self._limits[request_class]} {request_class} "
                    "req/min per IP). Please wait before retrying."
                )},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)


# ─────────────────────────────────────────────────────────────────────────────
# 2.  API key
# ─────────────────────────────────────────────────────────────────────────────

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def require_api_key(
    request: Request,
    key: Optional[str] = Depends(_api_key_header),
) -> None:
    """FastAPI dependency for every mutating endpoint."""
    if _API_KEY is None:
        raise HTTPException(
            status_code=503,
            detail="Mutating endpoints are disabled until the API_KEY environment variable is set.",
        )
    if key != _API_KEY:
        write_audit("AUTH_FAIL", _get_client_ip(request), request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key. Set it in the X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ─────────────────────────────────────────────────────────────────────────────
# 3.  Running-job caps
# ─────────────────────────────────────────────────────────────────────────────

class JobSlots:
    """
    Counts running jobs globally and per IP.

    reserve() is called by /apply and /destroy once the request body has
    been validated; api.jobs releases the slot when the thread ends.
    """

    def __init__(self, max_total: int, max_per_ip: int) -> None:
        self.max_total  = max_total
        self.max_per_ip = max_per_ip
        self._lock      = threading.Lock()
        self._per_ip: Dict[str, int] = defaultdict(int)
        self._total     = 0

    @property
    def running(self) -> int:
        return self._total

    def reserve(self, ip: str) -> None:
        with self._lock:
            if self._total >= self.max_total:
                raise HTTPException(
                    status_code=429,
                    detail=f"Server is busy: {self.max_total} job(s) already running.",
                    headers={"Retry-After": "30"},
                )
            if self._per_ip[ip] >= self.max_per_ip:
                raise HTTPException(
                    status_code=429,
                    detail="You already have a running job. Wait for it to complete.",
                    headers={"Retry-After": "30"},
                )
            self._total      += 1
            self._per_ip[ip] += 1

    def release(self, ip: str) -> None:
        with self._lock:
            self._total = max(0, self._total - 1)
            if self._per_ip[ip] > 0:
                self._per_ip[ip] -= 1


job_slots = JobSlots(_MAX_CONCURRENT, _MAX_PER_IP)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
