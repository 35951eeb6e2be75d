# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import hmac
import threading
import time
from collections import deque
from typing import Deque, Dict

from fastapi import Header, HTTPException

from .config import get_config


_RATE_WINDOW_SEC = 60.0
_rate_buckets: Dict[str, Deque[float]] = {}
_rate_lock = threading.Lock()


def require_token(authorization: str = Header(default="")) -> str:
    cfg = get_config().security
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail={"error_code": "error.auth.missing_bearer"})
    token = authorization.split(" ", 1)[1]
    if not cfg.app_token or not hmac.compare_digest(token, cfg.app_token):
        raise HTTPException(status_code=401, detail={"error_code": "error.auth.invalid_token"})
    _rate_limit(token, cfg.rate_limit_per_minute)
    return token


def _rate_limit(token: str, limit: int) -> None:
    now = time.monotonic()
    with _rate_lock:
        bucket = _rate_buckets.setdefault(token, deque())
        while bucket and now - bucket[0] > _RATE_WINDOW_SEC:
            bucket.popleft()
        if len(bucket) >= limit:
            raise HTTPException(status_code=429, detail={"error_code": "error.rate.limit_exceeded"})
        bucket.append(now)
