# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import os
import re
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


_DURATION_RE = re.compile(r"^(\d+)(s|m|h|d|w)$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: str) -> int:
    """Convert a Grafana-style duration such as ``10m`` or ``7d`` to seconds."""
    m = _DURATION_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"invalid duration: {value!r}")
    return int(m.group(1)) * _DURATION_UNITS[m.group(2)]


class SecurityConfig(BaseModel):
    app_token: str = Field(default="", description="API token for auth")
    encrypt_key: str = Field(default="", description="Key for cached response encryption")
    rate_limit_per_minute: int = Field(default=60, description="Requests per minute")


class ZabbixConfig(BaseModel):
    connect_timeout_sec: float = Field(
        default=30.0, description="TCP connect and TLS handshake timeout"
    )
    request_timeout_sec: float = Field(
        default=30.0, description="Overall deadline for one API call"
    )
    keepalive_sec: float = Field(default=90.0, description="Idle keep-alive expiry")
    max_connections: int = Field(default=100, description="Connection pool size")
    query_cache_ttl_sec: int = Field(
        default=600, description="Default TTL for cached metadata lookups"
    )
    trends_from: str = Field(
        default="7d", description="Use trends for ranges starting before now-trends_from"
    )
    trends_range: str = Field(
        default="4d", description="Use trends for ranges longer than trends_range"
    )


class CacheConfig(BaseModel):
    datasource_ttl_sec: int = Field(
        default=600, description="Lifetime of a cached datasource instance"
    )
    cleanup_interval_sec: int = Field(
        default=600, description="Background sweep interval for expired entries"
    )


class AppConfig(BaseModel):
    security: SecurityConfig
    zabbix: ZabbixConfig
    cache: CacheConfig
    log_level: str = "INFO"


def load_config() -> AppConfig:
    load_dotenv(find_dotenv(filename=".env", usecwd=True), override=False)
    security = SecurityConfig(
        app_token=os.getenv("APP_TOKEN", ""),
        encrypt_key=os.getenv("APP_ENCRYPT_KEY", ""),
        rate_limit_per_minute=int(os.getenv("APP_RATE_LIMIT_PER_MIN", "60")),
    )
    zabbix = ZabbixConfig(
        connect_timeout_sec=float(os.getenv("ZABBIX_CONNECT_TIMEOUT_SEC", "30")),
        request_timeout_sec=float(os.getenv("ZABBIX_REQUEST_TIMEOUT_SEC", "30")),
        keepalive_sec=float(os.getenv("ZABBIX_KEEPALIVE_SEC", "90")),
        max_connections=int(os.getenv("ZABBIX_MAX_CONNECTIONS", "100")),
        query_cache_ttl_sec=int(os.getenv("ZABBIX_QUERY_CACHE_TTL_SEC", "600")),
        trends_from=os.getenv("ZABBIX_TRENDS_FROM", "7d"),
        trends_range=os.getenv("ZABBIX_TRENDS_RANGE", "4d"),
    )
    cache = CacheConfig(
        datasource_ttl_sec=int(os.getenv("DATASOURCE_CACHE_TTL_SEC", "600")),
        cleanup_interval_sec=int(os.getenv("CACHE_CLEANUP_INTERVAL_SEC", "600")),
    )
    return AppConfig(
        security=security,
        zabbix=zabbix,
        cache=cache,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


CONFIG: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global CONFIG
    if CONFIG is None:
        CONFIG = load_config()
    return CONFIG
