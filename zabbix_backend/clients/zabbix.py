# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import abc
import asyncio
import functools
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

import httpx
from prometheus_client import Counter
from pydantic import BaseModel, ValidationError

from ..config import ZabbixConfig, get_config, parse_duration
from ..errors import (
    ZabbixAPIError,
    ZabbixAuthError,
    ZabbixHTTPStatusError,
    ZabbixParseError,
    ZabbixTransportError,
)
from ..models import (
    Application,
    DatasourceInfo,
    Group,
    HistoryPoint,
    Host,
    Item,
    TimeRange,
    TrendPoint,
    ZabbixParams,
    ZabbixResponse,
)
from ..utils.cache import EncryptedTTLCache, TTLCache, hash_string


_logger = logging.getLogger("zabbix_backend.client")

api_requests = Counter(
    "zabbix_api_requests_total", "Zabbix API calls", ["method", "outcome"]
)

LOGIN_METHOD = "user.login"
VERSION_METHOD = "apiinfo.version"
MAX_ATTEMPTS = 4

ITEM_TYPE_FILTERS = {
    "num": [0, 3],
    "text": [1, 2, 4],
}

Params = Union[ZabbixParams, Dict[str, Any], None]
M = TypeVar("M", bound=BaseModel)


def load_json_data(ds_info: DatasourceInfo) -> Dict[str, Any]:
    """Decode the datasource's jsonData settings blob."""
    if not ds_info.json_data:
        return {}
    try:
        data = json.loads(ds_info.json_data)
    except ValueError as e:
        raise ZabbixParseError(f"invalid datasource jsonData: {e}") from e
    if not isinstance(data, dict):
        raise ZabbixParseError("invalid datasource jsonData: expected an object")
    return data


def handle_api_result(response: Union[bytes, str]) -> Any:
    """Return the ``result`` of a JSON-RPC response, or raise its ``error``."""
    try:
        data = json.loads(response)
    except ValueError as e:
        raise ZabbixParseError(f"invalid JSON in Zabbix API response: {e}") from e
    try:
        parsed = ZabbixResponse.model_validate(data)
    except ValidationError as e:
        raise ZabbixParseError(f"unexpected Zabbix API response: {e}") from e
    if parsed.error is not None:
        err = parsed.error
        raise ZabbixAPIError(err.code, err.message, err.data)
    return parsed.result


def _to_payload(params: Params) -> Dict[str, Any]:
    if params is None:
        return {}
    if isinstance(params, ZabbixParams):
        return params.to_payload()
    return dict(params)


def _parse_list(model: Type[M], result: Any, method: str) -> List[M]:
    if not isinstance(result, list):
        raise ZabbixParseError(f"{method}: expected a list, got {type(result).__name__}")
    try:
        return [model.model_validate(r) for r in result]
    except ValidationError as e:
        raise ZabbixParseError(f"{method}: {e}") from e


class ZabbixAPI(abc.ABC):
    """Capabilities a datasource needs from a Zabbix API connection."""

    @abc.abstractmethod
    async def raw_request(
        self, ds_info: DatasourceInfo, method: str, params: Params = None
    ) -> Any:
        ...

    @abc.abstractmethod
    async def get_all_groups(self, ds_info: DatasourceInfo) -> List[Group]:
        ...

    @abc.abstractmethod
    async def get_hosts_by_group_ids(
        self, ds_info: DatasourceInfo, groupids: List[str]
    ) -> List[Host]:
        ...

    @abc.abstractmethod
    async def get_apps_by_host_ids(
        self, ds_info: DatasourceInfo, hostids: List[str]
    ) -> List[Application]:
        ...

    @abc.abstractmethod
    async def get_filtered_items(
        self,
        ds_info: DatasourceInfo,
        hostids: Optional[List[str]],
        appids: Optional[List[str]],
        itemtype: str,
    ) -> List[Item]:
        ...

    @abc.abstractmethod
    async def get_history(
        self, ds_info: DatasourceInfo, items: List[Item], time_range: TimeRange
    ) -> List[HistoryPoint]:
        ...

    @abc.abstractmethod
    async def get_trend(
        self, ds_info: DatasourceInfo, items: List[Item], time_range: TimeRange
    ) -> List[TrendPoint]:
        ...

    async def aclose(self) -> None:
        return None


class _TokenHolder:
    """Auth token shared by concurrent calls.

    Login and invalidation run under a lock; a token is only cleared if it is
    still the one that failed, so a fresh token from a concurrent re-login
    survives.
    """

    def __init__(self, token: Optional[str] = None):
        self._token = token
        self._lock = asyncio.Lock()

    @property
    def value(self) -> Optional[str]:
        return self._token

    async def acquire(self, login: Callable[[], Awaitable[str]]) -> str:
        async with self._lock:
            if not self._token:
                self._token = await login()
            return self._token

    async def invalidate(self, stale: str) -> None:
        async with self._lock:
            if self._token == stale:
                self._token = None


class ZabbixAPIClient(ZabbixAPI):
    def __init__(
        self,
        config: Optional[ZabbixConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        query_cache: Optional[TTLCache] = None,
        auth_token: Optional[str] = None,
    ):
        app_cfg = get_config()
        self._config = config or app_cfg.zabbix
        self._http_client = http_client
        self._query_cache = query_cache or EncryptedTTLCache(
            default_ttl=self._config.query_cache_ttl_sec,
            cleanup_interval=app_cfg.cache.cleanup_interval_sec,
            encrypt_key=app_cfg.security.encrypt_key,
        )
        self._token = _TokenHolder(auth_token)

    @property
    def auth_token(self) -> Optional[str]:
        return self._token.value

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._query_cache.close()

    def _get_http_client(self, ds_info: Optional[DatasourceInfo]) -> httpx.AsyncClient:
        if self._http_client is None:
            cfg = self._config
            skip_verify = False
            if ds_info is not None:
                skip_verify = bool(load_json_data(ds_info).get("tlsSkipVerify", False))
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    cfg.request_timeout_sec, connect=cfg.connect_timeout_sec
                ),
                limits=httpx.Limits(
                    max_connections=cfg.max_connections,
                    max_keepalive_connections=cfg.max_connections,
                    keepalive_expiry=cfg.keepalive_sec,
                ),
                verify=not skip_verify,
                trust_env=True,
            )
        return self._http_client

    async def raw_request(
        self, ds_info: DatasourceInfo, method: str, params: Params = None
    ) -> Any:
        """Call ``method``, logging in first and again whenever the session expired."""
        login = functools.partial(self.login_with_connection, ds_info)
        last_exc: Optional[ZabbixAPIError] = None
        for attempt in range(MAX_ATTEMPTS):
            token = await self._token.acquire(login)
            try:
                return await self.zabbix_api_request(
                    ds_info.url, method, params, token, ds_info
                )
            except ZabbixAPIError as e:
                if not e.is_not_authorized:
                    raise
                _logger.debug(
                    "zabbix session expired",
                    extra={"method": method, "attempt": attempt + 1},
                )
                last_exc = e
                await self._token.invalidate(token)
        raise last_exc

    async def login_with_connection(self, ds_info: DatasourceInfo) -> str:
        json_data = load_json_data(ds_info)
        secure = ds_info.decrypted_secure_json_data
        username = secure.get("username") or json_data.get("username") or ""
        password = secure.get("password") or json_data.get("password") or ""
        if not username or not password:
            raise ZabbixAuthError("username and password must be configured")
        try:
            token = await self.login(ds_info.url, username, password, ds_info)
        except ZabbixAPIError as e:
            _logger.error("zabbix login failed", extra={"url": ds_info.url, "error": str(e)})
            raise ZabbixAuthError(str(e)) from e
        _logger.debug("zabbix login", extra={"url": ds_info.url, "user": username})
        return token

    async def login(
        self,
        api_url: str,
        username: str,
        password: str,
        ds_info: Optional[DatasourceInfo] = None,
    ) -> str:
        params = ZabbixParams(user=username, password=password)
        result = await self.zabbix_api_request(api_url, LOGIN_METHOD, params, None, ds_info)
        if not isinstance(result, str) or not result:
            raise ZabbixParseError(f"{LOGIN_METHOD}: expected a token string")
        return result

    async def zabbix_api_request(
        self,
        api_url: str,
        method: str,
        params: Params = None,
        auth: Optional[str] = None,
        ds_info: Optional[DatasourceInfo] = None,
    ) -> Any:
        body: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 2,
            "method": method,
            "params": _to_payload(params),
        }
        if auth and method != VERSION_METHOD:
            body["auth"] = auth

        client = self._get_http_client(ds_info)
        t0 = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                client.post(
                    api_url, json=body, headers={"Content-Type": "application/json"}
                ),
                timeout=self._config.request_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            api_requests.labels(method=method, outcome="timeout").inc()
            raise ZabbixTransportError(f"{method}: request timed out") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            api_requests.labels(method=method, outcome="transport_error").inc()
            raise ZabbixTransportError(f"{method}: {str(e) or type(e).__name__}") from e

        if resp.status_code != 200:
            api_requests.labels(method=method, outcome="bad_status").inc()
            raise ZabbixHTTPStatusError(resp.status_code, resp.reason_phrase)

        _logger.debug(
            "zabbixAPIRequest",
            extra={
                "method": method,
                "latency_ms": round((time.monotonic() - t0) * 1000.0, 2),
                "bytes": len(resp.content),
            },
        )
        try:
            result = handle_api_result(resp.content)
        except ZabbixAPIError:
            api_requests.labels(method=method, outcome="api_error").inc()
            raise
        except ZabbixParseError:
            api_requests.labels(method=method, outcome="parse_error").inc()
            raise
        api_requests.labels(method=method, outcome="ok").inc()
        return result

    def _cache_ttl(self, ds_info: DatasourceInfo) -> float:
        raw = load_json_data(ds_info).get("cacheTTL")
        if not raw:
            return self._config.query_cache_ttl_sec
        try:
            return parse_duration(str(raw))
        except ValueError:
            _logger.warning("ignoring invalid cacheTTL", extra={"cacheTTL": raw})
            return self._config.query_cache_ttl_sec

    async def _cached_request(
        self, ds_info: DatasourceInfo, method: str, params: ZabbixParams
    ) -> Any:
        payload = json.dumps(params.to_payload(), sort_keys=True)
        key = hash_string(f"{ds_info.url}|{method}|{payload}")
        cached, ok = self._query_cache.get(key)
        if ok:
            return cached
        result = await self.raw_request(ds_info, method, params)
        self._query_cache.set(key, result, ttl=self._cache_ttl(ds_info))
        return result

    async def get_all_groups(self, ds_info: DatasourceInfo) -> List[Group]:
        params = ZabbixParams(output=["groupid", "name"], sortfield="name", real_hosts=True)
        result = await self._cached_request(ds_info, "hostgroup.get", params)
        return _parse_list(Group, result, "hostgroup.get")

    async def get_hosts_by_group_ids(
        self, ds_info: DatasourceInfo, groupids: List[str]
    ) -> List[Host]:
        params = ZabbixParams(
            output=["hostid", "name", "host"], sortfield="name", groupids=groupids
        )
        result = await self._cached_request(ds_info, "host.get", params)
        return _parse_list(Host, result, "host.get")

    async def get_apps_by_host_ids(
        self, ds_info: DatasourceInfo, hostids: List[str]
    ) -> List[Application]:
        params = ZabbixParams(output="extend", hostids=hostids)
        result = await self._cached_request(ds_info, "application.get", params)
        return _parse_list(Application, result, "application.get")

    async def get_filtered_items(
        self,
        ds_info: DatasourceInfo,
        hostids: Optional[List[str]],
        appids: Optional[List[str]],
        itemtype: str,
    ) -> List[Item]:
        params = ZabbixParams(
            output=["itemid", "name", "key_", "value_type", "hostid", "status", "state"],
            sortfield="name",
            webitems=True,
            select_hosts=["hostid", "name"],
            hostids=hostids,
            applicationids=appids,
        )
        if itemtype in ITEM_TYPE_FILTERS:
            params.filter = {"value_type": ITEM_TYPE_FILTERS[itemtype]}
        result = await self._cached_request(ds_info, "item.get", params)
        return _parse_list(Item, result, "item.get")

    async def get_history(
        self, ds_info: DatasourceInfo, items: List[Item], time_range: TimeRange
    ) -> List[HistoryPoint]:
        # history.get reads one storage table per value type
        grouped: Dict[int, List[Item]] = {}
        for item in items:
            grouped.setdefault(item.value_type, []).append(item)

        total: List[HistoryPoint] = []
        for value_type, group in grouped.items():
            params = ZabbixParams(
                output="extend",
                sortfield="clock",
                sortorder="ASC",
                itemids=[i.id for i in group],
                time_from=time_range.from_epoch_ms // 1000,
                time_till=time_range.to_epoch_ms // 1000,
                history=value_type,
            )
            result = await self.raw_request(ds_info, "history.get", params)
            total.extend(_parse_list(HistoryPoint, result, "history.get"))
        return total

    async def get_trend(
        self, ds_info: DatasourceInfo, items: List[Item], time_range: TimeRange
    ) -> List[TrendPoint]:
        if not items:
            return []
        params = ZabbixParams(
            output="extend",
            sortfield="clock",
            sortorder="ASC",
            itemids=[i.id for i in items],
            time_from=time_range.from_epoch_ms // 1000,
            time_till=time_range.to_epoch_ms // 1000,
        )
        result = await self.raw_request(ds_info, "trend.get", params)
        return _parse_list(TrendPoint, result, "trend.get")
