# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import functools
import logging
import re
import time
from typing import List, Optional, Pattern, Tuple

from pydantic import ValidationError

from .clients.zabbix import VERSION_METHOD, ZabbixAPI, ZabbixAPIClient, load_json_data
from .config import ZabbixConfig, get_config, parse_duration
from .converter.grafana import (
    DEFAULT_REF_ID,
    build_error_response,
    build_metrics_response,
    build_response,
    convert_history,
    convert_trend,
    request_ref_id,
)
from .errors import (
    FilterError,
    QueryError,
    ZabbixAuthError,
    ZabbixBackendError,
    ZabbixParseError,
)
from .models import (
    Application,
    ConnectionTestResponse,
    DatasourceInfo,
    DatasourceRequest,
    DatasourceResponse,
    DBConnectionStatus,
    DirectQueryModel,
    FunctionModel,
    Group,
    Host,
    Item,
    MetricsQueryModel,
    QueryResult,
    TimeRange,
    TimeSeries,
)


_logger = logging.getLogger("zabbix_backend.datasource")

TREND_VALUE_TYPES = ("min", "avg", "max")

_REGEX_FILTER = re.compile(r"^/(.+)/(.*)$")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


@functools.lru_cache(maxsize=512)
def parse_filter(filter_str: str) -> Optional[Pattern[str]]:
    """Compile a ``/pattern/flags`` filter; return None for literal filters."""
    m = _REGEX_FILTER.match(filter_str)
    if not m:
        return None
    pattern, flags = m.group(1), m.group(2)
    unsupported = "".join(f for f in flags if f not in _REGEX_FLAGS)
    if unsupported:
        raise FilterError(
            f"error parsing regexp: unsupported flags `{unsupported}` (expected [ims])"
        )
    re_flags = 0
    for f in flags:
        re_flags |= _REGEX_FLAGS[f]
    try:
        return re.compile(pattern, re_flags)
    except re.error as e:
        raise FilterError(f"error parsing regexp: {e}: `{pattern}`") from e


def match_filter(filter_str: str, name: str) -> bool:
    if not filter_str:
        return True
    pattern = parse_filter(filter_str)
    if pattern is None:
        return filter_str in name
    return pattern.search(name) is not None


def is_use_trend(
    time_range: TimeRange,
    now: Optional[float] = None,
    trends_from: int = 7 * 86400,
    trends_range: int = 4 * 86400,
) -> bool:
    """Trends for ranges that start before ``now - trends_from`` or span more
    than ``trends_range`` seconds; raw history otherwise."""
    now_sec = time.time() if now is None else now
    from_sec = time_range.from_epoch_ms / 1000.0
    to_sec = time_range.to_epoch_ms / 1000.0
    return from_sec < now_sec - trends_from or (to_sec - from_sec) > trends_range


def _function_name(fn: FunctionModel) -> str:
    return fn.def_.name or fn.name


def _first_param(fn: FunctionModel) -> Optional[str]:
    for params in (fn.params, fn.def_.params):
        if params and isinstance(params[0], str):
            return params[0]
    return None


def get_trend_value_type(query: MetricsQueryModel) -> str:
    value_type = ""
    for fn in query.functions:
        name = _function_name(fn)
        if name in TREND_VALUE_TYPES:
            value_type = name
        elif name == "trendValue":
            param = _first_param(fn)
            if param in TREND_VALUE_TYPES:
                value_type = param
    return value_type or "avg"


def get_consolidate_by(query: MetricsQueryModel) -> str:
    consolidate_by = ""
    for fn in query.functions:
        if _function_name(fn) == "consolidateBy":
            param = _first_param(fn)
            if param:
                consolidate_by = param
    return consolidate_by


def _elapsed_ms(t0: float) -> float:
    return round((time.monotonic() - t0) * 1000.0, 2)


class ZabbixDatasource:
    """One configured Zabbix connection: filter resolution and data queries."""

    def __init__(
        self,
        fingerprint: str = "",
        client: Optional[ZabbixAPI] = None,
        config: Optional[ZabbixConfig] = None,
    ):
        self.fingerprint = fingerprint
        self.client = client or ZabbixAPIClient(config=config)
        self._config = config or get_config().zabbix

    async def aclose(self) -> None:
        await self.client.aclose()

    async def direct_query(self, request: DatasourceRequest) -> DatasourceResponse:
        queries: List[Tuple[str, DirectQueryModel]] = []
        for q in request.queries:
            try:
                model = DirectQueryModel.model_validate_json(q.model_json)
            except ValidationError as e:
                raise ZabbixParseError(f"invalid query model: {e}") from e
            _logger.debug(
                "ZabbixAPIQuery",
                extra={"method": model.target.method, "params": model.target.params},
            )
            queries.append((q.ref_id, model))

        if not queries:
            raise QueryError("At least one query should be provided")

        ref_id, model = queries[0]
        try:
            result = await self.client.raw_request(
                request.datasource, model.target.method, model.target.params
            )
        except ZabbixBackendError as e:
            err = QueryError(f"Error in direct query: {e}")
            _logger.error(str(err))
            raise err from e
        return build_response(result, ref_id=ref_id or DEFAULT_REF_ID)

    async def test_connection(self, request: DatasourceRequest) -> DatasourceResponse:
        ds_info = request.datasource
        ref_id = request_ref_id(request)
        try:
            result = await self.client.raw_request(ds_info, VERSION_METHOD, {})
        except ZabbixAuthError as e:
            _logger.debug("TestConnection", extra={"error": str(e)})
            return build_error_response(f"Authentication failed: {e}", ref_id)
        except ZabbixParseError as e:
            _logger.error(
                "Internal error while parsing response from Zabbix",
                extra={"error": str(e)},
            )
            return build_error_response("Internal error while parsing response from Zabbix", ref_id)
        except ZabbixBackendError as e:
            _logger.debug("TestConnection", extra={"error": str(e)})
            return build_error_response(f"Version check failed: {e}", ref_id)

        if not isinstance(result, str):
            _logger.error(
                "Internal error while parsing response from Zabbix",
                extra={"result": repr(result)},
            )
            return build_error_response("Internal error while parsing response from Zabbix", ref_id)

        _logger.debug("TestConnection", extra={"version": result})
        return build_response(
            ConnectionTestResponse(
                zabbix_version=result,
                db_connector_status=self._db_connector_status(ds_info),
            ),
            ref_id=ref_id,
        )

    def _db_connector_status(self, ds_info: DatasourceInfo) -> Optional[DBConnectionStatus]:
        json_data = load_json_data(ds_info)
        if not json_data.get("dbConnectionEnable"):
            return None
        return DBConnectionStatus(
            ds_type=str(json_data.get("dbConnectionDatasourceType") or ""),
            ds_name=str(json_data.get("dbConnectionDatasourceName") or ""),
        )

    async def timeseries_query(self, request: DatasourceRequest) -> DatasourceResponse:
        if not request.queries:
            raise QueryError("At least one query should be provided")

        ds_info = request.datasource
        trends_from, trends_range = self._trend_thresholds(ds_info)
        use_trend = is_use_trend(
            request.time_range, trends_from=trends_from, trends_range=trends_range
        )

        results: List[QueryResult] = []
        for q in request.queries:
            try:
                model = MetricsQueryModel.model_validate_json(q.model_json)
            except ValidationError as e:
                raise ZabbixParseError(f"invalid query model: {e}") from e

            t0 = time.monotonic()
            _logger.debug(
                "queryNumericItems",
                extra={
                    "groupFilter": model.group.filter,
                    "hostFilter": model.host.filter,
                    "appFilter": model.application.filter,
                    "itemFilter": model.item.filter,
                },
            )
            items = await self.get_items(
                ds_info,
                model.group.filter,
                model.host.filter,
                model.application.filter,
                model.item.filter,
                "num",
            )
            series = await self.query_numeric_data_for_items(
                ds_info, request.time_range, items, model, use_trend
            )
            _logger.debug(
                "queryNumericItems finished",
                extra={"series": len(series), "trend": use_trend, "elapsed_ms": _elapsed_ms(t0)},
            )
            results.append(QueryResult(ref_id=q.ref_id or DEFAULT_REF_ID, series=series))

        return build_metrics_response(results)

    def _trend_thresholds(self, ds_info: DatasourceInfo) -> Tuple[int, int]:
        json_data = load_json_data(ds_info)
        thresholds = []
        for key, default in (
            ("trendsFrom", self._config.trends_from),
            ("trendsRange", self._config.trends_range),
        ):
            raw = json_data.get(key) or default
            try:
                thresholds.append(parse_duration(str(raw)))
            except ValueError:
                _logger.warning("ignoring invalid trends setting", extra={key: raw})
                thresholds.append(parse_duration(default))
        return thresholds[0], thresholds[1]

    async def get_items(
        self,
        ds_info: DatasourceInfo,
        group_filter: str,
        host_filter: str,
        app_filter: str,
        item_filter: str,
        item_type: str = "num",
    ) -> List[Item]:
        t0 = time.monotonic()
        hosts = await self.get_hosts(ds_info, group_filter, host_filter)
        hostids = [h.id for h in hosts]
        _logger.debug("getItems: getHosts finished", extra={"elapsed_ms": _elapsed_ms(t0)})

        if hostids:
            items = await self.client.get_filtered_items(ds_info, hostids, None, item_type)
        else:
            # no host scope: fall back to applications across all hosts
            apps = await self.get_apps(ds_info, hostids, app_filter)
            appids = [a.id for a in apps]
            _logger.debug("getItems: getApps finished", extra={"elapsed_ms": _elapsed_ms(t0)})
            if appids:
                items = await self.client.get_filtered_items(ds_info, None, appids, item_type)
            else:
                items = []

        filtered: List[Item] = []
        for item in items:
            if item.status != "0":
                continue
            try:
                matched = match_filter(item_filter, item.name)
            except FilterError as e:
                _logger.warning(f"RegExp failed: {e}", extra={"item": item.name})
                continue
            if matched:
                filtered.append(item)

        _logger.debug(
            "getItems",
            extra={"found": len(items), "matches": len(filtered), "elapsed_ms": _elapsed_ms(t0)},
        )
        return filtered

    async def get_apps(
        self, ds_info: DatasourceInfo, hostids: List[str], app_filter: str
    ) -> List[Application]:
        """Applications of ``hostids`` (all applications when empty), filtered by name."""
        apps = await self.client.get_apps_by_host_ids(ds_info, hostids)
        filtered = [a for a in apps if match_filter(app_filter, a.name)]
        _logger.debug("getApps", extra={"found": len(apps), "matches": len(filtered)})
        return filtered

    async def get_hosts(
        self, ds_info: DatasourceInfo, group_filter: str, host_filter: str
    ) -> List[Host]:
        groups = await self.get_groups(ds_info, group_filter)
        groupids = [g.id for g in groups]
        if not groupids:
            return []
        hosts = await self.client.get_hosts_by_group_ids(ds_info, groupids)
        filtered = [h for h in hosts if match_filter(host_filter, h.name)]
        _logger.debug("getHosts", extra={"found": len(hosts), "matches": len(filtered)})
        return filtered

    async def get_groups(self, ds_info: DatasourceInfo, group_filter: str) -> List[Group]:
        groups = await self.client.get_all_groups(ds_info)
        filtered = [g for g in groups if match_filter(group_filter, g.name)]
        _logger.debug("getGroups", extra={"found": len(groups), "matches": len(filtered)})
        return filtered

    async def query_numeric_data_for_items(
        self,
        ds_info: DatasourceInfo,
        time_range: TimeRange,
        items: List[Item],
        query: MetricsQueryModel,
        use_trend: bool,
    ) -> List[TimeSeries]:
        if not items:
            return []
        value_type = get_trend_value_type(query)
        consolidate_by = get_consolidate_by(query)
        if consolidate_by in TREND_VALUE_TYPES:
            value_type = consolidate_by

        if use_trend:
            trend = await self.client.get_trend(ds_info, items, time_range)
            return convert_trend(trend, items, value_type)
        history = await self.client.get_history(ds_info, items, time_range)
        return convert_history(history, items)
