# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from zabbix_backend.clients.zabbix import ZabbixAPI, ZabbixAPIClient
from zabbix_backend.config import ZabbixConfig
from zabbix_backend.models import (
    Application,
    DatasourceInfo,
    DatasourceRequest,
    Group,
    HistoryPoint,
    Host,
    Item,
    Query,
    TimeRange,
    TrendPoint,
)
from zabbix_backend.utils.cache import TTLCache


API_URL = "http://zabbix.local/api_jsonrpc.php"


def basic_datasource_info(**overrides: Any) -> DatasourceInfo:
    data: Dict[str, Any] = {
        "id": 1,
        "name": "TestDatasource",
        "url": API_URL,
        "json_data": '{"username":"username","password":"password"}',
    }
    data.update(overrides)
    return DatasourceInfo(**data)


def make_request(
    model: Any = "",
    ds_info: Optional[DatasourceInfo] = None,
    from_ms: int = 0,
    to_ms: int = 0,
    ref_id: str = "A",
) -> DatasourceRequest:
    model_json = model if isinstance(model, str) else json.dumps(model)
    return DatasourceRequest(
        datasource=ds_info or basic_datasource_info(),
        time_range=TimeRange(from_epoch_ms=from_ms, to_epoch_ms=to_ms),
        queries=[Query(ref_id=ref_id, model_json=model_json)],
    )


class ZabbixMock:
    """httpx MockTransport handler that records JSON-RPC bodies."""

    def __init__(self, responder: Callable[[Dict[str, Any]], Any]):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        out = self.responder(body)
        if isinstance(out, httpx.Response):
            return out
        return httpx.Response(200, json=out)

    @property
    def methods(self) -> List[str]:
        return [c["method"] for c in self.calls]

    def calls_for(self, method: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method]


@pytest.fixture
def make_client() -> Callable[..., Tuple[ZabbixAPIClient, ZabbixMock]]:
    def _make(
        responder: Callable[[Dict[str, Any]], Any],
        token: Optional[str] = "sampleAuthToken",
    ) -> Tuple[ZabbixAPIClient, ZabbixMock]:
        mock = ZabbixMock(responder)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(mock))
        client = ZabbixAPIClient(
            config=ZabbixConfig(),
            http_client=http_client,
            query_cache=TTLCache(default_ttl=60),
            auth_token=token,
        )
        return client, mock

    return _make


class FakeZabbixAPI(ZabbixAPI):
    """In-memory Zabbix with canned entities; records every call."""

    def __init__(
        self,
        groups: Optional[List[Dict[str, Any]]] = None,
        hosts: Optional[List[Dict[str, Any]]] = None,
        apps: Optional[List[Dict[str, Any]]] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        trend: Optional[List[Dict[str, Any]]] = None,
        raw_result: Any = None,
        raw_error: Optional[Exception] = None,
        item_apps: Optional[Dict[str, List[str]]] = None,
    ):
        self.groups = [Group.model_validate(g) for g in groups or []]
        self.hosts = [Host.model_validate(h) for h in hosts or []]
        self.apps = [Application.model_validate(a) for a in apps or []]
        self.items = [Item.model_validate(i) for i in items or []]
        self.history = [HistoryPoint.model_validate(p) for p in history or []]
        self.trend = [TrendPoint.model_validate(p) for p in trend or []]
        self.raw_result = raw_result
        self.raw_error = raw_error
        self.item_apps = item_apps or {}
        self.calls: List[Tuple[str, Any]] = []
        self.closed = False

    async def raw_request(self, ds_info, method, params=None):
        self.calls.append(("raw_request", (method, params)))
        if self.raw_error is not None:
            raise self.raw_error
        return self.raw_result

    async def get_all_groups(self, ds_info):
        self.calls.append(("get_all_groups", None))
        return list(self.groups)

    async def get_hosts_by_group_ids(self, ds_info, groupids):
        self.calls.append(("get_hosts_by_group_ids", list(groupids)))
        return [h for h in self.hosts if h.id in self._host_ids_in_groups(groupids)]

    async def get_apps_by_host_ids(self, ds_info, hostids):
        self.calls.append(("get_apps_by_host_ids", list(hostids)))
        if not hostids:
            return list(self.apps)
        return [a for a in self.apps if a.hostid in hostids]

    async def get_filtered_items(self, ds_info, hostids, appids, itemtype):
        self.calls.append(("get_filtered_items", (hostids, appids, itemtype)))
        if hostids:
            return [i for i in self.items if i.hostid in hostids]
        if appids:
            return [
                i for i in self.items
                if set(self.item_apps.get(i.id, [])) & set(appids)
            ]
        return list(self.items)

    async def get_history(self, ds_info, items, time_range):
        self.calls.append(("get_history", [i.id for i in items]))
        ids = {i.id for i in items}
        return [p for p in self.history if p.itemid in ids]

    async def get_trend(self, ds_info, items, time_range):
        self.calls.append(("get_trend", [i.id for i in items]))
        ids = {i.id for i in items}
        return [p for p in self.trend if p.itemid in ids]

    async def aclose(self):
        self.closed = True

    def called(self, name: str) -> List[Any]:
        return [args for n, args in self.calls if n == name]

    def _host_ids_in_groups(self, groupids: List[str]) -> set:
        # hosts carry their group in the "host" field of these fixtures
        return {h.id for h in self.hosts if h.host in groupids}


@pytest.fixture
def zabbix_fixture_data() -> Dict[str, Any]:
    return {
        "groups": [
            {"groupid": "1", "name": "Linux servers"},
            {"groupid": "2", "name": "Zabbix servers"},
        ],
        "hosts": [
            {"hostid": "10", "name": "backend01", "host": "1"},
            {"hostid": "11", "name": "backend02", "host": "1"},
            {"hostid": "20", "name": "zabbix01", "host": "2"},
        ],
        "apps": [
            {"applicationid": "100", "name": "CPU", "hostid": "10"},
            {"applicationid": "101", "name": "Memory", "hostid": "10"},
        ],
        "item_apps": {"1000": ["100"], "1002": ["100"], "2000": ["101"]},
        "items": [
            {
                "itemid": "1000",
                "name": "CPU load",
                "value_type": "0",
                "hostid": "10",
                "status": "0",
                "hosts": [{"hostid": "10", "name": "backend01"}],
            },
            {
                "itemid": "1001",
                "name": "CPU load",
                "value_type": "0",
                "hostid": "11",
                "status": "0",
                "hosts": [{"hostid": "11", "name": "backend02"}],
            },
            {
                "itemid": "1002",
                "name": "CPU idle",
                "value_type": "0",
                "hostid": "10",
                "status": "1",
                "hosts": [{"hostid": "10", "name": "backend01"}],
            },
            {
                "itemid": "2000",
                "name": "Zabbix queue",
                "value_type": "3",
                "hostid": "20",
                "status": "0",
                "hosts": [{"hostid": "20", "name": "zabbix01"}],
            },
        ],
        "history": [
            {"itemid": "1000", "clock": "1600000000", "ns": "0", "value": "1.0"},
            {"itemid": "1000", "clock": "1600000060", "ns": "0", "value": "2.0"},
            {"itemid": "1000", "clock": "1600000120", "ns": "0", "value": "3.0"},
            {"itemid": "1001", "clock": "1600000000", "ns": "0", "value": "4.0"},
            {"itemid": "1001", "clock": "1600000060", "ns": "0", "value": "5.0"},
            {"itemid": "1001", "clock": "1600000120", "ns": "0", "value": "6.0"},
        ],
        "trend": [
            {
                "itemid": "1000",
                "clock": "1600000000",
                "num": "60",
                "value_min": "1",
                "value_avg": "2",
                "value_max": "3",
            },
            {
                "itemid": "1001",
                "clock": "1600003600",
                "num": "60",
                "value_min": "4",
                "value_avg": "5",
                "value_max": "6",
            },
        ],
    }
