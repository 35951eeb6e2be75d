# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import json

import pytest

from zabbix_backend.backend import UNRECOVERABLE_ERROR, ZabbixBackend, get_query_type
from zabbix_backend.datasource import ZabbixDatasource
from zabbix_backend.errors import ZabbixAPIError, ZabbixParseError
from zabbix_backend.models import DatasourceRequest
from zabbix_backend.utils.cache import TTLCache

from conftest import FakeZabbixAPI, basic_datasource_info, make_request


def _backend(api=None):
    apis = []

    def factory(fingerprint):
        client = api or FakeZabbixAPI()
        apis.append(client)
        return ZabbixDatasource(fingerprint=fingerprint, client=client)

    backend = ZabbixBackend(datasource_cache=TTLCache(default_ttl=60), datasource_factory=factory)
    return backend, apis


def test_get_cached_datasource_hit_and_miss():
    backend, apis = _backend()
    ds1 = backend.get_cached_datasource(make_request())
    ds2 = backend.get_cached_datasource(make_request())
    assert ds1 is ds2
    assert len(apis) == 1

    other = make_request(ds_info=basic_datasource_info(name="Other"))
    ds3 = backend.get_cached_datasource(other)
    assert ds3 is not ds1
    assert ds3.fingerprint != ds1.fingerprint
    assert len(apis) == 2


def test_get_cached_datasource_after_settings_change():
    backend, apis = _backend()
    ds1 = backend.get_cached_datasource(make_request())
    changed = basic_datasource_info(decrypted_secure_json_data={"password": "new"})
    ds2 = backend.get_cached_datasource(make_request(ds_info=changed))
    assert ds1 is not ds2


@pytest.mark.parametrize(
    "model,expected",
    [
        ({"queryType": "zabbixAPI"}, "zabbixAPI"),
        ({"queryType": "connectionTest"}, "connectionTest"),
        ({"queryType": ""}, "query"),
        ({"group": {"filter": ""}}, "query"),
        ([1, 2], "query"),
    ],
)
def test_get_query_type(model, expected):
    assert get_query_type(make_request(model)) == expected


def test_get_query_type_no_queries():
    assert get_query_type(DatasourceRequest()) == "query"


def test_get_query_type_bad_json():
    with pytest.raises(ZabbixParseError):
        get_query_type(make_request("{not json"))


@pytest.mark.asyncio
async def test_query_routes_direct_query():
    backend, apis = _backend(FakeZabbixAPI(raw_result=[{"groupid": "1"}]))
    resp = await backend.query(
        make_request({"queryType": "zabbixAPI", "target": {"method": "hostgroup.get", "params": {}}})
    )
    assert json.loads(resp.results[0].meta_json) == [{"groupid": "1"}]
    assert apis[0].called("raw_request") == [("hostgroup.get", {})]


@pytest.mark.asyncio
async def test_query_routes_connection_test():
    backend, apis = _backend(FakeZabbixAPI(raw_result="6.0.0"))
    resp = await backend.query(make_request({"queryType": "connectionTest"}))
    assert json.loads(resp.results[0].meta_json)["zabbixVersion"] == "6.0.0"
    assert apis[0].called("raw_request") == [("apiinfo.version", {})]


@pytest.mark.asyncio
async def test_query_routes_timeseries(zabbix_fixture_data):
    backend, apis = _backend(FakeZabbixAPI(**zabbix_fixture_data))
    resp = await backend.query(
        make_request({"group": {"filter": "Nope"}, "application": {"filter": "Nope"}})
    )
    assert resp.results[0].series == []
    assert apis[0].called("get_all_groups") == [None]


@pytest.mark.asyncio
async def test_query_unknown_type():
    backend, _ = _backend()
    resp = await backend.query(make_request({"queryType": "itServices"}, ref_id="C"))
    assert resp.results[0].error == "Query not implemented"
    assert resp.results[0].ref_id == "C"


@pytest.mark.asyncio
async def test_query_domain_error_becomes_error_result():
    err = ZabbixAPIError(-32500, "Application error.", "No permissions.")
    backend, _ = _backend(FakeZabbixAPI(raw_error=err))
    resp = await backend.query(
        make_request({"queryType": "zabbixAPI", "target": {"method": "host.get"}})
    )
    assert resp.results[0].error == (
        "Error in direct query: Code -32500: 'Application error.' No permissions."
    )
    assert resp.results[0].ref_id == "A"


@pytest.mark.asyncio
async def test_query_malformed_model():
    backend, _ = _backend()
    resp = await backend.query(make_request("{not json"))
    assert resp.results[0].error.startswith("invalid query model")


@pytest.mark.asyncio
async def test_query_unexpected_error_is_contained():
    backend, _ = _backend(FakeZabbixAPI(raw_error=RuntimeError("kaboom")))
    resp = await backend.query(
        make_request({"queryType": "zabbixAPI", "target": {"method": "host.get"}})
    )
    assert resp.results[0].error == UNRECOVERABLE_ERROR
    assert resp.results[0].ref_id == "A"


@pytest.mark.asyncio
async def test_close_releases_datasources():
    backend, apis = _backend()
    backend.get_cached_datasource(make_request())
    await backend.close()
    assert apis[0].closed


@pytest.mark.asyncio
async def test_query_error_keeps_ref_id_of_failing_query(zabbix_fixture_data):
    backend, _ = _backend(FakeZabbixAPI(**zabbix_fixture_data))
    resp = await backend.query(make_request({"group": {"filter": "/Linux/z"}}, ref_id="B"))
    assert resp.results[0].ref_id == "B"
    assert resp.results[0].error.startswith("error parsing regexp")


@pytest.mark.asyncio
async def test_query_error_without_ref_id_uses_default():
    backend, _ = _backend()
    resp = await backend.query(make_request("{not json", ref_id=""))
    assert resp.results[0].ref_id == "zabbixAPI"


@pytest.mark.asyncio
async def test_expired_datasource_is_closed():
    apis = []

    def factory(fingerprint):
        apis.append(FakeZabbixAPI())
        return ZabbixDatasource(fingerprint=fingerprint, client=apis[-1])

    backend = ZabbixBackend(datasource_cache=TTLCache(default_ttl=0), datasource_factory=factory)
    request = make_request({"queryType": "itServices"})
    await backend.query(request)
    await backend.query(request)

    assert len(apis) == 2
    assert apis[0].closed
    assert not apis[1].closed


@pytest.mark.asyncio
async def test_datasource_swept_by_janitor_is_closed_on_next_query():
    backend, apis = _backend()
    ds = backend.get_cached_datasource(make_request())
    backend.datasource_cache.set(ds.fingerprint, ds, ttl=0)
    assert backend.datasource_cache.delete_expired() == 1
    assert not apis[0].closed

    other = make_request({"queryType": "itServices"}, ds_info=basic_datasource_info(name="Other"))
    await backend.query(other)
    assert apis[0].closed
    assert not apis[1].closed
