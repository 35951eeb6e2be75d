# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


# Host request / response envelopes


class DatasourceInfo(_CamelModel):
    id: int = 0
    org_id: int = Field(default=0, alias="orgId")
    name: str = ""
    type: str = ""
    url: str = ""
    json_data: str = Field(default="", alias="jsonData")
    decrypted_secure_json_data: Dict[str, str] = Field(
        default_factory=dict, alias="decryptedSecureJsonData"
    )


class TimeRange(_CamelModel):
    from_raw: str = Field(default="", alias="fromRaw")
    to_raw: str = Field(default="", alias="toRaw")
    from_epoch_ms: int = Field(default=0, alias="fromEpochMs")
    to_epoch_ms: int = Field(default=0, alias="toEpochMs")


class Query(_CamelModel):
    ref_id: str = Field(default="", alias="refId")
    model_json: str = Field(default="", alias="modelJson")
    max_data_points: int = Field(default=0, alias="maxDataPoints")
    interval_ms: int = Field(default=0, alias="intervalMs")


class DatasourceRequest(_CamelModel):
    datasource: DatasourceInfo = Field(default_factory=DatasourceInfo)
    time_range: TimeRange = Field(default_factory=TimeRange, alias="timeRange")
    queries: List[Query] = Field(default_factory=list)


class Point(BaseModel):
    timestamp: int
    value: float


class TimeSeries(BaseModel):
    name: str
    points: List[Point] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)


class QueryResult(_CamelModel):
    ref_id: str = Field(default="", alias="refId")
    meta_json: Optional[str] = Field(default=None, alias="metaJson")
    series: Optional[List[TimeSeries]] = None
    error: Optional[str] = None


class DatasourceResponse(BaseModel):
    results: List[QueryResult] = Field(default_factory=list)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DBConnectionStatus(_CamelModel):
    ds_type: str = Field(default="", alias="dsType")
    ds_name: str = Field(default="", alias="dsName")


class ConnectionTestResponse(_CamelModel):
    zabbix_version: str = Field(alias="zabbixVersion")
    db_connector_status: Optional[DBConnectionStatus] = Field(
        default=None, alias="dbConnectorStatus"
    )


# Query models (the opaque modelJson of each query)


class DirectTarget(BaseModel):
    method: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)


class DirectQueryModel(BaseModel):
    target: DirectTarget = Field(default_factory=DirectTarget)


class FilterModel(BaseModel):
    filter: str = ""


class FunctionDef(BaseModel):
    name: str = ""
    params: List[Any] = Field(default_factory=list)


class FunctionModel(BaseModel):
    name: str = ""
    params: List[Any] = Field(default_factory=list)
    def_: FunctionDef = Field(default_factory=FunctionDef, alias="def")

    model_config = ConfigDict(populate_by_name=True)


class MetricsQueryModel(_CamelModel):
    query_type: str = Field(default="query", alias="queryType")
    group: FilterModel = Field(default_factory=FilterModel)
    host: FilterModel = Field(default_factory=FilterModel)
    application: FilterModel = Field(default_factory=FilterModel)
    item: FilterModel = Field(default_factory=FilterModel)
    functions: List[FunctionModel] = Field(default_factory=list)


# Zabbix JSON-RPC


class ZabbixParams(BaseModel):
    """Parameters of a Zabbix API call; unset and empty fields are omitted."""

    output: Optional[Union[str, List[str]]] = None
    sortfield: Optional[str] = None
    sortorder: Optional[str] = None
    filter: Optional[Dict[str, List[int]]] = None

    user: Optional[str] = None
    password: Optional[str] = None

    webitems: Optional[bool] = None
    select_hosts: Optional[List[str]] = Field(default=None, alias="selectHosts")
    itemids: Optional[List[str]] = None
    groupids: Optional[List[str]] = None
    hostids: Optional[List[str]] = None
    applicationids: Optional[List[str]] = None

    real_hosts: Optional[bool] = None

    history: Optional[int] = None

    time_from: Optional[int] = None
    time_till: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {k: v for k, v in data.items() if v not in ([], {}, "")}


class ZabbixErrorBody(BaseModel):
    code: int = 0
    message: str = ""
    data: Optional[Any] = ""


class ZabbixResponse(BaseModel):
    jsonrpc: Optional[str] = None
    id: Optional[Any] = None
    result: Any = None
    error: Optional[ZabbixErrorBody] = None


# Zabbix entities


class _ZabbixEntity(BaseModel):
    # ids and flags are strings on the wire, numbers in some API versions
    model_config = ConfigDict(coerce_numbers_to_str=True)


class Group(_ZabbixEntity):
    groupid: str
    name: str = ""

    @property
    def id(self) -> str:
        return self.groupid


class Host(_ZabbixEntity):
    hostid: str
    name: str = ""
    host: str = ""

    @property
    def id(self) -> str:
        return self.hostid


class Application(_ZabbixEntity):
    applicationid: str
    name: str = ""
    hostid: str = ""

    @property
    def id(self) -> str:
        return self.applicationid


class ItemHost(_ZabbixEntity):
    hostid: str = ""
    name: str = ""


class Item(_ZabbixEntity):
    itemid: str
    name: str = ""
    key_: str = ""
    value_type: int = 0
    hostid: str = ""
    status: str = "0"
    state: str = "0"
    hosts: List[ItemHost] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.itemid

    @property
    def host_name(self) -> str:
        return self.hosts[0].name if self.hosts else ""


class HistoryPoint(_ZabbixEntity):
    itemid: str
    clock: int = 0
    ns: int = 0
    value: float = 0.0


class TrendPoint(_ZabbixEntity):
    itemid: str
    clock: int = 0
    num: int = 0
    value_min: float = 0.0
    value_avg: float = 0.0
    value_max: float = 0.0
