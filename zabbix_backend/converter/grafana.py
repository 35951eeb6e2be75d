# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import json
from typing import Any, Callable, Dict, List

from pydantic import BaseModel

from ..models import (
    DatasourceRequest,
    DatasourceResponse,
    HistoryPoint,
    Item,
    Point,
    QueryResult,
    TimeSeries,
    TrendPoint,
)


DEFAULT_REF_ID = "zabbixAPI"

TREND_VALUE_GETTERS: Dict[str, Callable[[TrendPoint], float]] = {
    "min": lambda tp: tp.value_min,
    "avg": lambda tp: tp.value_avg,
    "max": lambda tp: tp.value_max,
}


def series_name(item: Item) -> str:
    return f"{item.host_name} {item.name}"


def request_ref_id(request: DatasourceRequest) -> str:
    """refId of the first query, which single-result responses are keyed by."""
    if request.queries and request.queries[0].ref_id:
        return request.queries[0].ref_id
    return DEFAULT_REF_ID


def _build_series(items: List[Item], points: Dict[str, List[Point]]) -> List[TimeSeries]:
    out: List[TimeSeries] = []
    for item in items:
        item_points = sorted(points.get(item.id, []), key=lambda p: p.timestamp)
        out.append(TimeSeries(name=series_name(item), points=item_points))
    return out


def convert_history(history: List[HistoryPoint], items: List[Item]) -> List[TimeSeries]:
    known = {i.id for i in items}
    points: Dict[str, List[Point]] = {}
    for hp in history:
        if hp.itemid not in known:
            continue
        # half a millisecond rounds up
        ts = hp.clock * 1000 + int(hp.ns / 1_000_000 + 0.5)
        points.setdefault(hp.itemid, []).append(Point(timestamp=ts, value=hp.value))
    return _build_series(items, points)


def convert_trend(
    trend: List[TrendPoint], items: List[Item], value_type: str = "avg"
) -> List[TimeSeries]:
    getter = TREND_VALUE_GETTERS.get(value_type, TREND_VALUE_GETTERS["avg"])
    known = {i.id for i in items}
    points: Dict[str, List[Point]] = {}
    for tp in trend:
        if tp.itemid not in known:
            continue
        points.setdefault(tp.itemid, []).append(
            Point(timestamp=tp.clock * 1000, value=getter(tp))
        )
    return _build_series(items, points)


def _dump_json(data: Any) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def build_response(data: Any, ref_id: str = DEFAULT_REF_ID) -> DatasourceResponse:
    """Wrap a raw API result (or model) into a ``metaJson`` result."""
    return DatasourceResponse(
        results=[QueryResult(ref_id=ref_id, meta_json=_dump_json(data))]
    )


def build_metrics_response(results: List[QueryResult]) -> DatasourceResponse:
    return DatasourceResponse(results=results)


def build_error_response(err: Any, ref_id: str = DEFAULT_REF_ID) -> DatasourceResponse:
    return DatasourceResponse(results=[QueryResult(ref_id=ref_id, error=str(err))])
