# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import json
import logging
import threading
from typing import Any, Callable, List, Optional

from .config import get_config
from .converter.grafana import build_error_response, request_ref_id
from .datasource import ZabbixDatasource
from .errors import ZabbixBackendError, ZabbixParseError
from .models import DatasourceRequest, DatasourceResponse
from .utils.cache import TTLCache, hash_datasource_info


_logger = logging.getLogger("zabbix_backend.backend")

UNRECOVERABLE_ERROR = "Unrecoverable error in grafana-zabbix plugin backend"


class ZabbixBackend:
    """Entry point for host requests; routes each one to a cached datasource."""

    def __init__(
        self,
        datasource_cache: Optional[TTLCache] = None,
        datasource_factory: Optional[Callable[[str], ZabbixDatasource]] = None,
    ):
        if datasource_cache is None:
            cfg = get_config().cache
            datasource_cache = TTLCache(
                default_ttl=cfg.datasource_ttl_sec,
                cleanup_interval=cfg.cleanup_interval_sec,
            )
        # expiry may happen on the janitor thread; clients are closed on the loop
        datasource_cache.on_evict = self._on_evict
        self.datasource_cache = datasource_cache
        self._new_datasource = datasource_factory or ZabbixDatasource
        self._evicted: List[ZabbixDatasource] = []
        self._evicted_lock = threading.Lock()

    async def query(self, request: DatasourceRequest) -> DatasourceResponse:
        try:
            return await self._route(request)
        except ZabbixBackendError as e:
            _logger.error("query failed", extra={"error": str(e), "error_code": e.error_code})
            return build_error_response(e, request_ref_id(request))
        except Exception:
            _logger.exception("Fatal error in Zabbix plugin backend")
            return build_error_response(UNRECOVERABLE_ERROR, request_ref_id(request))
        finally:
            await self._release_evicted()

    async def _route(self, request: DatasourceRequest) -> DatasourceResponse:
        ds = self.get_cached_datasource(request)
        query_type = get_query_type(request)
        if query_type in ("zabbixAPI", "DirectQuery"):
            return await ds.direct_query(request)
        if query_type == "query":
            return await ds.timeseries_query(request)
        if query_type == "connectionTest":
            return await ds.test_connection(request)
        return build_error_response("Query not implemented", request_ref_id(request))

    def get_cached_datasource(self, request: DatasourceRequest) -> ZabbixDatasource:
        ds_hash = hash_datasource_info(request.datasource)
        cached, ok = self.datasource_cache.get(ds_hash)
        if ok and isinstance(cached, ZabbixDatasource):
            return cached

        ds_info = request.datasource
        _logger.debug(
            f"Datasource cache miss (Org {ds_info.org_id} Id {ds_info.id} "
            f"'{ds_info.name}' {ds_hash})"
        )
        ds = self._new_datasource(ds_hash)
        self.datasource_cache.set(ds_hash, ds)
        return ds

    def _on_evict(self, ds_hash: str, ds: Any) -> None:
        if isinstance(ds, ZabbixDatasource):
            with self._evicted_lock:
                self._evicted.append(ds)

    async def _release_evicted(self) -> None:
        with self._evicted_lock:
            evicted, self._evicted = self._evicted, []
        for ds in evicted:
            _logger.debug("closing expired datasource", extra={"fingerprint": ds.fingerprint})
            try:
                await ds.aclose()
            except Exception:
                _logger.exception("failed to close expired datasource")

    async def close(self) -> None:
        await self._release_evicted()
        for _, ds in self.datasource_cache.items():
            if isinstance(ds, ZabbixDatasource):
                await ds.aclose()
        self.datasource_cache.close()


def get_query_type(request: DatasourceRequest) -> str:
    if not request.queries:
        return "query"
    try:
        model = json.loads(request.queries[0].model_json)
    except ValueError as e:
        raise ZabbixParseError(f"invalid query model: {e}") from e
    query_type = model.get("queryType") if isinstance(model, dict) else None
    return query_type if isinstance(query_type, str) and query_type else "query"
