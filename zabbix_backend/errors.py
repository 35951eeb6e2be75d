# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

from typing import Any, Optional


NOT_AUTHORIZED_MESSAGES = frozenset(
    {
        "Session terminated, re-login, please.",
        "Not authorised.",
        "Not authorized.",
    }
)


class ZabbixBackendError(Exception):
    """Base for all errors raised by the adapter."""

    error_code: str = "error.backend"


class QueryError(ZabbixBackendError):
    error_code = "error.query.invalid"


class FilterError(QueryError):
    error_code = "error.query.bad_filter"


class ZabbixTransportError(ZabbixBackendError):
    error_code = "error.zabbix.transport"


class ZabbixHTTPStatusError(ZabbixTransportError):
    error_code = "error.zabbix.bad_status"

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        status = f"{status_code} {reason}".strip()
        super().__init__(f"invalid status code. status: {status}")


class ZabbixParseError(ZabbixBackendError):
    error_code = "error.zabbix.bad_response"


class ZabbixAuthError(ZabbixBackendError):
    error_code = "error.zabbix.auth"


class ZabbixAPIError(ZabbixBackendError):
    """A JSON-RPC ``error`` object returned by the Zabbix API."""

    error_code = "error.zabbix.api"

    def __init__(self, code: int = 0, message: str = "", data: Optional[Any] = ""):
        self.code = code
        self.message = message
        self.data = "" if data is None else data
        super().__init__(f"Code {code}: '{message}' {self.data}")

    @property
    def is_not_authorized(self) -> bool:
        # Zabbix reports expired sessions either as the message or, wrapped in
        # "Invalid params.", as the data field.
        return is_not_authorized(self.message) or is_not_authorized(str(self.data))


def is_not_authorized(message: str) -> bool:
    return message in NOT_AUTHORIZED_MESSAGES
