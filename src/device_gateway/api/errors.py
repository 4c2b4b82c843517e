"""Translate gateway errors into HTTP responses."""
from __future__ import annotations

from fastapi import HTTPException, status

from device_gateway.errors import (
    CommandFailed,
    CommandTimeout,
    DeviceDisconnected,
    DeviceNotFound,
    DeviceOffline,
    GatewayError,
    SendFailed,
)

_STATUS_CODES: dict[type[GatewayError], int] = {
    DeviceNotFound: status.HTTP_404_NOT_FOUND,
    DeviceOffline: status.HTTP_409_CONFLICT,
    SendFailed: status.HTTP_502_BAD_GATEWAY,
    CommandFailed: status.HTTP_502_BAD_GATEWAY,
    DeviceDisconnected: status.HTTP_502_BAD_GATEWAY,
    CommandTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
}


def http_error(exc: GatewayError) -> HTTPException:
    code = _STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=str(exc))
