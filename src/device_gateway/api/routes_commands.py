"""Command routes: issue a command to a device and await its reply."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from device_gateway.api.deps import get_dispatcher
from device_gateway.api.errors import http_error
from device_gateway.commands.dispatcher import CommandDispatcher
from device_gateway.errors import GatewayError

router = APIRouter(prefix="/api/commands", tags=["commands"])


class CommandRequest(BaseModel):
    action: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)


class CommandResponse(BaseModel):
    success: bool = True
    data: Any = None


@router.post("/{device_id}", response_model=CommandResponse)
async def send_command(
    device_id: str,
    body: CommandRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    try:
        data = await dispatcher.send_command(
            device_id, body.action, body.payload, timeout=body.timeout
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return CommandResponse(data=data)
