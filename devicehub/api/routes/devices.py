from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Awaitable, TypeVar

import structlog
from fastapi import APIRouter, Depends, Request

from ...core.config import Settings
from ...core.errors import Internal
from ...domain.auth import Identity
from ...domain.devices import PortsResponse
from ...domain.flash import FlashRequest, FlashResponse
from ...services.flash import FlashWorkflow
from ...services.serial_ports import PortLister, list_serial_ports
from ..dependencies import (
    get_app_settings,
    get_current_identity,
    get_flash_workflow,
    get_port_lister,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["devices"])

DISCONNECT_POLL_SECONDS = 0.5

T = TypeVar("T")


@router.get("/ports", response_model=PortsResponse)
async def list_ports(
    identity: Identity = Depends(get_current_identity),
    lister: PortLister = Depends(get_port_lister),
) -> PortsResponse:
    ports = await list_serial_ports(lister)
    logger.info("ports.listed", count=len(ports))
    return PortsResponse(ports=ports)


@router.post("/flash", response_model=FlashResponse)
async def flash(
    request: Request,
    payload: FlashRequest,
    identity: Identity = Depends(get_current_identity),
    workflow: FlashWorkflow = Depends(get_flash_workflow),
    settings: Settings = Depends(get_app_settings),
) -> FlashResponse:
    logger.info("flash.requested", user_id=identity.id, port=payload.port)
    if not settings.flash_cancel_on_disconnect:
        return await workflow.execute(payload)
    return await _cancel_on_disconnect(request, workflow.execute(payload))


async def _cancel_on_disconnect(request: Request, work: Awaitable[T]) -> T:
    """Await ``work`` but cancel it (killing any child process) if the client goes away."""

    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning("flash.client_disconnected")
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
                raise Internal("Flash request cancelled")
    finally:
        if not task.done():
            task.cancel()
