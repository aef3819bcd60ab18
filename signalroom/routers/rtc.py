"""RTC configuration endpoint."""
from __future__ import annotations

from fastapi import APIRouter

from ..schemas.rtc import RtcConfigResponse
from ..services import rtc as rtc_service

router = APIRouter()


@router.get("/config", response_model=RtcConfigResponse)
async def get_rtc_config() -> RtcConfigResponse:
    """Return the relay endpoint and STUN/TURN servers for peer connections."""

    config = rtc_service.build_client_config()
    return RtcConfigResponse(relay_url=config.relay_url, ice_servers=config.ice_servers)
