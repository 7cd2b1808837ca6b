"""
Device commands and device settings.

Commands must be confirmed by the user. A request without ``confirmed``
gets 428 with the prompt to show; the page asks the user and repeats the
request with ``confirmed: true``.
"""
from fastapi import APIRouter, Depends, HTTPException

from tracker.schemas import (
    CommandRequest,
    CommandResponse,
    DeviceCommand,
    GeofenceConfig,
    SpeedLimitRequest,
)
from tracker.services.commands import command_prompt
from tracker.services.session import DashboardSession, get_dashboard_session
from tracker.store_client import StoreWriteError

router = APIRouter(prefix="/api/v1/commands", tags=["commands"])
settings_router = APIRouter(prefix="/api/v1/settings", tags=["settings"])


def _confirmation_required(prompt: str) -> HTTPException:
    return HTTPException(status_code=428, detail={"confirm": prompt})


@router.post("/toggle-arm", response_model=CommandResponse)
async def toggle_arm(
    body: CommandRequest,
    session: DashboardSession = Depends(get_dashboard_session),
):
    """Arm if currently disarmed, disarm if armed."""
    prompts = []

    def confirm(prompt: str) -> bool:
        prompts.append(prompt)
        return body.confirmed

    try:
        command = await session.commands.toggle_arm(confirm)
    except StoreWriteError as e:
        raise HTTPException(status_code=502, detail=e.message)
    if command is None:
        raise _confirmation_required(prompts[0])
    return CommandResponse(command=command)


@router.post("/{command}", response_model=CommandResponse)
async def send_command(
    command: DeviceCommand,
    body: CommandRequest,
    session: DashboardSession = Depends(get_dashboard_session),
):
    if not body.confirmed:
        raise _confirmation_required(command_prompt(command))
    try:
        await session.commands.send(command)
    except StoreWriteError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return CommandResponse(command=command)


@settings_router.put("/speed-limit")
async def update_speed_limit(
    body: SpeedLimitRequest,
    session: DashboardSession = Depends(get_dashboard_session),
):
    try:
        limit = await session.set_speed_limit(body.limit)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreWriteError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return {"speed_limit": limit}


@settings_router.put("/geofence")
async def configure_geofence(
    body: GeofenceConfig,
    session: DashboardSession = Depends(get_dashboard_session),
):
    """Save the geofence and reboot the device so it picks the fence up."""
    try:
        rebooted = await session.configure_geofence(body)
    except StoreWriteError as e:
        raise HTTPException(status_code=502, detail=e.message)
    if not rebooted:
        return {
            "message": "Geofence saved, but the reboot command failed. Reboot the device to apply changes.",
            "name": body.name,
            "saved": True,
            "rebooted": False,
        }
    return {
        "message": "Geofence saved! Device will reboot to apply changes.",
        "name": body.name,
        "saved": True,
        "rebooted": True,
    }
