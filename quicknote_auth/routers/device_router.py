from fastapi import APIRouter, Depends

from quicknote_auth.core.config import MAX_DEVICES
from quicknote_auth.core.exceptions import AuthError, SecureHTTPException, handle_auth_error
from quicknote_auth.routers.auth_router import get_orchestrator
from quicknote_auth.schemas.devices import DeviceListResponse
from quicknote_auth.services.auth_orchestrator import AuthOrchestrator

router = APIRouter()


@router.get("", response_model=DeviceListResponse)
def list_devices(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    try:
        devices = orchestrator.list_devices()
    except AuthError as e:
        raise handle_auth_error(e)
    return DeviceListResponse(devices=devices, max_devices=MAX_DEVICES)


@router.delete("/{device_id}")
def remove_device(device_id: str, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    try:
        removed = orchestrator.remove_device(device_id)
    except AuthError as e:
        raise handle_auth_error(e)
    if not removed:
        raise SecureHTTPException(
            status_code=404,
            detail="Device not found",
            internal_detail=f"No registered device {device_id[:8]}..."
        )
    return {"status": "success", "message": "Device removed"}
