from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class DeviceInfo(BaseModel):
    id: str
    name: str
    registered_at: int    # epoch ms
    last_used_at: int     # epoch ms
    fingerprint: str
    is_current_device: bool = False


class DeviceVerification(BaseModel):
    is_valid: bool
    is_new_device: bool
    device_name: Optional[str] = None


class RegisteredDevices(BaseModel):
    """Persisted registry document: registry key -> devices"""
    users: Dict[str, List[DeviceInfo]] = Field(default_factory=dict)


class DeviceListResponse(BaseModel):
    devices: List[DeviceInfo]
    max_devices: int
