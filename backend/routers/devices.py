"""
Devices router: CRUD for simulated playback device profiles.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from run_store import RunStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["Devices"])


class DeviceRequest(BaseModel):
    name: str
    device_id: str
    max_bitrate: int = Field(default=20000000, gt=0)
    audio_codec: str = "aac"
    video_codec: str = "h264"
    max_width: int = Field(default=1920, gt=0)
    max_height: int = Field(default=1080, gt=0)


class DeviceUpdateRequest(BaseModel):
    name: Optional[str] = None
    max_bitrate: Optional[int] = Field(default=None, gt=0)
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None
    max_width: Optional[int] = Field(default=None, gt=0)
    max_height: Optional[int] = Field(default=None, gt=0)


@router.get("")
async def list_devices():
    return [d.to_dict() for d in RunStore().get_all_devices()]


@router.post("")
async def create_device(request: DeviceRequest):
    try:
        device = RunStore().add_device(**request.model_dump())
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Device id '{request.device_id}' already exists")
    return device.to_dict()


@router.patch("/{device_id}")
async def update_device(device_id: int, request: DeviceUpdateRequest):
    device = RunStore().update_device(device_id, **request.model_dump(exclude_none=True))
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device.to_dict()


@router.delete("/{device_id}")
async def delete_device(device_id: int):
    if not RunStore().delete_device(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"status": "deleted"}
