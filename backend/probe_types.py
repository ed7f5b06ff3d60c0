"""
Value types shared by the probe, the test queue and the run manager.
"""
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_MAX_BITRATE = 20000000
DEFAULT_MAX_WIDTH = 1920
DEFAULT_MAX_HEIGHT = 1080

# Sole error recorded on a result whose probe was aborted
CANCELLED_ERROR = "Cancelled"


@dataclass(frozen=True)
class DeviceConfig:
    """Transcode constraints a simulated client sends to the media server."""
    device_id: str
    max_bitrate: int = DEFAULT_MAX_BITRATE
    audio_codec: str = "aac"
    video_codec: str = "h264"
    max_width: int = DEFAULT_MAX_WIDTH
    max_height: int = DEFAULT_MAX_HEIGHT

    @classmethod
    def from_profile(cls, profile) -> "DeviceConfig":
        """Snapshot a DeviceProfile row (or any object with the same attributes)."""
        return cls(
            device_id=profile.device_id or f"jellyprobe-{profile.id}",
            max_bitrate=profile.max_bitrate or DEFAULT_MAX_BITRATE,
            audio_codec=profile.audio_codec or "aac",
            video_codec=profile.video_codec or "h264",
            max_width=profile.max_width or DEFAULT_MAX_WIDTH,
            max_height=profile.max_height or DEFAULT_MAX_HEIGHT,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceConfig":
        """Rebuild from a device snapshot stored in a run's config."""
        return cls(
            device_id=data.get("device_id") or f"jellyprobe-{data.get('id')}",
            max_bitrate=data.get("max_bitrate") or DEFAULT_MAX_BITRATE,
            audio_codec=data.get("audio_codec") or "aac",
            video_codec=data.get("video_codec") or "h264",
            max_width=data.get("max_width") or DEFAULT_MAX_WIDTH,
            max_height=data.get("max_height") or DEFAULT_MAX_HEIGHT,
        )

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "max_bitrate": self.max_bitrate,
            "audio_codec": self.audio_codec,
            "video_codec": self.video_codec,
            "max_width": self.max_width,
            "max_height": self.max_height,
        }


@dataclass(frozen=True)
class ProbeTest:
    """One unit of work: probe a media item as a given device."""
    item_id: str
    device_id: int  # DeviceProfile.id
    device_config: DeviceConfig
    duration: int = 30
    item_name: str = ""
    path: str = ""
    container: str = ""
    device_name: str = ""
    test_run_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "test_run_id": self.test_run_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "path": self.path,
            "format": self.container,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "duration": self.duration,
        }


@dataclass
class ProbeResult:
    """Outcome of one ProbeTest. Not modified after the queue reports it."""
    item_id: str
    device_id: int
    test_run_id: Optional[int] = None
    item_name: str = ""
    path: str = ""
    format: str = ""
    success: bool = False
    duration: float = 0.0
    bytes_downloaded: int = 0
    segments_downloaded: int = 0
    errors: list[str] = field(default_factory=list)

    @classmethod
    def for_test(cls, test: ProbeTest) -> "ProbeResult":
        return cls(
            item_id=test.item_id,
            device_id=test.device_id,
            test_run_id=test.test_run_id,
            item_name=test.item_name,
            path=test.path,
            format=test.container,
        )

    @property
    def cancelled(self) -> bool:
        return self.errors == [CANCELLED_ERROR]

    def to_dict(self) -> dict:
        return {
            "test_run_id": self.test_run_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "path": self.path,
            "format": self.format,
            "device_id": self.device_id,
            "success": self.success,
            "duration": round(self.duration, 2),
            "bytes_downloaded": self.bytes_downloaded,
            "segments_downloaded": self.segments_downloaded,
            "errors": list(self.errors),
        }


@dataclass
class HlsResult:
    """What the streaming validation probe observed."""
    success: bool
    bytes_downloaded: int = 0
    segments_downloaded: int = 0
    error: Optional[str] = None
