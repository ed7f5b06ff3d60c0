"""
Media server API client.

Implements the two collaborator interfaces the probe engine needs against a
Jellyfin server: playback/transcode negotiation and HLS fetching
(MediaServerClient), and library browsing (CatalogClient).
"""
import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from config import get_settings, ProbeSettings
from errors import ConfigurationError, ResolutionError, UpstreamUnavailable
from probe_types import DeviceConfig
from schedule_calculator import utcnow

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000
CLIENT_NAME = "JellyProbe"
CLIENT_VERSION = "1.0.0"


class MediaServerClient(ABC):
    """Playback side of the media server used by the streaming probe."""

    @abstractmethod
    async def negotiate_session(self, item_id: str, device: DeviceConfig) -> dict:
        """Return {"session_id", "media_source_id"} or raise UpstreamUnavailable."""

    @abstractmethod
    def build_manifest_url(
        self, item_id: str, media_source_id: str, device: DeviceConfig,
        session_id: str, container: str = "mp4",
    ) -> str:
        pass

    @abstractmethod
    async def fetch_text(self, url: str) -> str:
        pass

    @abstractmethod
    async def fetch_binary(self, url: str) -> bytes:
        pass

    @abstractmethod
    async def end_session(self, item_id: str, session_id: str, position_ticks: int, device_id: str) -> None:
        pass

    @abstractmethod
    async def report_progress(self, item_id: str, session_id: str, position_ticks: int, device_id: str) -> None:
        pass

    async def report_playback_started(
        self, item_id: str, session_id: str, media_source_id: str, device_id: str,
    ) -> None:
        """Optional: make the session visible on the server dashboard."""
        return None

    @asynccontextmanager
    async def playback_session(self, item_id: str, device: DeviceConfig):
        """
        Negotiate a transcode session and always end it on exit.

        Yields the negotiated session dict. The yielded dict's
        "position_ticks" key is sent with the stop report.
        """
        session = await self.negotiate_session(item_id, device)
        session.setdefault("position_ticks", 0)
        try:
            yield session
        finally:
            try:
                await self.end_session(item_id, session["session_id"], session["position_ticks"], device.device_id)
            except Exception as e:
                logger.warning("[MEDIA-SERVER] Failed to end session %s: %s", session["session_id"], e)


class CatalogClient(ABC):
    """Library browsing side of the media server used to resolve run scopes."""

    @abstractmethod
    async def get_libraries(self) -> list:
        """Return the server's libraries (virtual folders)."""

    @abstractmethod
    async def list_items(self, library_id: str, limit: int, offset: int, search_term: str = "") -> dict:
        """Return {"items": [...], "total_count": int}, optionally filtered by name."""

    @abstractmethod
    async def list_recent_items(self, library_id: str, days: int, limit: int) -> dict:
        """Return {"items": [...], "total_count": int} for items created in the last `days`."""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[dict]:
        pass


def format_item_name(item: dict) -> str:
    """Display name for an item; episodes become 'Series S1E2 - Title'."""
    name = item.get("Name") or ""
    if item.get("Type") == "Episode" and item.get("SeriesName"):
        season = f"S{item['ParentIndexNumber']}" if item.get("ParentIndexNumber") else ""
        episode = f"E{item['IndexNumber']}" if item.get("IndexNumber") else ""
        episode_num = f" {season}{episode}" if season or episode else ""
        return f"{item['SeriesName']}{episode_num} - {name}"
    return name


_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_server_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a Jellyfin timestamp (7-digit fractions, trailing Z) into naive UTC."""
    if not value:
        return None
    cleaned = _FRACTION_RE.sub(r".\1", value.strip())
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    return parsed


class JellyfinClient(MediaServerClient, CatalogClient):
    """API client for Jellyfin with API key authentication."""

    def __init__(self, settings: ProbeSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = (settings.jellyfin_url or "").rstrip("/")
        self.api_key = settings.api_key
        self.segment_timeout = float(settings.segment_timeout)
        self._user_id: Optional[str] = None
        self._client = httpx.AsyncClient(
            timeout=float(settings.request_timeout),
            headers={
                "X-Emby-Token": self.api_key,
                "X-Emby-Authorization": (
                    f'MediaBrowser Client="{CLIENT_NAME}", Device="Server", '
                    f'DeviceId="jellyprobe-1", Version="{CLIENT_VERSION}"'
                ),
            },
            transport=transport,
        )

    def _ensure_configured(self) -> None:
        if not self.base_url or not self.api_key:
            raise ConfigurationError("Jellyfin client not configured")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        self._ensure_configured()
        response = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
        response.raise_for_status()
        return response

    # -------------------------------------------------------------------------
    # Server info
    # -------------------------------------------------------------------------

    async def test_connection(self) -> dict:
        """Check the server is reachable and the API key is accepted."""
        try:
            response = await self._request("GET", "/System/Info")
            data = response.json()
            return {"success": True, "server_name": data.get("ServerName"), "version": data.get("Version")}
        except ConfigurationError:
            raise
        except httpx.HTTPError as e:
            return {"success": False, "error": str(e)}

    async def get_libraries(self) -> list:
        try:
            response = await self._request("GET", "/Library/VirtualFolders")
            return response.json()
        except httpx.HTTPError as e:
            raise ResolutionError(f"Failed to fetch libraries: {e}") from e

    async def get_user_id(self) -> Optional[str]:
        """First user on the server; cached for the client's lifetime."""
        if self._user_id:
            return self._user_id
        response = await self._request("GET", "/Users")
        users = response.json() or []
        self._user_id = users[0].get("Id") if users else None
        return self._user_id

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    async def list_items(self, library_id: str, limit: int = 100, offset: int = 0, search_term: str = "") -> dict:
        params = {
            "ParentId": library_id,
            "IncludeItemTypes": "Movie,Episode,Video",
            "Recursive": "true",
            "Fields": "Path,MediaSources,Overview,RunTimeTicks",
            "SortBy": "SortName",
            "SortOrder": "Ascending",
            "Limit": limit,
            "StartIndex": offset,
        }
        if search_term:
            params["SearchTerm"] = search_term
        try:
            response = await self._request("GET", "/Items", params=params)
        except httpx.HTTPError as e:
            raise ResolutionError(f"Failed to fetch library items: {e}") from e
        data = response.json()
        return {
            "items": data.get("Items") or [],
            "total_count": data.get("TotalRecordCount") or 0,
        }

    async def list_recent_items(self, library_id: str, days: int = 7, limit: int = 100) -> dict:
        cutoff = utcnow() - timedelta(days=days)
        params = {
            "ParentId": library_id,
            "IncludeItemTypes": "Movie,Episode,Video",
            "Recursive": "true",
            "Fields": "Path,MediaSources,Overview,RunTimeTicks,DateCreated",
            "SortBy": "DateCreated",
            "SortOrder": "Descending",
            "Filters": "IsNotFolder",
            "MinDateCreated": cutoff.isoformat() + "Z",
            "Limit": limit,
        }
        try:
            response = await self._request("GET", "/Items", params=params)
        except httpx.HTTPError as e:
            raise ResolutionError(f"Failed to fetch recent library items: {e}") from e

        # TotalRecordCount ignores MinDateCreated, so filter and count locally
        recent = []
        for item in response.json().get("Items") or []:
            created = parse_server_date(item.get("DateCreated"))
            if created and created >= cutoff:
                recent.append(item)
        return {"items": recent, "total_count": len(recent)}

    async def get_item(self, item_id: str) -> Optional[dict]:
        try:
            user_id = await self.get_user_id()
            response = await self._request("GET", f"/Users/{user_id}/Items/{item_id}")
        except httpx.HTTPError as e:
            raise ResolutionError(f"Failed to fetch item {item_id}: {e}") from e
        return response.json()

    # -------------------------------------------------------------------------
    # Playback
    # -------------------------------------------------------------------------

    async def negotiate_session(self, item_id: str, device: DeviceConfig) -> dict:
        try:
            user_id = await self.get_user_id()
            response = await self._request(
                "POST",
                f"/Items/{item_id}/PlaybackInfo",
                json={
                    "UserId": user_id,
                    "StartTimeTicks": 0,
                    "IsPlayback": True,
                    "AutoOpenLiveStream": True,
                    "MediaSourceId": item_id,
                    "MaxStreamingBitrate": device.max_bitrate,
                    "AudioCodec": device.audio_codec,
                    "VideoCodec": device.video_codec,
                    "MaxWidth": device.max_width,
                    "MaxHeight": device.max_height,
                    "EnableDirectPlay": False,
                    "EnableDirectStream": False,
                    "EnableTranscoding": True,
                },
                headers={"X-Emby-Device-Id": device.device_id, "X-Emby-Device-Name": CLIENT_NAME},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Failed to start playback session: {e}") from e

        info = response.json()
        sources = info.get("MediaSources") or []
        if not sources:
            raise UpstreamUnavailable("No media sources available")
        media_source = sources[0]
        return {
            "session_id": info.get("PlaySessionId") or media_source.get("Id"),
            "media_source_id": media_source.get("Id"),
            "container": media_source.get("Container") or "",
        }

    def build_manifest_url(
        self, item_id: str, media_source_id: str, device: DeviceConfig,
        session_id: str, container: str = "mp4",
    ) -> str:
        """HLS master playlist URL, forcing a real transcode (no stream copy)."""
        params = {
            "MediaSourceId": media_source_id,
            "DeviceId": device.device_id,
            "VideoCodec": device.video_codec,
            "AudioCodec": device.audio_codec,
            "MaxStreamingBitrate": str(device.max_bitrate),
            "VideoBitrate": str(device.max_bitrate),
            "AudioBitrate": "128000",
            "MaxWidth": str(device.max_width),
            "MaxHeight": str(device.max_height),
            "PlaySessionId": session_id or "",
            "StartTimeTicks": "0",
            "EnableAutoStreamCopy": "false",
            "AllowVideoStreamCopy": "false",
            "AllowAudioStreamCopy": "false",
            "EnableTranscoding": "true",
            "TranscodingProtocol": "hls",
            "SegmentContainer": "mp4",
            "MinSegments": "2",
            "SegmentLength": "3",
            "BreakOnNonKeyFrames": "true",
        }
        return f"{self.base_url}/Videos/{item_id}/master.m3u8?{urlencode(params)}"

    async def fetch_text(self, url: str) -> str:
        try:
            response = await self._client.get(url, timeout=self.segment_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Failed to fetch {url}: {e}") from e
        return response.text

    async def fetch_binary(self, url: str) -> bytes:
        try:
            response = await self._client.get(url, timeout=self.segment_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Failed to fetch segment: {e}") from e
        return response.content

    async def report_playback_started(
        self, item_id: str, session_id: str, media_source_id: str, device_id: str,
    ) -> None:
        try:
            await self._request(
                "POST",
                "/Sessions/Playing",
                json={
                    "ItemId": item_id,
                    "PlaySessionId": session_id,
                    "MediaSourceId": media_source_id,
                    "PositionTicks": 0,
                    "IsPaused": False,
                    "PlayMethod": "Transcode",
                },
                headers={"X-Emby-Device-Id": device_id},
            )
        except httpx.HTTPError as e:
            logger.debug("[MEDIA-SERVER] Failed to report playback start: %s", e)

    async def report_progress(self, item_id: str, session_id: str, position_ticks: int, device_id: str) -> None:
        try:
            await self._request(
                "POST",
                "/Sessions/Playing/Progress",
                json={
                    "ItemId": item_id,
                    "PlaySessionId": session_id,
                    "PositionTicks": position_ticks,
                    "IsPaused": False,
                    "IsMuted": False,
                },
                headers={"X-Emby-Device-Id": device_id},
            )
        except httpx.HTTPError as e:
            logger.debug("[MEDIA-SERVER] Failed to report playback progress: %s", e)

    async def end_session(self, item_id: str, session_id: str, position_ticks: int, device_id: str) -> None:
        try:
            await self._request(
                "POST",
                "/Sessions/Playing/Stopped",
                json={
                    "ItemId": item_id,
                    "PlaySessionId": session_id,
                    "PositionTicks": position_ticks,
                },
                headers={"X-Emby-Device-Id": device_id},
            )
        except httpx.HTTPError as e:
            logger.warning("[MEDIA-SERVER] Failed to stop playback: %s", e)

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


# Singleton instance
_client: Optional[JellyfinClient] = None
_client_settings_hash: Optional[str] = None


def _settings_hash(settings: ProbeSettings) -> str:
    """Get a hash of settings to detect changes."""
    return f"{settings.jellyfin_url}:{settings.api_key}:{settings.request_timeout}:{settings.segment_timeout}"


def get_client() -> JellyfinClient:
    """Get the Jellyfin client, recreating if settings changed."""
    global _client, _client_settings_hash

    settings = get_settings()
    current_hash = _settings_hash(settings)

    if _client is None or _client_settings_hash != current_hash:
        _client = JellyfinClient(settings)
        _client_settings_hash = current_hash

    return _client


def reset_client() -> None:
    """Reset the client (call after settings change)."""
    global _client, _client_settings_hash
    _client = None
    _client_settings_hash = None


async def close_client() -> None:
    """Close the current client, if any, and reset it."""
    if _client is not None:
        await _client.close()
    reset_client()
