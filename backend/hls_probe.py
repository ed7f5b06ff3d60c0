"""
Streaming validation probe.

Drives one transcode end to end the way a real player would: negotiate a
playback session, fetch the HLS master playlist, follow the first variant and
download segments until the stream ends or the probe duration elapses. A
probe that downloads zero bytes means the server accepted the session but the
transcoder produced nothing usable.
"""
import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urljoin

from errors import InvalidManifest, NoSegmentsDownloaded, NoVariants, ProbeError
from events import EventSink, EventType, NullEventSink
from media_server_client import MediaServerClient, TICKS_PER_SECOND
from probe_types import DeviceConfig, HlsResult

logger = logging.getLogger(__name__)

# Pacing between variant playlist refetches (seconds)
EMPTY_PLAYLIST_BACKOFF = 2.0
PLAYLIST_POLL_INTERVAL = 1.5
# Seconds between playback progress reports sent to the server
PROGRESS_REPORT_INTERVAL = 5.0
# Minimum seconds between bandwidth-sample events
BANDWIDTH_SAMPLE_INTERVAL = 1.0


def parse_playlist(text: str) -> list[str]:
    """Return the URI lines of an M3U8 playlist, in order."""
    return [
        line.strip() for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


class StreamValidationProbe:
    """Validates that the media server can transcode an item for a device."""

    def __init__(
        self,
        client: MediaServerClient,
        events: Optional[EventSink] = None,
        empty_backoff: float = EMPTY_PLAYLIST_BACKOFF,
        poll_interval: float = PLAYLIST_POLL_INTERVAL,
        progress_interval: float = PROGRESS_REPORT_INTERVAL,
    ):
        self.client = client
        self.events = events or NullEventSink()
        self.empty_backoff = empty_backoff
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval

    async def validate(
        self,
        item_id: str,
        device: DeviceConfig,
        duration: int,
        context: Optional[dict] = None,
    ) -> HlsResult:
        """
        Run the probe for one item/device pairing.

        Probe failures are returned as an unsuccessful HlsResult. Cancelling
        the calling task aborts the in-flight request and still ends the
        playback session.
        """
        context = dict(context or {})
        try:
            async with self.client.playback_session(item_id, device) as session:
                session_id = session["session_id"]
                media_source_id = session["media_source_id"]
                manifest_url = self.client.build_manifest_url(
                    item_id, media_source_id, device, session_id,
                )
                logger.debug("[HLS-PROBE] Stream URL for %s: %s", item_id, manifest_url)

                self.events.emit(EventType.TEST_STREAM_READY, {
                    **context, "session_id": session_id, "media_source_id": media_source_id,
                })
                await self.client.report_playback_started(
                    item_id, session_id, media_source_id, device.device_id,
                )

                reporter = asyncio.create_task(
                    self._report_progress_loop(item_id, session_id, device.device_id)
                )
                try:
                    self.events.emit(EventType.TEST_PROGRESS, {
                        **context, "stage": f"Downloading HLS stream ({duration}s)",
                    })
                    result = await self.download_stream(manifest_url, duration, context)
                finally:
                    reporter.cancel()
                    self.events.emit(EventType.TEST_STREAM_ENDING, context)

                session["position_ticks"] = duration * TICKS_PER_SECOND
                return result
        except ProbeError as e:
            logger.warning("[HLS-PROBE] Probe failed for item %s: %s", item_id, e)
            return HlsResult(success=False, error=str(e))

    async def _report_progress_loop(self, item_id: str, session_id: str, device_id: str) -> None:
        started = time.monotonic()
        while True:
            await asyncio.sleep(self.progress_interval)
            position = int((time.monotonic() - started) * TICKS_PER_SECOND)
            await self.client.report_progress(item_id, session_id, position, device_id)

    async def download_stream(self, master_url: str, duration: int, context: Optional[dict] = None) -> HlsResult:
        """Follow the first variant of a master playlist and download its segments."""
        context = context or {}
        master = await self.client.fetch_text(master_url)
        if "#EXTM3U" not in master:
            raise InvalidManifest()

        variants = parse_playlist(master)
        if not variants:
            raise NoVariants()
        variant_url = urljoin(master_url, variants[0])

        downloaded: set[str] = set()
        total_bytes = 0
        segment_count = 0
        interval_bytes = 0
        last_sample = time.monotonic()

        deadline = time.monotonic() + duration
        max_attempts = duration * 2
        attempts = 0

        while time.monotonic() < deadline and attempts < max_attempts:
            attempts += 1
            try:
                playlist = await self.client.fetch_text(variant_url)
            except ProbeError as e:
                logger.debug("[HLS-PROBE] Variant playlist fetch failed (attempt %s): %s", attempts, e)
                await asyncio.sleep(self.empty_backoff)
                continue

            new_segments = [
                urljoin(variant_url, uri) for uri in parse_playlist(playlist)
            ]
            new_segments = [url for url in new_segments if url not in downloaded]

            for segment_url in new_segments:
                if time.monotonic() >= deadline:
                    break
                downloaded.add(segment_url)
                try:
                    data = await self.client.fetch_binary(segment_url)
                except ProbeError as e:
                    logger.warning("[HLS-PROBE] Segment download failed: %s", e)
                    continue
                total_bytes += len(data)
                interval_bytes += len(data)
                segment_count += 1

                now = time.monotonic()
                if now - last_sample >= BANDWIDTH_SAMPLE_INTERVAL:
                    self.events.emit(EventType.BANDWIDTH_SAMPLE, {
                        **context,
                        "bytes": interval_bytes,
                        "interval": round(now - last_sample, 3),
                        "total_bytes": total_bytes,
                    })
                    interval_bytes = 0
                    last_sample = now

            if "#EXT-X-ENDLIST" in playlist:
                break
            if not new_segments:
                await asyncio.sleep(self.empty_backoff)
            else:
                await asyncio.sleep(self.poll_interval)

        if total_bytes == 0:
            raise NoSegmentsDownloaded()

        logger.info(
            "[HLS-PROBE] Downloaded %s segments (%s bytes) in %s attempts",
            segment_count, total_bytes, attempts,
        )
        return HlsResult(success=True, bytes_downloaded=total_bytes, segments_downloaded=segment_count)
