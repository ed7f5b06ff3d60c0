"""
Run orchestration.

Resolves a run's declarative scope (which libraries or items, which device
profiles) into ProbeTests, feeds them to the test queue in batches and
aggregates completions back onto the run. Completions are attributed by the
run id carried on each result, so results from a run that is no longer the
live-tracked one still land on the right row.
"""
import asyncio
import logging
import random
from datetime import datetime
from typing import AsyncIterator, Optional

from config import ProbeSettings, get_settings
from errors import ConfigurationError, InvalidRunState, ResolutionError, RunNotFound
from events import EventSink, EventType, NullEventSink
from media_server_client import CatalogClient, format_item_name
from probe_types import DeviceConfig, ProbeResult, ProbeTest
from schedule_calculator import utcnow
from run_store import RunStore
from test_queue import TestQueue

logger = logging.getLogger(__name__)

TERMINAL_RUN_STATUSES = ("completed", "cancelled", "failed")

# Upper bound on items requested per library for "recent" scopes
RECENT_ITEMS_LIMIT = 10000
DEFAULT_RECENT_DAYS = 7


def generate_run_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"Test Run {now.strftime('%Y-%m-%d %H%M%S')}"


def interleave(groups: list[list]) -> list:
    """Round-robin merge: first of each group, then second of each, and so on."""
    merged = []
    longest = max((len(g) for g in groups), default=0)
    for i in range(longest):
        for group in groups:
            if i < len(group):
                merged.append(group[i])
    return merged


class TestRunManager:
    """Creates, starts and tracks test runs."""
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        store: RunStore,
        queue: TestQueue,
        catalog: CatalogClient,
        events: Optional[EventSink] = None,
        settings: Optional[ProbeSettings] = None,
    ):
        self.store = store
        self.queue = queue
        self.catalog = catalog
        self.events = events or NullEventSink()
        self.settings = settings or get_settings()
        # Live-tracked run. Progress is attributed by result.test_run_id, not by this.
        self.current_run_id: Optional[int] = None
        self._resolution_tasks: dict[int, asyncio.Task] = {}
        self._resolving: set[int] = set()
        queue.add_result_handler(self.handle_result)

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    def create_run(self, config: dict):
        """
        Persist a pending run.

        config keys:
            device_ids: list of DeviceProfile ids
            media_scope: {"type": "all"|"recent"|"custom", "library_ids", "days", "item_ids"}
            test_config: {"duration": seconds}
            total_tests: optional provisional estimate
        """
        device_ids = config.get("device_ids") or []
        devices = self.store.get_devices_by_ids(device_ids)
        if not devices:
            raise ConfigurationError("No device profiles selected")

        scope = dict(config.get("media_scope") or {})
        test_config = dict(config.get("test_config") or {})
        test_config.setdefault("duration", self.settings.test_duration)

        estimate = config.get("total_tests")
        if estimate is None:
            pinned = scope.get("item_ids") or []
            estimate = len(pinned) * len(devices)

        run_config = {
            "devices": [device.to_dict() for device in devices],
            "media_scope": scope,
            "test_config": test_config,
        }
        if config.get("media_items"):
            run_config["media_items"] = config["media_items"]

        run = self.store.create_run(generate_run_name(), run_config, total_tests=int(estimate))
        logger.info("[TEST-RUN] Created run %s (%s)", run.id, run.name)
        self.events.emit(EventType.RUN_CREATED, run.to_dict())
        return run

    def _get_run(self, run_id: int):
        run = self.store.get_run(run_id)
        if not run:
            raise RunNotFound(f"Test run {run_id} not found")
        return run

    async def start_run(self, run_id: int):
        """Move a pending run to running and begin resolving its scope in the background."""
        run = self._get_run(run_id)
        if run.status != "pending":
            raise InvalidRunState("Test run is not in pending state")

        self.current_run_id = run_id
        run = self.store.update_run(run_id, status="running", started_at=utcnow())

        config = run.get_config()
        self.queue.clear_queue()
        self.queue.set_parallelism(self.settings.max_parallel_tests)
        self.queue.configure(
            test_duration=config.get("test_config", {}).get("duration", self.settings.test_duration),
            spread_start_over_ms=self.settings.spread_start_over_ms,
        )

        self._resolving.add(run_id)
        task = asyncio.create_task(self._resolve_and_enqueue(run_id, config))
        self._resolution_tasks[run_id] = task
        task.add_done_callback(lambda _t: self._resolution_tasks.pop(run_id, None))

        self.events.emit(EventType.RUN_STARTED, {"id": run_id})
        logger.info("[TEST-RUN] Started run %s", run_id)
        return run

    async def wait_resolved(self, run_id: int) -> None:
        """Wait until a run's scope has been fully resolved and enqueued."""
        task = self._resolution_tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def pause_run(self, run_id: int):
        if self.current_run_id != run_id:
            raise InvalidRunState("Test run is not currently running")
        run = self._get_run(run_id)
        if run.status != "running":
            raise InvalidRunState("Test run is not running")
        self.queue.pause()
        run = self.store.update_run(run_id, status="paused")
        self.events.emit(EventType.RUN_PAUSED, {"id": run_id})
        return run

    def resume_run(self, run_id: int):
        run = self._get_run(run_id)
        if run.status != "paused":
            raise InvalidRunState("Test run is not paused")
        self.current_run_id = run_id
        run = self.store.update_run(run_id, status="running")
        self.queue.resume()
        self.events.emit(EventType.RUN_RESUMED, {"id": run_id})
        return run

    async def cancel_run(self, run_id: int):
        """Cancel the live run. Terminal: later completions are not counted."""
        if self.current_run_id != run_id:
            raise InvalidRunState("Test run is not currently running")
        self._get_run(run_id)

        run = self._mark_cancelled(run_id)
        await self.queue.cancel()
        return run

    def _mark_cancelled(self, run_id: int):
        run = self.store.update_run(run_id, status="cancelled", completed_at=utcnow())
        if self.current_run_id == run_id:
            self.current_run_id = None
        resolver = self._resolution_tasks.get(run_id)
        if resolver is not None:
            resolver.cancel()
        logger.info("[TEST-RUN] Cancelled run %s", run_id)
        self.events.emit(EventType.RUN_CANCELLED, {"id": run_id})
        return run

    # -------------------------------------------------------------------------
    # Queue-level control
    # -------------------------------------------------------------------------

    def _live_run(self):
        if self.current_run_id is None:
            return None
        return self.store.get_run(self.current_run_id)

    def is_busy(self) -> bool:
        """True while tests execute, a scope is resolving, or a run is running or paused."""
        return bool(
            self.queue.is_driving
            or self._resolution_tasks
            or self.store.get_active_run() is not None
        )

    def pause_queue(self) -> None:
        """Pause the pool, pausing the live run along with it."""
        run = self._live_run()
        if run is not None and run.status == "running":
            self.pause_run(run.id)
        else:
            self.queue.pause()

    def resume_queue(self) -> None:
        """Resume the pool, resuming the live run along with it."""
        run = self._live_run()
        if run is not None and run.status == "paused":
            self.resume_run(run.id)
        else:
            self.queue.resume()

    async def cancel_queue(self) -> list[int]:
        """
        Abort everything queued or in flight.

        Every running or paused run loses its remaining tests, so each one is
        moved to cancelled. Returns the ids of the cancelled runs.
        """
        cancelled = []
        for run in self.store.get_active_runs():
            self._mark_cancelled(run.id)
            cancelled.append(run.id)
        await self.queue.cancel()
        return cancelled

    # -------------------------------------------------------------------------
    # Completion aggregation
    # -------------------------------------------------------------------------

    def handle_result(self, result: ProbeResult) -> None:
        """Queue result handler: persist the result, then count it against its run."""
        self.store.add_test_result(result)
        self.on_probe_complete(result)

    def on_probe_complete(self, result: ProbeResult) -> None:
        """Count one finished test against the run named on the result."""
        run_id = result.test_run_id
        if run_id is None or result.cancelled:
            return

        run = self.store.get_run(run_id)
        if not run or run.status in TERMINAL_RUN_STATUSES or run.status == "pending":
            return

        run = self.store.record_run_completion(run_id, result.success)
        self.events.emit(EventType.RUN_PROGRESS, {
            "id": run_id,
            "completed": run.completed_tests,
            "total": run.total_tests,
            "successful": run.successful_tests,
            "failed": run.failed_tests,
        })

        if run_id not in self._resolving:
            self._complete_if_done(run)

    def _complete_if_done(self, run) -> None:
        if run.status in TERMINAL_RUN_STATUSES or run.total_tests <= 0:
            return
        if run.completed_tests >= run.total_tests:
            self.store.update_run(run.id, status="completed", completed_at=utcnow())
            if self.current_run_id == run.id:
                self.current_run_id = None
            logger.info(
                "[TEST-RUN] Run %s completed: %s/%s successful",
                run.id, run.successful_tests, run.total_tests,
            )
            self.events.emit(EventType.RUN_COMPLETED, {"id": run.id})

    def _fail_run(self, run_id: int, message: str) -> None:
        self.store.update_run(run_id, status="failed", error=message, completed_at=utcnow())
        if self.current_run_id == run_id:
            self.current_run_id = None
        logger.error("[TEST-RUN] Run %s failed: %s", run_id, message)
        self.events.emit(EventType.RUN_ERROR, {"id": run_id, "error": message})

    # -------------------------------------------------------------------------
    # Scope resolution
    # -------------------------------------------------------------------------

    async def _resolve_and_enqueue(self, run_id: int, config: dict) -> None:
        devices = config.get("devices") or []
        duration = int(config.get("test_config", {}).get("duration") or self.settings.test_duration)
        batch_size = max(1, self.settings.enqueue_batch_size)
        enqueued = 0

        try:
            async for items in self.iter_scope_items(config.get("media_scope") or {}):
                tests = self._build_tests(run_id, items, devices, duration)
                for start in range(0, len(tests), batch_size):
                    batch = tests[start:start + batch_size]
                    enqueued += len(batch)
                    self._raise_total(run_id, enqueued)
                    self.queue.enqueue_many(batch)
                    self.queue.drive()

            if enqueued == 0 and config.get("media_items"):
                tests = self._build_tests(run_id, config["media_items"], devices, duration)
                enqueued = len(tests)
                self._raise_total(run_id, enqueued)
                self.queue.enqueue_many(tests)
                self.queue.drive()
        except Exception as e:
            logger.exception("[TEST-RUN] Scope resolution failed for run %s: %s", run_id, e)
            if enqueued == 0:
                self._fail_run(run_id, str(e))
                return
        finally:
            self._resolving.discard(run_id)

        if enqueued == 0:
            self._fail_run(run_id, "No media items resolved for this run")
            return

        run = self.store.get_run(run_id)
        if run is None or run.status in TERMINAL_RUN_STATUSES:
            return
        if run.total_tests != enqueued:
            run = self.store.update_run(run_id, total_tests=enqueued)
        logger.info("[TEST-RUN] Run %s resolved %s tests", run_id, enqueued)
        self._complete_if_done(run)

    def _raise_total(self, run_id: int, enqueued: int) -> None:
        """Keep total_tests at least the number of tests already handed to the queue."""
        run = self.store.get_run(run_id)
        if run is not None and run.total_tests < enqueued:
            self.store.update_run(run_id, total_tests=enqueued)

    def _build_tests(self, run_id: Optional[int], items: list[dict], devices: list[dict], duration: int) -> list[ProbeTest]:
        """Expand items against every device, shuffle per device, then interleave."""
        per_device = []
        for device in devices:
            device_config = DeviceConfig.from_dict(device)
            tests = [
                ProbeTest(
                    item_id=item.get("Id"),
                    item_name=format_item_name(item),
                    path=item.get("Path") or "",
                    container=item.get("Container") or "",
                    device_id=device.get("id"),
                    device_name=device.get("name") or "",
                    device_config=device_config,
                    duration=duration,
                    test_run_id=run_id,
                )
                for item in items if item.get("Id")
            ]
            random.shuffle(tests)
            per_device.append(tests)
        return interleave(per_device)

    async def iter_scope_items(self, scope: dict) -> AsyncIterator[list[dict]]:
        """Yield pages of catalog items for a scope. Per-library and per-item failures are skipped."""
        scope_type = scope.get("type", "all")
        library_ids = scope.get("library_ids") or []

        if scope_type == "all":
            page_size = self.settings.catalog_page_size
            for library_id in library_ids:
                offset = 0
                while True:
                    try:
                        page = await self.catalog.list_items(library_id, page_size, offset)
                    except ResolutionError as e:
                        logger.warning("[TEST-RUN] Failed to list library %s at offset %s: %s", library_id, offset, e)
                        break
                    items = page.get("items") or []
                    if not items:
                        break
                    yield items
                    offset += len(items)
                    if offset >= (page.get("total_count") or 0):
                        break

        elif scope_type == "recent":
            days = scope.get("days") or DEFAULT_RECENT_DAYS
            pinned = set(scope.get("item_ids") or [])
            for library_id in library_ids:
                try:
                    page = await self.catalog.list_recent_items(library_id, days, RECENT_ITEMS_LIMIT)
                except ResolutionError as e:
                    logger.warning("[TEST-RUN] Failed to list recent items for library %s: %s", library_id, e)
                    continue
                items = page.get("items") or []
                if pinned:
                    items = [item for item in items if item.get("Id") in pinned]
                if items:
                    yield items

        elif scope_type == "custom":
            items = []
            for item_id in scope.get("item_ids") or []:
                try:
                    item = await self.catalog.get_item(item_id)
                except ResolutionError as e:
                    logger.warning("[TEST-RUN] Failed to fetch item %s: %s", item_id, e)
                    continue
                if item:
                    items.append(item)
            if items:
                yield items

        else:
            raise ResolutionError(f"Unknown media scope type: {scope_type}")

    async def preview_scope(self, scope: dict) -> dict:
        """Resolve a scope without creating a run."""
        items = []
        async for page in self.iter_scope_items(scope):
            items.extend(page)
        return {
            "count": len(items),
            "items": [
                {
                    "id": item.get("Id"),
                    "name": format_item_name(item),
                    "type": item.get("Type"),
                    "path": item.get("Path"),
                    "date_created": item.get("DateCreated"),
                }
                for item in items
            ],
        }

    # -------------------------------------------------------------------------
    # Ad-hoc tests
    # -------------------------------------------------------------------------

    async def queue_adhoc_test(self, item_id: str, device_id: int, duration: Optional[int] = None) -> ProbeTest:
        """Queue a single probe that belongs to no run."""
        device = self.store.get_device(device_id)
        if not device:
            raise ConfigurationError(f"Device profile {device_id} not found")

        item = None
        try:
            item = await self.catalog.get_item(item_id)
        except ResolutionError as e:
            logger.warning("[TEST-RUN] Could not fetch details for item %s: %s", item_id, e)
        item = item or {"Id": item_id}

        test = ProbeTest(
            item_id=item_id,
            item_name=format_item_name(item) or item_id,
            path=item.get("Path") or "",
            container=item.get("Container") or "",
            device_id=device.id,
            device_name=device.name,
            device_config=DeviceConfig.from_profile(device),
            duration=duration or self.settings.test_duration,
        )
        self.queue.enqueue(test)
        self.queue.drive()
        return test

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_run(self, run_id: int):
        return self._get_run(run_id)

    def get_all_runs(self, limit: int = 50):
        return self.store.get_all_runs(limit)

    def get_active_run(self):
        return self.store.get_active_run()

    def get_run_results(self, run_id: int):
        self._get_run(run_id)
        return self.store.get_run_results(run_id)


# Global manager instance
_manager: Optional[TestRunManager] = None


def get_manager() -> Optional[TestRunManager]:
    """Get the global run manager instance."""
    return _manager


def set_manager(manager: Optional[TestRunManager]) -> None:
    """Set the global run manager instance."""
    global _manager
    _manager = manager
    logger.info("[TEST-RUN] Run manager instance set: %s", manager is not None)
