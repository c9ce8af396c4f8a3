from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging
import threading
from typing import Callable, Optional

from PySide6 import QtCore

from lightdb.catalog import Catalog
from lightdb.errors import ConfigError, ConfigErrorKind, LightDbError, SchemaError
from lightdb.events import SyncEvents, UpdateOutcome
from lightdb.fetcher import CatalogFetcher, SyncResult, SyncStatus, resolve_remote_url
from lightdb.settings import FetchMode, SyncSettings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(Enum):
    IDLE = "idle"
    DUE = "due"
    DISABLED = "disabled"


class ForceResult(Enum):
    STARTED = "started"
    COALESCED = "coalesced"


class SyncCancelled(LightDbError):
    pass


class SyncTaskSignals(QtCore.QObject):
    finished = QtCore.Signal(object)


class SyncTask(QtCore.QRunnable):
    def __init__(self, fetcher: CatalogFetcher, url: str, forced: bool) -> None:
        super().__init__()
        self.setAutoDelete(False)
        self.fetcher = fetcher
        self.url = url
        self.forced = forced
        self.signals = SyncTaskSignals()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> None:
        if self._cancel.is_set():
            result = SyncResult(SyncStatus.CANCELLED, url=self.url)
        else:
            try:
                result = self.fetcher.run(self.url, self._cancel.is_set)
            except Exception as exc:
                logger.exception("Unexpected error syncing database from %s", self.url)
                result = SyncResult(SyncStatus.FAILED, error=exc, url=self.url)
        self.signals.finished.emit(result)


class SyncScheduler(QtCore.QObject):
    """Time driven database refresh.

    A short periodic tick recomputes the time left before the next automatic
    sync, publishes it, and starts a sync once the interval has elapsed.
    Every attempt, successful or not, restarts the interval; there is no
    immediate retry. ``force_sync`` skips the interval check.
    """

    def __init__(
        self,
        settings: SyncSettings,
        fetcher: CatalogFetcher,
        events: SyncEvents,
        on_catalog: Callable[[Catalog], None],
        needs_refresh: Callable[[], bool] = lambda: False,
        clock: Clock = utc_now,
        thread_pool: Optional[QtCore.QThreadPool] = None,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._settings = settings
        self._fetcher = fetcher
        self._events = events
        self._on_catalog = on_catalog
        self._needs_refresh = needs_refresh
        self._clock = clock
        self._thread_pool = thread_pool if thread_pool is not None else QtCore.QThreadPool(self)
        self._task: Optional[SyncTask] = None
        self._stopped = False
        self._state = SchedulerState.IDLE
        self.ttl_seconds = settings.ttl_seconds
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(int(settings.tick_seconds * 1000))
        self._timer.timeout.connect(self.tick)

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    @property
    def tick_interval_ms(self) -> int:
        return self._timer.interval()

    def set_tick_seconds(self, seconds: float) -> None:
        self._timer.setInterval(int(seconds * 1000))

    def start(self) -> None:
        self._stopped = False
        self._timer.start()
        if self._settings.state.fetch_mode is FetchMode.DISABLED:
            self._state = SchedulerState.DISABLED
            return
        if self._task is None and (self.remaining_ttl() <= 0 or self._needs_refresh()):
            logger.debug("Database refresh due at startup")
            self._start_attempt(forced=False)

    def stop(self) -> None:
        self._stopped = True
        self._timer.stop()
        self.cancel()
        self._thread_pool.waitForDone()

    def cancel(self) -> bool:
        if self._task is None:
            return False
        self._task.cancel()
        return True

    def remaining_ttl(self) -> float:
        last_attempt = self._settings.state.last_attempt
        if last_attempt is None:
            return 0.0
        elapsed = (self._clock() - last_attempt).total_seconds()
        return max(min(self.ttl_seconds - elapsed, self.ttl_seconds), 0.0)

    @QtCore.Slot()
    def tick(self) -> None:
        if self._settings.state.fetch_mode is FetchMode.DISABLED:
            self._state = SchedulerState.DISABLED
            return
        if self._state is SchedulerState.DISABLED:
            self._state = SchedulerState.IDLE
        remaining = self.remaining_ttl()
        self._events.countdown.emit(remaining)
        if remaining <= 0 and self._task is None:
            logger.debug("Database refresh interval elapsed")
            self._start_attempt(forced=False)

    def force_sync(self) -> ForceResult:
        if self._settings.state.fetch_mode is FetchMode.DISABLED:
            logger.info("Database fetching disabled, skipping download.")
            raise ConfigError(ConfigErrorKind.FETCH_DISABLED)
        if self._task is not None:
            self._task.forced = True
            return ForceResult.COALESCED
        self._start_attempt(forced=True)
        return ForceResult.STARTED

    def _start_attempt(self, forced: bool) -> None:
        try:
            url = resolve_remote_url(self._settings.state)
        except ConfigError as exc:
            if forced:
                raise
            # Still counts as an attempt so an invalid URL is not re-checked every tick.
            logger.debug("Automatic sync skipped: %s", exc)
            self._settings.record_attempt(self._clock())
            return
        if url is None:
            return
        self._settings.record_attempt(self._clock())
        self._state = SchedulerState.DUE
        task = SyncTask(self._fetcher, url, forced)
        task.signals.finished.connect(self._on_task_finished, QtCore.Qt.ConnectionType.QueuedConnection)
        self._task = task
        self._thread_pool.start(task)

    @QtCore.Slot(object)
    def _on_task_finished(self, result: SyncResult) -> None:
        task, self._task = self._task, None
        forced = task.forced if task is not None else False
        if self._settings.state.fetch_mode is FetchMode.DISABLED:
            self._state = SchedulerState.DISABLED
        else:
            self._state = SchedulerState.IDLE
        if self._stopped:
            return

        if result.status is SyncStatus.UPDATED and result.catalog is not None:
            self._on_catalog(result.catalog)
            self._events.updated.emit(UpdateOutcome.succeeded(forced))
            return
        if result.status is SyncStatus.CANCELLED:
            logger.info("Database sync from %s cancelled", result.url)
            self._events.updated.emit(UpdateOutcome.failed(SyncCancelled("Sync cancelled"), forced))
            return
        error = result.error
        if isinstance(error, SchemaError) and error.is_unsupported_version:
            self._events.unsupported_version.emit(
                f"{error}.\nPlease update to the latest version of the app."
            )
        self._events.updated.emit(UpdateOutcome.failed(error, forced))
