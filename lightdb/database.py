from __future__ import annotations

from pathlib import Path
import logging
from typing import Optional, Union

from PySide6 import QtCore

from lightdb.catalog import Catalog, LightModel
from lightdb.events import SyncEvents
from lightdb.fetcher import CatalogFetcher, HttpGet, fetch_url
from lightdb.image_cache import LightImageCache
from lightdb.scheduler import Clock, ForceResult, SyncScheduler, utc_now
from lightdb.settings import FetchMode, SyncSettings, SyncState
from lightdb.store import LocalStore

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"


def default_data_dir() -> Path:
    location = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.StandardLocation.AppDataLocation)
    if location:
        return Path(location)
    return Path.home() / ".lightdb"


class LightDatabase(QtCore.QObject):
    """Application-scoped owner of the light database.

    Holds the current catalog, the sync settings, the scheduler and the image
    cache. Create one at startup and pass it to whatever needs light metadata;
    all mutation happens on the thread that owns this object.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        http_get: HttpGet = fetch_url,
        clock: Clock = utc_now,
        thread_pool: Optional[QtCore.QThreadPool] = None,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.data_dir = data_dir or default_data_dir()
        self.settings = SyncSettings(self.data_dir / SETTINGS_FILENAME)
        self.store = LocalStore(self.data_dir)
        self.events = SyncEvents(self)
        self._catalog: Optional[Catalog] = None
        fetcher = CatalogFetcher(self.store, http_get, self.settings.request_timeout)
        self.scheduler = SyncScheduler(
            self.settings,
            fetcher,
            self.events,
            on_catalog=self._replace_catalog,
            needs_refresh=self._needs_refresh,
            clock=clock,
            thread_pool=thread_pool,
            parent=self,
        )
        self.images = LightImageCache(
            self.store,
            self.catalog,
            http_get=http_get,
            timeout=self.settings.request_timeout,
            max_workers=self.settings.image_workers,
            parent=self,
        )

    @property
    def local_database_path(self) -> Path:
        return self.store.database_path

    def catalog(self) -> Optional[Catalog]:
        return self._catalog

    def lookup(self, model_id: Union[str, int]) -> Optional[LightModel]:
        catalog = self._catalog
        if catalog is None:
            return None
        return catalog.lookup(model_id)

    def sync_state(self) -> SyncState:
        return self.settings.state

    def remaining_ttl(self) -> float:
        return self.scheduler.remaining_ttl()

    def load_from_disk(self, reload: bool = False) -> Optional[Catalog]:
        if self._catalog is not None and not reload:
            return self._catalog
        catalog = self.store.load()
        if catalog is not None:
            self._replace_catalog(catalog)
        elif self.store.unsupported_version:
            cause = self.store.last_error.cause if self.store.last_error else None
            self.events.unsupported_version.emit(f"{cause}.\nPlease update to the latest version of the app.")
        return self._catalog

    def set_fetch_mode(self, mode: Union[FetchMode, str]) -> None:
        mode = FetchMode(mode)
        self.settings.set_fetch_mode(mode)
        if mode is FetchMode.DISABLED:
            self.scheduler.cancel()

    def set_custom_url(self, url: str) -> None:
        self.settings.set_custom_url(url.strip())

    def force_sync(self) -> ForceResult:
        return self.scheduler.force_sync()

    def start(self) -> None:
        self.load_from_disk()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.images.shutdown()

    def _needs_refresh(self) -> bool:
        if not self.store.has_database():
            return True
        # Version 1 databases predate capability flags.
        return self._catalog is not None and self._catalog.version == 1

    def _replace_catalog(self, catalog: Catalog) -> None:
        self._catalog = catalog
        logger.debug("Light database now at version %s with %d lights", catalog.version, len(catalog))
        self.events.catalog_changed.emit(catalog)
