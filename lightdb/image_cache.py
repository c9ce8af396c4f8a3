from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from PySide6 import QtCore, QtGui

from lightdb.catalog import Catalog, normalize_model_id
from lightdb.errors import FetchError, FetchErrorKind, ImageNotFound, LightDbError
from lightdb.fetcher import HttpGet, fetch_url
from lightdb.store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 10


@dataclass
class CacheEntry:
    image: QtGui.QImage
    last_access: float


class ImageRequest:
    """Handle for one asynchronous image fetch.

    Resolved on the coordination thread with either ``image`` or ``error``
    set. Callbacks added after resolution run immediately.
    """

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        self.image: Optional[QtGui.QImage] = None
        self.error: Optional[Exception] = None
        self._done = False
        self._cancelled = False
        self._callbacks: List[Callable[["ImageRequest"], None]] = []
        self._on_cancel: Optional[Callable[["ImageRequest"], None]] = None

    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_done_callback(self, callback: Callable[["ImageRequest"], None]) -> None:
        if self._done:
            callback(self)
        elif not self._cancelled:
            self._callbacks.append(callback)

    def cancel(self) -> bool:
        if self._done or self._cancelled:
            return False
        self._cancelled = True
        self._callbacks.clear()
        if self._on_cancel is not None:
            self._on_cancel(self)
        return True

    def _resolve(self, image: Optional[QtGui.QImage], error: Optional[Exception]) -> None:
        if self._done or self._cancelled:
            return
        self.image = image
        self.error = error
        self._done = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class ImageTaskSignals(QtCore.QObject):
    # model_id, url, QImage or None, exception or None
    finished = QtCore.Signal(str, str, object, object)


class ImageFetchTask(QtCore.QRunnable):
    def __init__(self, model_id: str, url: str, store: LocalStore, http_get: HttpGet, timeout: float) -> None:
        super().__init__()
        self.setAutoDelete(False)
        self.model_id = model_id
        self.url = url
        self.store = store
        self.http_get = http_get
        self.timeout = timeout
        self.signals = ImageTaskSignals()

    def run(self) -> None:
        try:
            image, error = self._download()
        except Exception as exc:
            logger.exception("Unexpected error downloading image for light type %s", self.model_id)
            error = FetchError(FetchErrorKind.UNREACHABLE, url=self.url, message=f"Unable to fetch {self.url}: {exc}")
            image = None
        self.signals.finished.emit(self.model_id, self.url, image, error)

    def _download(self) -> Tuple[Optional[QtGui.QImage], Optional[Exception]]:
        try:
            data = self.http_get(self.url, self.timeout)
        except (LightDbError, OSError) as exc:
            return None, exc
        image = QtGui.QImage.fromData(data)
        if image.isNull():
            return None, FetchError(FetchErrorKind.UNREACHABLE, url=self.url, message=f"Undecodable image from {self.url}")
        try:
            self.store.write_image(self.model_id, data)
        except OSError as exc:
            logger.warning("Unable to cache image for light type %s: %s", self.model_id, exc)
        return image, None


@dataclass
class _PendingFetch:
    task: ImageFetchTask
    requests: List[ImageRequest] = field(default_factory=list)


class LightImageCache(QtCore.QObject):
    image_loaded = QtCore.Signal(str, QtGui.QImage)
    image_failed = QtCore.Signal(str, object)

    def __init__(
        self,
        store: LocalStore,
        catalog_provider: Callable[[], Optional[Catalog]],
        http_get: HttpGet = fetch_url,
        timeout: float = 15,
        max_workers: int = DEFAULT_MAX_WORKERS,
        memory_items: int = 64,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.timeout = timeout
        self.memory_items = memory_items
        self._catalog_provider = catalog_provider
        self._http_get = http_get
        self._memory: Dict[str, CacheEntry] = {}
        self._failed_urls: Set[str] = set()
        self._in_flight: Dict[str, _PendingFetch] = {}
        self._thread_pool = QtCore.QThreadPool(self)
        self._thread_pool.setMaxThreadCount(max_workers)

    @property
    def max_workers(self) -> int:
        return self._thread_pool.maxThreadCount()

    @property
    def failed_urls(self) -> FrozenSet[str]:
        return frozenset(self._failed_urls)

    def clear_failed_urls(self) -> None:
        self._failed_urls.clear()

    def in_flight(self, model_id: Union[str, int]) -> bool:
        return normalize_model_id(model_id) in self._in_flight

    def fetch_cached(self, model_id: Union[str, int]) -> Optional[QtGui.QImage]:
        """Memory or disk lookup only; never touches the network."""
        key = normalize_model_id(model_id)
        entry = self._memory.get(key)
        if entry:
            entry.last_access = time.time()
            return entry.image

        disk_path = self.store.image_path(key)
        if not disk_path.exists():
            return None
        image = QtGui.QImage(str(disk_path))
        if image.isNull():
            logger.warning("Discarding unreadable cached image %s", disk_path)
            self.store.discard_image(key)
            return None
        self._remember(key, image)
        return image

    def fetch(self, model_id: Union[str, int]) -> ImageRequest:
        key = normalize_model_id(model_id)
        request = ImageRequest(key)
        image = self.fetch_cached(key)
        if image is not None:
            request._resolve(image, None)
            return request
        try:
            url = self._image_url(key)
        except ImageNotFound as exc:
            request._resolve(None, exc)
            return request
        if url in self._failed_urls:
            request._resolve(None, FetchError(FetchErrorKind.KNOWN_BAD, url=url))
            return request

        pending = self._in_flight.get(key)
        if pending is None:
            task = ImageFetchTask(key, url, self.store, self._http_get, self.timeout)
            task.signals.finished.connect(self._on_task_finished, QtCore.Qt.ConnectionType.QueuedConnection)
            pending = _PendingFetch(task)
            self._in_flight[key] = pending
            self._thread_pool.start(task)
        pending.requests.append(request)
        request._on_cancel = self._withdraw
        return request

    def load(self, model_id: Union[str, int]) -> QtGui.QImage:
        """Blocking fetch for scripts; runs the network call on the calling thread."""
        key = normalize_model_id(model_id)
        image = self.fetch_cached(key)
        if image is not None:
            return image
        url = self._image_url(key)
        if url in self._failed_urls:
            raise FetchError(FetchErrorKind.KNOWN_BAD, url=url)
        try:
            data = self._http_get(url, self.timeout)
        except (LightDbError, OSError) as exc:
            self._failed_urls.add(url)
            raise FetchError(FetchErrorKind.UNREACHABLE, url=url, message=str(exc)) from exc
        image = QtGui.QImage.fromData(data)
        if image.isNull():
            self._failed_urls.add(url)
            raise FetchError(FetchErrorKind.UNREACHABLE, url=url, message=f"Undecodable image from {url}")
        self.store.write_image(key, data)
        self._remember(key, image)
        return image

    def wait_for_done(self, msecs: int = -1) -> bool:
        return self._thread_pool.waitForDone(msecs)

    def shutdown(self) -> None:
        self._thread_pool.clear()
        for pending in list(self._in_flight.values()):
            for request in list(pending.requests):
                request.cancel()
        self._thread_pool.waitForDone()
        self._in_flight.clear()

    def forget(self) -> None:
        self._memory.clear()

    def _image_url(self, model_id: str) -> str:
        catalog = self._catalog_provider()
        model = catalog.lookup(model_id) if catalog is not None else None
        if model is None:
            raise ImageNotFound(model_id)
        return model.image_url

    def _withdraw(self, request: ImageRequest) -> None:
        pending = self._in_flight.get(request.model_id)
        if pending is None:
            return
        if request in pending.requests:
            pending.requests.remove(request)
        if pending.requests:
            return
        # A task that already started runs to completion and still fills the disk cache.
        if self._thread_pool.tryTake(pending.task):
            del self._in_flight[request.model_id]

    def _remember(self, key: str, image: QtGui.QImage) -> None:
        self._memory[key] = CacheEntry(image=image, last_access=time.time())
        self._prune()

    def _prune(self) -> None:
        if len(self._memory) <= self.memory_items:
            return
        sorted_items = sorted(self._memory.items(), key=lambda kv: kv[1].last_access)
        for key, _ in sorted_items[: len(self._memory) - self.memory_items]:
            self._memory.pop(key, None)

    @QtCore.Slot(str, str, object, object)
    def _on_task_finished(self, model_id: str, url: str, image: Optional[QtGui.QImage], error: Optional[Exception]) -> None:
        pending = self._in_flight.pop(model_id, None)
        requests = pending.requests if pending is not None else []
        if image is not None:
            self._remember(model_id, image)
            for request in requests:
                request._resolve(image, None)
            self.image_loaded.emit(model_id, image)
            return

        logger.warning("Failed to fetch image for light type %s from %s: %s", model_id, url, error)
        self._failed_urls.add(url)
        if isinstance(error, FetchError) and error.kind is FetchErrorKind.UNREACHABLE:
            failure = error
        else:
            failure = FetchError(FetchErrorKind.UNREACHABLE, url=url, message=str(error))
        for request in requests:
            request._resolve(None, failure)
        self.image_failed.emit(model_id, failure)
