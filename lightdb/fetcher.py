from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import http.client
import logging
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
import urllib.request

from lightdb.catalog import Catalog, decode_catalog
from lightdb.errors import ConfigError, ConfigErrorKind, FetchError, FetchErrorKind, LightDbError
from lightdb.settings import DEFAULT_DATABASE_URL, FetchMode, SyncState
from lightdb.store import LocalStore

logger = logging.getLogger(__name__)

USER_AGENT = "LightDb/1.0"
SUPPORTED_SCHEMES = ("http", "https", "file")

HttpGet = Callable[[str, float], bytes]


class SyncStatus(Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    catalog: Optional[Catalog] = None
    error: Optional[Exception] = None
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.UPDATED


def resolve_remote_url(state: SyncState) -> Optional[str]:
    """Return the URL to sync from, or None when fetching is disabled."""
    if state.fetch_mode is FetchMode.DISABLED:
        return None
    if state.fetch_mode is FetchMode.DEFAULT_REMOTE:
        return DEFAULT_DATABASE_URL
    url = (state.custom_url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
        raise ConfigError(ConfigErrorKind.INVALID_URL, url=url)
    if parsed.scheme.lower() != "file" and not parsed.netloc:
        raise ConfigError(ConfigErrorKind.INVALID_URL, url=url)
    return url


def fetch_url(url: str, timeout: float) -> bytes:
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = getattr(response, "status", None)
            if status is not None and not 200 <= status < 300:
                raise FetchError(FetchErrorKind.BAD_STATUS, url=url, status=status)
            return response.read()
    except HTTPError as exc:
        raise FetchError(FetchErrorKind.BAD_STATUS, url=url, status=exc.code) from exc
    except (URLError, OSError, ValueError, http.client.HTTPException) as exc:
        raise FetchError(FetchErrorKind.UNREACHABLE, url=url, message=f"Unable to reach {url}: {exc}") from exc


class CatalogFetcher:
    """One end-to-end sync attempt: download, validate, then persist.

    The document is decoded before anything touches disk, so a bad payload
    never replaces the last good local copy.
    """

    def __init__(self, store: LocalStore, http_get: HttpGet = fetch_url, timeout: float = 15) -> None:
        self.store = store
        self.http_get = http_get
        self.timeout = timeout

    def run(self, url: Optional[str], cancelled: Callable[[], bool] = lambda: False) -> SyncResult:
        if url is None:
            return SyncResult(SyncStatus.SKIPPED)
        logger.info("Download database from %s...", url)
        try:
            raw = self.http_get(url, self.timeout)
            if cancelled():
                return SyncResult(SyncStatus.CANCELLED, url=url)
            catalog = decode_catalog(raw)
            if cancelled():
                return SyncResult(SyncStatus.CANCELLED, url=url)
            self.store.save(raw)
        except LightDbError as exc:
            logger.warning("Failed to download database: %s", exc)
            return SyncResult(SyncStatus.FAILED, error=exc, url=url)
        except OSError as exc:
            logger.warning("Failed to persist database: %s", exc)
            return SyncResult(SyncStatus.FAILED, error=exc, url=url)
        logger.info("Database version %s with %d lights downloaded", catalog.version, len(catalog))
        return SyncResult(SyncStatus.UPDATED, catalog=catalog, url=url)
