from __future__ import annotations

from enum import Enum
from typing import Optional


class SchemaErrorKind(Enum):
    UNSUPPORTED_VERSION = "unsupported_version"
    MALFORMED_ENTRY = "malformed_entry"
    MALFORMED_DOCUMENT = "malformed_document"


class ConfigErrorKind(Enum):
    INVALID_URL = "invalid_url"
    FETCH_DISABLED = "fetch_disabled"


class FetchErrorKind(Enum):
    UNREACHABLE = "unreachable"
    BAD_STATUS = "bad_status"
    KNOWN_BAD = "known_bad"


class StoreErrorKind(Enum):
    CORRUPT_PERSISTED = "corrupt_persisted"


class LightDbError(Exception):
    """Base class for every error raised by the light database."""


class SchemaError(LightDbError):
    def __init__(
        self,
        kind: SchemaErrorKind,
        message: str = "",
        version: Optional[float] = None,
        model_id: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.version = version
        self.model_id = model_id
        if not message:
            if kind is SchemaErrorKind.UNSUPPORTED_VERSION:
                message = f"Unsupported database version: {version}"
            elif kind is SchemaErrorKind.MALFORMED_ENTRY:
                message = f"Malformed light entry: {model_id or '<unknown>'}"
            else:
                message = "Malformed light database"
        super().__init__(message)

    @property
    def is_unsupported_version(self) -> bool:
        return self.kind is SchemaErrorKind.UNSUPPORTED_VERSION


class ConfigError(LightDbError):
    def __init__(self, kind: ConfigErrorKind, message: str = "", url: Optional[str] = None) -> None:
        self.kind = kind
        self.url = url
        if not message:
            if kind is ConfigErrorKind.FETCH_DISABLED:
                message = "Fetching the device database from a URL is disabled"
            else:
                message = f"No valid remote database URL configured: {url!r}"
        super().__init__(message)


class FetchError(LightDbError):
    def __init__(
        self,
        kind: FetchErrorKind,
        url: Optional[str] = None,
        status: Optional[int] = None,
        message: str = "",
    ) -> None:
        self.kind = kind
        self.url = url
        self.status = status
        if not message:
            if kind is FetchErrorKind.BAD_STATUS:
                message = f"HTTP {status} from {url}"
            elif kind is FetchErrorKind.KNOWN_BAD:
                message = f"Skipping previously failed URL {url}"
            else:
                message = f"Unable to reach {url}"
        super().__init__(message)


class StoreError(LightDbError):
    def __init__(self, kind: StoreErrorKind, path: Optional[str] = None, cause: Optional[Exception] = None) -> None:
        self.kind = kind
        self.path = path
        self.cause = cause
        super().__init__(f"Unreadable persisted file {path}: {cause}")


class ImageNotFound(LightDbError):
    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"No image reference for light type {model_id}")
