from __future__ import annotations

from pathlib import Path
import hashlib
import logging
import os
import re
import shutil
import tempfile
from typing import Optional, Union

from lightdb.catalog import Catalog, decode_catalog, normalize_model_id
from lightdb.errors import SchemaError, StoreError, StoreErrorKind

logger = logging.getLogger(__name__)

DATABASE_FILENAME = "database.json"
IMAGE_DIRNAME = "LightImageCache"

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class LocalStore:
    """Disk persistence for the last known good database and light images.

    Every write goes through a temporary file in the target directory followed
    by ``os.replace``, so readers see the old file or the new one, never a
    partial one.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self.database_path = root_dir / DATABASE_FILENAME
        self._image_dir = root_dir / IMAGE_DIRNAME
        self.last_error: Optional[StoreError] = None

    def load(self) -> Optional[Catalog]:
        self.last_error = None
        if not self.database_path.exists():
            return None
        try:
            raw = self.database_path.read_bytes()
            return decode_catalog(raw)
        except (OSError, SchemaError) as exc:
            logger.error("Error reading or parsing %s: %s", self.database_path, exc)
            self.last_error = StoreError(StoreErrorKind.CORRUPT_PERSISTED, str(self.database_path), exc)
            self._discard_database()
            return None

    @property
    def unsupported_version(self) -> bool:
        cause = self.last_error.cause if self.last_error else None
        return isinstance(cause, SchemaError) and cause.is_unsupported_version

    def read_raw(self) -> Optional[bytes]:
        if not self.database_path.exists():
            return None
        return self.database_path.read_bytes()

    def save(self, raw: bytes) -> None:
        # Callers must have decoded ``raw`` successfully before persisting it.
        _atomic_write(self.database_path, raw)
        logger.debug("Saved %d bytes to %s", len(raw), self.database_path)

    def has_database(self) -> bool:
        return self.database_path.exists()

    def _discard_database(self) -> None:
        try:
            self.database_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", self.database_path, exc)

    @property
    def image_dir(self) -> Path:
        self._image_dir.mkdir(parents=True, exist_ok=True)
        return self._image_dir

    def image_path(self, model_id: Union[str, int]) -> Path:
        return self.image_dir / f"{_image_key(model_id)}.png"

    def has_image(self, model_id: Union[str, int]) -> bool:
        return self.image_path(model_id).exists()

    def read_image(self, model_id: Union[str, int]) -> Optional[bytes]:
        path = self.image_path(model_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def write_image(self, model_id: Union[str, int], data: bytes) -> Path:
        path = self.image_path(model_id)
        _atomic_write(path, data)
        return path

    def discard_image(self, model_id: Union[str, int]) -> None:
        self.image_path(model_id).unlink(missing_ok=True)

    def clear_images(self) -> int:
        if not self._image_dir.exists():
            return 0
        removed = sum(1 for path in self._image_dir.iterdir() if path.is_file())
        shutil.rmtree(self._image_dir)
        return removed


def _image_key(model_id: Union[str, int]) -> str:
    key = normalize_model_id(model_id)
    if _SAFE_KEY.match(key) and not key.startswith("."):
        return key
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
