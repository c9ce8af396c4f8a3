"""Light model database: remote sync, local persistence and image cache."""

from lightdb.catalog import Catalog, LightModel, SUPPORTED_VERSION, decode_catalog
from lightdb.database import LightDatabase
from lightdb.settings import FetchMode, SyncState

__version__ = "1.0.0"

__all__ = [
    "Catalog",
    "FetchMode",
    "LightDatabase",
    "LightModel",
    "SUPPORTED_VERSION",
    "SyncState",
    "decode_catalog",
]
