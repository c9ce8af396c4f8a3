from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from PySide6 import QtCore


@dataclass(frozen=True)
class UpdateOutcome:
    success: bool
    reason: Optional[Exception] = None
    forced: bool = False

    @classmethod
    def succeeded(cls, forced: bool = False) -> "UpdateOutcome":
        return cls(success=True, forced=forced)

    @classmethod
    def failed(cls, reason: Optional[Exception], forced: bool = False) -> "UpdateOutcome":
        return cls(success=False, reason=reason, forced=forced)


class SyncEvents(QtCore.QObject):
    """Signals published by the light database.

    One instance is owned by ``LightDatabase`` and handed to collaborators,
    which connect to the signals they care about. Emission happens on the
    coordination thread; slots on other threads receive queued calls.
    """

    # Seconds until the next automatic sync.
    countdown = QtCore.Signal(float)
    # UpdateOutcome after every sync attempt.
    updated = QtCore.Signal(object)
    # The new Catalog after a swap.
    catalog_changed = QtCore.Signal(object)
    # Message for the "please update the application" prompt.
    unsupported_version = QtCore.Signal(str)
