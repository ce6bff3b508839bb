"""Sticky primary/secondary backend selection.

Each store owns one selector instance. Once the primary backend fails the
selector flips to the secondary tier and never probes the primary again for
the lifetime of the selector. A race during the flip window (one caller still
reading the primary) is tolerated.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TypeVar

from matrix_core.storage.common import utc_now

logger = logging.getLogger(__name__)

B = TypeVar("B")
T = TypeVar("T")


class BackendTier(str, Enum):
    """Which backend implementation a store routes calls to."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(slots=True)
class BackendSelector:
    """Process-scoped degradation flag injected into a store."""

    name: str
    tier: BackendTier = BackendTier.PRIMARY
    degraded_reason: str | None = None
    degraded_at: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def forced_secondary(cls, name: str) -> BackendSelector:
        """Selector that never touches the primary backend."""

        return cls(name=name, tier=BackendTier.SECONDARY, degraded_reason="forced")

    @property
    def use_secondary(self) -> bool:
        return self.tier is BackendTier.SECONDARY

    def degrade(self, *, reason: str) -> bool:
        """Flip to the secondary tier; return True only for the call that flipped."""

        with self._lock:
            if self.tier is BackendTier.SECONDARY:
                return False
            self.tier = BackendTier.SECONDARY
            self.degraded_reason = reason
            self.degraded_at = utc_now()
        logger.warning(
            "%s primary backend unavailable, using secondary for the rest of the process: %s",
            self.name,
            reason,
        )
        return True


def run_with_fallback(
    selector: BackendSelector,
    *,
    primary: B,
    secondary: B,
    operation: str,
    action: Callable[[B], T],
) -> T:
    """Run ``action`` on the selected backend, degrading once on primary failure.

    Errors from the secondary backend propagate: there is nothing left to
    fall back to.
    """

    if not selector.use_secondary:
        try:
            return action(primary)
        except Exception as exc:  # noqa: BLE001
            selector.degrade(reason=f"{operation}: {exc}")
    return action(secondary)
