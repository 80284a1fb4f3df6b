"""Injectable wall clock.

Services take a ``Clock`` so tests can pin "now" (e.g. to land exactly on an
auto-release boundary) without patching the datetime module.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)
