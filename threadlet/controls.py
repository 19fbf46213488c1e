"""Priority levels and per-threadlet scheduling controls."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Any

from threadlet._validators import ensure_number

DEFAULT_TIMESLICE = 0.0
DEFAULT_YIELD_INTERVAL = 2.0


class Priority(IntEnum):
    """Scheduling priority. Each step up earns roughly twice the dispatches."""

    HIGH = 1
    DEFAULT = 2
    LOW = 3

    @classmethod
    def coerce(cls, value: Any) -> Priority:
        """Accept a Priority, its name, or an int clamped into HIGH..LOW."""
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                names = ", ".join(p.name.lower() for p in cls)
                raise ValueError(f"priority must be one of {names}, got {value!r}") from None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"priority must be Priority, str or int, got {type(value).__name__}")
        if value == 0:
            return cls.DEFAULT
        return cls(min(max(abs(value), cls.HIGH), cls.LOW))


@dataclass(frozen=True)
class ThreadletControls:
    """Scheduling parameters of a threadlet.

    Attributes:
        priority: Queue the threadlet returns to after using up its slice.
        timeslice: Milliseconds a threadlet may keep stepping before it must
            hand control back to the scheduler. 0 yields at every step.
        yield_interval: Minimum milliseconds between two dispatches of the
            same threadlet; a threadlet that yields sooner is parked on a
            timer for the remainder.
    """

    priority: Priority = Priority.DEFAULT
    timeslice: float = DEFAULT_TIMESLICE
    yield_interval: float = DEFAULT_YIELD_INTERVAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "priority", Priority.coerce(self.priority))
        ensure_number(self.timeslice, name="timeslice")
        ensure_number(self.yield_interval, name="yield_interval")
        object.__setattr__(self, "timeslice", max(float(self.timeslice), 0.0))
        object.__setattr__(self, "yield_interval", max(float(self.yield_interval), 0.0))

    @classmethod
    def from_value(
        cls,
        value: ThreadletControls | Mapping[str, Any] | None,
        defaults: ThreadletControls | None = None,
    ) -> ThreadletControls:
        base = defaults if defaults is not None else cls()
        if value is None:
            return base
        if isinstance(value, ThreadletControls):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(
                f"controls must be ThreadletControls or a mapping, got {type(value).__name__}"
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(str(key) for key in value if key not in known)
        if unknown:
            raise TypeError(f"Unknown threadlet controls: {', '.join(unknown)}")
        return replace(base, **value)


__all__ = [
    "DEFAULT_TIMESLICE",
    "DEFAULT_YIELD_INTERVAL",
    "Priority",
    "ThreadletControls",
]
