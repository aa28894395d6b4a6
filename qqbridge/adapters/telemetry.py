"""Counter telemetry sink used by the bridge runtime and tests."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from loguru import logger


@dataclass(slots=True)
class InMemoryTelemetry:
    """Keeps bridge counters in memory and mirrors each increment to the debug log."""

    counters: Counter[str] = field(default_factory=Counter)

    def incr(self, name: str, value: int = 1, labels: tuple[tuple[str, str], ...] = ()) -> None:
        self.counters[name] += int(value)
        for key, label in labels:
            self.counters[f"{name}{{{key}={label}}}"] += int(value)
        logger.debug("telemetry {} += {}", name, value)

    def get(self, name: str, labels: tuple[tuple[str, str], ...] = ()) -> int:
        if not labels:
            return self.counters[name]
        key, label = labels[0]
        return self.counters[f"{name}{{{key}={label}}}"]
