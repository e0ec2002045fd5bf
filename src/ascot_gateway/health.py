"""Backoff and subsystem health tracking."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .logging import get_logger
from .metrics import record_subsystem_failure, record_subsystem_status

_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``base * factor ** (failures - 1)``, capped at `maximum`."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, _MAX_EXPONENT)
        return min(self.maximum, max(0.0, self.base) * self.factor**exponent)


@dataclass
class _Circuit:
    status: str = "ok"
    failures: int = 0
    open_until: Optional[float] = None
    last_error: Optional[str] = None


class HealthMonitor:
    """Circuit breaker per subsystem.

    `failure_threshold` consecutive failures open the circuit for
    `cooldown_seconds` (status ``suppressed``). The first attempt allowed after
    the cooldown moves the subsystem to ``recovering``; any success closes the
    circuit again.
    """

    def __init__(
        self,
        subsystem_names: Tuple[str, ...],
        failure_threshold: int,
        cooldown_seconds: float,
    ) -> None:
        self._circuits: Dict[str, _Circuit] = {name: _Circuit() for name in subsystem_names}
        self._threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._lock = asyncio.Lock()
        self.logger = get_logger("ascot.health")
        for name in subsystem_names:
            record_subsystem_status(name, "ok")

    def _transition(self, subsystem: str, circuit: _Circuit, status: str) -> None:
        previous, circuit.status = circuit.status, status
        record_subsystem_status(subsystem, status)
        if previous != status:
            self.logger.info(
                "Subsystem status changed",
                extra={
                    "subsystem": subsystem,
                    "status": status,
                    "previous_status": previous,
                    "failures": circuit.failures,
                },
            )

    async def record_success(self, subsystem: str) -> None:
        async with self._lock:
            circuit = self._circuits[subsystem]
            circuit.failures = 0
            circuit.open_until = None
            circuit.last_error = None
            self._transition(subsystem, circuit, "ok")

    async def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            circuit = self._circuits[subsystem]
            circuit.failures += 1
            if error is not None:
                circuit.last_error = str(error)
            if circuit.failures < self._threshold:
                self._transition(subsystem, circuit, "degraded")
                return
            circuit.open_until = time.monotonic() + self._cooldown
            record_subsystem_failure(subsystem)
            self._transition(subsystem, circuit, "suppressed")

    async def allow_attempt(self, subsystem: str) -> Tuple[bool, float]:
        """Return whether an attempt may run now, and otherwise the seconds left."""

        async with self._lock:
            circuit = self._circuits[subsystem]
            remaining = (circuit.open_until or 0.0) - time.monotonic()
            if remaining > 0:
                return False, remaining
            if circuit.status == "suppressed":
                self._transition(subsystem, circuit, "recovering")
            return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            return {
                name: {
                    "status": circuit.status,
                    "failures": circuit.failures,
                    "suppressed_for": (
                        max(0.0, circuit.open_until - now) if circuit.open_until else None
                    ),
                    "last_error": circuit.last_error,
                }
                for name, circuit in self._circuits.items()
            }

    async def overall_status(self) -> str:
        statuses = {entry["status"] for entry in (await self.snapshot()).values()}
        if statuses <= {"ok"}:
            return "ok"
        if statuses <= {"ok", "recovering"}:
            return "recovering"
        return "degraded"
