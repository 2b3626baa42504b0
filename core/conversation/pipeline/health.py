"""
System health aggregation.

Polls every component on a fixed interval and folds the results into one
SystemHealth snapshot: healthy when every probe passes, degraded when at least
70% pass, unhealthy otherwise.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.events import EventChannel
from core.scheduling import Scheduler, TimerHandle
from models.schemas import HealthStatus, SystemHealth

logger = logging.getLogger(__name__)

DEGRADED_THRESHOLD = 0.7
PROBE_TIMEOUT_SECONDS = 5.0

Probe = Callable[[], Union[bool, Awaitable[bool]]]


def classify(services: Dict[str, bool]) -> HealthStatus:
    if not services:
        return HealthStatus.UNHEALTHY
    ratio = sum(1 for ok in services.values() if ok) / len(services)
    if ratio == 1.0:
        return HealthStatus.HEALTHY
    if ratio >= DEGRADED_THRESHOLD:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


class HealthMonitor:
    """Periodic health checks over the orchestrator and its collaborators"""

    def __init__(self, orchestrator, scheduler: Scheduler, interval: float = 60.0,
                 probe_timeout: float = PROBE_TIMEOUT_SECONDS):
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.last_health: Optional[SystemHealth] = None
        self._handle: Optional[TimerHandle] = None

        self.health_checked: EventChannel[SystemHealth] = EventChannel("health_checked")
        self.system_unhealthy: EventChannel[SystemHealth] = EventChannel("system_unhealthy")

        storage = orchestrator.storage
        self.probes: Dict[str, Probe] = {
            "session_store": lambda: isinstance(orchestrator.session_store.get_stats(), dict),
            "dialogue_engine": orchestrator.dialogue_engine.health_check,
            "intent_engine": orchestrator.intent_engine.health_check,
            "model_backend": orchestrator.backend.health_check,
            "storage": storage.health_check if storage is not None else (lambda: True),
        }

    def start(self) -> None:
        if self._handle is None:
            self._handle = self.scheduler.call_every(self.interval, self.check, name="health-check")
            logger.info(f"Health checks scheduled every {self.interval}s")

    def stop(self) -> None:
        if self._handle:
            self._handle.cancel()
            self._handle = None

    async def _run_probe(self, name: str, probe: Probe) -> bool:
        try:
            outcome = probe()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=self.probe_timeout)
            return bool(outcome)
        except Exception as e:
            logger.warning(f"Health probe {name} failed: {str(e)}")
            return False

    def _metrics(self) -> Dict[str, float]:
        stats = self.orchestrator.get_performance_stats()
        session_stats = self.orchestrator.session_store.get_stats()
        return {
            "active_sessions": float(session_stats["active_sessions"] + session_stats["idle_sessions"]),
            "average_response_time": float(stats["average_response_time"]),
            "error_rate": float(stats["error_rate"]),
        }

    async def check(self) -> SystemHealth:
        names = list(self.probes)
        outcomes = await asyncio.gather(*(self._run_probe(n, self.probes[n]) for n in names))
        services = dict(zip(names, outcomes))

        health = SystemHealth(
            status=classify(services),
            services=services,
            metrics=self._metrics(),
            timestamp=self.scheduler.now(),
        )
        self.last_health = health

        if health.status != HealthStatus.HEALTHY:
            failing = [n for n, ok in services.items() if not ok]
            logger.warning(f"System health {health.status.value}; failing: {', '.join(failing)}")

        self.health_checked.publish(health)
        if health.status == HealthStatus.UNHEALTHY:
            self.system_unhealthy.publish(health)
        return health

    def snapshot(self) -> Dict[str, Any]:
        return self.last_health.model_dump(mode="json") if self.last_health else {}
