"""Hit ratio, latency and error counters for the orchestrator."""
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, NamedTuple

log = logging.getLogger(__name__)


class HydrationSample(NamedTuple):
    domain: str
    duration_ms: float
    timestamp: float


class MetricsRecorder:

    def __init__(self, history: int = 500, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.total_requests = 0
        self.cache_hits = 0
        self.hydration_times: Deque[HydrationSample] = deque(maxlen=history)
        self.error_counts: Dict[str, int] = defaultdict(int)

    def record_request(self, cache_hit: bool = False) -> None:
        self.total_requests += 1
        if cache_hit:
            self.cache_hits += 1

    def record_hydration(self, domain: str, duration_ms: float) -> None:
        self.hydration_times.append(HydrationSample(domain, duration_ms, self.clock()))
        log.debug(f"{domain} hydration: {duration_ms:.0f}ms")

    def record_error(self, domain: str, error: Exception) -> None:
        self.error_counts[domain] += 1
        log.error(f"{domain} error: {error}")

    @property
    def hit_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.cache_hits / self.total_requests

    @property
    def errors_total(self) -> int:
        return sum(self.error_counts.values())

    def avg_hydration_ms(self, domain: str = None) -> int:
        samples = [s.duration_ms for s in self.hydration_times if domain is None or s.domain == domain]
        if not samples:
            return 0
        return round(sum(samples) / len(samples))

    def summary(self) -> dict:
        """Flat telemetry record, the shape pushed to a telemetry sink."""
        return {
            "orchestrator_cache_hit_ratio": round(self.hit_rate, 4),
            "orchestrator_total_requests": self.total_requests,
            "orchestrator_cache_hits": self.cache_hits,
            "orchestrator_avg_hydration_ms": self.avg_hydration_ms(),
            "orchestrator_errors_total": self.errors_total,
        }

    def reset(self):
        self.total_requests = 0
        self.cache_hits = 0
        self.hydration_times.clear()
        self.error_counts.clear()
