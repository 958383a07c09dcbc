"""
Metrics Collection for the reconciliation queues

Collects per-queue job counters and processing times:
- Jobs started, finished, failed, retried
- Processing times (average, p95)

Metrics are kept in memory; each QueueManager owns one collector.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class QueueCounters:
    started: int = 0
    finished: int = 0
    failed: int = 0
    retried: int = 0


@dataclass
class TimingMetrics:
    """Processing time samples per queue, capped at max_samples."""
    by_queue: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))
    max_samples: int = 1000

    def add_sample(self, queue_name: str, duration_ms: float):
        samples = self.by_queue[queue_name]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_queue[queue_name] = samples[-self.max_samples:]

    def get_average(self, queue_name: str) -> float:
        samples = self.by_queue.get(queue_name, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, queue_name: str) -> float:
        samples = self.by_queue.get(queue_name, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Collector
# =============================================================================

class JobMetrics:
    """
    Thread-safe job metrics collector.

    Usage:
        metrics = JobMetrics()
        metrics.record_job_started("sapContactUpdate")
        metrics.record_job_finished("sapContactUpdate", duration_ms=120)
    """

    def __init__(self):
        self.queues: Dict[str, QueueCounters] = defaultdict(QueueCounters)
        self.timings = TimingMetrics()
        self._lock = Lock()

    def record_job_started(self, queue_name: str):
        with self._lock:
            self.queues[queue_name].started += 1

    def record_job_finished(self, queue_name: str, duration_ms: float):
        with self._lock:
            self.queues[queue_name].finished += 1
            self.timings.add_sample(queue_name, duration_ms)

    def record_job_failed(self, queue_name: str, duration_ms: float):
        with self._lock:
            self.queues[queue_name].failed += 1
            self.timings.add_sample(queue_name, duration_ms)

    def record_job_retried(self, queue_name: str):
        with self._lock:
            self.queues[queue_name].retried += 1

    def get_timing_stats(self, queue_name: str) -> Dict[str, float]:
        with self._lock:
            return {
                "average_ms": self.timings.get_average(queue_name),
                "p95_ms": self.timings.get_p95(queue_name),
            }

    def get_summary(self) -> Dict[str, Any]:
        """Snapshot of all counters, keyed by queue name."""
        with self._lock:
            return {
                name: {
                    "started": counters.started,
                    "finished": counters.finished,
                    "failed": counters.failed,
                    "retried": counters.retried,
                    "average_ms": self.timings.get_average(name),
                    "p95_ms": self.timings.get_p95(name),
                }
                for name, counters in self.queues.items()
            }
