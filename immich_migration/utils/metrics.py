"""
Per-step counters and timings for a migration run.
"""
import time
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from pathlib import Path
import json

logger = logging.getLogger(__name__)


@dataclass
class StepMetrics:
    """Counters for a single migration step."""
    step_name: str
    start_time: float
    end_time: Optional[float] = None
    total: int = 0
    counts: Counter = field(default_factory=Counter)
    bytes_processed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        """Get duration in seconds."""
        if self.end_time:
            return self.end_time - self.start_time
        return time.time() - self.start_time

    def count(self, name: str, amount: int = 1) -> None:
        self.counts[name] += amount

    def get(self, name: str) -> int:
        return self.counts[name]

    def done(self, *names: str) -> int:
        """Sum of the given counters."""
        return sum(self.counts[n] for n in names)

    def record_error(self, error: str) -> None:
        self.errors.append(error)

    def describe(self) -> str:
        """One-line rendering used for progress bars and log lines."""
        parts = [f"{name}: {value}" for name, value in sorted(self.counts.items())]
        return "; ".join(parts) if parts else "nothing processed"

    def finish(self):
        """Mark step as finished."""
        self.end_time = time.time()

    def to_dict(self) -> Dict:
        return {
            'step_name': self.step_name,
            'duration_seconds': self.duration,
            'total': self.total,
            'counts': dict(self.counts),
            'bytes_processed': self.bytes_processed,
            'error_count': len(self.errors),
        }


class MetricsTracker:
    """Tracks metrics across all steps of a run."""

    def __init__(self):
        self.steps: Dict[str, StepMetrics] = {}
        self.current_step: Optional[str] = None
        self.start_time = time.time()

    def start_step(self, step_name: str, total: int = 0) -> StepMetrics:
        """Start tracking a new step."""
        if self.current_step:
            self.finish_step()

        self.current_step = step_name
        metrics = StepMetrics(step_name=step_name, start_time=time.time(), total=total)
        self.steps[step_name] = metrics
        logger.info(f"Starting step: {step_name}")
        return metrics

    def finish_step(self) -> Optional[StepMetrics]:
        """Finish tracking the current step."""
        if not self.current_step:
            return None

        metrics = self.steps[self.current_step]
        metrics.finish()
        logger.info(
            f"Finished step: {self.current_step} "
            f"({metrics.describe()} of {metrics.total}, {metrics.duration:.1f}s)"
        )
        self.current_step = None
        return metrics

    def get_summary(self) -> Dict:
        """Get summary of all metrics."""
        if self.current_step:
            self.finish_step()

        return {
            'total_duration_seconds': time.time() - self.start_time,
            'total_errors': sum(len(s.errors) for s in self.steps.values()),
            'total_bytes_processed': sum(s.bytes_processed for s in self.steps.values()),
            'steps': {name: s.to_dict() for name, s in self.steps.items()},
        }

    def save_to_file(self, file_path: Path) -> None:
        """Save metrics summary to JSON file."""
        summary = self.get_summary()
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w') as f:
            json.dump(summary, f, indent=2)
        logger.info(f"Metrics saved to {file_path}")
