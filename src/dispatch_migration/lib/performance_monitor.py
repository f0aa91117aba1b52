"""
Performance Monitoring and Memory Guard

Samples process memory between batches and stops an entity before the
process runs out of memory.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import psutil

from .exceptions import MemoryLimitException

logger = logging.getLogger(__name__)

DEFAULT_MAX_MEMORY_MB = 1792  # 1.75 GB


@dataclass
class PerformanceMetrics:
    """Performance metrics snapshot"""
    timestamp: float
    memory_used_mb: float
    memory_percent: float


class PerformanceMonitor:
    """
    Memory usage tracking with a hard limit

    ``check_memory_limit`` raises ``MemoryLimitException`` when resident
    memory is above ``max_memory_mb``; the error handler turns that into an
    entity abort with a smaller batch size recommendation.
    """

    def __init__(self, max_memory_mb: Optional[float] = DEFAULT_MAX_MEMORY_MB):
        """
        Initialize performance monitor

        Args:
            max_memory_mb: Resident memory limit; None disables the guard
        """
        self.max_memory_mb = max_memory_mb
        self.process = psutil.Process()
        self.peak_memory_mb: Optional[float] = None

    def get_current_metrics(self) -> PerformanceMetrics:
        """
        Get current performance metrics

        Returns:
            Current performance metrics
        """
        memory_info = self.process.memory_info()

        metrics = PerformanceMetrics(
            timestamp=time.time(),
            memory_used_mb=memory_info.rss / (1024 * 1024),
            memory_percent=self.process.memory_percent(),
        )

        if self.peak_memory_mb is None or metrics.memory_used_mb > self.peak_memory_mb:
            self.peak_memory_mb = metrics.memory_used_mb

        return metrics

    def check_memory_limit(self, context: str = "") -> float:
        """
        Sample memory usage and enforce the limit

        Args:
            context: Label included in the error (entity / batch)

        Returns:
            Current memory usage in MB

        Raises:
            MemoryLimitException: If usage is above the limit
        """
        metrics = self.get_current_metrics()

        if self.max_memory_mb is not None and metrics.memory_used_mb > self.max_memory_mb:
            logger.warning(
                f"Memory limit exceeded{' during ' + context if context else ''}: "
                f"{metrics.memory_used_mb:.2f} MB > {self.max_memory_mb} MB"
            )
            raise MemoryLimitException(
                f"Memory limit exceeded: {metrics.memory_used_mb:.2f} MB > {self.max_memory_mb} MB",
                {'context': context, 'memory_used_mb': round(metrics.memory_used_mb, 2)}
            )

        return metrics.memory_used_mb

    def get_peak_memory_mb(self) -> float:
        """
        Get the highest memory usage sampled so far

        Returns:
            Peak memory usage in megabytes
        """
        if self.peak_memory_mb is None:
            self.get_current_metrics()
        return self.peak_memory_mb

