"""
Performance monitoring utilities
Timing for provider calls and orchestrator operations, plus process stats for /health
"""

import asyncio
import logging
import time
import functools
from collections import defaultdict
from typing import Dict, Any, Callable
from datetime import datetime

import psutil

logger = logging.getLogger(__name__)

# operation name -> {'count', 'failures', 'total_ms', 'max_ms'}
_operation_stats: Dict[str, Dict[str, float]] = defaultdict(
    lambda: {'count': 0, 'failures': 0, 'total_ms': 0.0, 'max_ms': 0.0}
)

def _record(operation_name: str, duration_ms: float, failed: bool):
    stats = _operation_stats[operation_name.split('(')[0]]
    stats['count'] += 1
    stats['total_ms'] += duration_ms
    stats['max_ms'] = max(stats['max_ms'], duration_ms)
    if failed:
        stats['failures'] += 1

class OperationTimer:
    """Times a block; duration_ms is readable while running and after exit"""

    def __init__(self, operation_name: str, log_result: bool = True):
        self.operation_name = operation_name
        self.log_result = log_result
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms
        _record(self.operation_name, duration, exc_type is not None)

        if not self.log_result:
            return
        if exc_type is None:
            logger.info(f"⏱️ {self.operation_name}: {duration:.2f}ms")
        else:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed: {exc_type.__name__})")

    @property
    def duration_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

def monitor_performance(operation_name: str):
    """
    Decorator to time a sync or async function

    Args:
        operation_name: Name recorded in operation stats
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(f"{operation_name}({func.__name__})"):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(f"{operation_name}({func.__name__})"):
                return func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

def get_operation_stats() -> Dict[str, Dict[str, Any]]:
    """Per-operation counters with average duration"""
    summary = {}
    for name, stats in _operation_stats.items():
        count = int(stats['count'])
        summary[name] = {
            'count': count,
            'failures': int(stats['failures']),
            'avg_ms': round(stats['total_ms'] / count, 2) if count else 0.0,
            'max_ms': round(stats['max_ms'], 2),
        }
    return summary

def reset_operation_stats():
    _operation_stats.clear()

def get_performance_stats() -> Dict[str, Any]:
    """Process memory/CPU plus operation counters"""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        return {
            'memory_mb': round(memory_info.rss / (1024 * 1024), 1),
            'cpu_percent': process.cpu_percent(),
            'process_id': process.pid,
            'operations': get_operation_stats(),
            'timestamp': datetime.utcnow().isoformat(),
        }
    except psutil.Error as e:
        logger.warning(f"Failed to get performance stats: {e}")
        return {
            'error': str(e),
            'operations': get_operation_stats(),
            'timestamp': datetime.utcnow().isoformat(),
        }
