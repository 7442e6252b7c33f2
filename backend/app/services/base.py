# backend/app/services/base.py
"""
Base Service Pattern for the Smiling Steps flow integrity engine

Provides common functionality for service classes including:
- Logging
- Injected clock
- Performance monitoring
"""

import asyncio
from functools import wraps
import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar, cast

from ..core.clock import Clock, system_clock
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for flow integrity service components.

    Provides common patterns for:
    - Time source injection (tests pass a ManualClock)
    - Logging
    - Performance monitoring
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or system_clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self._metrics: Dict[str, Dict[str, Any]] = {}

    def now(self):
        return self.clock.now()

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("handle_late_join")
            def handle_late_join(self, session):
                # Method implementation

        Args:
            operation_name: Name of the operation for metrics

        Returns:
            Decorator function
        """

        def decorator(func: F) -> F:
            func._operation_name = operation_name  # type: ignore[attr-defined]
            func._is_measured = True  # type: ignore[attr-defined]

            if not asyncio.iscoroutinefunction(func):

                @wraps(func)
                def wrapper(self, *args, **kwargs):
                    start_time = time.time()
                    error_type = None
                    try:
                        return func(self, *args, **kwargs)
                    except Exception as e:
                        error_type = type(e).__name__
                        raise
                    finally:
                        _finish(self, operation_name, time.time() - start_time, error_type)

                return cast(F, wrapper)

            @wraps(func)
            async def async_wrapper(self, *args, **kwargs):
                start_time = time.time()
                error_type = None
                try:
                    return await func(self, *args, **kwargs)
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    _finish(self, operation_name, time.time() - start_time, error_type)

            return cast(F, async_wrapper)

        return decorator

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        metrics = self._metrics.setdefault(
            operation, {"count": 0, "total_time": 0.0, "success_count": 0, "failure_count": 0}
        )
        metrics["count"] += 1
        metrics["total_time"] += elapsed
        if success:
            metrics["success_count"] += 1
        else:
            metrics["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation counts and average timings for this service instance."""
        result = {}
        for operation, data in self._metrics.items():
            count = data["count"]
            result[operation] = {
                **data,
                "avg_time": data["total_time"] / count if count else 0.0,
                "success_rate": data["success_count"] / count if count else 0.0,
            }
        return result


def _finish(service: Any, operation_name: str, elapsed: float, error_type: Optional[str]) -> None:
    success = error_type is None
    if hasattr(service, "_record_metric"):
        service._record_metric(operation_name, elapsed, success)

    if elapsed > SLOW_OPERATION_SECONDS and hasattr(service, "logger"):
        service.logger.warning(
            "Slow operation detected: %s took %.2fs", operation_name, elapsed
        )

    try:
        prometheus_metrics.record_service_operation(
            service=service.__class__.__name__,
            operation=operation_name,
            duration=elapsed,
            status="success" if success else "error",
            error_type=error_type,
        )
    except Exception as exc:
        # Don't let metrics collection break the operation
        logger.debug("Failed to record service metrics for %s: %s", operation_name, exc)
