# backend/lessonbook/services/base.py
"""
Base Service Pattern for the scheduling core.

Provides common functionality for all service classes including:
- Transaction management
- Logging
- Cache invalidation helpers
- Performance monitoring
"""

import asyncio
from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException

if TYPE_CHECKING:
    from .availability_cache import AvailabilityCache

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Metrics are kept per instance so each test (or request) starts clean.
    """

    def __init__(self, db: Optional[Session] = None, cache: Optional["AvailabilityCache"] = None):
        """
        Initialize base service.

        Args:
            db: Database session (optional for pure-computation services)
            cache: Optional AvailabilityCache instance
        """
        self.db = db
        self.cache = cache
        self.logger = logging.getLogger(self.__class__.__name__)
        self._metrics: Dict[str, Dict[str, float]] = {}

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                self.repository.create(...)
                # commit is handled automatically
        """
        if self.db is None:
            raise ServiceException("No database session bound to service")
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}")
        except Exception as e:
            self.logger.error(f"Unexpected error in transaction: {str(e)}")
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("create_booking")
            async def create_booking(self, data):
                ...

        Works for both plain and coroutine methods.
        """

        def decorator(func: F) -> F:
            if asyncio.iscoroutinefunction(func):

                @wraps(func)
                async def async_wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                    start_time = time.time()
                    success = False
                    try:
                        result = await func(self, *args, **kwargs)
                        success = True
                        return result
                    finally:
                        self._after_operation(operation_name, time.time() - start_time, success)

                return cast(F, async_wrapper)

            @wraps(func)
            def wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                success = False
                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                finally:
                    self._after_operation(operation_name, time.time() - start_time, success)

            return cast(F, wrapper)

        return decorator

    def _after_operation(self, operation: str, elapsed: float, success: bool) -> None:
        if not hasattr(self, "_metrics"):
            self._metrics = {}
        self._record_metric(operation, elapsed, success)
        if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
            self.logger.warning(f"Slow operation detected: {operation} took {elapsed:.2f}s")

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all cache keys matching a regex pattern.

        Returns:
            Number of entries removed (0 when no cache is bound)
        """
        if self.cache is None:
            return 0
        count = self.cache.invalidate_pattern(pattern)
        self.logger.debug(f"Invalidated {count} keys matching pattern: {pattern}")
        return count

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        metric_data = self._metrics.setdefault(
            operation,
            {
                "count": 0,
                "total_time": 0.0,
                "success_count": 0,
                "failure_count": 0,
                "min_time": float("inf"),
                "max_time": 0.0,
            },
        )
        metric_data["count"] += 1
        metric_data["total_time"] += elapsed
        metric_data["min_time"] = min(metric_data["min_time"], elapsed)
        metric_data["max_time"] = max(metric_data["max_time"], elapsed)
        if success:
            metric_data["success_count"] += 1
        else:
            metric_data["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get performance metrics for this service.

        Returns:
            Dictionary with metrics for each measured operation
        """
        result = {}
        for operation, data in self._metrics.items():
            count = data["count"]
            if count == 0:
                continue
            result[operation] = {
                "count": count,
                "avg_time": data["total_time"] / count,
                "min_time": data["min_time"],
                "max_time": data["max_time"],
                "success_rate": data["success_count"] / count,
                "failure_count": data["failure_count"],
            }
        return result
