# backend/app/services/base.py
"""
Base service for the HealNest booking service.

Services own transaction boundaries (repositories only flush), log with
structured ``extra`` context, and time their public operations through
``@BaseService.measure_operation`` which feeds Prometheus.
"""

import asyncio
from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """Base class for all service layer components."""

    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Commit on success, roll back on failure.

        Driver errors surface as ``ServiceException``; domain exceptions
        propagate unchanged after the rollback.
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error("Transaction failed: %s", e)
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {e}") from e
        except Exception:
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to time an operation and record it in Prometheus.

        Usage:
            @BaseService.measure_operation("start_booking")
            def start_booking(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            if asyncio.iscoroutinefunction(func):

                @wraps(func)
                async def async_wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                    start_time = time.perf_counter()
                    error_type: Optional[str] = None
                    try:
                        return await func(self, *args, **kwargs)
                    except Exception as e:
                        error_type = type(e).__name__
                        raise
                    finally:
                        _observe(self, operation_name, time.perf_counter() - start_time, error_type)

                return cast(F, async_wrapper)

            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                start_time = time.perf_counter()
                error_type: Optional[str] = None
                try:
                    return func(self, *args, **kwargs)
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    _observe(self, operation_name, time.perf_counter() - start_time, error_type)

            return cast(F, wrapper)

        return decorator

    def log_operation(self, operation: str, **context: Any) -> None:
        """Log an operation with context."""
        self.logger.info("Operation: %s", operation, extra={"operation": operation, **context})


def _observe(service: Any, operation: str, elapsed: float, error_type: Optional[str]) -> None:
    if elapsed > SLOW_OPERATION_SECONDS:
        logging.getLogger(service.__class__.__name__).warning(
            "Slow operation detected: %s took %.2fs", operation, elapsed
        )
    prometheus_metrics.record_service_operation(
        service=service.__class__.__name__,
        operation=operation,
        duration=elapsed,
        status="error" if error_type else "success",
        error_type=error_type,
    )
