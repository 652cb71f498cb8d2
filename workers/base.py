"""
Async worker contract for job-style callers.

A worker validates a plain input dict, runs its async job and always hands
back a result dict of the same shape:

    {"status": "success" | "failed" | "skipped", "worker": name,
     "timestamp": ..., "execution_time": ..., "data" | "error", ...}

Exceptions never escape run(); they are turned into a failed result by the
subclass's handle_error().
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from transcription.logging_context import LOG_FORMAT, format_context


class WorkerStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BaseWorker(ABC):
    """
    Base class for async workers.

    Subclasses implement validate_input, execute and handle_error; run()
    owns timing, logging and the result envelope.
    """

    def __init__(self, name: str, log_level: str = "INFO") -> None:
        self.name = name
        self.logger = self._setup_logger(log_level)
        self._started_at: Optional[float] = None

    def _setup_logger(self, log_level: str) -> logging.Logger:
        logger = logging.getLogger(f"worker.{self.name}")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
        logger.setLevel(getattr(logging, log_level.upper()))
        return logger

    def log_with_context(
        self,
        message: str,
        level: str = "INFO",
        extra_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a message prefixed with the worker name, plus optional key=value context."""
        getattr(self.logger, level.lower())(format_context(f"[{self.name}] {message}", extra_context))

    def get_execution_time(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return time.time() - self._started_at

    async def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate, execute and wrap the outcome.

        Args:
            input_data: Job input

        Returns:
            Result envelope; status is "failed" for invalid input or any exception
        """
        self._started_at = time.time()
        self.log_with_context("Starting execution", extra_context={"input_keys": sorted(input_data)})

        try:
            if not self.validate_input(input_data):
                return self._create_result(WorkerStatus.FAILED, error="Input validation failed",
                                           input_data=input_data)

            data = await self.execute(input_data)
            if not isinstance(data, dict):
                data = {"data": data}
            return self._create_result(WorkerStatus.SUCCESS, data=data, input_data=input_data)

        except Exception as e:
            self.log_with_context(f"Execution failed: {e}", level="ERROR")
            return self._failure_result(e, input_data)

        finally:
            self.log_with_context(f"Execution completed in {self.get_execution_time():.2f}s")

    def _failure_result(self, error: Exception, input_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            details = self.handle_error(error)
        except Exception as handler_error:
            self.log_with_context(f"Error handler failed: {handler_error}", level="CRITICAL")
            return self._create_result(
                WorkerStatus.FAILED,
                error=f"Primary error: {error}. Handler error: {handler_error}",
                input_data=input_data,
            )

        return self._create_result(
            WorkerStatus.FAILED,
            error=details.get('message', str(error)),
            error_details=details,
            input_data=input_data,
        )

    def _create_result(
        self,
        status: WorkerStatus,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
        input_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "status": status.value,
            "worker": self.name,
            "timestamp": time.time(),
            "execution_time": self.get_execution_time(),
        }
        optional = {"data": data, "error": error, "error_details": error_details}
        result.update({key: value for key, value in optional.items() if value is not None})

        if input_data is not None:
            result["input_summary"] = {"keys": sorted(input_data), "size": len(str(input_data))}
        return result

    @abstractmethod
    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        """Return False to fail the job without executing it."""

    @abstractmethod
    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """Do the work; raise on failure."""

    @abstractmethod
    def handle_error(self, error: Exception) -> Dict[str, Any]:
        """Map an exception to an error-details dict with at least 'message'."""
