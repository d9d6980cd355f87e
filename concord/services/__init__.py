"""
🏗️ Service Layer - Base Service Interface
==========================================

Services wrap the engines for the HTTP layer: they turn engine errors into
``ServiceResult`` envelopes so routes never deal with exceptions directly.
"""

import logging
from abc import ABC
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.errors import ConcordError, RateLimited


@dataclass
class ServiceResult:
    """Standardized result object for service operations."""
    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    http_status: Optional[int] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        result = {
            "success": self.success,
            "timestamp": self.timestamp.isoformat()
        }
        if self.data is not None:
            result["data"] = self.data
        if self.message:
            result["message"] = self.message
        if self.error_code:
            result["error_code"] = self.error_code
        return result


class BaseService(ABC):
    """Base class for all services with common functionality."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"concord.service.{name}")
        self._initialized = False

    def initialize(self) -> ServiceResult:
        """Initialize the service. Override in subclasses."""
        self._initialized = True
        self.logger.info(f"🔧 {self.name} service initialized")
        return ServiceResult(success=True, message=f"{self.name} service initialized successfully")

    def is_initialized(self) -> bool:
        return self._initialized

    def health_check(self) -> ServiceResult:
        """Perform health check. Override in subclasses for specific checks."""
        if not self._initialized:
            return ServiceResult(
                success=False,
                message=f"{self.name} service not initialized",
                error_code="NOT_INITIALIZED"
            )
        return ServiceResult(success=True, data={"status": "healthy", "service": self.name})

    def _handle_error(self, error: Exception, operation: str) -> ServiceResult:
        """Map engine errors to results; anything unexpected is logged with traceback."""
        if isinstance(error, RateLimited):
            return self._error_result(
                error.message,
                error.error_code,
                data={"resetsInSeconds": error.resets_in_seconds},
                http_status=error.http_status,
            )
        if isinstance(error, ConcordError):
            self.logger.info(f"{self.name}.{operation} rejected: {error.message}")
            return self._error_result(error.message, error.error_code, http_status=error.http_status)
        if isinstance(error, ValueError):
            return self._error_result(str(error), "validation_error", http_status=400)

        self.logger.error(f"Error in {self.name}.{operation}: {error}", exc_info=True)
        return ServiceResult(
            success=False,
            message=f"Error in {self.name}.{operation}: {error}",
            error_code="OPERATION_FAILED",
            http_status=500,
        )

    def _success_result(self, data: Any = None, message: str = None) -> ServiceResult:
        return ServiceResult(success=True, data=data, message=message)

    def _error_result(
        self,
        message: str,
        error_code: str = "ERROR",
        data: Any = None,
        http_status: Optional[int] = None,
    ) -> ServiceResult:
        return ServiceResult(
            success=False,
            data=data,
            message=message,
            error_code=error_code,
            http_status=http_status,
        )
