"""
Base connector class for HTTP data sources
"""
from abc import ABC, abstractmethod
from typing import Any, Dict
from datetime import datetime


class BaseConnector(ABC):
    """Base class for API connectors: naming plus request/retry bookkeeping."""

    # Retry configuration (can be overridden by subclasses or per instance)
    RETRY_MAX_RETRIES = 3
    RETRY_BASE_DELAY = 1.0  # seconds
    RETRY_JITTER = 0.2  # seconds

    def __init__(self, name: str):
        self.name = name
        self.last_request = None
        self.request_count = 0
        self.error_count = 0
        self.retry_count = 0  # Total retries across all requests

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validate connection is working"""
        pass

    def _record_request(self, retries: int, failed: bool) -> None:
        self.last_request = datetime.utcnow()
        self.request_count += 1
        self.retry_count += retries
        if failed:
            self.error_count += 1

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "last_request": self.last_request,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "error_rate": self.error_count / max(self.request_count, 1),
            "retry_config": {
                "max_retries": self.RETRY_MAX_RETRIES,
                "base_delay": self.RETRY_BASE_DELAY,
                "jitter": self.RETRY_JITTER,
            }
        }
