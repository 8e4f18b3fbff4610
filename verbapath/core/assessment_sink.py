"""Where comprehension results go once a node has scored them.

Every adapter reports failure as ``False`` and logs it. Nothing raised by the
underlying transport reaches the node handler.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .error_recovery import RetryConfig, execute_async_with_retry
from .exceptions import AssessmentSinkError, StorageError
from .logging import get_logger


logger = get_logger(__name__)


class AssessmentSink(ABC):
    """Port for persisting assessment payloads."""
    
    @abstractmethod
    async def save_assessment(self, payload: Dict[str, Any]) -> bool:
        ...


class NullAssessmentSink(AssessmentSink):
    """Discards every payload."""
    
    async def save_assessment(self, payload: Dict[str, Any]) -> bool:
        logger.debug(f"Discarding assessment for student {payload.get('studentId')}")
        return False


class InMemoryAssessmentSink(AssessmentSink):
    """Keeps payloads in a list; used by previews and tests."""
    
    def __init__(self):
        self.payloads: List[Dict[str, Any]] = []
    
    async def save_assessment(self, payload: Dict[str, Any]) -> bool:
        self.payloads.append(payload)
        return True


class HttpAssessmentSink(AssessmentSink):
    """POSTs payloads to an assessments endpoint, retrying transient failures."""
    
    def __init__(
        self,
        url: str,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.retry_config = retry_config or RetryConfig(max_attempts=3)
        self.timeout = timeout
        self._transport = transport
    
    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise AssessmentSinkError(f"Assessment endpoint unreachable: {e}") from e
        
        if response.status_code >= 400:
            error = AssessmentSinkError(
                f"Assessment endpoint returned HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )
            error.recoverable = response.status_code >= 500
            raise error
    
    async def save_assessment(self, payload: Dict[str, Any]) -> bool:
        try:
            await execute_async_with_retry(self._post, self.retry_config, payload)
            return True
        except AssessmentSinkError as e:
            logger.error(f"Failed to save assessment for student {payload.get('studentId')}: {e.message}")
            return False


class SqlAssessmentSink(AssessmentSink):
    """Writes payloads through an ``AssessmentStore``."""
    
    def __init__(self, store):
        self.store = store
    
    async def save_assessment(self, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.to_thread(self.store.record, payload)
            return True
        except (StorageError, KeyError) as e:
            logger.error(f"Failed to save assessment for student {payload.get('studentId')}: {e}")
            return False


def build_assessment_sink(config) -> AssessmentSink:
    """Create the sink selected by an ``AppConfig``."""
    sink_type = getattr(config.assessment_sink, "value", config.assessment_sink)
    
    if sink_type == "http":
        return HttpAssessmentSink(
            config.assessment_sink_url,
            retry_config=RetryConfig(max_attempts=config.assessment_sink_retries),
        )
    if sink_type == "sql":
        from ..storage.assessment_store import AssessmentStore
        return SqlAssessmentSink(AssessmentStore())
    return NullAssessmentSink()
