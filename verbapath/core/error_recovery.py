"""Retry and health-check helpers for external collaborators."""

import asyncio
import time
import random
from typing import Callable, Any, Optional, Dict, List, Type
from datetime import datetime

import httpx

from .exceptions import WorkflowEngineError, CompletionError, AssessmentSinkError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Backoff policy for calls that may fail transiently."""
    
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [
            httpx.TransportError, CompletionError, AssessmentSinkError
        ]
    
    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        
        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)
    
    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)
        
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        
        return delay


async def execute_async_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Await ``func`` until it succeeds or the retry policy gives up."""
    operation = getattr(func, "__name__", "operation")
    recovery_logger = ErrorRecoveryLogger(operation)
    last_exception = None
    
    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 1:
                recovery_logger.log_recovery_success(attempt)
            return result
        except Exception as e:
            last_exception = e
            
            if not config.should_retry(e, attempt):
                recovery_logger.log_recovery_failure(e, attempt)
                raise
            
            recovery_logger.log_recovery_attempt(e, attempt, config.max_attempts)
            await asyncio.sleep(config.get_delay(attempt))
    
    recovery_logger.log_recovery_failure(last_exception, config.max_attempts)
    raise last_exception


class HealthChecker:
    """Named health checks reported by the detailed health endpoint."""
    
    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("verbapath.health")
    
    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")
    
    def clear(self):
        self.checks.clear()
        self.last_results.clear()
    
    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run one check; sync and async callables are both accepted."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }
        
        check_info = self.checks[name]
        start_time = time.time()
        
        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(
                    check_info["func"](), 
                    timeout=check_info["timeout"]
                )
            else:
                result = check_info["func"]()
            
            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            
            if isinstance(result, dict):
                check_result.update(result)
            
        except asyncio.TimeoutError:
            check_result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            
        except Exception as e:
            check_result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
        
        self.last_results[name] = check_result
        return check_result
    
    async def run_all_checks(self) -> Dict[str, Any]:
        results = {}
        overall_status = "healthy"
        
        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result
            
            if result["status"] != "healthy":
                overall_status = "unhealthy"
        
        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }


# Global health checker instance
health_checker = HealthChecker()
