"""
Global Error Handling for VaultX
Structured exceptions for the execution pipeline

Features:
- Custom exception classes per pipeline stage (validation, simulation,
  signing, relay, persistence)
- Automatic error logging
- Structured JSON error responses
- Configurable retry for transport failures
- Error tracking and aggregation
"""

import asyncio
import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict
from enum import Enum

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger("ErrorHandler")


# ============================================
# ERROR CODES
# ============================================

class ErrorCode(str, Enum):
    # Client errors (4xx)
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"

    # Execution pipeline errors
    SIMULATION_FAILED = "SIMULATION_FAILED"
    SIGNING_FAILED = "SIGNING_FAILED"
    RELAY_FAILED = "RELAY_FAILED"
    INVALID_TRANSITION = "INVALID_TRANSITION"


# ============================================
# CUSTOM EXCEPTIONS
# ============================================

class VaultXError(Exception):
    """Base exception for VaultX"""

    retryable = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Dict = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp.isoformat()
            }
        }


class ValidationError(VaultXError):
    """Malformed request. Never executed, returned to the caller unchanged."""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, 400, details)


class PolicyViolationError(ValidationError):
    """Calls rejected by the policy engine"""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(f"Policy violation: {message}", details)
        self.code = ErrorCode.POLICY_VIOLATION
        self.status_code = 403
        self.reason = message


class SimulationError(VaultXError):
    """Gas estimation reverted. Aborts before any signature is requested."""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(
            f"Simulation failed: {message}",
            ErrorCode.SIMULATION_FAILED,
            422,
            details
        )


class SigningError(VaultXError):
    """Custodial signer unreachable or misconfigured. No fallback signer."""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.SIGNING_FAILED, 502, details)


class RelayError(VaultXError):
    """On-chain revert or submission failure, reason kept verbatim"""
    def __init__(
        self,
        message: str,
        tx_hash: str = None,
        transient: bool = False,
        details: Dict = None
    ):
        details = dict(details or {})
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, ErrorCode.RELAY_FAILED, 502, details)
        self.tx_hash = tx_hash
        # Only transport-level failures may be retried; reverts never are
        self.retryable = transient


class PersistenceError(VaultXError):
    """Audit / cooldown / history write failed. Logged only."""
    def __init__(self, message: str, original_error: Exception = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(message, ErrorCode.PERSISTENCE_ERROR, 500, details)


class ExternalAPIError(VaultXError):
    """External API call failed"""
    def __init__(self, api_name: str, status_code: int = None, message: str = None):
        details = {"api": api_name}
        if status_code:
            details["api_status_code"] = status_code
        super().__init__(
            message or f"External API '{api_name}' failed",
            ErrorCode.EXTERNAL_API_ERROR,
            502,
            details
        )


class UnauthorizedError(VaultXError):
    """Authentication required"""
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, ErrorCode.UNAUTHORIZED, 401)


class RateLimitError(VaultXError):
    """Rate limit exceeded"""
    def __init__(self, retry_after: int = 60):
        super().__init__(
            "Too many requests",
            ErrorCode.RATE_LIMITED,
            429,
            {"retry_after": retry_after}
        )


class InvalidTransitionError(VaultXError):
    """Execution state machine was driven out of order"""
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Illegal execution transition {current} -> {target}",
            ErrorCode.INVALID_TRANSITION,
            500,
            {"from": current, "to": target}
        )


# ============================================
# ERROR TRACKING
# ============================================

class ErrorTracker:
    """Tracks and aggregates errors for monitoring"""

    def __init__(self, max_errors: int = 1000):
        self.errors: list = []
        self.max_errors = max_errors
        self.error_counts: Dict[str, int] = {}

    def track(self, error: Exception, request_path: str = None):
        """Track an error"""
        error_type = type(error).__name__

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        error_info = {
            "type": error_type,
            "message": str(error),
            "path": request_path,
            "timestamp": datetime.now().isoformat(),
            "traceback": traceback.format_exc() if not isinstance(error, VaultXError) else None
        }

        if isinstance(error, VaultXError):
            error_info["code"] = error.code.value
            error_info["details"] = error.details

        self.errors.append(error_info)

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        if not isinstance(error, VaultXError) or error.status_code >= 500:
            logger.error(f"Error tracked: {error_type} - {str(error)[:200]}")

    def get_stats(self) -> Dict:
        """Get error statistics"""
        return {
            "total_errors": len(self.errors),
            "error_counts": self.error_counts,
            "recent_errors": self.errors[-10:],
            "timestamp": datetime.now().isoformat()
        }

    def clear(self):
        """Clear error history"""
        self.errors.clear()
        self.error_counts.clear()


# Global error tracker
error_tracker = ErrorTracker()


# ============================================
# RETRY LOGIC
# ============================================

def _is_retryable(error: Exception) -> bool:
    if isinstance(error, VaultXError):
        return error.retryable
    return False


async def call_with_retry(
    func: Callable[..., Any],
    *args,
    max_attempts: int = 1,
    delay: float = 1.0,
    backoff: float = 2.0,
    **kwargs
) -> Any:
    """
    Await ``func`` up to ``max_attempts`` times.

    Only errors flagged ``retryable`` are retried. With the default of one
    attempt this is a plain call; operators opt into resubmission explicitly.
    """
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not _is_retryable(e) or attempt >= max_attempts - 1:
                if attempt > 0:
                    logger.error(f"All retries failed for {func.__name__}: {e}")
                raise
            logger.warning(f"Retry {attempt + 1}/{max_attempts} for {func.__name__}: {e}")
            await asyncio.sleep(current_delay)
            current_delay *= backoff


# ============================================
# FASTAPI EXCEPTION HANDLERS
# ============================================

async def vaultx_exception_handler(request: Request, exc: VaultXError) -> JSONResponse:
    """Handle VaultXError exceptions"""
    error_tracker.track(exc, str(request.url.path))

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPExceptions"""
    error_tracker.track(exc, str(request.url.path))

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.BAD_REQUEST.value if exc.status_code < 500 else ErrorCode.INTERNAL_ERROR.value,
                "message": exc.detail,
                "timestamp": datetime.now().isoformat()
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    error_tracker.track(exc, str(request.url.path))

    logger.error(f"Unhandled exception: {traceback.format_exc()}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "timestamp": datetime.now().isoformat()
            }
        }
    )


def register_exception_handlers(app):
    """Register all exception handlers with FastAPI app"""
    app.add_exception_handler(VaultXError, vaultx_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered")
