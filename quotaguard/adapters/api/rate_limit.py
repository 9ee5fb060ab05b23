"""
FastAPI integration of the admission controller.

Routes opt in through a dependency:

    limiter = rate_limit(controller, identity_func=client_identity)

    @app.get("/items", dependencies=[Depends(limiter)])
    def list_items(): ...

Admitted requests get `X-RateLimit-*` headers on their response and the
`ConsumptionResult` on `request.state.rate_limit`. Denied requests raise
`RateLimitExceededError`, which `register_exception_handlers` maps to a
429 response with `Retry-After`.
"""

from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette import status
from structlog import get_logger

from quotaguard.core.exceptions import RateLimitExceededError
from quotaguard.domain.rate_limiting.entities import ConsumptionResult
from quotaguard.domain.rate_limiting.services import AdmissionController

__all__ = [
    "client_identity",
    "rate_limit",
    "rate_limit_exceeded_error_handler",
    "register_exception_handlers",
]

logger = get_logger(__name__)


def client_identity(request: Request) -> str:
    """Identity of an anonymous caller: its network address."""
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit(
    controller: AdmissionController,
    identity_func: Callable[[Request], str] = client_identity,
    cost: int = 1,
) -> Callable[[Request, Response], ConsumptionResult]:
    """
    Build a route dependency performing an admission check.

    The dependency is a plain function; FastAPI runs it in its threadpool, so
    the blocking store call never stalls the event loop.

    Args:
        controller: The admission controller to consult.
        identity_func: Extracts the caller identity from the request.
        cost: Units charged per request.
    """

    def dependency(request: Request, response: Response) -> ConsumptionResult:
        result = controller.try_acquire(identity_func(request), cost)
        request.state.rate_limit = result
        if not result.allowed:
            raise RateLimitExceededError(result)
        response.headers.update(result.to_http_headers())
        return result

    return dependency


async def rate_limit_exceeded_error_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Handles `RateLimitExceededError`, returning a `429 Too Many Requests`.

    Args:
        request: The incoming `Request` object.
        exc: The `RateLimitExceededError` instance.

    Returns:
        A `JSONResponse` with a 429 status code, `Retry-After` and the
        `X-RateLimit-*` headers.
    """
    result = exc.result
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        policy=result.policy_name,
        decision=result.decision.value,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": exc.message, "code": exc.code, "retry_after_ms": result.retry_after_ms},
        headers=result.to_http_headers(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Registers the rate limiting exception handlers with the application."""
    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_error_handler)
