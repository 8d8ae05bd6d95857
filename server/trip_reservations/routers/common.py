"""Helpers shared by the API routers."""

import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID

from fastapi import Header
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import ProblemDetailsException, ValidationError
from ..services.idempotency_service import IdempotencyService

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_DEPENDENCY = Header(..., alias="Idempotency-Key", min_length=1, max_length=200)


def parse_id(value: str, field: str) -> UUID:
    """Parse an identifier from a request body, reporting the offending field."""
    try:
        return UUID(value)
    except (TypeError, ValueError):
        raise ValidationError(detail=f"'{field}' is not a valid identifier", errors={field: value})


def enum_value(value) -> str:
    """Status columns read back from the database are plain strings; fresh ones are enum members."""
    return value.value if isinstance(value, Enum) else value


def json_response(model) -> JSONResponse:
    return JSONResponse(status_code=200, content=model.model_dump(mode="json"))


async def handle_idempotent_operation(
    method: str,
    idempotency_key: str,
    buyer_id: str,
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[dict[str, Any]]],
    db: AsyncSession,
) -> JSONResponse:
    """
    Run ``operation_func`` once per (buyer, Idempotency-Key, method).

    A repeated request with the same body gets the stored response; the same key
    with a different body is rejected. Errors are stored too, unless they are
    marked retryable.
    """
    scoped_key = f"{buyer_id}:{idempotency_key}"
    idempotency_service = IdempotencyService(db)

    cached_response = await idempotency_service.check_idempotency(
        idempotency_key=scoped_key,
        method=method,
        request_body=request_body
    )
    if cached_response:
        status_code, response_body, response_headers = cached_response
        media_type = "application/problem+json" if status_code >= 400 else "application/json"
        return JSONResponse(
            status_code=status_code,
            content=response_body,
            headers=response_headers or {},
            media_type=media_type,
        )

    try:
        response_dict = await operation_func()
    except ProblemDetailsException as e:
        if not e.problem_details.get("retryable"):
            await idempotency_service.store_response(
                idempotency_key=scoped_key,
                method=method,
                request_body=request_body,
                status_code=e.status_code,
                response_body=e.problem_details,
                ttl_hours=settings.idempotency_ttl_hours,
            )
        raise

    # Round-trip through JSON so the stored and returned bodies are identical
    response_dict = json.loads(json.dumps(response_dict, default=str))
    await idempotency_service.store_response(
        idempotency_key=scoped_key,
        method=method,
        request_body=request_body,
        status_code=200,
        response_body=response_dict,
        ttl_hours=settings.idempotency_ttl_hours,
    )
    return JSONResponse(status_code=200, content=response_dict)
