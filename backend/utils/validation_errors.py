"""
Record id validation for the reconciliation endpoints.

A malformed id is answered with a structured 422 body so the operator UI
can tell a bad request apart from an unknown record (404):
{"error": "missing_parameter" | "invalid_parameter", "parameter": ..., "message": ...}
"""

import uuid
from typing import Optional

from fastapi import HTTPException, status


def _parameter_error(error: str, parameter: str, message: str, value: Optional[str] = None) -> HTTPException:
    detail = {"error": error, "parameter": parameter, "message": message}
    if value is not None:
        detail["received_value"] = value[:100]
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """Return `value` if it is a UUID, else raise a structured 422"""
    if not value:
        raise _parameter_error("missing_parameter", parameter, f"{parameter} is required")

    try:
        uuid.UUID(value)
    except ValueError:
        raise _parameter_error(
            "invalid_parameter", parameter, f"{parameter} must be a valid UUID format", value
        )
    return value
