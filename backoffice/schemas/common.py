from typing import Any

from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    page: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 42,
                "page": 1,
                "limit": 20,
                "offset": 0,
                "count": 20,
                "has_next": True,
            }
        }
    )


def build_pagination(*, total: int, page: int, limit: int, count: int) -> PaginationMeta:
    offset = (page - 1) * limit
    return PaginationMeta(
        total=total,
        page=page,
        limit=limit,
        offset=offset,
        count=count,
        has_next=(offset + count) < total,
    )


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: Any | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "invalid_transition",
                    "message": "Invalid transition: 'completed' -> 'active'. Allowed: none",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/campaigns/6f1c/activate",
                    "details": None,
                }
            }
        }
    )
