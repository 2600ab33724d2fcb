# pagination.py — Pagination dependency and response envelopes

import math
from dataclasses import dataclass
from typing import Any, List

from fastapi import Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


class APIModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


@dataclass
class PaginationParams:
    page: int
    limit: int
    sort_order: str = "asc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def descending(self) -> bool:
        return self.sort_order == "desc"


def get_pagination(
    page: int = Query(DEFAULT_PAGE, ge=1, description="Page number (1-indexed)"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description=f"Items per page (max {MAX_LIMIT})"),
    sort_order: str = Query("asc", alias="sortOrder", pattern="^(asc|desc)$"),
) -> PaginationParams:
    return PaginationParams(page=page, limit=limit, sort_order=sort_order)


def _encode(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    if isinstance(payload, list):
        return [_encode(item) for item in payload]
    return jsonable_encoder(payload)


def ok(payload: Any) -> dict:
    return {"data": _encode(payload)}


def paginated(items: List[Any], total: int, params: PaginationParams) -> dict:
    total_pages = math.ceil(total / params.limit) if params.limit else 0
    return {
        "data": _encode(items),
        "meta": {
            "total": total,
            "page": params.page,
            "limit": params.limit,
            "totalPages": total_pages,
            "hasNextPage": params.page < total_pages,
            "hasPreviousPage": params.page > 1,
        },
    }
