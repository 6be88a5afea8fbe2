"""
Shared pagination block for list endpoints
"""
from pydantic import BaseModel


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


def build_pagination(total: int, limit: int, offset: int) -> Pagination:
    return Pagination(
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )
