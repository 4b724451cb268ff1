"""
Pagination helpers shared by list endpoints.

Query parameters are clamped rather than rejected: an out-of-range or
non-numeric ``page``/``limit`` falls back to the nearest valid value or the
default, and an unknown ``sortOrder`` falls back to descending.
"""
import math
from typing import Any, Generic, List, Literal, Mapping, Optional, Sequence, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import ColumnElement, Select

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_SORT_ORDER = "desc"

T = TypeVar("T")

SortOrder = Literal["asc", "desc"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaginationParams(_CamelModel):
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    sort_by: Optional[str] = None
    sort_order: SortOrder = DEFAULT_SORT_ORDER

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PaginationMeta(_CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_previous_page: bool


class PaginatedResponse(_CamelModel, Generic[T]):
    data: List[T]
    meta: PaginationMeta


def _parse_int(raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def get_pagination_params(query_params: Mapping[str, str]) -> PaginationParams:
    """Build normalized pagination parameters from raw query parameters."""
    page = max(1, _parse_int(query_params.get("page"), DEFAULT_PAGE))
    limit = min(MAX_LIMIT, max(1, _parse_int(query_params.get("limit"), DEFAULT_LIMIT)))

    sort_by = (query_params.get("sortBy") or "").strip() or None

    sort_order = (query_params.get("sortOrder") or "").strip().lower()
    if sort_order not in ("asc", "desc"):
        sort_order = DEFAULT_SORT_ORDER

    return PaginationParams(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)


def pagination_params(request: Request) -> PaginationParams:
    """FastAPI dependency: pagination parameters for the current request."""
    return get_pagination_params(request.query_params)


def create_pagination_meta(params: PaginationParams, total_items: int) -> PaginationMeta:
    total_pages = math.ceil(total_items / params.limit) or 1
    return PaginationMeta(
        current_page=params.page,
        total_pages=total_pages,
        total_items=total_items,
        items_per_page=params.limit,
        has_next_page=params.page < total_pages,
        has_previous_page=params.page > 1,
    )


def create_paginated_response(
    data: Sequence[T], params: PaginationParams, total_items: int
) -> PaginatedResponse[T]:
    return PaginatedResponse(
        data=list(data),
        meta=create_pagination_meta(params, total_items),
    )


def _sort_column(model: Type[Any], sort_by: str) -> Optional[ColumnElement]:
    """Resolve a column by name or by its camelCase alias (createdAt -> created_at)."""
    columns = model.__table__.c
    column = columns.get(sort_by)
    if column is None:
        column = {to_camel(c.key): c for c in columns}.get(sort_by)
    return column


def apply_pagination(stmt: Select, params: PaginationParams, model: Type[Any]) -> Select:
    """
    Apply offset/limit and ordering to a select.

    Rows are ordered by ``sort_by`` when it names a column, then by primary
    key, so every page is deterministic. An unknown ``sort_by`` leaves only
    the primary key ordering.
    """
    primary_key = list(model.__table__.primary_key.columns)
    column = _sort_column(model, params.sort_by) if params.sort_by else None

    if column is None:
        order_by = [pk.asc() for pk in primary_key]
    elif params.sort_order == "desc":
        order_by = [column.desc()] + [pk.desc() for pk in primary_key if pk is not column]
    else:
        order_by = [column.asc()] + [pk.asc() for pk in primary_key if pk is not column]

    return stmt.order_by(*order_by).offset(params.offset).limit(params.limit)


def _field(item: Any, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, key, None)


def _sorted(items: List[Any], key: str, descending: bool) -> List[Any]:
    present = [item for item in items if _field(item, key) is not None]
    missing = [item for item in items if _field(item, key) is None]

    try:
        present.sort(key=lambda item: _field(item, key), reverse=descending)
    except TypeError:
        # Mixed value types; order by their string form instead
        present.sort(key=lambda item: str(_field(item, key)), reverse=descending)

    return present + missing


def paginate_list(items: Sequence[T], params: PaginationParams) -> PaginatedResponse[T]:
    """Sort and slice an in-memory sequence."""
    ordered = list(items)
    if params.sort_by:
        ordered = _sorted(ordered, params.sort_by, params.sort_order == "desc")

    page = ordered[params.offset:params.offset + params.limit]
    return create_paginated_response(page, params, len(items))
