"""User listing and creation endpoints."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..db import get_db_session
from ..models import User
from ..pagination import PaginationParams, apply_pagination, create_paginated_response, pagination_params
from ..schemas import UserCreate
from ..spans import Spans, get_spans

router = APIRouter(prefix="/api/users", tags=["users"])
logger = logging.getLogger(__name__)


# Blocking session work; handlers run these through the threadpool.

def _query_users(session: Session, params: PaginationParams) -> List[Dict[str, Any]]:
    stmt = apply_pagination(select(User), params, User)
    return [user.to_dict() for user in session.scalars(stmt).all()]


def _count_users(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(User)) or 0


def _find_user(session: Session, username: str, email: str) -> Optional[User]:
    return session.scalar(
        select(User).where(or_(User.username == username, User.email == email))
    )


def _insert_user(session: Session, username: str, email: str) -> Dict[str, Any]:
    user = User(username=username, email=email)
    session.add(user)
    session.flush()
    session.refresh(user)
    return user.to_dict()


@router.get("")
async def list_users(
    params: PaginationParams = Depends(pagination_params),
    session: Session = Depends(get_db_session),
    spans: Spans = Depends(get_spans),
) -> Dict[str, Any]:
    """
    Paginated list of users.

    Query parameters: page (default 1), limit (default 10, max 100),
    sortBy (field name, column or camelCase alias, optional),
    sortOrder (asc|desc, default desc).
    """

    async def find():
        return await run_in_threadpool(_query_users, session, params)

    async def count():
        return await run_in_threadpool(_count_users, session)

    async def handler():
        try:
            users = await spans.with_database_span("find", "users", find)
            total = await spans.with_database_span("count", "users", count)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching users: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch users") from e

        spans.add_attributes({"result.count": len(users), "result.total": total})
        return create_paginated_response(users, params, total).model_dump(by_alias=True)

    return await spans.with_api_span("users.list", handler)


@router.post("", status_code=201)
async def create_user(
    payload: UserCreate,
    session: Session = Depends(get_db_session),
    spans: Spans = Depends(get_spans),
) -> Dict[str, Any]:
    """Create a user; username and email must both be unused."""

    async def find_existing():
        return await run_in_threadpool(_find_user, session, payload.username, payload.email)

    async def insert():
        return await run_in_threadpool(_insert_user, session, payload.username, payload.email)

    async def handler():
        if await spans.with_database_span("find", "users", find_existing) is not None:
            raise HTTPException(status_code=409, detail="User with this email or username already exists")

        try:
            return await spans.with_database_span("insert", "users", insert)
        except IntegrityError as e:
            raise HTTPException(status_code=409, detail="User with this email or username already exists") from e

    return await spans.with_api_span("users.create", handler)
