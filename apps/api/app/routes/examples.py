"""Example endpoints showing how handlers use the span helpers."""
import asyncio
import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..pagination import PaginationParams, paginate_list, pagination_params
from ..spans import Spans, get_spans

router = APIRouter(prefix="/api", tags=["examples"])
logger = logging.getLogger(__name__)

SIMULATED_DB_LATENCY = 0.05


def _build_sample_data(count: int = 50, seed: int = 7) -> List[Dict[str, Any]]:
    rng = random.Random(seed)
    now = datetime.now(timezone.utc)
    return [
        {
            "id": i + 1,
            "name": f"Item {i + 1}",
            "createdAt": (now - timedelta(seconds=rng.randint(0, 10_000_000))).isoformat(),
            "value": rng.randint(0, 999),
        }
        for i in range(count)
    ]


SAMPLE_DATA = _build_sample_data()


async def fetch_example_users() -> List[Dict[str, Any]]:
    await asyncio.sleep(SIMULATED_DB_LATENCY)
    return [
        {"id": 1, "name": "User 1"},
        {"id": 2, "name": "User 2"},
    ]


async def insert_example_user(body: Dict[str, Any]) -> Dict[str, Any]:
    await asyncio.sleep(SIMULATED_DB_LATENCY)
    return {"id": 3, **body}


@router.get("/example")
async def get_example(request: Request, spans: Spans = Depends(get_spans)):
    async def handler():
        param = request.query_params.get("param")
        spans.add_attributes({"request.param": param or "none"})

        try:
            result = await spans.with_database_span("find", "users", fetch_example_users)
        except Exception as e:
            logger.error(f"Database error: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": {"code": "DATABASE_ERROR", "message": str(e)}},
            )

        spans.add_attributes({"result.count": len(result)})
        return {"success": True, "data": result}

    return await spans.with_api_span("example.get", handler)


@router.post("/example", status_code=201)
async def post_example(request: Request, spans: Spans = Depends(get_spans)):
    async def handler():
        try:
            body = await request.json()
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON") from e
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

        spans.add_attributes({"request.body.size": len(json.dumps(body))})

        result = await spans.with_database_span("insert", "users", lambda: insert_example_user(body))
        return {"success": True, "data": result}

    return await spans.with_api_span("example.post", handler)


@router.get("/example-paginated")
async def get_example_paginated(
    params: PaginationParams = Depends(pagination_params),
    spans: Spans = Depends(get_spans),
):
    """
    In-memory pagination over sample data.

    Try sortBy=id, name, createdAt or value with sortOrder=asc|desc.
    """

    async def handler():
        return paginate_list(SAMPLE_DATA, params).model_dump(by_alias=True)

    return await spans.with_api_span("example.paginated", handler)


@router.get("/test-telemetry")
async def telemetry_probe(request: Request, spans: Spans = Depends(get_spans)):
    """Emit custom attributes, a database span and, randomly, an error."""
    error_rate = request.app.state.settings.test_telemetry_error_rate

    async def handler():
        spans.add_attributes({
            "custom.attribute": "test-value",
            "request.timestamp": datetime.now(timezone.utc).isoformat(),
        })

        async def find():
            await asyncio.sleep(SIMULATED_DB_LATENCY)
            return {"success": True, "users": []}

        result = await spans.with_database_span("find", "users", find)

        if random.random() < error_rate:
            raise RuntimeError("Random test error in telemetry endpoint")

        return {
            "message": "OpenTelemetry test endpoint",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "result": result,
        }

    return await spans.with_api_span("test-telemetry.get", handler)
