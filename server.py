#!/usr/bin/env python3
"""
Hardware Tester Web API - FastAPI front end to the dispatcher and result store.

Usage:
    python3 server.py
    curl -X POST localhost:8000/api/tests -H 'Content-Type: application/json' \
         -d '{"peripherals": ["uart", "spi"], "iterations": 1, "message": "Hello"}'
    curl localhost:8000/api/tests/1
    curl localhost:8000/api/tests.csv
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, field_validator

import config
from dispatch import Dispatcher
from errors import NotFound, StoreError, TransportError, UsageError
from protocol import MAX_ITERATIONS, MAX_PAYLOAD, NAME_TO_PERIPHERAL, build_mask
from report import format_csv, record_to_dict
from result_store import ResultStore

logging.basicConfig(level=config.get("log_level"))
log = logging.getLogger("hwtest.server")

store = None
dispatcher = None


@asynccontextmanager
async def lifespan(application):
    global store, dispatcher

    if store is None:
        store = ResultStore(config.get("db_path"))
    if dispatcher is None:
        dispatcher = Dispatcher(store)
    log.info("Results stored in %s, UUT at %s:%d", store.db_path, config.get("uut_host"), config.get("uut_port"))
    yield
    dispatcher.cancel()


app = FastAPI(title="Hardware Tester", lifespan=lifespan)


class RunRequest(BaseModel):
    peripherals: list[str]
    iterations: int = 1
    message: str = ""

    @field_validator("peripherals")
    @classmethod
    def validate_peripherals(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one peripheral is required")
        unknown = [name for name in v if name.lower() not in NAME_TO_PERIPHERAL]
        if unknown:
            raise ValueError(f"Unknown peripherals {unknown}; use {sorted(NAME_TO_PERIPHERAL)}")
        return [name.lower() for name in v]

    @field_validator("iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        if not 0 <= v <= MAX_ITERATIONS:
            raise ValueError(f"iterations must be 0-{MAX_ITERATIONS}")
        return v

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        if len(v.encode("utf-8")) > MAX_PAYLOAD:
            raise ValueError(f"message longer than {MAX_PAYLOAD} bytes")
        return v


# --- REST endpoints ---


@app.get("/api/status")
async def get_status():
    return {
        "state": dispatcher.state,
        "busy": dispatcher.busy,
        "test_id": dispatcher.test_id,
    }


@app.post("/api/tests")
async def run_test(req: RunRequest):
    if dispatcher.busy:
        return JSONResponse({"error": "a test is already running"}, status_code=409)
    try:
        record = await asyncio.to_thread(dispatcher.run, build_mask(req.peripherals), req.iterations, req.message)
    except UsageError as e:
        return JSONResponse({"error": str(e)}, status_code=422)
    except TransportError as e:
        return JSONResponse({"error": f"UUT unreachable: {e}"}, status_code=502)
    except StoreError as e:
        return JSONResponse({"error": f"result store failure: {e}"}, status_code=500)
    return record_to_dict(record)


@app.post("/api/tests/cancel")
async def cancel_test():
    return {"cancelled": dispatcher.cancel()}


@app.get("/api/tests")
async def list_tests():
    try:
        records = await asyncio.to_thread(store.export_all)
    except StoreError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return [record_to_dict(r) for r in records]


@app.get("/api/tests.csv")
async def export_tests():
    try:
        records = await asyncio.to_thread(store.export_all)
    except StoreError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return PlainTextResponse(format_csv(records), media_type="text/csv")


@app.get("/api/tests/{test_id}")
async def get_test(test_id: int):
    try:
        record = await asyncio.to_thread(store.lookup, test_id)
    except NotFound as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    except StoreError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return record_to_dict(record)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
