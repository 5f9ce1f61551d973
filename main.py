"""HTTP entry point: ``uvicorn main:app``."""
import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware

from fleetloop.api.runs import router as runs_router
from fleetloop.api.status import router as status_router
from fleetloop.api.nodes import router as nodes_router
from fleetloop.core import config
from fleetloop.utils.logging_config import setup_logging

setup_logging(level=logging.INFO, log_dir=os.getenv("LOG_DIR", "logs"))
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("Serving fleet loop API (inventory=%s, state=%s)",
                config.FLEET_INVENTORY, config.STATE_DIR)
    yield
    logger.info("Fleet loop API shutting down")


app = FastAPI(title="Fleet Build/Deploy/Test Loop API", lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    peer = request.client.host if request.client else "unknown"
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("%s %s from %s failed after %.1fms", request.method,
                         request.url.path, peer, (time.perf_counter() - started) * 1000)
        raise
    logger.info("%s %s from %s -> %d (%.1fms)", request.method, request.url.path,
                peer, response.status_code, (time.perf_counter() - started) * 1000)
    return response


# Status dashboards poll from other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(runs_router)
app.include_router(status_router, tags=["Runs"])
app.include_router(nodes_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host=os.getenv("API_HOST", "127.0.0.1"), port=int(os.getenv("API_PORT", "8000")))
