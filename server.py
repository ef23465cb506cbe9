"""Cinema Pipeline — Web Server.

FastAPI backend exposing the generation routes: image, video, image
analysis and screenplay shot-list breakdown. Persisted media is served
from the local storage directory under /files.

Usage:
    python server.py
    # Then POST to http://localhost:8000/api/ai/generate-image
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

import config
from pipeline.credentials import CredentialResolver
from pipeline.orchestrator import GenerationPipeline
from pipeline.persistence import LocalBlobStore
from pipeline.storage import SqliteSystemConfigStore, SqliteUserKeyStore, init_db
from schemas.generation import GenerateMediaPayload
from schemas.shot_list import ShotListPayload

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO), format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

pipeline_config = config.load_config()


def _check_api_keys() -> list[str]:
    """List providers with no environment fallback key. Returns warnings."""
    return [
        f"{service.upper()}_API_KEY is not set (callers must supply or store a key)"
        for service in ("openai", "anthropic", "runway")
        if not pipeline_config.env_key(service)
    ]


def build_pipeline() -> GenerationPipeline:
    """A fresh pipeline per request; nothing is shared between requests."""
    return GenerationPipeline(
        pipeline_config,
        CredentialResolver(pipeline_config, SqliteSystemConfigStore(), SqliteUserKeyStore()),
        LocalBlobStore.from_config(pipeline_config),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    pipeline_config.storage_dir.mkdir(parents=True, exist_ok=True)
    for warning in _check_api_keys():
        logger.warning(warning)
    yield


app = FastAPI(title="Cinema Pipeline", version="1.0.0", lifespan=lifespan)
app.mount("/files", StaticFiles(directory=str(pipeline_config.storage_dir), check_dir=False), name="files")


def _respond(body: dict, status: int):
    if status == 200:
        return body
    return JSONResponse(body, status_code=status)


async def _generate(payload: GenerateMediaPayload):
    pipeline = build_pipeline()
    response, status = await asyncio.to_thread(pipeline.generate, payload)
    return _respond(response.to_json(), status)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def api_health():
    return {"status": "ok", "warnings": _check_api_keys()}


@app.post("/api/ai/generate-image")
async def api_generate_image(req: GenerateMediaPayload):
    """Generate an image and (by default) persist it under the caller's prefix."""
    return await _generate(req.model_copy(update={"kind": "image"}))


@app.post("/api/ai/generate-video")
async def api_generate_video(req: GenerateMediaPayload):
    """Submit a video job, poll it to completion, and persist the result."""
    return await _generate(req.model_copy(update={"kind": "video"}))


@app.post("/api/ai/analyze-image")
async def api_analyze_image(req: GenerateMediaPayload):
    if not req.attachment_base64:
        return JSONResponse({"success": False, "error": "Missing required field: attachment_base64"}, status_code=400)
    return await _generate(req.model_copy(update={"kind": "vision", "persist_requested": False}))


@app.post("/api/scenes/generate-shot-list")
async def api_generate_shot_list(req: ShotListPayload):
    """Break a screenplay page into normalized shot records."""
    pipeline = build_pipeline()
    response, status = await asyncio.to_thread(pipeline.generate_shot_list, req)
    return _respond(response.to_json(), status)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    print("\n  Cinema Pipeline API")
    print("  http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
