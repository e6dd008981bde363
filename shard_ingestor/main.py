from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, load_settings
from .errors import StoreError
from .etl import IngestPipeline
from .logging_config import configure_logging
from .sources import SourceRegistry


class SeedPayload(BaseModel):
    payload: dict


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[SourceRegistry] = None,
) -> FastAPI:
    """Application whose lifespan starts and stops the ingest pipeline."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = settings or load_settings()
        configure_logging(resolved.log)
        pipeline = IngestPipeline(resolved, registry)
        await pipeline.start()
        app.state.pipeline = pipeline
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(
        title="Shard Ingestor",
        version="0.1.0",
        description="Polls a data source and fans each batch out to sharded tables.",
        lifespan=lifespan,
    )

    def _pipeline(request: Request) -> IngestPipeline:
        return request.app.state.pipeline

    @app.get("/health")
    async def health(request: Request) -> dict:
        pipeline = _pipeline(request)
        return {"status": "ok" if pipeline.running else "stopped"}

    @app.get("/topology")
    async def topology(request: Request) -> dict:
        pipeline = _pipeline(request)
        shards = pipeline.topology.shards if pipeline.topology else {}
        return {"shards": shards}

    @app.get("/status")
    async def status(request: Request) -> dict:
        return {"status": _pipeline(request).status()}

    @app.post("/sources/{source}/seed")
    async def seed_source(request: Request, source: str, payload: SeedPayload) -> dict:
        """Queue a row on the running source; only sources with an ``add`` accept one."""
        running = _pipeline(request).source
        add = getattr(running, "add", None)
        if running is None or running.name != source or add is None:
            raise HTTPException(status_code=404, detail=f"Source '{source}' does not accept rows")
        return {"inserted": add(payload.payload)}

    @app.get("/shards/{shard}/{table}/snapshot")
    async def shard_snapshot(request: Request, shard: str, table: str, limit: int = 20) -> dict:
        pipeline = _pipeline(request)
        if pipeline.topology is None or (shard, table) not in pipeline.topology.pairs():
            raise HTTPException(status_code=404, detail=f"Unknown table {shard}.{table}")
        try:
            rows = await pipeline.warehouse.snapshot(shard, table, limit)
            count = await pipeline.warehouse.row_count(shard, table)
        except (StoreError, SQLAlchemyError) as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"rows": rows, "count": count}

    return app


app = create_app()


def run() -> None:
    uvicorn.run("shard_ingestor.main:app", host="0.0.0.0", port=8000)
