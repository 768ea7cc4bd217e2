import asyncio
from contextlib import asynccontextmanager
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from rich.logging import RichHandler
import uvicorn

from .config import Settings
from .engine import SwapEngine, build_engine
from .models import SwapStatusView


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def create_app(engine: Optional[SwapEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the read-only status API around an engine.

    Without an engine one is built from the environment when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal engine
        configure_logging(settings.log_level if settings else "INFO")
        log = logging.getLogger("swapengine")
        if engine is None:
            engine = build_engine(settings or Settings.from_env())
        app.state.engine = engine
        log.info("Starting swap engine...")
        await engine.start()
        try:
            yield
        finally:
            log.info("Shutting down swap engine")
            await engine.stop()

    app = FastAPI(lifespan=lifespan)
    origins = [
        "*",
    ]

    @app.get("/health")
    async def health():
        ledgers = await app.state.engine.health()
        healthy = all(entry["status"] == "healthy" for entry in ledgers.values()) and app.state.engine.running
        return {"status": "healthy" if healthy else "degraded", "ledgers": ledgers}

    @app.get("/swaps", response_model=List[SwapStatusView])
    async def list_swaps():
        return await app.state.engine.orchestrator.list_swaps()

    @app.get("/swaps/{swap_id}", response_model=SwapStatusView)
    async def get_swap(swap_id: str):
        view = await app.state.engine.orchestrator.get_swap_status(swap_id)
        if view is None:
            raise HTTPException(status_code=404, detail=f"Swap {swap_id} not found")
        return view

    @app.websocket("/swaps/stream")
    async def stream(websocket: WebSocket):
        orchestrator = app.state.engine.orchestrator
        queue = orchestrator.subscribe()
        await websocket.accept()

        async def forward():
            while True:
                change = await queue.get()
                await websocket.send_text(change.model_dump_json())

        sender = asyncio.create_task(forward())
        try:
            # clients only listen; this returns when they go away
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            orchestrator.broadcaster.unsubscribe(queue)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


def run() -> None:
    settings = Settings.from_env()
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
