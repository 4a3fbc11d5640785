"""HTTP surface: health, status, manual sync and Google push notifications."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, Response

from .config import Settings, load_settings
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        runtime: Pre-built runtime; one is built from settings otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime
        if rt is None:
            rt = build_runtime(settings or load_settings())
        app.state.runtime = rt
        # Initial sync runs in the background so startup is not blocked on Google
        init_task = asyncio.ensure_future(rt.initialize())
        try:
            yield
        finally:
            if not init_task.done():
                init_task.cancel()
                try:
                    await init_task
                except asyncio.CancelledError:
                    pass
            await rt.aclose()

    app = FastAPI(title="meetsync", version="2.0.0", lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        status = await rt.engine.get_sync_status()
        return {
            "ok": True,
            "last_sync": status.last_sync_time.isoformat() if status.last_sync_time else None,
            "is_syncing": status.is_syncing,
            "auto_sync_running": rt.scheduler.is_running,
        }

    @app.get("/status")
    async def status(request: Request):
        rt: Runtime = request.app.state.runtime
        return (await rt.engine.get_sync_status()).model_dump(mode="json")

    @app.post("/sync")
    async def sync(request: Request):
        rt: Runtime = request.app.state.runtime
        result = await rt.engine.perform_sync()
        if result is None:
            raise HTTPException(status_code=409, detail="sync already in progress")
        payload = result.model_dump(mode="json")
        payload["success"] = result.success
        return payload

    @app.post("/webhook/google")
    async def google_webhook(request: Request, background_tasks: BackgroundTasks):
        rt: Runtime = request.app.state.runtime
        expected = rt.settings.google_channel_token
        token = request.headers.get("X-Goog-Channel-Token")
        if expected and token != expected:
            raise HTTPException(status_code=401, detail="invalid channel token")

        channel_id = request.headers.get("X-Goog-Channel-ID")
        resource_state = request.headers.get("X-Goog-Resource-State")
        if not channel_id or not resource_state:
            raise HTTPException(status_code=400, detail="missing channel/resource headers")

        # Google expects a quick 2xx; the pass runs after the response
        background_tasks.add_task(rt.engine.handle_webhook, resource_state)
        return Response(status_code=204)

    return app
