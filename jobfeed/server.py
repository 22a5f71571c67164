"""
HTTP surface for manual triggers, status and live progress.

Run with: uvicorn jobfeed.server:create_app_from_env --factory --port 8000

  POST /api/import/start      start a pass in the background (202, or 409 if busy)
  GET  /api/import/status     import, scheduler, queue and processing status
  WS   /ws/import-updates     progress events as JSON messages
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from jobfeed.config import ImportSettings
from jobfeed.errors import ImportBusyError
from jobfeed.factory import build_orchestrator
from jobfeed.ingest import ImportOrchestrator
from jobfeed.notify import BroadcastNotifier
from jobfeed.scheduler import ImportScheduler

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: ImportOrchestrator,
    notifier: BroadcastNotifier,
    scheduler: ImportScheduler | None = None,
) -> FastAPI:
    """
    Build the app around an orchestrator. Workers (and the scheduler, when
    given) start with the app and stop with it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator.start_workers()
        if scheduler is not None:
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.stop()
        await orchestrator.queue.close()

    app = FastAPI(title="Job Feed Importer", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.notifier = notifier
    app.state.scheduler = scheduler

    @app.post("/api/import/start", status_code=202)
    async def start_import():
        """Accept or reject a manual import; the pass runs in the background."""
        try:
            import_id = orchestrator.trigger_import()
        except ImportBusyError as e:
            return JSONResponse(
                status_code=409,
                content={"success": False, "message": str(e), "currentImportId": e.current_import_id},
            )
        logger.info("Manual import %s started", import_id)
        return {"success": True, "message": "Import started", "importId": import_id}

    @app.get("/api/import/status")
    async def import_status():
        """Snapshot of every status source. Queue problems show up as unavailable stats."""
        return {
            "import": orchestrator.get_import_status().model_dump(mode="json"),
            "cron": scheduler.get_status().model_dump(mode="json") if scheduler is not None else None,
            "queue": (await orchestrator.get_queue_stats()).model_dump(mode="json"),
            "processing": (await orchestrator.get_processing_stats()).model_dump(mode="json"),
        }

    @app.websocket("/ws/import-updates")
    async def import_updates(websocket: WebSocket):
        await websocket.accept()
        queue = notifier.subscribe()
        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.debug("Progress subscriber disconnected")
        finally:
            notifier.unsubscribe(queue)

    return app


def create_app_from_env() -> FastAPI:
    """
    App factory for uvicorn: settings from the environment, scheduler enabled.
    """
    settings = ImportSettings.from_env()
    notifier = BroadcastNotifier()
    orchestrator = build_orchestrator(settings, notifier=notifier)
    scheduler = ImportScheduler(
        orchestrator,
        notifier=notifier,
        cron_schedule=settings.cron_schedule,
        timezone=settings.cron_timezone,
    )
    return create_app(orchestrator, notifier, scheduler)
