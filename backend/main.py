"""
transcodeq web backend - FastAPI application.
Hosts one JobScheduler, exposes REST endpoints for submission, queue control,
probing and hardware info, and streams scheduler events over a WebSocket.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from transcodeq import __version__
from transcodeq.config import Settings, load_settings, save_settings, setup_logging
from transcodeq.errors import ConfigurationError, ProbeError
from transcodeq.ffmpeg import FFmpegDriver
from transcodeq.hardware import HardwareProfiler, current_load, recommended_concurrency
from transcodeq.scheduler import JobScheduler

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

CONFIG_FILE = Path(os.environ.get("CONFIG_FILE", "/config/settings.json"))
LOG_FILE    = os.environ.get("LOG_FILE") or None

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

setup_logging(LOG_FILE)
logger = logging.getLogger("transcodeq.web")

WS_INTERVAL = 0.25    # event drain period
WS_STATE_EVERY = 0.75  # full state push period


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class SubmitModel(BaseModel):
    # validated by the scheduler; failures surface as 400
    jobs: list[dict[str, Any]]


class ProbeModel(BaseModel):
    path: str


# ---------------------------------------------------------------------------
# WebSocket connections
# ---------------------------------------------------------------------------

class ConnectionManager:
    def __init__(self):
        self.active: list[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active.append(ws)

    def disconnect(self, ws: WebSocket):
        self.active = [c for c in self.active if c != ws]


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    driver: Optional[FFmpegDriver] = None,
    profiler: Optional[HardwareProfiler] = None,
    config_file: Optional[Path] = None,
) -> FastAPI:
    config_path = config_file or CONFIG_FILE

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings(config_path)
        drv = driver or FFmpegDriver(cfg.ffmpeg_bin, cfg.ffprobe_bin)
        prof = profiler or HardwareProfiler(auto_detect=cfg.auto_detect_hardware)
        app.state.settings = cfg
        app.state.driver = drv
        app.state.profiler = prof
        app.state.scheduler = JobScheduler(drv, prof, cfg)
        app.state.started_at = time.monotonic()
        logger.info(
            f"transcodeq backend starting | max_jobs={cfg.max_concurrent_jobs} "
            f"gpu={cfg.gpu_acceleration} auto_detect={cfg.auto_detect_hardware}"
        )
        try:
            yield
        finally:
            await app.state.scheduler.aclose()
            logger.info("transcodeq backend stopped")

    app = FastAPI(title="transcodeq", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    manager = ConnectionManager()

    def _scheduler() -> JobScheduler:
        return app.state.scheduler

    def _status() -> dict:
        sched = _scheduler()
        return {
            **sched.queue_status(),
            "active_conversions": app.state.driver.active_jobs(),
            "uptime":             round(time.monotonic() - app.state.started_at),
            "clients":            len(manager.active),
        }

    # -- config -------------------------------------------------------------

    @app.get("/api/config")
    async def get_config():
        return app.state.settings.model_dump()

    @app.post("/api/config")
    async def post_config(cfg: Settings):
        save_settings(cfg, config_path)
        app.state.settings = cfg
        applied = await _scheduler().apply_settings(cfg)
        return {"ok": True, "max_concurrent_jobs": applied}

    # -- hardware -----------------------------------------------------------

    @app.get("/api/hardware")
    async def get_hardware():
        prof: HardwareProfiler = app.state.profiler
        snap = await asyncio.to_thread(prof.get_snapshot)
        load = await asyncio.to_thread(current_load)
        return {
            "snapshot":                snap.model_dump(),
            "recommended_concurrency": recommended_concurrency(snap),
            "load":                    load,
        }

    @app.post("/api/hardware/redetect")
    async def redetect_hardware():
        prof: HardwareProfiler = app.state.profiler
        snap = await asyncio.to_thread(prof.redetect)
        return {"snapshot": snap.model_dump(), "recommended_concurrency": recommended_concurrency(snap)}

    # -- media --------------------------------------------------------------

    @app.post("/api/probe")
    async def probe(req: ProbeModel):
        try:
            media = await app.state.driver.probe(req.path)
        except ProbeError as e:
            raise HTTPException(422, str(e))
        return {**media.model_dump(), "fps": media.fps}

    # -- jobs ---------------------------------------------------------------

    @app.get("/api/jobs")
    async def get_jobs():
        return [job.to_dict() for job in _scheduler().jobs()]

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str):
        job = _scheduler().get_job(job_id)
        if job is None:
            raise HTTPException(404, f"Unknown job: {job_id}")
        return job.to_dict()

    @app.post("/api/jobs")
    async def submit_jobs(req: SubmitModel):
        try:
            ids = await _scheduler().submit(req.jobs)
        except ConfigurationError as e:
            raise HTTPException(400, str(e))
        return {"ok": True, "ids": ids}

    @app.post("/api/jobs/estimate")
    async def estimate_job(descriptor: dict[str, Any]):
        try:
            est = await _scheduler().estimate(descriptor)
        except ConfigurationError as e:
            raise HTTPException(400, str(e))
        return est.model_dump(mode="json")

    @app.post("/api/jobs/clear-finished")
    async def clear_finished():
        n = await _scheduler().clear_finished()
        return {"ok": True, "affected": n}

    @app.delete("/api/jobs/{job_id}")
    async def remove_job(job_id: str):
        removed = await _scheduler().remove(job_id)
        return {"ok": True, "removed": removed}

    # -- queue control ------------------------------------------------------

    @app.post("/api/queue/pause")
    async def pause_queue():
        await _scheduler().pause_all()
        return {"ok": True}

    @app.post("/api/queue/resume")
    async def resume_queue():
        await _scheduler().resume_all()
        return {"ok": True}

    @app.post("/api/queue/cancel")
    async def cancel_queue():
        n = await _scheduler().cancel_all()
        return {"ok": True, "affected": n}

    @app.get("/api/status")
    async def get_status():
        return _status()

    # -- live feed ----------------------------------------------------------

    async def _listen(ws: WebSocket):
        # Client messages are ignored; this only notices the disconnect.
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await manager.connect(ws)
        events: asyncio.Queue = asyncio.Queue()
        unsubscribe = _scheduler().subscribe(events.put_nowait)
        listener = asyncio.create_task(_listen(ws))
        last_state = 0.0
        try:
            while not listener.done():
                try:
                    while not events.empty():
                        ev = events.get_nowait()
                        await ws.send_json({"type": "progress", **ev.model_dump(mode="json")})
                    now = time.monotonic()
                    if now - last_state >= WS_STATE_EVERY:
                        await ws.send_json({"type": "state", "status": _status(), "ts": time.time()})
                        last_state = now
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    logger.debug(f"WS send error: {e}")
                    break
                await asyncio.sleep(WS_INTERVAL)
        except WebSocketDisconnect:
            pass
        finally:
            if not listener.done():
                listener.cancel()
            unsubscribe()
            manager.disconnect(ws)

    return app


app = create_app()
