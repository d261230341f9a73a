"""
FastAPI server for Code Timeline.
Serves session queries over REST and drives playback over a WebSocket.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from code_timeline.shared.errors import ReconstructionFailed, TimelineError
from code_timeline.shared.metrics import MetricsExporter
from code_timeline.server.service import TimelineService
from code_timeline.server.timeline.playback import PlaybackSession

logger = logging.getLogger(__name__)


class PlaybackCommand(BaseModel):
    type: str
    timestamp: Optional[float] = None
    speed: Optional[float] = None


# Global references (set during app creation)
_service: Optional[TimelineService] = None


def create_app(service: TimelineService, exporter: Optional[MetricsExporter] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    global _service
    _service = service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if exporter:
            await exporter.start()
        logger.info(f"API server serving session {service.session.id}")
        yield
        await service.close()
        if exporter:
            await exporter.stop()
        logger.info("API server shutting down")

    app = FastAPI(
        title="Code Timeline API",
        description="Query and replay recorded coding sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app


def register_routes(app: FastAPI):
    """Register all API routes."""

    # ==================== Session ====================

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/session")
    async def get_session():
        return _service.get_session().to_dict()

    @app.get("/api/sessions")
    async def list_sessions():
        return [s.to_dict() for s in _service.db.list_sessions()]

    @app.get("/api/stats")
    async def get_stats():
        return _service.db.get_stats()

    # ==================== Events ====================

    @app.get("/api/events")
    async def get_events(
        start: Optional[int] = None,
        end: Optional[int] = None,
        type: Optional[str] = None,
        limit: Optional[int] = Query(None, ge=1),
    ):
        try:
            events = _service.get_events(start, end, type, limit)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown event type: {type}")
        return [e.to_dict() for e in events]

    @app.get("/api/bookmarks")
    async def get_bookmarks():
        return [b.to_dict() for b in _service.get_bookmarks()]

    @app.get("/api/timeline")
    async def get_timeline(bucket_ms: int = Query(60_000, ge=1)):
        return _service.get_timeline(bucket_ms)

    # ==================== Files ====================

    @app.get("/api/files")
    async def get_files():
        return [f.to_dict() for f in _service.get_files()]

    @app.get("/api/file-content")
    async def get_file_content(path: str, timestamp: int):
        try:
            state = _service.get_file_state_at(path, timestamp)
        except ReconstructionFailed as e:
            raise HTTPException(status_code=409, detail=str(e))

        if state is None:
            raise HTTPException(status_code=404, detail=f"No captured content for {path} at {timestamp}")

        return {
            "path": path,
            "timestamp": timestamp,
            "content": state.content,
            "checkpoint_sequence": state.checkpoint.sequence,
            "diffs_applied": len(state.diffs),
        }

    @app.get("/api/file-history")
    async def get_file_history(path: str):
        return _service.get_file_history(path)

    # ==================== WebSocket ====================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket for playback control and the event stream."""
        await websocket.accept()
        client = PlaybackClient(websocket)
        logger.info("Playback client connected")

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    command = PlaybackCommand.model_validate(json.loads(data))
                    await client.handle(command)
                except (TimelineError, ValueError, KeyError) as e:
                    await websocket.send_json({"type": "error", "message": str(e)})
        except WebSocketDisconnect:
            logger.info("Playback client disconnected")
        finally:
            await client.stop()


class PlaybackClient:
    """Playback owned by one WebSocket connection."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.playback_id: Optional[str] = None

    async def handle(self, command: PlaybackCommand):
        engine = _service.playback

        if command.type == "seek":
            if command.timestamp is None:
                raise ValueError("seek requires a timestamp")
            playback_id = self._ensure_playback(command.speed)
            events = await _service.seek_playback(playback_id, command.timestamp)
            await self.websocket.send_json({
                "type": "seek_result",
                "timestamp": engine.get_session(playback_id).cursor,
                "events": [e.to_dict() for e in events],
            })
            return

        if command.type == "play":
            playback_id = self._ensure_playback(command.speed)
            await engine.play(playback_id, from_timestamp=command.timestamp, speed=command.speed)
        elif command.type == "pause":
            if self.playback_id:
                await _service.pause_playback(self.playback_id)
        elif command.type == "resume":
            if self.playback_id:
                await _service.resume_playback(self.playback_id)
        elif command.type == "speed":
            if command.speed is None:
                raise ValueError("speed requires a speed")
            engine.set_speed(self._ensure_playback(command.speed), command.speed)
        elif command.type == "stop":
            await self.stop()
            await self.websocket.send_json({"type": "stopped"})
            return
        else:
            raise ValueError(f"Unknown command: {command.type}")

        await self._send_state()

    def _ensure_playback(self, speed: Optional[float]) -> str:
        if self.playback_id is None:
            engine = _service.playback
            playback = engine.create_session(speed=speed)
            engine.add_callback(playback.playback_id, self._send_event)
            engine.add_completion_callback(playback.playback_id, self._send_complete)
            self.playback_id = playback.playback_id
        return self.playback_id

    async def _send_state(self):
        playback = _service.playback.get_session(self.playback_id) if self.playback_id else None
        await self.websocket.send_json({
            "type": "state",
            "playback": playback.to_dict() if playback else None,
        })

    async def _send_event(self, event):
        await self.websocket.send_json({"type": "event", "event": event.to_dict()})

    async def _send_complete(self, playback: PlaybackSession):
        await self.websocket.send_json({"type": "playback_complete", "playback": playback.to_dict()})

    async def stop(self):
        if self.playback_id:
            await _service.stop_playback(self.playback_id)
            self.playback_id = None
