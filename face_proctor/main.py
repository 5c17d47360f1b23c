import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from face_proctor.schemas import MonitorStatus
from face_proctor.services.session_manager import ProctoringSession, SessionManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(session_manager: Optional[SessionManager] = None) -> FastAPI:
    manager = session_manager or SessionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Shutdown
        await manager.close_all()

    app = FastAPI(lifespan=lifespan)
    app.state.session_manager = manager

    def _get_session(request: Request, session_id: str) -> ProctoringSession:
        session = request.app.state.session_manager.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return session

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/sessions/{session_id}")
    async def session_summary(request: Request, session_id: str):
        session = _get_session(request, session_id)
        summary = session.store.snapshot().to_dict()
        summary["sessionId"] = session.session_id
        summary["userId"] = session.user_id
        return summary

    @app.post("/sessions/{session_id}/stop")
    async def stop_session(request: Request, session_id: str):
        session = _get_session(request, session_id)
        await session.stop()
        return {"status": session.monitor.status.value}

    @app.post("/sessions/{session_id}/retry")
    async def retry_session(request: Request, session_id: str):
        session = _get_session(request, session_id)
        status = await session.retry()
        return {"status": status.value, "mode": session.monitor.mode.value}

    # --- WebSocket Endpoints ---

    @app.websocket("/ws/proctor/{session_id}/video")
    async def websocket_video(websocket: WebSocket, session_id: str, user_id: Optional[str] = None):
        await websocket.accept()
        session = manager.get_or_create_session(session_id, user_id)
        session.camera_connected()
        if session.monitor.status is MonitorStatus.ERROR:
            status = await session.retry()
        else:
            status = await session.start()
        logger.info(f"Session {session_id} video connected, proctoring {status.value}")

        frame_counter = 0
        start_time = time.time()
        try:
            while True:
                # Expecting binary JPEG frames
                data = await websocket.receive_bytes()
                if not session.push_frame(data):
                    logger.debug(f"Session {session_id}: undecodable frame dropped")

                frame_counter += 1
                if frame_counter % 30 == 0:
                    elapsed = time.time() - start_time
                    if elapsed > 0:
                        logger.info(f"Session {session_id} Video FPS: {frame_counter / elapsed:.2f}")
                    frame_counter = 0
                    start_time = time.time()
        except WebSocketDisconnect as e:
            logger.info(f"WS Video Client Disconnected with code: {e.code}")
        except Exception as e:
            logger.error(f"WS Video Error: {e}")
        finally:
            # Monitoring pauses until the camera comes back
            session.camera_lost()
            if session.event_socket is None:
                # Nobody is listening for this session any more
                await manager.remove_session(session_id)

    @app.websocket("/ws/proctor/{session_id}/events")
    async def websocket_events(websocket: WebSocket, session_id: str, user_id: Optional[str] = None):
        session = manager.get_or_create_session(session_id, user_id)
        session.attach_event_socket(websocket)
        await websocket.accept()
        try:
            while True:
                # Clients only listen; wait for the disconnect.
                await websocket.receive_text()
        except WebSocketDisconnect:
            await manager.remove_session(session_id)
        except Exception as e:
            logger.error(f"WS Events Error: {e}")
            await manager.remove_session(session_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
