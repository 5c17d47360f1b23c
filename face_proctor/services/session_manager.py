import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from fastapi import WebSocket

from face_proctor.schemas import MonitorStatus, ViolationType
from face_proctor.services.frame_source import PushedFrameSource
from face_proctor.services.monitor import FrameClock, ProctorMonitor
from face_proctor.services.reporter import ViolationReporter, build_reporter
from face_proctor.services.violation_store import ProctorStore
from face_proctor.services.violation_tracker import ViolationClassifier
from face_proctor.services.vision.face_detector import FaceDetectorBackend, MediaPipeFaceDetector

logger = logging.getLogger(__name__)

ReporterFactory = Callable[[str, Optional[str]], Optional[ViolationReporter]]


class ProctoringSession:
    def __init__(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        detector_factory: Callable[[], FaceDetectorBackend] = MediaPipeFaceDetector,
        reporter_factory: ReporterFactory = build_reporter,
        classifier_factory: Callable[[], ViolationClassifier] = ViolationClassifier,
        frame_clock_factory: Callable[[], FrameClock] = FrameClock,
    ):
        self.session_id = session_id
        self.user_id = user_id

        self.store = ProctorStore()
        self.frames = PushedFrameSource()
        self.monitor = ProctorMonitor(
            frame_source=self.frames,
            store=self.store,
            detector_factory=detector_factory,
            reporter_factory=lambda: reporter_factory(session_id, user_id),
            on_warning=self.on_warning,
            classifier_factory=classifier_factory,
            frame_clock=frame_clock_factory(),
            session_id=session_id,
            user_id=user_id,
        )

        # Toast channel back to the candidate's browser
        self.event_socket: Optional[WebSocket] = None
        self._pending_sends: Set[asyncio.Task] = set()

    async def start(self) -> MonitorStatus:
        """Begin a fresh proctoring run: history is cleared before monitoring starts."""
        if self.monitor.session is not None:
            return self.monitor.status
        self.store.reset()
        self.store.enable()
        return await self.monitor.start()

    async def retry(self) -> MonitorStatus:
        await self.monitor.stop()
        self.store.enable()
        return await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()

    def push_frame(self, frame_bytes: bytes) -> bool:
        return self.frames.push_jpeg(frame_bytes)

    def camera_connected(self) -> None:
        self.frames.resume()

    def camera_lost(self) -> None:
        self.frames.end()

    def attach_event_socket(self, ws: WebSocket) -> None:
        self.event_socket = ws

    def on_warning(self, violation_type: ViolationType, message: str) -> None:
        if self.event_socket is None:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast_warning(violation_type, message))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def broadcast_warning(self, violation_type: ViolationType, message: str) -> None:
        ws = self.event_socket
        if ws is None:
            return
        try:
            await ws.send_json({"type": violation_type.value, "message": message})
        except Exception as e:
            logger.error(f"Failed to send warning to socket: {e}")

    async def close(self) -> None:
        await self.monitor.stop()
        self.frames.end()
        self.event_socket = None
        for task in list(self._pending_sends):
            task.cancel()
        logger.info(f"Session {self.session_id} closed.")


class SessionManager:
    def __init__(
        self,
        detector_factory: Callable[[], FaceDetectorBackend] = MediaPipeFaceDetector,
        reporter_factory: ReporterFactory = build_reporter,
        classifier_factory: Callable[[], ViolationClassifier] = ViolationClassifier,
        frame_clock_factory: Callable[[], FrameClock] = FrameClock,
    ):
        self.detector_factory = detector_factory
        self.reporter_factory = reporter_factory
        self.classifier_factory = classifier_factory
        self.frame_clock_factory = frame_clock_factory
        self.sessions: Dict[str, ProctoringSession] = {}

    def get_or_create_session(self, session_id: str, user_id: Optional[str] = None) -> ProctoringSession:
        if session_id not in self.sessions:
            logger.info(f"Creating new session: {session_id}")
            self.sessions[session_id] = ProctoringSession(
                session_id,
                user_id=user_id,
                detector_factory=self.detector_factory,
                reporter_factory=self.reporter_factory,
                classifier_factory=self.classifier_factory,
                frame_clock_factory=self.frame_clock_factory,
            )
        return self.sessions[session_id]

    def get_session(self, session_id: str) -> Optional[ProctoringSession]:
        return self.sessions.get(session_id)

    async def remove_session(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is not None:
            await session.close()
            logger.info(f"Removed session: {session_id}")

    async def close_all(self) -> None:
        for session_id in list(self.sessions):
            await self.remove_session(session_id)
