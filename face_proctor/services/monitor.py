import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from face_proctor import config
from face_proctor.exceptions import CameraUnavailableError
from face_proctor.schemas import MonitorMode, MonitorStatus, TickObservation, Violation, ViolationType
from face_proctor.services.frame_source import FrameSource
from face_proctor.services.reporter import ViolationReporter
from face_proctor.services.violation_store import ProctorStore
from face_proctor.services.violation_tracker import ViolationClassifier
from face_proctor.services.vision.brightness import frame_brightness, is_dark
from face_proctor.services.vision.face_detector import (
    FaceDetectorBackend,
    MediaPipeFaceDetector,
    count_present_faces,
)

logger = logging.getLogger(__name__)

WarningCallback = Callable[[ViolationType, str], None]


def _now_ms() -> float:
    return time.time() * 1000


class FrameClock:
    """Paces ticks to the target frame rate, like a display refresh callback."""

    def __init__(self, fps: float = config.TARGET_FPS):
        self.interval = 1.0 / fps
        self._next_at: Optional[float] = None

    async def wait_next_frame(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        # Fell more than a frame behind: restart the cadence instead of bursting
        if self._next_at is None or now - self._next_at > self.interval:
            self._next_at = now
        self._next_at += self.interval
        await asyncio.sleep(max(0.0, self._next_at - now))

    def reset(self) -> None:
        self._next_at = None


@dataclass
class MonitoringSession:
    """Everything one start()..stop() cycle owns."""

    detector: FaceDetectorBackend
    classifier: ViolationClassifier
    reporter: Optional[ViolationReporter] = None
    init_task: Optional[asyncio.Task] = None
    loop_task: Optional[asyncio.Task] = None
    cancelled: bool = False
    ticks: int = 0
    skipped_ticks: int = 0
    violations: List[Violation] = field(default_factory=list)


class ProctorMonitor:
    """
    Drives the proctoring loop for one candidate.

    Lifecycle: idle -> initializing -> ready -> idle, with error reachable
    from initializing (camera or model acquisition) and from ready (a failed
    tick). Error is sticky: callers stop() and start() again to retry.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        store: ProctorStore,
        detector_factory: Callable[[], FaceDetectorBackend] = MediaPipeFaceDetector,
        reporter_factory: Optional[Callable[[], Optional[ViolationReporter]]] = None,
        on_warning: Optional[WarningCallback] = None,
        classifier_factory: Callable[[], ViolationClassifier] = ViolationClassifier,
        frame_clock: Optional[FrameClock] = None,
        clock: Callable[[], float] = _now_ms,
        face_threshold: float = config.FACE_CONFIDENCE_THRESHOLD,
        dark_threshold: float = config.DARK_BRIGHTNESS_THRESHOLD,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.frame_source = frame_source
        self.store = store
        self.detector_factory = detector_factory
        self.reporter_factory = reporter_factory
        self.on_warning = on_warning
        self.classifier_factory = classifier_factory
        self.frame_clock = frame_clock or FrameClock()
        self.clock = clock
        self.face_threshold = face_threshold
        self.dark_threshold = dark_threshold
        self.session_id = session_id
        self.user_id = user_id

        self.status = MonitorStatus.IDLE
        self.mode = MonitorMode.NONE
        self.last_error: Optional[BaseException] = None
        self._session: Optional[MonitoringSession] = None

    @property
    def session(self) -> Optional[MonitoringSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        session = self._session
        return session is not None and session.loop_task is not None and not session.loop_task.done()

    async def start(self) -> MonitorStatus:
        if self._session is not None:
            return self.status

        if not self.store.enabled:
            logger.info(f"[{self.session_id}] Proctoring disabled, not starting.")
            self._set_status(MonitorStatus.IDLE)
            return self.status

        session = MonitoringSession(
            detector=self.detector_factory(),
            classifier=self.classifier_factory(),
        )
        self._session = session
        self.last_error = None
        self._set_status(MonitorStatus.INITIALIZING, MonitorMode.NONE)

        try:
            if not self.frame_source.is_live:
                raise CameraUnavailableError("Camera is not producing frames")
            session.init_task = asyncio.ensure_future(session.detector.initialize())
            mode = await session.init_task
        except asyncio.CancelledError:
            if session.cancelled:
                return self.status
            raise
        except Exception as e:
            logger.error(f"[{self.session_id}] Failed to initialize proctoring: {e}")
            self.last_error = e
            self._set_status(MonitorStatus.ERROR, MonitorMode.NONE)
            return self.status

        if session.cancelled:
            return self.status

        if self.reporter_factory is not None:
            session.reporter = self.reporter_factory()
            if session.reporter is not None:
                session.reporter.start()

        self.frame_clock.reset()
        self._set_status(MonitorStatus.READY, mode)
        session.loop_task = asyncio.create_task(self._run(session), name=f"proctor-loop-{self.session_id}")
        logger.info(f"[{self.session_id}] Proctoring system ready and monitoring ({mode.value} mode).")
        return self.status

    async def stop(self) -> None:
        session, self._session = self._session, None
        if session is None:
            self._set_status(MonitorStatus.IDLE, MonitorMode.NONE)
            return

        session.cancelled = True
        current = asyncio.current_task()
        pending = []
        for task in (session.init_task, session.loop_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await session.detector.dispose()
        except Exception as e:
            logger.error(f"[{self.session_id}] Error disposing face detector: {e}")

        if session.reporter is not None:
            await session.reporter.close()

        self._set_status(MonitorStatus.IDLE, MonitorMode.NONE)
        logger.info(
            f"[{self.session_id}] Proctoring stopped after {session.ticks} ticks "
            f"({len(session.violations)} violations)."
        )

    async def _run(self, session: MonitoringSession) -> None:
        try:
            while not session.cancelled:
                await self.frame_clock.wait_next_frame()
                if session.cancelled:
                    break
                await self._tick(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.session_id}] Proctor detect error: {e}")
            if not session.cancelled:
                self.last_error = e
                self._set_status(MonitorStatus.ERROR)

    async def _tick(self, session: MonitoringSession) -> None:
        # Paused or ended feed: nothing to classify this tick
        if not self.frame_source.is_live:
            session.skipped_ticks += 1
            return

        frame = await asyncio.to_thread(self.frame_source.read_frame)
        if frame is None or frame.size == 0:
            session.skipped_ticks += 1
            return

        detections = await session.detector.detect(frame)
        brightness = frame_brightness(frame)
        if session.cancelled:
            return

        observation = TickObservation(
            face_count=count_present_faces(detections, self.face_threshold),
            is_dark=is_dark(brightness, self.dark_threshold),
            brightness=brightness,
        )
        violation = session.classifier.update(observation, self.clock())
        session.ticks += 1
        if violation is not None:
            self._emit(session, violation)

    def _emit(self, session: MonitoringSession, violation: Violation) -> None:
        session.violations.append(violation)
        self.store.record(violation)
        logger.warning(f"[{self.session_id}] {violation.type.value}: {violation.message}")

        if self.on_warning is not None:
            try:
                self.on_warning(violation.type, violation.message)
            except Exception as e:
                logger.error(f"[{self.session_id}] Warning callback failed: {e}")

        if session.reporter is not None:
            session.reporter.send(violation.to_event(self.session_id, self.user_id))

    def _set_status(self, status: MonitorStatus, mode: Optional[MonitorMode] = None) -> None:
        self.status = status
        if mode is not None:
            self.mode = mode
        self.store.set_status(status, mode)
