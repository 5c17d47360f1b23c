import asyncio

from conftest import FakeDetector, FakeFrameSource, ImmediateFrameClock, ManualClock, dark_frame, wait_for

from face_proctor.exceptions import CameraUnavailableError, DetectorLoadError, InferenceError
from face_proctor.schemas import MonitorMode, MonitorStatus, ViolationType
from face_proctor.services.monitor import FrameClock, ProctorMonitor
from face_proctor.services.violation_tracker import ViolationClassifier


class FakeReporter:
    def __init__(self):
        self.started = False
        self.closed = False
        self.events = []

    def start(self):
        self.started = True

    def send(self, event):
        self.events.append(event)

    async def close(self):
        self.closed = True


def classifier_factory(**overrides):
    params = dict(
        cooldown_ms=60_000.0,
        no_face_ms=450.0,
        multi_face_ms=150.0,
        dark_frame_ms=300.0,
        nominal_tick_ms=10.0,
    )
    params.update(overrides)
    return lambda: ViolationClassifier(**params)


def make_monitor(store, detector, source=None, reporter=None, on_warning=None, **classifier_overrides):
    return ProctorMonitor(
        frame_source=source or FakeFrameSource(),
        store=store,
        detector_factory=lambda: detector,
        reporter_factory=(lambda: reporter) if reporter is not None else None,
        on_warning=on_warning,
        classifier_factory=classifier_factory(**classifier_overrides),
        frame_clock=ImmediateFrameClock(),
        clock=ManualClock(step=10.0),
        session_id="session-1",
        user_id="user-1",
    )


def test_start_is_a_no_op_while_disabled(store):
    store.disable()
    detector = FakeDetector()
    monitor = make_monitor(store, detector)

    status = asyncio.run(monitor.start())

    assert status is MonitorStatus.IDLE
    assert detector.initialize_calls == 0
    assert monitor.session is None


def test_start_runs_loop_until_stopped(store):
    detector = FakeDetector(face_counts=[1])
    monitor = make_monitor(store, detector)

    async def scenario():
        status = await monitor.start()
        assert status is MonitorStatus.READY
        assert monitor.mode is MonitorMode.REDUCED
        assert store.status is MonitorStatus.READY
        assert store.mode is MonitorMode.REDUCED
        await wait_for(lambda: detector.detect_calls >= 5)
        assert monitor.is_running
        await monitor.stop()

    asyncio.run(scenario())

    assert monitor.status is MonitorStatus.IDLE
    assert store.status is MonitorStatus.IDLE
    assert store.mode is MonitorMode.NONE
    assert detector.dispose_calls == 1
    assert store.warning_count == 0


def test_sustained_absence_reaches_store_callback_and_reporter(store):
    detector = FakeDetector(face_counts=[0])
    reporter = FakeReporter()
    warnings = []
    monitor = make_monitor(
        store, detector, reporter=reporter, on_warning=lambda t, m: warnings.append((t, m))
    )

    async def scenario():
        await monitor.start()
        session = monitor.session
        await wait_for(lambda: store.warning_count == 1)
        await monitor.stop()
        return session

    session = asyncio.run(scenario())

    assert session.ticks >= 46
    assert store.warning_count == len(store.violations) == 1
    assert store.violations[0].type is ViolationType.NO_FACE
    assert warnings == [(ViolationType.NO_FACE, "Face not detected")]
    assert reporter.started and reporter.closed
    assert reporter.events[0]["type"] == "no-face"
    assert reporter.events[0]["sessionId"] == "session-1"
    assert reporter.events[0]["userId"] == "user-1"
    # History outlives the monitoring run
    assert store.status is MonitorStatus.IDLE
    assert store.warning_count == 1


def test_covered_camera_is_reported_as_covered(store):
    detector = FakeDetector(face_counts=[0])
    monitor = make_monitor(
        store, detector, source=FakeFrameSource(frame=dark_frame()), no_face_ms=50.0, dark_frame_ms=50.0
    )

    async def scenario():
        await monitor.start()
        await wait_for(lambda: store.warning_count >= 1)
        await monitor.stop()

    asyncio.run(scenario())

    assert store.violations[0].type is ViolationType.CAMERA_COVERED
    assert store.violations[0].message == "Camera appears to be covered"


def test_detector_load_failure_never_starts_the_loop(store):
    detector = FakeDetector(fail_on_init=True)
    source = FakeFrameSource()
    monitor = make_monitor(store, detector, source=source)

    async def scenario():
        status = await monitor.start()
        await asyncio.sleep(0.01)
        return status

    status = asyncio.run(scenario())

    assert status is MonitorStatus.ERROR
    assert store.status is MonitorStatus.ERROR
    assert monitor.mode is MonitorMode.NONE
    assert isinstance(monitor.last_error, DetectorLoadError)
    assert not monitor.is_running
    assert source.reads == 0
    assert detector.detect_calls == 0
    assert store.warning_count == 0


def test_error_is_sticky_until_stop_and_start(store):
    detector = FakeDetector(fail_on_init=True)
    monitor = make_monitor(store, detector)

    async def scenario():
        assert await monitor.start() is MonitorStatus.ERROR
        # No automatic retry
        assert await monitor.start() is MonitorStatus.ERROR
        assert detector.initialize_calls == 1

        await monitor.stop()
        assert detector.dispose_calls == 1

        detector.fail_on_init = False
        assert await monitor.start() is MonitorStatus.READY
        await monitor.stop()

    asyncio.run(scenario())

    assert detector.initialize_calls == 2
    assert detector.dispose_calls == 2


def test_camera_unavailable_at_start_is_an_error(store):
    detector = FakeDetector()
    monitor = make_monitor(store, detector, source=FakeFrameSource(live=False))

    status = asyncio.run(monitor.start())

    assert status is MonitorStatus.ERROR
    assert isinstance(monitor.last_error, CameraUnavailableError)
    assert detector.initialize_calls == 0


def test_paused_source_skips_ticks_and_resumes(store):
    detector = FakeDetector()
    source = FakeFrameSource()
    monitor = make_monitor(store, detector, source=source)

    async def scenario():
        await monitor.start()
        session = monitor.session
        await wait_for(lambda: detector.detect_calls >= 2)

        source.live = False
        skipped = session.skipped_ticks
        await wait_for(lambda: session.skipped_ticks >= skipped + 10)
        calls = detector.detect_calls
        await asyncio.sleep(0.01)
        assert detector.detect_calls == calls
        assert monitor.status is MonitorStatus.READY
        assert monitor.is_running

        source.live = True
        await wait_for(lambda: detector.detect_calls > calls + 2)
        await monitor.stop()

    asyncio.run(scenario())

    assert monitor.last_error is None
    assert detector.dispose_calls == 1


def test_inference_failure_stops_the_loop_with_error(store):
    detector = FakeDetector(fail_on_detect_call=3)
    monitor = make_monitor(store, detector)

    async def scenario():
        await monitor.start()
        await wait_for(lambda: monitor.status is MonitorStatus.ERROR)
        calls = detector.detect_calls
        await asyncio.sleep(0.01)
        assert detector.detect_calls == calls
        await monitor.stop()

    asyncio.run(scenario())

    assert isinstance(monitor.last_error, InferenceError)
    assert monitor.status is MonitorStatus.IDLE


def test_unavailable_frames_are_skipped_without_observation(store):
    detector = FakeDetector(face_counts=[0])
    source = FakeFrameSource()
    source.frame = None
    monitor = make_monitor(store, detector, source=source, no_face_ms=0.0)

    async def scenario():
        await monitor.start()
        session = monitor.session
        await wait_for(lambda: source.reads >= 20)
        await monitor.stop()
        return session

    session = asyncio.run(scenario())

    assert detector.detect_calls == 0
    assert session.ticks == 0
    assert session.skipped_ticks >= 20
    assert store.warning_count == 0


def test_stop_during_inference_discards_the_tick(store):
    detector = FakeDetector(face_counts=[0])
    monitor = make_monitor(store, detector, no_face_ms=0.0)

    async def scenario():
        detector.release_detect = asyncio.Event()
        await monitor.start()
        await wait_for(detector.detect_started.is_set)

        await monitor.stop()
        assert store.warning_count == 0

        detector.release_detect.set()
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert store.warning_count == 0
    assert detector.dispose_calls == 1
    assert monitor.status is MonitorStatus.IDLE


def test_stop_during_initialization(store):
    detector = FakeDetector()
    monitor = make_monitor(store, detector)

    async def scenario():
        detector.release_init = asyncio.Event()
        starting = asyncio.create_task(monitor.start())
        await wait_for(lambda: detector.initialize_calls == 1)

        await monitor.stop()
        await starting
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert monitor.status is MonitorStatus.IDLE
    assert not monitor.is_running
    assert detector.detect_calls == 0
    assert detector.dispose_calls == 1


def test_stop_is_idempotent(store):
    detector = FakeDetector()
    monitor = make_monitor(store, detector)

    async def scenario():
        await monitor.stop()
        await monitor.start()
        await monitor.stop()
        await monitor.stop()

    asyncio.run(scenario())

    assert monitor.status is MonitorStatus.IDLE
    assert monitor.session is None
    assert detector.dispose_calls == 1


def test_start_twice_keeps_a_single_loop(store):
    detector = FakeDetector()
    monitor = make_monitor(store, detector)

    async def scenario():
        await monitor.start()
        first = monitor.session
        assert await monitor.start() is MonitorStatus.READY
        assert monitor.session is first
        await monitor.stop()

    asyncio.run(scenario())

    assert detector.initialize_calls == 1
    assert detector.dispose_calls == 1


def test_start_on_running_session_ignores_disabled_store(store):
    detector = FakeDetector()
    monitor = make_monitor(store, detector)

    async def scenario():
        await monitor.start()
        store.disable()
        assert await monitor.start() is MonitorStatus.READY
        assert monitor.is_running
        assert store.status is MonitorStatus.READY
        await monitor.stop()

    asyncio.run(scenario())

    assert detector.initialize_calls == 1


def test_failing_warning_callback_does_not_stop_monitoring(store):
    detector = FakeDetector(face_counts=[0])

    def on_warning(violation_type, message):
        raise RuntimeError("toast failed")

    monitor = make_monitor(store, detector, on_warning=on_warning, no_face_ms=0.0)

    async def scenario():
        await monitor.start()
        await wait_for(lambda: store.warning_count == 1)
        calls = detector.detect_calls
        await wait_for(lambda: detector.detect_calls > calls + 3)
        assert monitor.status is MonitorStatus.READY
        await monitor.stop()

    asyncio.run(scenario())

    assert store.warning_count == 1


def test_low_confidence_faces_do_not_count_as_present(store):
    detector = FakeDetector(face_counts=[1], confidence=0.6)
    monitor = make_monitor(store, detector, no_face_ms=50.0)

    async def scenario():
        await monitor.start()
        await wait_for(lambda: store.warning_count == 1)
        await monitor.stop()

    asyncio.run(scenario())

    assert store.violations[0].type is ViolationType.NO_FACE


def test_frame_clock_paces_ticks():
    clock = FrameClock(fps=100)

    async def scenario():
        loop = asyncio.get_running_loop()
        started = loop.time()
        for _ in range(5):
            await clock.wait_next_frame()
        return loop.time() - started

    elapsed = asyncio.run(scenario())

    assert elapsed >= 0.045
