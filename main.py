import argparse
import asyncio
import logging
import sys
from typing import Optional

from face_proctor import config
from face_proctor.exceptions import CameraUnavailableError
from face_proctor.schemas import MonitorStatus, ViolationType
from face_proctor.services.frame_source import CameraFrameSource
from face_proctor.services.monitor import FrameClock, ProctorMonitor
from face_proctor.services.reporter import build_reporter
from face_proctor.services.violation_store import ProctorStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Local webcam face-presence proctoring")
    parser.add_argument("--camera", type=int, default=config.CAMERA_INDEX, help="OpenCV camera index")
    parser.add_argument("--fps", type=float, default=config.TARGET_FPS, help="Ticks per second")
    parser.add_argument("--duration", type=float, default=0, help="Stop after N seconds (0 = until Ctrl+C)")
    parser.add_argument("--session-id", default="local")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--report-url", default=config.PROCTOR_REPORT_URL, help="Optional websocket for violation events")
    return parser.parse_args(argv)


def print_warning(violation_type: ViolationType, message: str) -> None:
    print(f"!! {violation_type.value}: {message}")


async def run(args: argparse.Namespace) -> int:
    camera = CameraFrameSource(args.camera)
    try:
        await asyncio.to_thread(camera.open)
    except CameraUnavailableError as e:
        logger.error(f"Camera unavailable: {e}")
        return 1

    store = ProctorStore()
    monitor = ProctorMonitor(
        frame_source=camera,
        store=store,
        reporter_factory=lambda: build_reporter(args.session_id, args.user_id, args.report_url),
        on_warning=print_warning,
        frame_clock=FrameClock(args.fps),
        session_id=args.session_id,
        user_id=args.user_id,
    )

    exit_code = 0
    try:
        store.reset()
        store.enable()
        status = await monitor.start()
        if status is not MonitorStatus.READY:
            logger.error(f"Proctoring could not start: {monitor.last_error}")
            return 1

        elapsed = 0.0
        while monitor.status is MonitorStatus.READY:
            if args.duration and elapsed >= args.duration:
                break
            await asyncio.sleep(0.5)
            elapsed += 0.5

        if monitor.status is MonitorStatus.ERROR:
            logger.error(f"Proctoring stopped with an error: {monitor.last_error}")
            exit_code = 1
    finally:
        await monitor.stop()
        # We acquired the camera, so we release it
        camera.release()
        summarize(store)
    return exit_code


def summarize(store: ProctorStore, stream=None) -> None:
    stream = stream or sys.stdout
    snapshot = store.snapshot()
    print(f"Warnings: {snapshot.warning_count}", file=stream)
    for violation in snapshot.violations:
        print(f"  {int(violation.timestamp)}  {violation.type.value:<15} {violation.message}", file=stream)


def main(argv=None) -> Optional[int]:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
