"""peerlink 헤드리스 클라이언트

사용법:
    peerlink-client --url ws://localhost:8443 --room 123123 --play input.mp4
    peerlink-client --record-dir ./recordings
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from peerlink.client.channel import connect_to_room
from peerlink.client.collaborators import LoggingObserver, MediaPlayerSource, NoMediaSource
from peerlink.client.coordinator import NegotiationCoordinator, default_connection_factory
from peerlink.core.config import get_settings

logger = logging.getLogger(__name__)


class SinkObserver(LoggingObserver):
    """원격 트랙마다 recorder(또는 blackhole)를 붙여 소비하는 옵저버"""

    def __init__(self, record_dir: Path | None = None):
        self.record_dir = record_dir
        self._sinks: dict[int, list[MediaBlackhole | MediaRecorder]] = {}
        self._tasks: set[asyncio.Task] = set()

    def _new_sink(self, member_id: int, track: MediaStreamTrack) -> MediaBlackhole | MediaRecorder:
        if self.record_dir is None:
            return MediaBlackhole()
        suffix = "wav" if track.kind == "audio" else "mp4"
        return MediaRecorder(str(self.record_dir / f"member-{member_id}-{track.kind}.{suffix}"))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Media sink task failed: {task.exception()}")

    def on_track(self, member_id: int, track: MediaStreamTrack) -> None:
        super().on_track(member_id, track)
        sink = self._new_sink(member_id, track)
        sink.addTrack(track)
        self._sinks.setdefault(member_id, []).append(sink)
        self._spawn(sink.start())

    def on_member_left(self, member_id: int) -> None:
        super().on_member_left(member_id)
        for sink in self._sinks.pop(member_id, []):
            self._spawn(sink.stop())

    async def stop(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        sinks, self._sinks = self._sinks, {}
        for member_sinks in sinks.values():
            for sink in member_sinks:
                await sink.stop()


async def run_client(args: argparse.Namespace) -> None:
    settings = get_settings()
    channel = await connect_to_room(
        args.url,
        args.room,
        high_water_mark=settings.send_high_water_mark,
        low_water_mark=settings.send_low_water_mark,
        max_payload_length=settings.max_payload_length,
    )

    media = MediaPlayerSource(args.play, format=args.format) if args.play else NoMediaSource()
    record_dir = Path(args.record_dir) if args.record_dir else None
    if record_dir is not None:
        record_dir.mkdir(parents=True, exist_ok=True)
    observer = SinkObserver(record_dir)

    coordinator = NegotiationCoordinator(
        channel,
        default_connection_factory(settings.ice_server_urls),
        media_source=media,
        observer=observer,
        require_render_target=False,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(coordinator.close()))

    try:
        await coordinator.run()
    finally:
        await coordinator.close()
        await observer.stop()
        logger.info("Client stopped")


def main() -> None:
    """`peerlink-client` 진입점"""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="peerlink 메시 클라이언트")
    parser.add_argument("--url", default=settings.signaling_url, help="릴레이 주소 (ws:// 또는 wss://)")
    parser.add_argument("--room", default=settings.room_id, help="참여할 방 ID")
    parser.add_argument("--play", help="로컬 미디어로 보낼 파일/장치/스트림")
    parser.add_argument("--format", help="--play 입력 포맷 (예: v4l2, avfoundation)")
    parser.add_argument("--record-dir", help="원격 미디어를 멤버별 파일로 저장할 디렉토리")
    parser.add_argument("--verbose", "-v", action="store_true", help="디버그 로그 출력")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    asyncio.run(run_client(args))


if __name__ == "__main__":
    main()
