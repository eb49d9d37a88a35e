"""Coordinator가 사용하는 외부 협력자 인터페이스

- 로컬 미디어 소스: 요청 시 로컬 트랙 제공
- UI 옵저버: 원격 트랙, 단계 변화, 실패 통지 수신 (협상 상태는 읽기만 함)
"""

import logging
from typing import Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from peerlink.core.exceptions import NegotiationFailure

logger = logging.getLogger(__name__)


class LocalMediaSource(Protocol):
    """로컬 미디어 트랙 제공자"""

    async def get_tracks(self) -> list[MediaStreamTrack]:
        """새 Peer Session에 붙일 로컬 트랙 반환"""
        ...

    def stop(self) -> None:
        """캡처 중지"""
        ...


class SessionObserver(Protocol):
    """UI 계층 옵저버"""

    def on_track(self, member_id: int, track: MediaStreamTrack) -> None: ...

    def on_phase_change(self, member_id: int, phase: str) -> None: ...

    def on_session_failed(self, member_id: int, error: NegotiationFailure) -> None: ...

    def on_member_joined(self, member_id: int) -> None: ...

    def on_member_left(self, member_id: int) -> None: ...

    def on_join_rejected(self, message: str) -> None: ...

    def on_disconnected(self, code: int | None, reason: str) -> None: ...


class NoMediaSource:
    """로컬 트랙 없이 수신만 하는 소스"""

    async def get_tracks(self) -> list[MediaStreamTrack]:
        return []

    def stop(self) -> None:
        pass


class MediaPlayerSource:
    """aiortc MediaPlayer 기반 로컬 미디어 (파일, 장치, 스트림 URL)

    하나의 캡처를 여러 Peer Session에 나눠 보내기 위해 MediaRelay로 구독한다.
    """

    def __init__(self, source: str, format: str | None = None, options: dict | None = None):
        self.source = source
        self.format = format
        self.options = options or {}
        self._player: MediaPlayer | None = None
        self._relay = MediaRelay()

    async def get_tracks(self) -> list[MediaStreamTrack]:
        if self._player is None:
            logger.info(f"Opening local media {self.source}")
            self._player = MediaPlayer(self.source, format=self.format, options=self.options)

        tracks = []
        for track in (self._player.audio, self._player.video):
            if track is not None:
                tracks.append(self._relay.subscribe(track))
        return tracks

    def stop(self) -> None:
        if self._player is None:
            return
        for track in (self._player.audio, self._player.video):
            if track is not None:
                track.stop()
        self._player = None


class LoggingObserver:
    """모든 통지를 로그로 남기는 기본 옵저버"""

    def on_track(self, member_id: int, track: MediaStreamTrack) -> None:
        logger.info(f"Remote {track.kind} track from member {member_id}")

    def on_phase_change(self, member_id: int, phase: str) -> None:
        logger.info(f"Session with member {member_id} is now {phase}")

    def on_session_failed(self, member_id: int, error: NegotiationFailure) -> None:
        logger.error(f"Session with member {member_id} failed: {error}")

    def on_member_joined(self, member_id: int) -> None:
        logger.info(f"Member {member_id} joined")

    def on_member_left(self, member_id: int) -> None:
        logger.info(f"Member {member_id} left")

    def on_join_rejected(self, message: str) -> None:
        logger.error(f"Join rejected: {message}")

    def on_disconnected(self, code: int | None, reason: str) -> None:
        logger.info(f"Disconnected from relay (code={code}, reason={reason!r})")
