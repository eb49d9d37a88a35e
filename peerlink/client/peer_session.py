"""Peer Session - 원격 멤버 한 명과의 협상 상태 및 연결 핸들

상태 전이:
    created -> offer-sent | answer-pending -> remote-description-set
            -> local-description-set -> connected -> closed
    closed가 아닌 모든 상태에서 failed로 전이 가능

연결 핸들의 콜백(icecandidate, track, connectionstatechange)은 생성자에서 등록하고
close() 에서 항상 먼저 해제한다. 해제 이후 예약돼 있던 continuation은
ensure_open()에서 SessionClosed로 중단된다.
"""

import logging
from collections.abc import Callable
from enum import Enum

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription

from peerlink.client.ice_buffer import IceCandidateBuffer
from peerlink.client.once import DeferredAction
from peerlink.core.exceptions import NegotiationFailure, SessionClosed
from peerlink.utils.ice_parser import ICECandidateParser

logger = logging.getLogger(__name__)

RENDER_TARGET = "render-target"


class NegotiationRole(str, Enum):
    """협상 역할"""
    OFFERER = "offerer"
    ANSWERER = "answerer"


class NegotiationPhase(str, Enum):
    """협상 단계"""
    CREATED = "created"
    OFFER_SENT = "offer-sent"
    ANSWER_PENDING = "answer-pending"
    REMOTE_DESCRIPTION_SET = "remote-description-set"
    LOCAL_DESCRIPTION_SET = "local-description-set"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationPhase.CLOSED, NegotiationPhase.FAILED)


_PHASE_RANK = {
    NegotiationPhase.CREATED: 0,
    NegotiationPhase.OFFER_SENT: 1,
    NegotiationPhase.ANSWER_PENDING: 1,
    NegotiationPhase.REMOTE_DESCRIPTION_SET: 2,
    NegotiationPhase.LOCAL_DESCRIPTION_SET: 3,
    NegotiationPhase.CONNECTED: 4,
    NegotiationPhase.CLOSED: 5,
    NegotiationPhase.FAILED: 5,
}


class PeerSession:
    """원격 멤버 한 명과의 협상 세션 (Coordinator가 단독 소유)"""

    def __init__(
        self,
        remote_id: int,
        role: NegotiationRole,
        connection: RTCPeerConnection,
        on_local_candidate: Callable[[int, dict], None],
        on_track: Callable[[int, MediaStreamTrack], None],
        on_connection_state: Callable[[int, str], None],
        on_phase_change: Callable[[int, NegotiationPhase], None] | None = None,
    ):
        """
        Args:
            remote_id: 원격 멤버 ID
            role: offerer 또는 answerer
            connection: 연결 핸들 (aiortc RTCPeerConnection 호환)
            on_local_candidate: 로컬 ICE candidate 발견 시 (remote_id, candidate)
            on_track: 원격 트랙을 렌더 대상에 넘길 때 (remote_id, track)
            on_connection_state: 연결 상태 변화 시 (remote_id, state)
            on_phase_change: 단계 변화 시 (remote_id, phase)
        """
        self.remote_id = remote_id
        self.role = role
        self.connection = connection
        self.phase = NegotiationPhase.CREATED
        self.ice_buffer = IceCandidateBuffer()
        self.completion = DeferredAction([RENDER_TARGET])

        self._on_local_candidate = on_local_candidate
        self._on_track = on_track
        self._on_connection_state = on_connection_state
        self._on_phase_change = on_phase_change
        self._pending_tracks: list[MediaStreamTrack] = []
        self._closed = False
        self._released = False

        # 연결 핸들 콜백 등록 (close()에서 반드시 해제)
        self._listeners: list[tuple[str, Callable]] = []
        self._listen("icecandidate", self._handle_local_candidate)
        self._listen("track", self._handle_track)
        self._listen("connectionstatechange", self._handle_connection_state)

    # ===== 콜백 =====

    def _listen(self, event: str, callback: Callable) -> None:
        self.connection.on(event, callback)
        self._listeners.append((event, callback))

    def _detach_listeners(self) -> None:
        for event, callback in self._listeners:
            try:
                self.connection.remove_listener(event, callback)
            except KeyError:
                pass
        self._listeners.clear()

    def _handle_local_candidate(self, candidate) -> None:
        if self._closed or candidate is None:
            return
        if not isinstance(candidate, dict):
            candidate = ICECandidateParser.serialize(candidate)
        self._on_local_candidate(self.remote_id, candidate)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        if self._closed:
            return
        # 렌더 대상이 아직 없으면 보관했다가 attach_render_target()에서 전달
        if not self.render_target_attached:
            logger.debug(f"Holding {track.kind} track from member {self.remote_id} until render target")
            self._pending_tracks.append(track)
            return
        self._on_track(self.remote_id, track)

    def _handle_connection_state(self) -> None:
        if self._closed:
            return
        state = self.connection.connectionState
        logger.info(f"Connection state with member {self.remote_id}: {state}")
        if state == "connected":
            self.advance(NegotiationPhase.CONNECTED)
        self._on_connection_state(self.remote_id, state)

    # ===== 상태 =====

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def render_target_attached(self) -> bool:
        return self.completion.is_satisfied(RENDER_TARGET)

    @property
    def accepts_candidates(self) -> bool:
        """원격 candidate를 바로 적용할 수 있는 단계인지"""
        return (
            not self.phase.is_terminal
            and self.phase.rank >= NegotiationPhase.REMOTE_DESCRIPTION_SET.rank
        )

    def ensure_open(self) -> None:
        """정리된 세션이면 SessionClosed"""
        if self._closed:
            raise SessionClosed(f"Session with member {self.remote_id} is closed")

    def advance(self, phase: NegotiationPhase) -> None:
        """앞 단계로만 전이 (closed/failed 이후에는 무시)"""
        if self.phase.is_terminal or phase.rank < self.phase.rank:
            return
        if phase == self.phase:
            return
        self._set_phase(phase)

    def mark_offer_sent(self) -> None:
        self.ensure_open()
        self.advance(NegotiationPhase.OFFER_SENT)

    def mark_answer_pending(self) -> None:
        self.ensure_open()
        self.advance(NegotiationPhase.ANSWER_PENDING)

    def fail(self) -> None:
        """failed로 전이 (closed 이후에는 무시)"""
        if self._closed or self.phase == NegotiationPhase.FAILED:
            return
        self._set_phase(NegotiationPhase.FAILED)

    def _set_phase(self, phase: NegotiationPhase) -> None:
        logger.debug(f"Session {self.remote_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        if self._on_phase_change is not None and phase != NegotiationPhase.CLOSED:
            self._on_phase_change(self.remote_id, phase)

    def diagnostics(self) -> dict[str, str | None]:
        """연결 진단 정보 (읽기 전용)"""
        return {
            "phase": self.phase.value,
            "signalingState": getattr(self.connection, "signalingState", None),
            "iceGatheringState": getattr(self.connection, "iceGatheringState", None),
            "iceConnectionState": getattr(self.connection, "iceConnectionState", None),
            "connectionState": getattr(self.connection, "connectionState", None),
        }

    # ===== 렌더 대상 =====

    def attach_render_target(self) -> Callable[[], object] | None:
        """렌더 대상 준비 통지

        보관 중이던 원격 트랙을 전달하고, 지연된 협상 완료 동작의 소유권을 얻었으면 반환한다.
        """
        if self._closed:
            return None
        action = self.completion.satisfy(RENDER_TARGET)
        tracks, self._pending_tracks = self._pending_tracks, []
        for track in tracks:
            self._on_track(self.remote_id, track)
        return action

    # ===== 협상 단계 =====

    def add_local_tracks(self, tracks: list[MediaStreamTrack]) -> None:
        self.ensure_open()
        for track in tracks:
            self.connection.addTrack(track)

    async def create_offer(self) -> str:
        """로컬 offer 생성 및 설정, SDP 반환"""
        self.ensure_open()
        try:
            offer = await self.connection.createOffer()
            self.ensure_open()
            await self.connection.setLocalDescription(offer)
        except SessionClosed:
            raise
        except Exception as e:
            raise NegotiationFailure(self.remote_id, "create-offer", e) from e
        self.ensure_open()
        return self.connection.localDescription.sdp

    async def create_answer(self) -> str:
        """로컬 answer 생성 및 설정, SDP 반환"""
        self.ensure_open()
        try:
            answer = await self.connection.createAnswer()
            self.ensure_open()
            await self.connection.setLocalDescription(answer)
        except SessionClosed:
            raise
        except Exception as e:
            raise NegotiationFailure(self.remote_id, "create-answer", e) from e
        self.ensure_open()
        self.advance(NegotiationPhase.LOCAL_DESCRIPTION_SET)
        return self.connection.localDescription.sdp

    async def set_remote_description(self, sdp: str, sdp_type: str) -> None:
        """원격 description 설정 후 버퍼된 candidate를 도착 순서대로 적용"""
        self.ensure_open()
        try:
            await self.connection.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        except Exception as e:
            raise NegotiationFailure(self.remote_id, f"set-remote-{sdp_type}", e) from e
        self.ensure_open()
        self.advance(NegotiationPhase.REMOTE_DESCRIPTION_SET)

        buffered = self.ice_buffer.drain()
        if buffered:
            logger.debug(f"Flushing {len(buffered)} buffered candidates for member {self.remote_id}")
        for candidate in buffered:
            await self._apply_candidate(candidate)

    async def add_remote_candidate(self, candidate: dict | None) -> None:
        """원격 candidate 적용 (원격 description 전이면 버퍼링, failed 이후에는 버림)"""
        self.ensure_open()
        if self.phase.is_terminal:
            logger.debug(f"Dropping candidate for {self.phase.value} session with member {self.remote_id}")
            return
        if not self.accepts_candidates:
            self.ice_buffer.push(candidate)
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: dict | None) -> None:
        self.ensure_open()
        ice_candidate = ICECandidateParser.parse(candidate)
        if ice_candidate is None:
            # end-of-candidates 또는 해석 불가
            return
        try:
            await self.connection.addIceCandidate(ice_candidate)
        except Exception as e:
            raise NegotiationFailure(self.remote_id, "add-ice-candidate", e) from e

    # ===== 정리 =====

    def detach(self) -> None:
        """콜백 해제 및 closed 전이 (동기, 멱등)"""
        if self._closed:
            return
        self._closed = True
        self._detach_listeners()
        self.completion.cancel()
        self.ice_buffer.clear()
        self._pending_tracks.clear()
        self._set_phase(NegotiationPhase.CLOSED)

    async def close(self) -> None:
        """콜백을 먼저 해제한 뒤 연결 핸들 종료"""
        self.detach()
        if self._released:
            return
        self._released = True
        try:
            await self.connection.close()
        except Exception as e:
            logger.warning(f"Failed to close connection with member {self.remote_id}: {e}")
