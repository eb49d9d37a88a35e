"""Negotiation Coordinator - 릴레이 이벤트를 Peer Session 협상으로 변환

- 원격 멤버별 메시지는 채널이 전달한 순서대로 처리 (멤버별 FIFO 락)
- member-left는 즉시 세션을 정리해 진행 중인 협상을 중단시킨다
- answer 생성은 (offer 수신, 렌더 대상 준비) 중 나중에 일어난 쪽에서 정확히 한 번 실행
- 협상 실패는 해당 세션만 failed로 만들고 재시도하지 않는다
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection

from peerlink.client.collaborators import LocalMediaSource, LoggingObserver, NoMediaSource, SessionObserver
from peerlink.client.ice_buffer import IceCandidateBuffer
from peerlink.client.peer_session import NegotiationPhase, NegotiationRole, PeerSession
from peerlink.core.exceptions import ConnectionLost, MalformedMessage, NegotiationFailure, SessionClosed
from peerlink.core.signaling_config import USER_LEFT_REASON, WSCloseCode
from peerlink.schemas.signaling import (
    AnswerMessage,
    Capabilities,
    IceCandidateMessage,
    InitialMessage,
    JoinRejectedMessage,
    JoinSuccessMessage,
    MemberInfo,
    MemberJoinedMessage,
    MemberLeftMessage,
    OfferMessage,
    decode_message,
)
from peerlink.services.channel import SignalingChannel

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], RTCPeerConnection]


def default_connection_factory(ice_server_urls: list[str]) -> ConnectionFactory:
    """ICE 서버 설정을 적용한 aiortc RTCPeerConnection 팩토리"""
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_server_urls])

    def factory() -> RTCPeerConnection:
        return RTCPeerConnection(configuration=config)

    return factory


class NegotiationCoordinator:
    """원격 멤버별 Peer Session 생성/정리 및 offer/answer/ICE 교환"""

    def __init__(
        self,
        channel: SignalingChannel,
        connection_factory: ConnectionFactory,
        media_source: LocalMediaSource | None = None,
        observer: SessionObserver | None = None,
        capabilities: Capabilities | None = None,
        require_render_target: bool = True,
    ):
        """
        Args:
            channel: 릴레이와 연결된 시그널링 채널
            connection_factory: 새 연결 핸들 생성 함수
            media_source: 로컬 미디어 트랙 제공자
            observer: UI 옵저버
            capabilities: initial 메시지로 알릴 capability
            require_render_target: False면 렌더 대상 준비를 기다리지 않고 answer 생성
        """
        self.channel = channel
        self.connection_factory = connection_factory
        self.media_source = media_source or NoMediaSource()
        self.observer = observer or LoggingObserver()
        self.capabilities = capabilities or Capabilities(supports_realtime_media=True, client_family="aiortc")
        self.require_render_target = require_render_target

        self.member_id: int | None = None
        self.room_id: str | None = None
        self.members: dict[int, MemberInfo] = {}
        self.sessions: dict[int, PeerSession] = {}

        self._locks: dict[int, asyncio.Lock] = {}
        self._early_candidates: dict[int, IceCandidateBuffer] = {}
        self._render_ready: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._joined = asyncio.Event()
        self._close_status: tuple[int | None, str] | None = None
        self._closing = False

        channel.on_message(self.handle_frame)
        channel.on_close(self._handle_channel_closed)

    # ===== 수명 주기 =====

    def announce(self) -> None:
        """연결 직후 capability 자기소개 전송"""
        self.channel.send(InitialMessage(capabilities=self.capabilities))

    async def run(self) -> None:
        """initial 전송 후 채널 수신 루프 실행 (채널이 닫힐 때까지)"""
        self.announce()
        await self.channel.run()

    async def wait_joined(self) -> int:
        """join-success 수신 대기 후 자신의 멤버 ID 반환

        Raises:
            ConnectionLost: 입장 전에 채널이 닫힌 경우 (입장 거부 포함)
        """
        await self._joined.wait()
        if self.member_id is None:
            code, reason = self._close_status or (None, "")
            raise ConnectionLost(code, reason)
        return self.member_id

    async def settle(self) -> None:
        """예약된 협상 단계가 모두 끝날 때까지 대기"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, code: int = WSCloseCode.NORMAL, reason: str = USER_LEFT_REASON) -> None:
        """모든 세션 정리, 로컬 미디어 중지, 채널 종료"""
        if self._closing:
            return
        self._closing = True
        await self._teardown_all()
        self.media_source.stop()
        await self.channel.close(code, reason)

    async def _handle_channel_closed(self, code: int | None, reason: str) -> None:
        self._close_status = (code, reason)
        # 입장 전에 닫히면 wait_joined() 대기자를 깨운다
        self._joined.set()
        await self._teardown_all()
        self.observer.on_disconnected(code, reason)

    async def _teardown_all(self) -> None:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self._early_candidates.clear()
        for session in sessions:
            session.detach()
        for task in list(self._tasks):
            task.cancel()
        for session in sessions:
            await session.close()

    # ===== 수신 디스패치 =====

    def handle_frame(self, raw: str) -> None:
        """채널 프레임 하나 처리 (파싱 실패는 로그 후 무시)"""
        try:
            message = decode_message(raw)
        except MalformedMessage as e:
            logger.warning(f"Dropping message from relay: {e}")
            return

        match message:
            case JoinSuccessMessage():
                self._on_join_success(message)
            case JoinRejectedMessage():
                logger.error(f"Join rejected by relay: {message.message}")
                self.observer.on_join_rejected(message.message)
            case MemberJoinedMessage():
                self._on_member_joined(message.member)
            case MemberLeftMessage():
                self._on_member_left(message.member_id)
            case OfferMessage() | AnswerMessage() | IceCandidateMessage():
                self._on_negotiation_message(message)
            case _:
                logger.warning(f"Unexpected {message.kind} message from relay")

    def _on_join_success(self, message: JoinSuccessMessage) -> None:
        self.member_id = message.member_id
        self.room_id = message.room_id
        logger.info(
            f"Joined room {message.room_id} as member {message.member_id} "
            f"with {len(message.members)} existing member(s)"
        )
        self._joined.set()
        for member in message.members:
            self._on_member_joined(member)

    def _on_member_joined(self, member: MemberInfo) -> None:
        if member.member_id == self.member_id:
            return
        is_new = member.member_id not in self.members
        self.members[member.member_id] = member
        if not is_new:
            return

        self.observer.on_member_joined(member.member_id)
        if member.member_id in self.sessions or not self._should_offer(member.member_id):
            return
        self._schedule(member.member_id, self._start_offer, member.member_id)

    def _on_member_left(self, member_id: int) -> None:
        self.members.pop(member_id, None)
        self._early_candidates.pop(member_id, None)
        self._render_ready.discard(member_id)
        self._locks.pop(member_id, None)

        session = self.sessions.pop(member_id, None)
        if session is not None:
            # 콜백 해제를 먼저 동기적으로 수행해 이후 continuation이 세션을 건드리지 못하게 함
            session.detach()
            self._spawn(session.close())
        self.observer.on_member_left(member_id)

    def _on_negotiation_message(self, message: OfferMessage | AnswerMessage | IceCandidateMessage) -> None:
        remote_id = message.from_
        if remote_id is None:
            logger.warning(f"Dropping {message.kind} without 'from'")
            return
        if remote_id not in self.members:
            logger.warning(f"Dropping {message.kind} from unknown member {remote_id}")
            return

        if isinstance(message, OfferMessage):
            self._schedule(remote_id, self._handle_offer, message)
        elif isinstance(message, AnswerMessage):
            self._schedule(remote_id, self._handle_answer, message)
        else:
            self._schedule(remote_id, self._handle_remote_candidate, message)

    # ===== 스케줄링 =====

    def _should_offer(self, remote_id: int) -> bool:
        """glare 방지: ID가 작은 쪽(먼저 입장한 쪽)이 offer"""
        return self.member_id is not None and self.member_id < remote_id

    def _lock_for(self, member_id: int) -> asyncio.Lock:
        lock = self._locks.get(member_id)
        if lock is None:
            lock = self._locks[member_id] = asyncio.Lock()
        return lock

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule(self, member_id: int, step: Callable[..., Awaitable[None]], *args) -> asyncio.Task:
        """멤버별 FIFO 순서로 단계 실행 예약"""
        lock = self._lock_for(member_id)
        return self._spawn(self._run_serialized(member_id, lock, step, *args))

    async def _run_serialized(
        self,
        member_id: int,
        lock: asyncio.Lock,
        step: Callable[..., Awaitable[None]],
        *args,
    ) -> None:
        async with lock:
            try:
                await step(*args)
            except SessionClosed as e:
                logger.debug(f"Abandoned step for member {member_id}: {e}")
            except NegotiationFailure as e:
                self._fail_session(member_id, e)

    def _fail_session(self, member_id: int, error: NegotiationFailure) -> None:
        session = self.sessions.get(member_id)
        if session is None or session.closed:
            return
        logger.error(f"Negotiation with member {member_id} failed: {error}")
        session.fail()
        self.observer.on_session_failed(member_id, error)

    # ===== 세션 생성 =====

    def _create_session(self, remote_id: int, role: NegotiationRole) -> PeerSession:
        session = PeerSession(
            remote_id,
            role,
            self.connection_factory(),
            on_local_candidate=self._send_local_candidate,
            on_track=self.observer.on_track,
            on_connection_state=self._on_connection_state,
            on_phase_change=self._on_phase_change,
        )
        self.sessions[remote_id] = session

        # 세션 생성 전에 도착한 candidate 이관
        early = self._early_candidates.pop(remote_id, None)
        if early:
            session.ice_buffer.extend(early)

        if not self.require_render_target or remote_id in self._render_ready:
            session.attach_render_target()
        logger.info(f"Created {role.value} session for member {remote_id}")
        return session

    async def _local_tracks(self, session: PeerSession) -> list[MediaStreamTrack]:
        try:
            tracks = await self.media_source.get_tracks()
        except Exception as e:
            raise NegotiationFailure(session.remote_id, "local-media", e) from e
        session.ensure_open()
        return tracks

    # ===== 협상 단계 =====

    async def _start_offer(self, remote_id: int) -> None:
        """offerer: 연결 생성, 로컬 트랙 추가, offer 전송"""
        if remote_id in self.sessions or remote_id not in self.members:
            return
        session = self._create_session(remote_id, NegotiationRole.OFFERER)
        session.add_local_tracks(await self._local_tracks(session))

        sdp = await session.create_offer()
        self.channel.send(OfferMessage(for_=remote_id, sdp=sdp))
        session.mark_offer_sent()

    async def _handle_offer(self, message: OfferMessage) -> None:
        """answerer: 원격 offer 적용 후 answer 생성 (렌더 대상 준비 전이면 지연)"""
        remote_id = message.from_
        if remote_id not in self.members:
            return
        session = self.sessions.get(remote_id)
        if session is not None:
            if session.phase != NegotiationPhase.FAILED:
                logger.warning(
                    f"Ignoring offer from member {remote_id}: session already {session.phase.value}"
                )
                return
            # 상대가 재협상을 시작하면 실패한 세션을 교체
            self.sessions.pop(remote_id, None)
            await session.close()

        session = self._create_session(remote_id, NegotiationRole.ANSWERER)
        session.mark_answer_pending()
        await session.set_remote_description(message.sdp, "offer")
        session.add_local_tracks(await self._local_tracks(session))

        action = session.completion.provide(lambda: self._schedule(remote_id, self._complete_answer, session))
        if action is None:
            logger.info(f"Answer for member {remote_id} deferred until render target is ready")
            return
        action()

    async def _complete_answer(self, session: PeerSession) -> None:
        """지연된 협상 완료: answer 생성/설정 후 전송"""
        session.ensure_open()
        sdp = await session.create_answer()
        self.channel.send(AnswerMessage(for_=session.remote_id, sdp=sdp))

    async def _handle_answer(self, message: AnswerMessage) -> None:
        session = self.sessions.get(message.from_)
        if session is None or session.phase != NegotiationPhase.OFFER_SENT:
            logger.warning(f"Ignoring unexpected answer from member {message.from_}")
            return
        await session.set_remote_description(message.sdp, "answer")

    async def _handle_remote_candidate(self, message: IceCandidateMessage) -> None:
        remote_id = message.from_
        session = self.sessions.get(remote_id)
        if session is None:
            if remote_id not in self.members:
                return
            # offer보다 먼저 도착한 candidate는 세션 생성 시 이관
            self._early_candidates.setdefault(remote_id, IceCandidateBuffer()).push(message.candidate)
            return
        await session.add_remote_candidate(message.candidate)

    # ===== 세션 콜백 =====

    def _send_local_candidate(self, remote_id: int, candidate: dict) -> None:
        # 원격 description 상태와 무관하게 즉시 전송
        self.channel.send(IceCandidateMessage(for_=remote_id, candidate=candidate))

    def _on_connection_state(self, remote_id: int, state: str) -> None:
        if state == "failed":
            self._fail_session(remote_id, NegotiationFailure(remote_id, "connection"))

    def _on_phase_change(self, remote_id: int, phase: NegotiationPhase) -> None:
        self.observer.on_phase_change(remote_id, phase.value)

    # ===== UI 통지 =====

    def render_target_ready(self, member_id: int) -> None:
        """UI의 렌더 대상 준비 통지 (offer 수신 전후 어느 때든 호출 가능)"""
        self._render_ready.add(member_id)
        session = self.sessions.get(member_id)
        if session is None:
            return
        action = session.attach_render_target()
        if action is not None:
            action()

    def get_session(self, member_id: int) -> PeerSession | None:
        return self.sessions.get(member_id)
