"""NegotiationCoordinator 단위 테스트

- glare 방지: ID가 작은 쪽만 offer
- answer 생성은 (offer 수신, 렌더 대상 준비) 순서와 무관하게 한 번
- 세션 생성 전 ICE candidate 이관
- member-left / 채널 종료 시 세션 정리
- 실패 격리
"""

import asyncio
import json

import pytest

from peerlink.client.coordinator import NegotiationCoordinator
from peerlink.client.peer_session import NegotiationPhase, NegotiationRole
from peerlink.core.exceptions import ConnectionLost
from peerlink.schemas.signaling import (
    AnswerMessage,
    IceCandidateMessage,
    JoinRejectedMessage,
    JoinSuccessMessage,
    MemberInfo,
    MemberJoinedMessage,
    MemberLeftMessage,
    OfferMessage,
    encode_message,
)
from tests.fakes import FakeMediaSource, make_candidate, wait_until


# ===== Helpers =====


@pytest.fixture
def make_coordinator(channel, factory, observer, media):
    def _make(**kwargs):
        kwargs.setdefault("media_source", media)
        return NegotiationCoordinator(channel, factory, observer=observer, **kwargs)

    return _make


def deliver(coordinator: NegotiationCoordinator, message) -> None:
    coordinator.handle_frame(json.dumps(encode_message(message)))


def join(coordinator: NegotiationCoordinator, member_id: int, members: tuple[int, ...] = ()) -> None:
    deliver(
        coordinator,
        JoinSuccessMessage(
            member_id=member_id,
            room_id="123123",
            members=[MemberInfo(member_id=existing) for existing in members],
        ),
    )


def offer_from(member_id: int) -> OfferMessage:
    return OfferMessage(for_=None, from_=member_id, sdp="v=0 offer")


# ===== 입장 / offer =====


@pytest.mark.asyncio
async def test_announce_sends_initial(make_coordinator, channel):
    coordinator = make_coordinator()

    coordinator.announce()

    initial = channel.sent_of("initial")[0]
    assert initial["capabilities"]["supportsRealtimeMedia"] is True
    assert initial["capabilities"]["clientFamily"] == "aiortc"


@pytest.mark.asyncio
async def test_newcomer_waits_for_offers(make_coordinator, channel, factory, observer):
    """나중에 입장한 멤버는 기존 멤버에게 offer 하지 않음"""
    coordinator = make_coordinator()

    join(coordinator, 2, members=(0, 1))
    await coordinator.settle()

    assert coordinator.member_id == 2
    assert await coordinator.wait_joined() == 2
    assert set(coordinator.members) == {0, 1}
    assert observer.of("joined") == [(0,), (1,)]
    assert channel.sent_of("offer") == []
    assert factory.created == []


@pytest.mark.asyncio
async def test_existing_member_offers_to_newcomer(make_coordinator, channel, factory):
    """기존 멤버는 member-joined 수신 시 offer"""
    coordinator = make_coordinator()
    join(coordinator, 0)

    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    assert channel.sent_of("offer") == [{"kind": "offer", "for": 1, "sdp": "v=0 offer"}]
    session = coordinator.get_session(1)
    assert session.role == NegotiationRole.OFFERER
    assert session.phase == NegotiationPhase.OFFER_SENT
    assert [track.kind for track in factory.created[0].tracks] == ["audio", "video"]


@pytest.mark.asyncio
async def test_duplicate_member_joined_offers_once(make_coordinator, channel):
    coordinator = make_coordinator()
    join(coordinator, 0)

    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    assert len(channel.sent_of("offer")) == 1


@pytest.mark.asyncio
async def test_answer_completes_offerer(make_coordinator, factory):
    coordinator = make_coordinator()
    join(coordinator, 0)
    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    deliver(coordinator, AnswerMessage(from_=1, sdp="v=0 answer"))
    await coordinator.settle()

    assert factory.created[0].remoteDescription.type == "answer"
    assert coordinator.get_session(1).phase == NegotiationPhase.CONNECTED


@pytest.mark.asyncio
async def test_unexpected_answer_ignored(make_coordinator, factory):
    """offer를 보내지 않은 상대의 answer는 무시"""
    coordinator = make_coordinator()
    join(coordinator, 1, members=(0,))

    deliver(coordinator, AnswerMessage(from_=0, sdp="v=0 answer"))
    await coordinator.settle()

    assert coordinator.get_session(0) is None
    assert factory.created == []


@pytest.mark.asyncio
async def test_offer_from_unknown_member_dropped(make_coordinator, factory):
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))

    deliver(coordinator, offer_from(7))
    await coordinator.settle()

    assert factory.created == []


# ===== 지연된 answer =====


@pytest.mark.asyncio
async def test_offer_before_render_target_defers_answer(make_coordinator, channel, factory):
    """offer 먼저 → 렌더 대상 준비 시 answer 한 번"""
    # Given
    coordinator = make_coordinator()
    join(coordinator, 1, members=(0,))

    # When: offer 수신
    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    # Then: answer 보류
    session = coordinator.get_session(0)
    assert session.role == NegotiationRole.ANSWERER
    assert session.phase == NegotiationPhase.REMOTE_DESCRIPTION_SET
    assert channel.sent_of("answer") == []
    assert len(factory.created[0].tracks) == 2

    # When: 렌더 대상 준비 (중복 통지 포함)
    coordinator.render_target_ready(0)
    coordinator.render_target_ready(0)
    await coordinator.settle()

    # Then
    assert channel.sent_of("answer") == [{"kind": "answer", "for": 0, "sdp": "v=0 answer"}]
    assert factory.created[0].calls.count("createAnswer") == 1


@pytest.mark.asyncio
async def test_render_target_before_offer(make_coordinator, channel, factory):
    """렌더 대상 먼저 → offer 수신 시 바로 answer"""
    coordinator = make_coordinator()
    join(coordinator, 1, members=(0,))

    coordinator.render_target_ready(0)
    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    assert len(channel.sent_of("answer")) == 1
    assert factory.created[0].calls.count("createAnswer") == 1
    assert coordinator.get_session(0).phase == NegotiationPhase.CONNECTED


@pytest.mark.asyncio
async def test_render_target_not_required(make_coordinator, channel):
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))

    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    assert len(channel.sent_of("answer")) == 1


@pytest.mark.asyncio
async def test_render_target_ready_during_offer_processing(make_coordinator, channel, factory):
    """offer 처리 도중 렌더 대상이 준비돼도 answer는 한 번"""
    gate = asyncio.Event()
    factory.prepare(gates={"setRemoteDescription": gate})
    coordinator = make_coordinator()
    join(coordinator, 1, members=(0,))

    deliver(coordinator, offer_from(0))
    await wait_until(lambda: factory.created and "setRemoteDescription" in factory.created[0].calls)
    coordinator.render_target_ready(0)
    gate.set()
    await coordinator.settle()

    assert len(channel.sent_of("answer")) == 1


# ===== ICE =====


@pytest.mark.asyncio
async def test_candidates_before_offer_applied_in_order(make_coordinator, factory):
    """세션 생성 전 도착한 candidate는 description 적용 후 순서대로"""
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))

    deliver(coordinator, IceCandidateMessage(from_=0, candidate=make_candidate("a")))
    deliver(coordinator, IceCandidateMessage(from_=0, candidate=make_candidate("b")))
    deliver(coordinator, offer_from(0))
    deliver(coordinator, IceCandidateMessage(from_=0, candidate=make_candidate("c")))
    await coordinator.settle()

    connection = factory.created[0]
    assert [candidate.foundation for candidate in connection.added_candidates] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_malformed_candidate_does_not_stall_answer(make_coordinator, channel, factory, observer):
    """형식이 잘못된 candidate가 있어도 answer는 전송되고 이후 candidate도 적용"""
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))

    deliver(coordinator, IceCandidateMessage(from_=0, candidate={"candidate": ["junk"]}))
    deliver(coordinator, IceCandidateMessage(from_=0, candidate=make_candidate("b")))
    deliver(coordinator, offer_from(0))
    deliver(coordinator, IceCandidateMessage(from_=0, candidate={"candidate": 7, "sdpMid": "0"}))
    deliver(coordinator, IceCandidateMessage(from_=0, candidate=make_candidate("c")))
    await coordinator.settle()

    assert len(channel.sent_of("answer")) == 1
    assert [candidate.foundation for candidate in factory.created[0].added_candidates] == ["b", "c"]
    assert coordinator.get_session(0).phase == NegotiationPhase.CONNECTED
    assert observer.of("failed") == []


@pytest.mark.asyncio
async def test_local_candidate_sent_to_remote(make_coordinator, channel, factory):
    coordinator = make_coordinator()
    join(coordinator, 0)
    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    candidate = make_candidate("local")
    factory.created[0].emit("icecandidate", candidate)

    assert channel.sent_of("ice-candidate") == [{"kind": "ice-candidate", "for": 1, "candidate": candidate}]


# ===== 정리 =====


@pytest.mark.asyncio
async def test_member_left_mid_negotiation(make_coordinator, channel, factory, observer):
    """협상 중 퇴장하면 이후 단계는 실행되지 않음"""
    # Given: setRemoteDescription에서 멈춘 협상
    gate = asyncio.Event()
    factory.prepare(gates={"setRemoteDescription": gate})
    coordinator = make_coordinator()
    join(coordinator, 1, members=(0,))
    coordinator.render_target_ready(0)
    deliver(coordinator, offer_from(0))
    await wait_until(lambda: factory.created and "setRemoteDescription" in factory.created[0].calls)

    # When
    deliver(coordinator, MemberLeftMessage(member_id=0))
    assert coordinator.get_session(0) is None
    gate.set()
    await coordinator.settle()

    # Then
    connection = factory.created[0]
    assert connection.closed
    assert "createAnswer" not in connection.calls
    assert channel.sent_of("answer") == []
    assert observer.of("left") == [(0,)]
    assert observer.of("failed") == []
    assert 0 not in coordinator.members


@pytest.mark.asyncio
async def test_events_after_member_left_ignored(make_coordinator, factory, observer):
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))
    deliver(coordinator, offer_from(0))
    await coordinator.settle()
    connection = factory.created[0]

    deliver(coordinator, MemberLeftMessage(member_id=0))
    await coordinator.settle()
    phases_before = list(observer.of("phase"))
    connection.set_connection_state("failed")
    connection.emit("icecandidate", make_candidate("late"))

    assert observer.of("phase") == phases_before
    assert observer.of("failed") == []


@pytest.mark.asyncio
async def test_channel_close_tears_down_sessions(make_coordinator, channel, factory, observer):
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))
    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    channel.drop(1006, "")
    await channel.run()

    assert coordinator.sessions == {}
    assert factory.created[0].closed
    assert observer.of("disconnected") == [(1006, "")]


@pytest.mark.asyncio
async def test_close_stops_media_and_channel(make_coordinator, channel, factory, media, observer):
    coordinator = make_coordinator()
    join(coordinator, 0)
    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    await coordinator.close()

    assert media.stopped
    assert factory.created[0].closed
    assert channel.transport_closed == (1000, "User left conference")
    assert observer.of("disconnected") == [(1000, "User left conference")]


# ===== 실패 =====


@pytest.mark.asyncio
async def test_failure_isolated_to_one_session(make_coordinator, channel, factory, observer):
    """한 세션 실패가 다른 세션에 영향 없음"""
    factory.prepare(fail_on={"setRemoteDescription"})
    factory.prepare()
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 2, members=(0, 1))

    deliver(coordinator, offer_from(0))
    deliver(coordinator, offer_from(1))
    await coordinator.settle()

    assert coordinator.get_session(0).phase == NegotiationPhase.FAILED
    assert coordinator.get_session(1).phase == NegotiationPhase.CONNECTED
    failed = observer.of("failed")
    assert [(member_id, error.step) for member_id, error in failed] == [(0, "set-remote-offer")]
    assert [answer["for"] for answer in channel.sent_of("answer")] == [1]


@pytest.mark.asyncio
async def test_new_offer_replaces_failed_session(make_coordinator, channel, factory):
    """실패 후 상대가 다시 offer 하면 새 세션으로 협상"""
    factory.prepare(fail_on={"setRemoteDescription"})
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))
    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    assert factory.created[0].closed
    assert coordinator.get_session(0).connection is factory.created[1]
    assert len(channel.sent_of("answer")) == 1


@pytest.mark.asyncio
async def test_connection_failure_marks_session(make_coordinator, factory, observer):
    coordinator = make_coordinator(require_render_target=False)
    join(coordinator, 1, members=(0,))
    deliver(coordinator, offer_from(0))
    await coordinator.settle()

    factory.created[0].set_connection_state("failed")

    assert coordinator.get_session(0).phase == NegotiationPhase.FAILED
    assert [error.step for _, error in observer.of("failed")] == ["connection"]


@pytest.mark.asyncio
async def test_local_media_failure(make_coordinator, channel, observer):
    coordinator = make_coordinator(media_source=FakeMediaSource(fail=True))
    join(coordinator, 0)

    deliver(coordinator, MemberJoinedMessage(member=MemberInfo(member_id=1)))
    await coordinator.settle()

    assert coordinator.get_session(1).phase == NegotiationPhase.FAILED
    assert [error.step for _, error in observer.of("failed")] == ["local-media"]
    assert channel.sent_of("offer") == []


# ===== 기타 =====


@pytest.mark.asyncio
async def test_join_rejected_notifies_observer(make_coordinator, observer):
    coordinator = make_coordinator()

    deliver(coordinator, JoinRejectedMessage(message="Invalid room"))

    assert observer.of("rejected") == [("Invalid room",)]
    assert coordinator.member_id is None


@pytest.mark.asyncio
async def test_wait_joined_raises_when_closed_before_join(make_coordinator, channel):
    """입장 전에 채널이 닫히면 wait_joined()는 ConnectionLost"""
    coordinator = make_coordinator()
    waiter = asyncio.ensure_future(coordinator.wait_joined())

    deliver(coordinator, JoinRejectedMessage(message="Invalid room"))
    channel.drop(4000, "rejected")
    await channel.run()

    with pytest.raises(ConnectionLost) as exc_info:
        await asyncio.wait_for(waiter, timeout=1)
    assert exc_info.value.code == 4000
    assert exc_info.value.reason == "rejected"


@pytest.mark.asyncio
async def test_malformed_frames_ignored(make_coordinator, channel):
    coordinator = make_coordinator()

    coordinator.handle_frame("not json")
    coordinator.handle_frame('{"kind": "shout"}')
    coordinator.handle_frame('{"kind": "offer", "from": 0}')
    await coordinator.settle()

    assert channel.outbound == []
