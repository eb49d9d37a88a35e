"""릴레이 메시지 핸들러 - Strategy Pattern 구현

릴레이는 `kind`와 `for`만 읽는다. 협상 메시지(offer/answer/ice-candidate)의
내용은 해석하지 않고 그대로 전달하며, `from`만 서버가 덮어쓴다.
"""

import logging
from typing import Protocol

from peerlink.core.exceptions import MalformedMessage, RoomRejected, RouteNotFound
from peerlink.core.signaling_config import REJECTED_MESSAGE, REJECTED_REASON, WSCloseCode
from peerlink.core.telemetry import get_relay_metrics
from peerlink.schemas.signaling import (
    InitialMessage,
    JoinRejectedMessage,
    JoinSuccessMessage,
    MemberJoinedMessage,
    MemberLeftMessage,
    RelayEnvelope,
    SignalingMessageKind,
    decode_envelope,
    decode_message,
)
from peerlink.services.channel import SignalingChannel
from peerlink.services.room_registry import Member, room_registry

logger = logging.getLogger(__name__)


class MessageHandler(Protocol):
    """메시지 핸들러 프로토콜"""

    async def handle(self, member: Member, envelope: RelayEnvelope, data: dict) -> None:
        """메시지 처리

        Args:
            member: 송신 멤버
            envelope: kind/for만 검증된 봉투
            data: 수신한 원본 메시지
        """
        ...


class InitialHandler:
    """INITIAL 메시지 핸들러 - capability 등록 후 입장 알림"""

    async def handle(self, member: Member, envelope: RelayEnvelope, data: dict) -> None:
        message: InitialMessage = decode_message(data)

        room_registry.update_capabilities(member.room_id, member.member_id, message.capabilities)

        # 다른 멤버들에게 새 멤버 알림
        room_registry.broadcast(
            member.room_id,
            MemberJoinedMessage(member=member.info()),
            exclude_member_id=member.member_id,
        )
        logger.info(
            f"Member {member.member_id} announced "
            f"{message.capabilities.client_family} {message.capabilities.client_version}"
        )


class NegotiationRelayHandler:
    """OFFER/ANSWER/ICE_CANDIDATE 메시지 핸들러 (통합)"""

    def __init__(self, kind: SignalingMessageKind):
        """
        Args:
            kind: offer, answer 또는 ice-candidate
        """
        self.kind = kind

    async def handle(self, member: Member, envelope: RelayEnvelope, data: dict) -> None:
        if envelope.for_ is None:
            raise MalformedMessage(f"{self.kind.value} from member {member.member_id} missing 'for'")

        # from은 항상 서버가 결정 (클라이언트 값은 신뢰하지 않음)
        payload = dict(data)
        payload["from"] = member.member_id

        try:
            room_registry.unicast(member.room_id, envelope.for_, payload)
        except RouteNotFound as e:
            logger.warning(f"Dropping {self.kind.value} from member {member.member_id}: {e}")
            get_relay_metrics().dropped_total.add(1, {"reason": "route_not_found"})
            return

        logger.debug(f"Relayed {self.kind.value} from {member.member_id} to {envelope.for_}")
        get_relay_metrics().relayed_total.add(1, {"kind": self.kind.value})


# 핸들러 레지스트리
HANDLERS: dict[str, MessageHandler] = {
    SignalingMessageKind.INITIAL: InitialHandler(),
    SignalingMessageKind.OFFER: NegotiationRelayHandler(SignalingMessageKind.OFFER),
    SignalingMessageKind.ANSWER: NegotiationRelayHandler(SignalingMessageKind.ANSWER),
    SignalingMessageKind.ICE_CANDIDATE: NegotiationRelayHandler(SignalingMessageKind.ICE_CANDIDATE),
}


async def dispatch_message(member: Member, envelope: RelayEnvelope, data: dict) -> bool:
    """kind에 따라 적절한 핸들러로 디스패치

    Returns:
        핸들러가 메시지를 처리했으면 True, 버렸으면 False
    """
    handler = HANDLERS.get(envelope.kind)
    if handler is None:
        logger.warning(f"Unknown message kind from member {member.member_id}: {envelope.kind!r}")
        get_relay_metrics().dropped_total.add(1, {"reason": "unknown_kind"})
        return False

    try:
        await handler.handle(member, envelope, data)
    except MalformedMessage as e:
        logger.warning(f"Dropping malformed {envelope.kind} from member {member.member_id}: {e}")
        get_relay_metrics().dropped_total.add(1, {"reason": "malformed"})
        return False
    return True


async def handle_frame(member: Member, raw: str | bytes) -> bool:
    """수신 프레임 하나 처리 (파싱 실패는 로그 후 무시, 채널은 유지)"""
    try:
        envelope, data = decode_envelope(raw)
    except MalformedMessage as e:
        logger.warning(f"Dropping unparsable frame from member {member.member_id}: {e}")
        get_relay_metrics().dropped_total.add(1, {"reason": "malformed"})
        return False
    return await dispatch_message(member, envelope, data)


async def accept_member(channel: SignalingChannel, room_id: str) -> Member | None:
    """룸 입장 처리

    거부 시 join-rejected 전송 후 4000 코드로 채널을 닫는다.

    Returns:
        입장한 멤버 또는 None (거부)
    """
    try:
        member, existing = room_registry.join(channel, room_id)
    except RoomRejected:
        channel.send(JoinRejectedMessage(message=REJECTED_MESSAGE))
        await channel.close(WSCloseCode.ROOM_REJECTED, REJECTED_REASON)
        get_relay_metrics().rejections_total.add(1)
        return None

    channel.send(
        JoinSuccessMessage(member_id=member.member_id, room_id=room_id, members=existing)
    )
    get_relay_metrics().joins_total.add(1)
    get_relay_metrics().members.add(1)
    return member


async def release_member(channel: SignalingChannel) -> Member | None:
    """채널 종료 시 멤버 제거 및 퇴장 알림 (여러 번 호출해도 안전)"""
    member = room_registry.leave(channel)
    if member is None:
        return None

    room_registry.broadcast(member.room_id, MemberLeftMessage(member_id=member.member_id))
    get_relay_metrics().members.add(-1)
    return member
