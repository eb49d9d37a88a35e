"""룸 레지스트리 - 룸 멤버십 관리 및 메시지 전송"""

import itertools
import logging
from dataclasses import dataclass

from pydantic import BaseModel

from peerlink.core.config import get_settings
from peerlink.core.exceptions import RoomRejected, RouteNotFound
from peerlink.schemas.signaling import Capabilities, MemberInfo
from peerlink.services.channel import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass
class Member:
    """연결된 참여자 (채널과 함께 생성/소멸)"""
    member_id: int
    room_id: str
    channel: SignalingChannel
    capabilities: Capabilities

    def info(self) -> MemberInfo:
        """공개 정보만 반환"""
        return MemberInfo(member_id=self.member_id, capabilities=self.capabilities)


class RoomRegistry:
    """룸별 멤버 관리

    단일 이벤트 루프에서 핸들러가 선점 없이 실행되므로 별도 락이 필요 없다.
    """

    def __init__(self, allowed_room_ids: set[str] | frozenset[str]):
        self.allowed_room_ids = frozenset(allowed_room_ids)
        # room_id -> {member_id -> Member}
        self._rooms: dict[str, dict[int, Member]] = {}
        # channel -> member_id
        self._channel_members: dict[SignalingChannel, int] = {}
        self._id_counter = itertools.count()

    def join(self, channel: SignalingChannel, room_id: str) -> tuple[Member, list[MemberInfo]]:
        """룸 입장

        Returns:
            (새 멤버, 기존 멤버 공개 정보 목록)

        Raises:
            RoomRejected: 설정되지 않은 룸 ID
        """
        if room_id not in self.allowed_room_ids:
            logger.warning(f"Rejected join for room {room_id!r}")
            raise RoomRejected(room_id)

        if channel in self._channel_members:
            # 한 채널은 한 룸에만 속할 수 있음
            self.leave(channel)

        existing = [member.info() for member in self._rooms.get(room_id, {}).values()]

        member = Member(
            member_id=next(self._id_counter),
            room_id=room_id,
            channel=channel,
            capabilities=Capabilities(),
        )
        self._rooms.setdefault(room_id, {})[member.member_id] = member
        self._channel_members[channel] = member.member_id

        logger.info(f"Member {member.member_id} joined room {room_id} ({len(existing)} already present)")
        return member, existing

    def leave(self, channel: SignalingChannel) -> Member | None:
        """채널에 연결된 멤버 제거 (없으면 None)"""
        member_id = self._channel_members.pop(channel, None)
        if member_id is None:
            return None

        for room_id, members in list(self._rooms.items()):
            member = members.pop(member_id, None)
            if member is None:
                continue
            # 룸에 아무도 없으면 정리
            if not members:
                del self._rooms[room_id]
            logger.info(f"Member {member_id} left room {room_id}")
            return member
        return None

    def broadcast(
        self,
        room_id: str,
        message: BaseModel | dict,
        exclude_member_id: int | None = None,
    ) -> int:
        """룸 멤버 전체에게 전송 (특정 멤버 제외 가능)

        Returns:
            전송 대상 멤버 수
        """
        members = self._rooms.get(room_id)
        if not members:
            return 0

        sent = 0
        for member_id, member in list(members.items()):
            if member_id == exclude_member_id:
                continue
            member.channel.send(message)
            sent += 1
        return sent

    def unicast(self, room_id: str, to_member_id: int, message: BaseModel | dict) -> None:
        """특정 멤버에게 전송

        Raises:
            RouteNotFound: 대상이 이미 퇴장
        """
        member = self._rooms.get(room_id, {}).get(to_member_id)
        if member is None:
            raise RouteNotFound(room_id, to_member_id)
        member.channel.send(message)

    def update_capabilities(self, room_id: str, member_id: int, capabilities: Capabilities) -> Member | None:
        """멤버 capability 갱신"""
        member = self.get_member(room_id, member_id)
        if member is not None:
            member.capabilities = capabilities
        return member

    def get_members(self, room_id: str) -> list[Member]:
        """룸 멤버 목록 조회"""
        return list(self._rooms.get(room_id, {}).values())

    def get_member(self, room_id: str, member_id: int) -> Member | None:
        """특정 멤버 조회"""
        return self._rooms.get(room_id, {}).get(member_id)

    def member_for(self, channel: SignalingChannel) -> Member | None:
        """채널에 연결된 멤버 조회"""
        member_id = self._channel_members.get(channel)
        if member_id is None:
            return None
        for members in self._rooms.values():
            if member_id in members:
                return members[member_id]
        return None

    def get_member_count(self, room_id: str) -> int:
        """룸 멤버 수 조회"""
        return len(self._rooms.get(room_id, {}))


# 싱글톤 인스턴스
room_registry = RoomRegistry({get_settings().room_id})
