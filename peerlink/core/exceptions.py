"""시그널링 에러 분류

- RoomRejected: 룸 ID 불일치 (연결 시도 종료)
- MalformedMessage: JSON 파싱 실패 또는 필수 필드 누락 (로그 후 무시)
- RouteNotFound: unicast 대상이 이미 퇴장 (로그 후 무시, 송신자에게 알리지 않음)
- NegotiationFailure: description/ICE 적용 실패 (해당 피어만 failed 처리)
- ConnectionLost: 전송 계층 종료 (퇴장/세션 정리 트리거)
"""


class SignalingError(Exception):
    """시그널링 기본 에러"""

    pass


class RoomRejected(SignalingError):
    """설정된 룸 ID와 다른 룸으로 입장 요청"""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Rejected join for room {room_id!r}")


class MalformedMessage(SignalingError):
    """파싱 불가능하거나 필수 필드가 빠진 메시지"""

    pass


class UnknownMessageKind(MalformedMessage):
    """알 수 없는 kind"""

    def __init__(self, kind: object):
        self.kind = kind
        super().__init__(f"Unknown message kind: {kind!r}")


class RouteNotFound(SignalingError):
    """unicast 대상 멤버가 룸에 없음"""

    def __init__(self, room_id: str, member_id: int):
        self.room_id = room_id
        self.member_id = member_id
        super().__init__(f"Member {member_id} not found in room {room_id!r}")


class NegotiationFailure(SignalingError):
    """전송 계층이 description 또는 ICE candidate 적용을 거부"""

    def __init__(self, member_id: int, step: str, cause: BaseException | None = None):
        self.member_id = member_id
        self.step = step
        self.cause = cause
        super().__init__(f"Negotiation with member {member_id} failed at {step}: {cause}")


class ConnectionLost(SignalingError):
    """채널의 전송 계층이 닫힘"""

    def __init__(self, code: int | None = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Connection lost (code={code}, reason={reason!r})")


class SessionClosed(SignalingError):
    """이미 정리된 Peer Session에 대한 continuation"""

    pass
