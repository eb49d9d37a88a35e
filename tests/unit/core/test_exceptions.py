"""시그널링 에러 분류 단위 테스트"""

from peerlink.core.exceptions import (
    ConnectionLost,
    MalformedMessage,
    NegotiationFailure,
    RoomRejected,
    RouteNotFound,
    SignalingError,
    UnknownMessageKind,
)


def test_all_errors_share_base():
    """모든 에러는 SignalingError 하위"""
    errors = [
        RoomRejected("x"),
        MalformedMessage("bad"),
        UnknownMessageKind("shout"),
        RouteNotFound("123123", 7),
        NegotiationFailure(3, "set-remote-offer"),
        ConnectionLost(1006),
    ]

    assert all(isinstance(error, SignalingError) for error in errors)


def test_unknown_kind_is_malformed():
    """알 수 없는 kind도 malformed로 처리 가능"""
    error = UnknownMessageKind("shout")

    assert isinstance(error, MalformedMessage)
    assert error.kind == "shout"


def test_negotiation_failure_keeps_context():
    """실패 단계와 원인 보존"""
    cause = RuntimeError("bad sdp")
    error = NegotiationFailure(4, "set-remote-offer", cause)

    assert error.member_id == 4
    assert error.step == "set-remote-offer"
    assert error.cause is cause
    assert "set-remote-offer" in str(error)


def test_connection_lost_defaults():
    """코드 없이 끊긴 경우"""
    error = ConnectionLost()

    assert error.code is None
    assert error.reason == ""
