"""시그널링 메시지 Pydantic 스키마

모든 메시지는 `kind` 태그를 가진 JSON 객체 하나로 전송된다.
`for` 필드가 있으면 특정 멤버에게 가는 unicast, 없으면 룸 broadcast.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from peerlink.core.exceptions import MalformedMessage, UnknownMessageKind
from peerlink.core.signaling_config import DEFAULT_CLIENT_FAMILY, DEFAULT_CLIENT_VERSION


class SignalingMessageKind(str, Enum):
    """시그널링 메시지 종류"""
    # Client -> Server
    INITIAL = "initial"
    # Server -> Client
    JOIN_SUCCESS = "join-success"
    JOIN_REJECTED = "join-rejected"
    MEMBER_JOINED = "member-joined"
    MEMBER_LEFT = "member-left"
    # 양방향 (서버는 내용을 해석하지 않고 중계)
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


_KNOWN_KINDS = frozenset(kind.value for kind in SignalingMessageKind)


class Capabilities(BaseModel):
    """클라이언트 capability 정보"""
    supports_realtime_media: bool = Field(default=False, alias="supportsRealtimeMedia")
    client_family: str = Field(default=DEFAULT_CLIENT_FAMILY, alias="clientFamily")
    client_version: str = Field(default=DEFAULT_CLIENT_VERSION, alias="clientVersion")

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class MemberInfo(BaseModel):
    """멤버 공개 정보"""
    member_id: int = Field(alias="memberId")
    capabilities: Capabilities = Field(default_factory=Capabilities)

    model_config = ConfigDict(populate_by_name=True)


# ===== Server -> Client =====


class JoinRejectedMessage(BaseModel):
    """룸 입장 거부"""
    kind: Literal["join-rejected"] = "join-rejected"
    message: str


class JoinSuccessMessage(BaseModel):
    """룸 입장 성공 (기존 멤버 목록 포함)"""
    kind: Literal["join-success"] = "join-success"
    member_id: int = Field(alias="memberId")
    room_id: str = Field(alias="roomId")
    members: list[MemberInfo] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class MemberJoinedMessage(BaseModel):
    """다른 멤버 입장 알림"""
    kind: Literal["member-joined"] = "member-joined"
    member: MemberInfo


class MemberLeftMessage(BaseModel):
    """다른 멤버 퇴장 알림"""
    kind: Literal["member-left"] = "member-left"
    member_id: int = Field(alias="memberId")

    model_config = ConfigDict(populate_by_name=True)


# ===== Client -> Server =====


class InitialMessage(BaseModel):
    """연결 직후 클라이언트가 보내는 capability 자기소개"""
    kind: Literal["initial"] = "initial"
    capabilities: Capabilities = Field(default_factory=Capabilities)


# ===== 협상 메시지 (unicast 중계) =====


class OfferMessage(BaseModel):
    """SDP Offer"""
    kind: Literal["offer"] = "offer"
    for_: int | None = Field(default=None, alias="for")
    from_: int | None = Field(default=None, alias="from")
    sdp: str

    model_config = ConfigDict(populate_by_name=True)


class AnswerMessage(BaseModel):
    """SDP Answer"""
    kind: Literal["answer"] = "answer"
    for_: int | None = Field(default=None, alias="for")
    from_: int | None = Field(default=None, alias="from")
    sdp: str

    model_config = ConfigDict(populate_by_name=True)


class IceCandidateMessage(BaseModel):
    """ICE Candidate (None이면 end-of-candidates)"""
    kind: Literal["ice-candidate"] = "ice-candidate"
    for_: int | None = Field(default=None, alias="for")
    from_: int | None = Field(default=None, alias="from")
    candidate: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True)


SignalingMessage = Annotated[
    Union[
        JoinRejectedMessage,
        JoinSuccessMessage,
        MemberJoinedMessage,
        MemberLeftMessage,
        InitialMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
    ],
    Field(discriminator="kind"),
]

_message_adapter: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


class RelayEnvelope(BaseModel):
    """릴레이가 읽는 최소 필드 (kind, for). 나머지는 그대로 보존"""
    kind: str
    for_: int | None = Field(default=None, alias="for")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class AliveResponse(BaseModel):
    """프로세스 생존 정보 (epoch milliseconds)"""
    start: int
    now: int
    uptime_seconds: int = Field(serialization_alias="uptimeSeconds")
    uptime_in_hours: int = Field(serialization_alias="uptimeInHours")
    uptime_in_days: int = Field(serialization_alias="uptimeInDays")


def _load_json_object(raw: str | bytes | dict) -> dict:
    """JSON 텍스트 프레임을 dict로 변환"""
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage(f"Expected JSON object, got {type(data).__name__}")
    return data


def decode_message(raw: str | bytes | dict) -> SignalingMessage:
    """프레임 하나를 discriminated union 메시지로 디코딩

    Raises:
        UnknownMessageKind: kind가 없거나 알 수 없는 값
        MalformedMessage: JSON 파싱 실패 또는 필수 필드 누락
    """
    data = _load_json_object(raw)
    kind = data.get("kind")
    if kind not in _KNOWN_KINDS:
        raise UnknownMessageKind(kind)
    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid {kind} message: {e.error_count()} error(s)") from e


def decode_envelope(raw: str | bytes) -> tuple[RelayEnvelope, dict]:
    """릴레이용 디코딩: kind/for만 검증하고 원본 dict를 함께 반환

    Raises:
        MalformedMessage: JSON 파싱 실패 또는 kind/for 타입 오류
    """
    data = _load_json_object(raw)
    try:
        envelope = RelayEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid envelope: {e.error_count()} error(s)") from e
    return envelope, data


def encode_message(message: BaseModel | dict) -> dict:
    """전송용 dict로 변환 (alias 사용, None 필드 제외)"""
    if isinstance(message, dict):
        return message
    return message.model_dump(by_alias=True, exclude_none=True, mode="json")
