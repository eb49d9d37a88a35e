"""시그널링 관련 설정"""

# 룸 거부 시 사유 텍스트
REJECTED_REASON = "rejected"
REJECTED_MESSAGE = "Invalid room"

# 사용자가 직접 나갈 때 사용하는 종료 사유
USER_LEFT_REASON = "User left conference"

# initial 메시지를 보내기 전 멤버의 기본 capability
DEFAULT_CLIENT_FAMILY = "unknown"
DEFAULT_CLIENT_VERSION = "0"


# WebSocket 종료 코드
class WSCloseCode:
    """WebSocket 종료 코드"""
    NORMAL = 1000
    GOING_AWAY = 1001
    ROOM_REJECTED = 4000
