"""WebSocket 시그널링 엔드포인트"""

import logging

from fastapi import APIRouter, WebSocket

from peerlink.core.config import get_settings
from peerlink.core.signaling_config import WSCloseCode
from peerlink.handlers.relay_handlers import accept_member, handle_frame, release_member
from peerlink.services.channel import WebSocketChannel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Signaling"])


@router.websocket("/join/{room_id}")
async def join_room(websocket: WebSocket, room_id: str):
    """룸 입장 및 시그널링 메시지 중계"""
    await websocket.accept()
    logger.info(f"WebSocket connected via /join/{room_id}")

    settings = get_settings()
    channel = WebSocketChannel(
        websocket,
        high_water_mark=settings.send_high_water_mark,
        low_water_mark=settings.send_low_water_mark,
        max_payload_length=settings.max_payload_length,
    )

    member = await accept_member(channel, room_id)
    if member is None:
        return

    async def on_message(raw: str) -> None:
        await handle_frame(member, raw)

    async def on_close(code: int | None, reason: str) -> None:
        logger.info(f"WebSocket closed: member={member.member_id}, code={code}, reason={reason!r}")
        await release_member(channel)

    channel.on_message(on_message)
    channel.on_close(on_close)

    try:
        # 메시지 처리 루프
        await channel.run()
    except Exception as e:
        logger.error(f"WebSocket error: member={member.member_id}: {e}")
    finally:
        # 어떤 이유로 끝나든 퇴장 처리
        await channel.close(WSCloseCode.GOING_AWAY, "relay closing")
        await release_member(channel)
