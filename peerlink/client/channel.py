"""클라이언트측 시그널링 채널 (websockets asyncio client)"""

import logging

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from peerlink.core.exceptions import ConnectionLost
from peerlink.services.channel import SignalingChannel

logger = logging.getLogger(__name__)


class WebSocketClientChannel(SignalingChannel):
    """릴레이 /join/{room_id} 에 연결된 클라이언트 채널"""

    def __init__(self, connection: ClientConnection, **kwargs):
        super().__init__(**kwargs)
        self.connection = connection

    @staticmethod
    def _lost(e: ConnectionClosed) -> ConnectionLost:
        if e.rcvd is not None:
            return ConnectionLost(e.rcvd.code, e.rcvd.reason)
        return ConnectionLost()

    async def _transmit(self, text: str) -> None:
        try:
            await self.connection.send(text)
        except ConnectionClosed as e:
            raise self._lost(e) from e

    async def _receive(self) -> str | bytes:
        try:
            return await self.connection.recv()
        except ConnectionClosed as e:
            raise self._lost(e) from e

    async def _close_transport(self, code: int, reason: str) -> None:
        await self.connection.close(code=code, reason=reason)


def room_url(base_url: str, room_id: str) -> str:
    return f"{base_url.rstrip('/')}/join/{room_id}"


async def connect_to_room(base_url: str, room_id: str, **kwargs) -> WebSocketClientChannel:
    """릴레이에 연결하고 채널 반환

    Args:
        base_url: 릴레이 주소 (ws:// 또는 wss://)
        room_id: 방 ID
        **kwargs: SignalingChannel 옵션 (high_water_mark, low_water_mark, max_payload_length)
    """
    url = room_url(base_url, room_id)
    logger.info(f"Connecting to {url}")
    connection = await connect(url, max_size=kwargs.get("max_payload_length"))
    return WebSocketClientChannel(connection, **kwargs)
