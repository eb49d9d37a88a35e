"""시그널링 채널 - JSON 텍스트 프레임 기반 양방향 메시지 전송

송신은 절대 블로킹하지 않는다. 프레임은 큐에 쌓이고 단일 writer 태스크만
전송 계층에 쓰기 때문에 여러 Peer Session이 동시에 send 해도 프레임이 섞이지 않는다.
버퍼가 high water mark를 넘으면 send()가 False를 반환하고 (back-pressure),
호출자는 drained()로 배출을 기다릴 수 있다.
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from peerlink.core.exceptions import ConnectionLost
from peerlink.core.signaling_config import WSCloseCode
from peerlink.schemas.signaling import encode_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None] | None]
CloseHandler = Callable[[int | None, str], Awaitable[None] | None]

_DEFAULT_HIGH_WATER_MARK = 1024 * 1024
_DEFAULT_LOW_WATER_MARK = 64 * 1024


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class SignalingChannel(ABC):
    """전송 계층 독립적인 시그널링 채널"""

    def __init__(
        self,
        high_water_mark: int = _DEFAULT_HIGH_WATER_MARK,
        low_water_mark: int = _DEFAULT_LOW_WATER_MARK,
        max_payload_length: int | None = None,
    ):
        self.high_water_mark = high_water_mark
        self.low_water_mark = min(low_water_mark, high_water_mark)
        self.max_payload_length = max_payload_length

        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._buffered_amount = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._writer: asyncio.Task | None = None

        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._closing = False
        self._closed = asyncio.Event()
        self._close_code: int | None = None
        self._close_reason = ""

    # ===== 전송 계층 구현 =====

    @abstractmethod
    async def _transmit(self, text: str) -> None:
        """텍스트 프레임 하나 전송 (실패 시 ConnectionLost)"""
        ...

    @abstractmethod
    async def _receive(self) -> str | bytes:
        """다음 프레임 수신 (종료 시 ConnectionLost)"""
        ...

    @abstractmethod
    async def _close_transport(self, code: int, reason: str) -> None:
        """전송 계층 종료"""
        ...

    # ===== 핸들러 등록 =====

    def on_message(self, handler: MessageHandler) -> None:
        """수신 프레임 핸들러 등록 (도착 순서대로 호출)"""
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """종료 핸들러 등록 (정확히 한 번 호출)"""
        self._close_handlers.append(handler)

    # ===== 송신 =====

    @property
    def buffered_amount(self) -> int:
        """아직 전송되지 않은 바이트 수"""
        return self._buffered_amount

    @property
    def is_closed(self) -> bool:
        return self._closing or self._closed.is_set()

    def send(self, message: BaseModel | dict) -> bool:
        """메시지를 JSON 프레임으로 큐잉

        Returns:
            False면 back-pressure 상태 (프레임은 큐잉됨) 또는 채널이 닫힘
        """
        if self.is_closed:
            logger.debug("Dropping message on closed channel")
            return False

        text = json.dumps(encode_message(message))
        self._ensure_writer()
        self._outbox.put_nowait(text)
        self._buffered_amount += len(text)

        if self._buffered_amount > self.high_water_mark:
            self._drained.clear()
            logger.debug(f"Channel backpressure: {self._buffered_amount} bytes buffered")
            return False
        return True

    async def drained(self) -> None:
        """버퍼가 low water mark 이하로 내려갈 때까지 대기"""
        await self._drained.wait()

    def _ensure_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    async def _write_loop(self) -> None:
        """큐의 프레임을 순서대로 전송 (유일한 writer)"""
        while True:
            text = await self._outbox.get()
            if text is None:
                break
            try:
                await self._transmit(text)
            except ConnectionLost as e:
                logger.info(f"Channel lost while sending: {e}")
                self._closing = True
                self._buffered_amount = 0
                self._drained.set()
                break
            self._buffered_amount -= len(text)
            if self._buffered_amount <= self.low_water_mark:
                self._drained.set()

    async def _flush(self) -> None:
        if self._writer is None:
            return
        self._outbox.put_nowait(None)
        await self._writer
        self._writer = None

    # ===== 수신 루프 =====

    async def run(self) -> None:
        """수신 루프: 전송 계층이 닫힐 때까지 프레임을 핸들러로 전달"""
        try:
            while True:
                frame = await self._receive()
                if isinstance(frame, bytes):
                    logger.warning(f"Ignoring binary frame ({len(frame)} bytes)")
                    continue
                if self.max_payload_length is not None and len(frame) > self.max_payload_length:
                    logger.warning(f"Dropping frame over payload limit ({len(frame)} bytes)")
                    continue
                for handler in list(self._message_handlers):
                    await _maybe_await(handler(frame))
        except ConnectionLost as e:
            logger.info(f"Channel closed by peer: code={e.code}")
            await self._finish(e.code, e.reason)

    # ===== 종료 =====

    async def close(self, code: int = WSCloseCode.NORMAL, reason: str = "") -> None:
        """큐잉된 프레임을 모두 보낸 뒤 전송 계층 종료"""
        if self._closing:
            return
        self._closing = True
        await self._flush()
        try:
            await self._close_transport(code, reason)
        except ConnectionLost:
            pass
        await self._finish(code, reason)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _finish(self, code: int | None, reason: str) -> None:
        """종료 핸들러를 정확히 한 번 실행"""
        if self._closed.is_set():
            return
        self._closing = True
        self._close_code = code
        self._close_reason = reason
        self._closed.set()
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        for handler in list(self._close_handlers):
            try:
                await _maybe_await(handler(code, reason))
            except Exception as e:
                logger.error(f"Close handler failed: {e}")


class WebSocketChannel(SignalingChannel):
    """FastAPI(Starlette) WebSocket 기반 서버측 채널"""

    def __init__(self, websocket: WebSocket, **kwargs):
        super().__init__(**kwargs)
        self.websocket = websocket

    async def _transmit(self, text: str) -> None:
        try:
            await self.websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionLost(getattr(e, "code", None)) from e

    async def _receive(self) -> str | bytes:
        try:
            message = await self.websocket.receive()
        except RuntimeError as e:
            raise ConnectionLost() from e

        if message["type"] == "websocket.disconnect":
            raise ConnectionLost(message.get("code"), message.get("reason") or "")
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def _close_transport(self, code: int, reason: str) -> None:
        if WebSocketState.DISCONNECTED in (self.websocket.client_state, self.websocket.application_state):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            raise ConnectionLost(code, reason) from e
