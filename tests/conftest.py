"""pytest 설정 및 공유 fixture

테스트 인프라:
- 테스트별 새 룸 레지스트리
- FastAPI TestClient (lifespan 포함, 모든 WebSocket이 한 이벤트 루프 공유)
- 클라이언트 협상 테스트용 가짜 채널/연결 핸들
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from peerlink.core.config import Settings, get_settings
from peerlink.main import app
from peerlink.services.room_registry import RoomRegistry
from tests.fakes import FakeConnectionFactory, FakeMediaSource, QueueChannel, RecordingObserver


# ===== 설정 =====


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """테스트용 설정"""
    return Settings(
        app_env="test",
        debug=True,
        room_id="123123",
        send_high_water_mark=1024,
        send_low_water_mark=256,
    )


@pytest.fixture
def room_id() -> str:
    """릴레이가 허용하는 룸 ID"""
    return get_settings().room_id


# ===== 릴레이 =====


@pytest.fixture
def registry(room_id: str, monkeypatch) -> RoomRegistry:
    """테스트마다 새 레지스트리 (멤버 ID가 0부터 시작)"""
    fresh = RoomRegistry({room_id})
    monkeypatch.setattr("peerlink.handlers.relay_handlers.room_registry", fresh)
    return fresh


@pytest.fixture
def client(registry: RoomRegistry) -> Generator[TestClient, None, None]:
    """FastAPI TestClient"""
    with TestClient(app) as test_client:
        yield test_client


# ===== 클라이언트 협상 =====


@pytest.fixture
def channel() -> QueueChannel:
    return QueueChannel()


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def media() -> FakeMediaSource:
    return FakeMediaSource()
