from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """애플리케이션 설정"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # 앱 설정
    app_name: str = "peerlink relay"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # 서버
    host: str = "0.0.0.0"
    port: int = 8443

    # 시그널링 (단일 고정 룸)
    room_id: str = "123123"
    max_payload_length: int = 16 * 1024 * 1024  # 16MB
    send_high_water_mark: int = 1024 * 1024
    send_low_water_mark: int = 64 * 1024

    # ICE 서버 (STUN URL 목록)
    ice_server_urls: list[str] = ["stun:stun.services.mozilla.com"]

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Telemetry (비어 있으면 OTLP export 비활성화)
    otel_exporter_otlp_endpoint: str = ""

    # 클라이언트 설정
    signaling_url: str = "ws://localhost:8443"
    require_render_target: bool = True


@lru_cache
def get_settings() -> Settings:
    """설정 싱글톤 반환"""
    return Settings()
