import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from peerlink import __version__
from peerlink.api.router import api_router
from peerlink.core.config import get_settings
from peerlink.core.telemetry import instrument_fastapi, setup_telemetry, shutdown_telemetry

settings = get_settings()

# 로깅 설정
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """애플리케이션 라이프사이클"""
    setup_telemetry(settings, __version__)
    logger.info(f"Relay accepting members for room {settings.room_id}")
    yield
    shutdown_telemetry()


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="WebRTC 메시 시그널링 릴레이",
    lifespan=lifespan,
)

instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


def run() -> None:
    """`peerlink-server` 진입점"""
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        ws_max_size=settings.max_payload_length,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
