"""프로세스 상태 엔드포인트 (협상 프로토콜과 무관)"""

import time

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from peerlink.schemas.signaling import AliveResponse

router = APIRouter(tags=["Health"])

# 프로세스 시작 시각 (epoch milliseconds)
START_TIME_MS = int(time.time() * 1000)

_MS_PER_HOUR = 3_600_000


@router.get("/health")
async def health_check() -> dict:
    """헬스 체크"""
    return {"status": "ok"}


@router.get("/alive", response_model=AliveResponse, response_model_by_alias=True)
async def alive() -> AliveResponse:
    """시작 시각, 현재 시각, 가동 시간"""
    now = int(time.time() * 1000)
    uptime_in_hours = (now - START_TIME_MS) // _MS_PER_HOUR
    return AliveResponse(
        start=START_TIME_MS,
        now=now,
        uptime_seconds=(now - START_TIME_MS) // 1000,
        uptime_in_hours=uptime_in_hours,
        uptime_in_days=uptime_in_hours // 24,
    )


@router.get("/{path:path}", response_class=PlainTextResponse, include_in_schema=False)
async def fallback(path: str) -> str:
    """그 외 모든 경로"""
    return "Nothing to see here!"
