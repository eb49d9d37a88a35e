from fastapi import APIRouter

from peerlink.api.endpoints import health, signaling

api_router = APIRouter()

api_router.include_router(signaling.router)
# catch-all 경로가 있으므로 마지막에 등록
api_router.include_router(health.router)
