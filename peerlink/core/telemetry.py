"""릴레이 OpenTelemetry 메트릭

입장/거부/현재 멤버 수와 메시지 중계/폐기 카운터만 기록한다.
카운터는 채널과 메시지 흐름을 관찰할 뿐 협상 상태에는 관여하지 않는다.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.resource import ResourceAttributes

if TYPE_CHECKING:
    from fastapi import FastAPI

    from peerlink.core.config import Settings

logger = logging.getLogger(__name__)

METER_NAME = "peerlink.relay"
EXPORT_INTERVAL_MS = 10_000


def build_meter_provider(
    service_name: str,
    service_version: str,
    environment: str,
    otlp_endpoint: str | None = None,
) -> MeterProvider:
    """서비스 리소스를 붙인 MeterProvider 생성

    otlp_endpoint가 없으면 reader 없이 생성 (메트릭은 메모리에서만 집계)
    """
    resource = Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: service_name,
            ResourceAttributes.SERVICE_VERSION: service_version,
            ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
        }
    )

    readers = []
    if otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        readers.append(PeriodicExportingMetricReader(exporter, export_interval_millis=EXPORT_INTERVAL_MS))

    return MeterProvider(resource=resource, metric_readers=readers)


def instrument_fastapi(app: FastAPI) -> None:
    """HTTP/WebSocket 요청 자동 계측 (실패해도 서비스는 계속)"""
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
    except Exception as e:
        logger.warning(f"FastAPI instrumentation disabled: {e}")


class RelayMetrics:
    """시그널링 릴레이 카운터"""

    def __init__(self, meter: metrics.Meter):
        self.joins_total = meter.create_counter(
            "peerlink_joins_total",
            description="룸 입장 성공 수",
        )
        self.rejections_total = meter.create_counter(
            "peerlink_join_rejections_total",
            description="룸 입장 거부 수",
        )
        self.members = meter.create_up_down_counter(
            "peerlink_members",
            description="현재 연결된 멤버 수",
        )
        self.relayed_total = meter.create_counter(
            "peerlink_relayed_messages_total",
            description="중계된 메시지 수 (kind별)",
        )
        self.dropped_total = meter.create_counter(
            "peerlink_dropped_messages_total",
            description="버려진 메시지 수 (reason별)",
        )


_meter_provider: MeterProvider | None = None
_relay_metrics: RelayMetrics | None = None


def get_relay_metrics() -> RelayMetrics:
    """릴레이 카운터 반환 (setup 전이면 전역 provider의 meter 사용)"""
    global _relay_metrics
    if _relay_metrics is None:
        _relay_metrics = RelayMetrics(metrics.get_meter(METER_NAME))
    return _relay_metrics


def setup_telemetry(settings: Settings, service_version: str) -> None:
    """애플리케이션 시작 시 호출: provider 생성 후 카운터를 새 meter로 교체"""
    global _meter_provider, _relay_metrics

    endpoint = settings.otel_exporter_otlp_endpoint or None
    _meter_provider = build_meter_provider(
        "peerlink-relay",
        service_version,
        settings.app_env,
        otlp_endpoint=endpoint,
    )
    _relay_metrics = RelayMetrics(_meter_provider.get_meter(METER_NAME, service_version))
    logger.info(f"Telemetry ready (export: {endpoint or 'disabled'})")


def shutdown_telemetry() -> None:
    """남은 메트릭 export 후 provider 종료"""
    global _meter_provider
    if _meter_provider is None:
        return
    _meter_provider.shutdown()
    _meter_provider = None
