import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends

from aws_cpi.cloud import OPERATIONS, Cloud
from aws_cpi.config import get_settings
from aws_cpi.errors import CloudError, UnknownMethod
from aws_cpi.metrics import metrics
from aws_cpi.schemas import CpiError, CpiRequest, CpiResponse


logger = logging.getLogger(__name__)
router = APIRouter()

CloudFactory = Callable[[int, int], Cloud]


def get_cloud_factory() -> CloudFactory:
    settings = get_settings()

    def factory(api_version: int, stemcell_api_version: int) -> Cloud:
        return Cloud.from_settings(
            settings,
            api_version=api_version,
            stemcell_api_version=stemcell_api_version,
        )

    return factory


def _error_response(exc: Exception) -> CpiResponse:
    if isinstance(exc, CloudError):
        error = CpiError(
            type=exc.wire_type, message=str(exc), ok_to_retry=exc.ok_to_retry
        )
    else:
        error = CpiError(type=CloudError.wire_type, message=str(exc))
    return CpiResponse(result=None, error=error)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/v1/cpi")
def cpi(
    request: CpiRequest, cloud_factory: CloudFactory = Depends(get_cloud_factory)
) -> dict[str, Any]:
    api_version = request.api_version or 1
    logger.info(
        "cpi request method=%s request_id=%s api_version=%s stemcell_api_version=%s",
        request.method,
        request.request_id,
        api_version,
        request.stemcell_api_version,
    )
    metrics.inc("cpi_requests_total")
    try:
        if request.method not in OPERATIONS:
            raise UnknownMethod(request.method)
        cloud = cloud_factory(api_version, request.stemcell_api_version)
        try:
            result = getattr(cloud, request.method)(*request.arguments)
        finally:
            cloud.close()
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "cpi request failed method=%s request_id=%s error=%s",
            request.method,
            request.request_id,
            exc,
        )
        metrics.inc("cpi_errors_total")
        return _error_response(exc).model_dump()
    return CpiResponse(result=result).model_dump()
