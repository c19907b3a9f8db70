from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from crm_automation.core.config import get_settings
from crm_automation.crm.api import opportunities_router
from crm_automation.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(opportunities_router)


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="metrics disabled")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
