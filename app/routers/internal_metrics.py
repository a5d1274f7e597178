from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.metrics import request_metrics
from app.deps import require_internal_token

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("/reconciliation")
def reconciliation_metrics(_auth: None = Depends(require_internal_token)):
    return {
        "outcomes": request_metrics.snapshot_outcomes(),
        "endpoints": request_metrics.snapshot(),
    }
