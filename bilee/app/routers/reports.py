from datetime import date as date_type

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..deps import get_pipeline
from ..pipeline import Pipeline

router = APIRouter(prefix="/reports", tags=["reports"])


class RecomputeIn(BaseModel):
    merchant_id: str = Field(min_length=1)
    date: date_type


@router.post("/daily-aggregates/recompute")
def recompute_daily_aggregate(data: RecomputeIn, pipeline: Pipeline = Depends(get_pipeline)):
    # Full recompute; safe to call repeatedly (report generation calls it on demand).
    return pipeline.aggregates.recompute(data.merchant_id, data.date)


@router.get("/daily-aggregates")
def get_daily_aggregate(
    merchant_id: str = Query(..., min_length=1),
    day: date_type = Query(..., alias="date"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    agg = pipeline.aggregates.get(merchant_id, day)
    if agg is None:
        raise HTTPException(status_code=404, detail=f"no aggregate for merchant {merchant_id} on {day.isoformat()}")
    return agg
