from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fxwatch.core.config import Settings
from fxwatch.db.dal import Database
from fxwatch.models import AlertCreate, AlertTrigger, AlertUpdate, RateAlert
from fxwatch.routers.deps import get_app_settings, get_db, get_engine, get_scheduler
from fxwatch.services.alerts import AlertEngine
from fxwatch.services.scheduler import AlertScheduler

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.post("", response_model=RateAlert, status_code=status.HTTP_201_CREATED)
async def create_alert(payload: AlertCreate, db: Database = Depends(get_db)):
    return db.create_alert(
        payload.user_id,
        payload.pair,
        payload.target_rate,
        payload.direction,
        active=payload.active,
    )


@router.get("", response_model=List[RateAlert])
async def list_alerts(
    user_id: Optional[str] = Query(None),
    active_only: bool = Query(False),
    db: Database = Depends(get_db),
):
    return db.list_alerts(user_id=user_id, active_only=active_only)


@router.get("/summary", summary="Alert counts by state")
async def alert_summary(user_id: Optional[str] = Query(None), db: Database = Depends(get_db)):
    return db.alert_summary(user_id=user_id)


@router.get("/scheduler", summary="Background checker status")
async def scheduler_status(scheduler: Optional[AlertScheduler] = Depends(get_scheduler)):
    if scheduler is None:
        return {"running": False, "enabled": False}
    return {"enabled": True, **scheduler.status()}


@router.post("/check", summary="Run an alert pass now")
async def check_now(
    user_id: Optional[str] = Query(None, description="Only this user's alerts"),
    engine: AlertEngine = Depends(get_engine),
    scheduler: Optional[AlertScheduler] = Depends(get_scheduler),
):
    if user_id is None and scheduler is not None:
        summary = await scheduler.run_once()
        if summary is None:
            raise HTTPException(status_code=409, detail="an alert pass is already running")
    else:
        summary = await engine.check_all(user_id=user_id)
    return summary.as_dict()


@router.get("/{alert_id}", response_model=RateAlert)
async def get_alert(alert_id: int, db: Database = Depends(get_db)):
    return db.require_alert(alert_id)


@router.get("/{alert_id}/triggers", response_model=List[AlertTrigger])
async def list_triggers(alert_id: int, db: Database = Depends(get_db)):
    db.require_alert(alert_id)
    return db.list_triggers(alert_id)


@router.post("/{alert_id}/check", summary="Evaluate one alert now")
async def check_one(alert_id: int, engine: AlertEngine = Depends(get_engine)):
    return (await engine.check_alert(alert_id)).as_dict()


@router.patch("/{alert_id}", response_model=RateAlert)
async def update_alert(
    alert_id: int,
    payload: AlertUpdate,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    try:
        return db.update_alert(
            alert_id,
            pair=payload.pair,
            target_rate=payload.target_rate,
            direction=payload.direction,
            active=payload.active,
            rearm=settings.rearm_on_edit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.delete("/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert(alert_id: int, db: Database = Depends(get_db)):
    if not db.delete_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"alert {alert_id} not found")
