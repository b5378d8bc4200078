"""Streak processing trigger, watermark status and per-student counters."""
from fastapi import APIRouter, BackgroundTasks, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from attendance_streaks.api.deps import Clock, Notifier, Store
from attendance_streaks.models.settings import WatermarkOut
from attendance_streaks.services.maintenance import build_watermarks, run_daily_maintenance
from attendance_streaks.services.store import format_day
from attendance_streaks.services.streak_rules import StreakState

router = APIRouter()


class RunRequest(BaseModel):
    actor_id: str = "system"


def _state_out(state: StreakState) -> dict:
    return {
        "streak": state.streak,
        "last_status": state.last_status,
        "last_date": format_day(state.last_date),
        "notified": state.notified,
        "triggered_at3": state.triggered_at3.isoformat() if state.triggered_at3 else None,
    }


@router.post("/run")
async def trigger_run(
    data: RunRequest,
    background_tasks: BackgroundTasks,
    store: Store,
    notifier: Notifier,
    clock: Clock,
    wait: bool = Query(False, description="Run inline and return the report"),
):
    """Run absence backfill and streak processing (in the background unless wait=true)."""
    if wait:
        result = await run_daily_maintenance(store, data.actor_id, notifier=notifier, clock=clock)
        return result.as_dict()

    background_tasks.add_task(run_daily_maintenance, store, data.actor_id, notifier=notifier, clock=clock)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "scheduled", "actor_id": data.actor_id},
    )


@router.get("/status", response_model=WatermarkOut)
async def get_status(store: Store, clock: Clock):
    """Watermarks and the current processing lease."""
    watermarks = build_watermarks(store, clock=clock)
    snapshot = await watermarks.snapshot()
    return WatermarkOut(
        last_absence_backfill_date=format_day(snapshot.last_absence_backfill_date),
        last_streak_run_date=format_day(snapshot.last_streak_run_date),
        lease_holder=snapshot.lease.holder if snapshot.lease else None,
        lease_expires_at_ms=snapshot.lease.expires_at_ms if snapshot.lease else None,
        lease_active=watermarks.lease_active(snapshot),
    )


@router.get("/students/{student_id}")
async def get_student_streaks(student_id: str, store: Store):
    global_state, subjects = await store.load_student_streaks(student_id)
    return {
        "student_id": student_id,
        "global": _state_out(global_state) if global_state else None,
        "subjects": [
            {"subject_id": subject_id, **_state_out(state)}
            for subject_id, state in sorted(subjects.items())
        ],
    }
