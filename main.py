import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from scheduler import SchedulerManager, SchedulerRun
from schemas import (
    InteractiveRunResponse,
    ProcessResponse,
    RecurringRuleIn,
    RecurringRuleUpdate,
)
from security import cron_secret_matches, generate_csrf_token, validate_csrf_token
from services import RecurringRuleService, RuleNotFound, get_current_user_id
from store import SqlAlchemyRecurrenceStore, StorageError


logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Transactions")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _rule_payload(rule) -> dict[str, object]:
    return {
        "id": rule.id,
        "title": rule.title,
        "type": rule.type.value,
        "amount": str(rule.amount),
        "currency_code": rule.currency_code,
        "frequency": rule.frequency,
        "interval_count": rule.interval_count,
        "start_date": rule.start_date.isoformat(),
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "occurrences_limit": rule.occurrences_limit,
        "occurrences_created": rule.occurrences_created,
        "next_run_at": rule.next_run_at.isoformat(),
        "last_run_at": rule.last_run_at.isoformat() if rule.last_run_at else None,
        "is_active": rule.is_active,
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/csrf-token")
def csrf_token():
    return {"token": generate_csrf_token(get_current_user_id())}


@app.post("/api/recurring/process", response_model=ProcessResponse)
def process_recurring(
    x_cron_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    if not settings.cron_secret:
        logger.warning("No cron secret configured for /api/recurring/process")
    elif not cron_secret_matches(x_cron_secret, settings.cron_secret):
        logger.warning("Invalid or missing cron secret header")
        raise HTTPException(status_code=401, detail="Unauthorized")

    run = SchedulerRun(SqlAlchemyRecurrenceStore(db))
    try:
        summary = run.run(budget_seconds=settings.run_budget_secs)
    except StorageError as exc:
        logger.error(f"recurring_process_failed: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    if summary.processed == 0:
        message = "No recurring transactions due"
    else:
        message = "Recurring transactions processed successfully"
    return ProcessResponse(message=message, **summary.model_dump())


@app.post("/api/recurring/run", response_model=InteractiveRunResponse)
def run_recurring_for_user(
    x_csrf_token: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    user_id = get_current_user_id()
    if not validate_csrf_token(x_csrf_token or "", user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")

    run = SchedulerRun(SqlAlchemyRecurrenceStore(db), user_id=user_id)
    try:
        summary = run.run(budget_seconds=get_settings().run_budget_secs)
    except Exception:
        # Page load must not fail because the engine could not run.
        logger.exception(f"recurring_run_failed: user={user_id}")
        return InteractiveRunResponse()

    toast = None
    if summary.generated > 0:
        toast = f"{summary.generated} new transactions generated"
    return InteractiveRunResponse(toast=toast, **summary.model_dump())


@app.post("/api/recurring", status_code=201)
def create_recurring(data: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.get("/api/recurring")
def list_recurring(db: Session = Depends(get_db)):
    return [_rule_payload(rule) for rule in RecurringRuleService(db).list()]


@app.patch("/api/recurring/{rule_id}")
def update_recurring(
    rule_id: int, data: RecurringRuleUpdate, db: Session = Depends(get_db)
):
    try:
        rule = RecurringRuleService(db).update(rule_id, data)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.post("/api/recurring/{rule_id}/pause")
def pause_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).pause(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.post("/api/recurring/{rule_id}/resume")
def resume_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).resume(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.delete("/api/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        RecurringRuleService(db).delete(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
