import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from . import db
from .compliance import build_daily_report, split_available_isps
from .errors import MeasurementError, OfficeNotFoundError, PersistenceError, TimezoneResolutionError
from .isp import parse_isps_from_office, validate_isp_match
from .logging_setup import setup_logging
from .scheduler import ScheduleManager
from .settings_defaults import SCHEDULER_DEFAULTS, SPEEDTEST_DEFAULTS
from .settings_store import get_settings
from .speedtest import run_measurement
from .timeslots import (
    format_timestamp,
    get_app_timezone,
    get_zone,
    local_day_bounds,
    local_today,
    parse_day,
    resolve_current_slot,
    slot_window_info,
)

logger = logging.getLogger(__name__)

OUTSIDE_HOURS_MESSAGE = (
    "Testing is not available right now. Tests are only allowed during designated time slots "
    "(6AM-11:59AM, 12PM-12:59PM, 1PM-6PM)."
)

app = FastAPI(title="officenet")


def _measure(isp_label):
    return run_measurement(isp_label, get_settings("speedtest", SPEEDTEST_DEFAULTS))


schedule_manager = ScheduleManager(measure=_measure)


@app.on_event("startup")
async def startup_event():
    setup_logging()
    db.init_db()
    scheduler_cfg = get_settings("scheduler", SCHEDULER_DEFAULTS)
    schedule_manager.settings = scheduler_cfg
    if scheduler_cfg.get("enabled"):
        schedule_manager.start()
    else:
        logger.info("Scheduler disabled by settings")


@app.on_event("shutdown")
async def shutdown_event():
    schedule_manager.stop()


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=500)


def reporting_timezone():
    """Report slots are cut in the same reference timezone the scheduler fires in."""
    name = schedule_manager.timezone_name
    try:
        get_zone(name)
    except TimezoneResolutionError:
        logger.warning("Reference timezone %r is unknown, reporting in UTC", name)
        return "UTC"
    return name


def _require_office(office_id):
    office = db.get_office(office_id)
    if not office:
        raise HTTPException(status_code=404, detail="Office not found")
    return office


def _select_provider(office, value):
    providers = parse_isps_from_office(office)
    for provider in providers:
        if value in (provider["id"], provider["label"]):
            return providers, provider
    return providers, None


def _valid_result(result):
    if not isinstance(result, dict):
        return False
    for key in ("download", "upload", "ping"):
        value = result.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return False
    return True


@app.get("/api/time")
async def current_time(timezone_name: str = Query(None, alias="timezone")):
    now = datetime.now(timezone.utc)
    resolution = resolve_current_slot(now, client_timezone=timezone_name)
    return {
        "now": now.replace(microsecond=0).isoformat(),
        "app_timezone": get_app_timezone(),
        "current_time_slot": resolution["slot"],
        "resolution": resolution,
        "testing_available": resolution["slot"] is not None,
        "time_slots": slot_window_info(),
    }


@app.get("/api/offices")
async def list_offices():
    return {"offices": db.list_offices()}


@app.post("/api/offices")
async def save_office(request: Request):
    payload = await request.json()
    if not isinstance(payload, dict) or not (payload.get("unit_office") or "").strip():
        raise HTTPException(status_code=400, detail="unit_office is required")
    office = db.save_office(payload)
    return {"office": office, "isps": parse_isps_from_office(office)}


@app.get("/api/offices/{office_id}/isps")
async def office_isps(office_id: str):
    office = _require_office(office_id)
    return {"office_id": office_id, "isps": parse_isps_from_office(office)}


@app.get("/api/offices/{office_id}/available-isps")
async def available_isps(office_id: str, timezone_name: str = Query(None, alias="timezone")):
    office = _require_office(office_id)
    now = datetime.now(timezone.utc)
    resolution = resolve_current_slot(now, client_timezone=timezone_name)
    slot = resolution["slot"]
    if slot is None:
        return {
            "available": [],
            "tested": [],
            "current_time_slot": None,
            "resolution": resolution,
            "message": OUTSIDE_HOURS_MESSAGE,
            "time_slots": slot_window_info(),
        }
    tz_name = resolution["timezone"]
    start_iso, end_iso = local_day_bounds(local_today(tz_name, now), tz_name)
    tests = db.get_speed_tests_between(start_iso, end_iso, office_id=office_id)
    split = split_available_isps(parse_isps_from_office(office), tests, slot, tz_name)
    return {
        "available": split["available"],
        "tested": split["tested"],
        "current_time_slot": slot,
        "resolution": resolution,
        "time_slots": slot_window_info(),
    }


@app.get("/api/speedtest")
async def speedtest_history(
    office_id: str = None,
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
):
    tests, total = db.list_speed_tests(office_id=office_id, limit=limit, offset=(page - 1) * limit)
    return {
        "tests": tests,
        "pagination": {
            "total": total,
            "pages": (total + limit - 1) // limit,
            "current": page,
            "limit": limit,
        },
    }


@app.post("/api/speedtest")
async def record_speedtest(request: Request):
    """
    Run (or record a client-side result of) one test for a configured ISP.

    Refused outside the testing slots and when the ISP already has a test in
    the current slot today.
    """
    payload = await request.json()
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    office = _require_office(str(payload.get("office_id") or ""))
    providers, provider = _select_provider(office, str(payload.get("isp") or "").strip())
    if provider is None:
        raise HTTPException(status_code=400, detail="isp must be one of the office's ISPs")

    now = datetime.now(timezone.utc)
    resolution = resolve_current_slot(now, client_timezone=payload.get("timezone"))
    slot = resolution["slot"]
    if slot is None:
        raise HTTPException(status_code=403, detail=OUTSIDE_HOURS_MESSAGE)
    tz_name = resolution["timezone"]
    start_iso, end_iso = local_day_bounds(local_today(tz_name, now), tz_name)
    tests = db.get_speed_tests_between(start_iso, end_iso, office_id=office["id"])
    tested = split_available_isps(providers, tests, slot, tz_name)["tested"]
    if any(item["id"] == provider["id"] for item in tested):
        raise HTTPException(
            status_code=409,
            detail=f"{provider['label']} has already been tested in the {slot.lower()} slot today",
        )

    result = payload.get("result")
    if result is None:
        try:
            result = await run_in_threadpool(_measure, provider["label"])
        except MeasurementError as exc:
            logger.error("Speed test for %s/%s failed: %s", office["id"], provider["label"], exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
    elif not _valid_result(result):
        raise HTTPException(status_code=400, detail="result needs non-negative download, upload and ping")

    raw_data = {
        "section": provider["section"],
        "selected_isp": provider["id"],
        "time_slot": slot,
        "timezone": tz_name,
        "isp_validation": validate_isp_match(provider["name"], result.get("isp_name")),
        "result": result.get("raw_data"),
    }
    try:
        record = db.insert_speed_test(
            office["id"],
            provider["label"],
            result.get("download"),
            result.get("upload"),
            result.get("ping"),
            jitter=result.get("jitter"),
            packet_loss=result.get("packet_loss"),
            server_id=result.get("server_id"),
            server_name=result.get("server_name"),
            raw_data=raw_data,
            timestamp=format_timestamp(now),
        )
    except Exception as exc:
        logger.critical("Speed test for %s/%s could not be stored: %s", office["id"], provider["label"], exc)
        raise PersistenceError(f"Failed to store speed test for {office['id']}") from exc
    return {"test": record, "time_slot": slot, "resolution": resolution}


@app.post("/api/offices/{office_id}/schedules")
async def provision_schedules(office_id: str):
    try:
        created = schedule_manager.setup_office_schedules(office_id)
    except OfficeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "created": created,
        "schedules": db.list_schedules(office_id=office_id),
    }


@app.delete("/api/offices/{office_id}/schedules")
async def deprovision_schedules(office_id: str):
    removed = schedule_manager.teardown_office_schedules(office_id)
    return {"removed": removed}


@app.get("/api/schedules")
async def list_schedules(office_id: str = None, active_only: bool = False):
    armed = set(schedule_manager.list_armed())
    schedules = db.list_schedules(active_only=active_only, office_id=office_id)
    for schedule in schedules:
        schedule["armed"] = schedule["id"] in armed
    return {"schedules": schedules}


@app.delete("/api/schedules/{schedule_id}")
async def delete_schedule(schedule_id: int):
    if not db.get_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    schedule_manager.remove_schedule(schedule_id, delete=True)
    return {"removed": schedule_id}


@app.post("/api/schedules/{schedule_id}/deactivate")
async def deactivate_schedule(schedule_id: int):
    if not db.get_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    schedule_manager.deactivate_schedule(schedule_id)
    return {"schedule": db.get_schedule(schedule_id)}


@app.get("/api/monitoring")
async def monitoring(date: str = None):
    tz_name = reporting_timezone()
    try:
        day = parse_day(date) if date else local_today(tz_name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD") from exc
    start_iso, end_iso = local_day_bounds(day, tz_name)
    tests = db.get_speed_tests_between(start_iso, end_iso)
    return build_daily_report(db.list_offices(), tests, day, tz_name, parse_isps_from_office)


@app.get("/api/jobs")
async def jobs_status():
    return {"jobs": db.get_job_status(), "armed": schedule_manager.list_armed()}
