import json
import logging
import threading
from datetime import datetime, timedelta, timezone

from . import db
from .errors import MeasurementError, OfficeNotFoundError, PersistenceError
from .isp import parse_isps_from_office, resolve_isp_label, validate_isp_match
from .settings_defaults import SCHEDULER_DEFAULTS
from .speedtest import run_measurement
from .timeslots import TIME_SLOTS, format_timestamp, get_zone, parse_time_of_day

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class DailyTrigger:
    """Calls `callback` once a day at `time_of_day` in `timezone_name`."""

    def __init__(self, time_of_day, timezone_name, callback, name="", now=_utcnow, max_sleep_seconds=60):
        self.time_of_day = time_of_day
        self.timezone_name = timezone_name
        self.callback = callback
        self.name = name
        self._now = now
        self.max_sleep_seconds = max_sleep_seconds
        self._cancelled = threading.Event()
        self._thread = None

    @property
    def active(self):
        return self._thread is not None and not self._cancelled.is_set()

    def next_fire_at(self, after=None):
        zone = get_zone(self.timezone_name)
        local = (after or self._now()).astimezone(zone)
        candidate = datetime.combine(local.date(), self.time_of_day, tzinfo=zone)
        if candidate <= local:
            candidate = datetime.combine(local.date() + timedelta(days=1), self.time_of_day, tzinfo=zone)
        return candidate

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"trigger-{self.name}")
        self._thread.start()

    def cancel(self):
        self._cancelled.set()

    def fire(self):
        # Each firing gets its own thread so a slow test never delays the next trigger.
        worker = threading.Thread(target=self._run_callback, daemon=True, name=f"firing-{self.name}")
        worker.start()
        return worker

    def _run_callback(self):
        try:
            self.callback()
        except Exception:
            logger.exception("Trigger %s callback failed", self.name)

    def _loop(self):
        target = self.next_fire_at()
        while not self._cancelled.is_set():
            remaining = (target - self._now()).total_seconds()
            if remaining > 0:
                self._cancelled.wait(min(remaining, self.max_sleep_seconds))
                continue
            self.fire()
            target = self.next_fire_at(target + timedelta(seconds=1))


class SchedulerState:
    """Registry of armed triggers keyed by schedule id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._triggers = {}

    def add(self, schedule_id, build_trigger):
        """Arm a trigger for `schedule_id` unless one is already armed; returns (trigger, created)."""
        with self._lock:
            existing = self._triggers.get(schedule_id)
            if existing is not None:
                return existing, False
            trigger = build_trigger()
            trigger.start()
            self._triggers[schedule_id] = trigger
            return trigger, True

    def remove(self, schedule_id):
        with self._lock:
            trigger = self._triggers.pop(schedule_id, None)
        if trigger is not None:
            trigger.cancel()
        return trigger is not None

    def get(self, schedule_id):
        with self._lock:
            return self._triggers.get(schedule_id)

    def list(self):
        with self._lock:
            return sorted(self._triggers.keys())

    def clear(self):
        with self._lock:
            triggers = list(self._triggers.values())
            self._triggers.clear()
        for trigger in triggers:
            trigger.cancel()

    def __contains__(self, schedule_id):
        with self._lock:
            return schedule_id in self._triggers

    def __len__(self):
        with self._lock:
            return len(self._triggers)


class ScheduleManager:
    def __init__(self, store=db, measure=run_measurement, trigger_factory=DailyTrigger, settings=None, now=_utcnow):
        self.store = store
        self.measure = measure
        self.trigger_factory = trigger_factory
        self.settings = settings or SCHEDULER_DEFAULTS
        self.now = now
        self.state = SchedulerState()

    @property
    def timezone_name(self):
        return self.settings.get("timezone") or SCHEDULER_DEFAULTS["timezone"]

    @property
    def max_sleep_seconds(self):
        return self.settings.get("max_sleep_seconds") or SCHEDULER_DEFAULTS["max_sleep_seconds"]

    def fire_time(self, time_slot):
        if time_slot not in TIME_SLOTS:
            raise ValueError(f"Invalid time slot: {time_slot}")
        slot_times = self.settings.get("slot_times") or {}
        default = parse_time_of_day(SCHEDULER_DEFAULTS["slot_times"][time_slot])
        return parse_time_of_day(slot_times.get(time_slot), default=default)

    def first_run_time(self, time_slot, now=None):
        zone = get_zone(self.timezone_name)
        local = (now or self.now()).astimezone(zone)
        candidate = datetime.combine(local.date(), self.fire_time(time_slot), tzinfo=zone)
        if candidate <= local:
            candidate = datetime.combine(local.date() + timedelta(days=1), self.fire_time(time_slot), tzinfo=zone)
        return candidate

    def next_run_time(self, time_slot, now=None):
        """The slot's fixed firing time on the day after `now`."""
        zone = get_zone(self.timezone_name)
        local = (now or self.now()).astimezone(zone)
        return datetime.combine(local.date() + timedelta(days=1), self.fire_time(time_slot), tzinfo=zone)

    def start(self):
        schedules = self.store.list_schedules(active_only=True)
        for schedule in schedules:
            try:
                self.arm_schedule(schedule)
            except ValueError as exc:
                logger.error("Skipping schedule %s: %s", schedule.get("id"), exc)
        logger.info("Scheduler started with %d armed schedules", len(self.state))

    def stop(self):
        self.state.clear()

    def list_armed(self):
        return self.state.list()

    def arm_schedule(self, schedule):
        schedule_id = schedule["id"]
        office_id = schedule["office_id"]
        isp = schedule["isp"]
        time_slot = schedule["time_slot"]
        fire_time = self.fire_time(time_slot)

        def build_trigger():
            return self.trigger_factory(
                fire_time,
                self.timezone_name,
                lambda: self.execute_scheduled_test(schedule_id, office_id, isp, time_slot),
                name=f"{schedule_id}:{time_slot}",
                max_sleep_seconds=self.max_sleep_seconds,
            )

        trigger, created = self.state.add(schedule_id, build_trigger)
        if created:
            logger.info("Armed schedule %s (%s, %s, %s) at %s %s", schedule_id, office_id, isp, time_slot, fire_time, self.timezone_name)
        return trigger

    def setup_office_schedules(self, office_id):
        """Create and arm any missing (ISP x slot) schedules; existing ones are untouched."""
        office = self.store.get_office(office_id)
        if not office:
            raise OfficeNotFoundError(f"Office not found: {office_id}")
        created = []
        for provider in parse_isps_from_office(office):
            label = provider["label"]
            for time_slot in TIME_SLOTS:
                existing = self.store.find_active_schedule(office_id, label, time_slot)
                if existing:
                    self.arm_schedule(existing)
                    continue
                try:
                    schedule = self.store.insert_schedule(
                        office_id,
                        label,
                        time_slot,
                        next_run=format_timestamp(self.first_run_time(time_slot)),
                    )
                except Exception as exc:
                    raise PersistenceError(f"Failed to create schedule for {office_id}/{label}/{time_slot}") from exc
                if schedule is None:
                    # Another writer created it between the check and the insert.
                    schedule = self.store.find_active_schedule(office_id, label, time_slot)
                    if schedule:
                        self.arm_schedule(schedule)
                    continue
                self.arm_schedule(schedule)
                created.append(schedule)
        logger.info("Office %s: %d new schedules", office_id, len(created))
        return created

    def teardown_office_schedules(self, office_id, delete=True):
        removed = []
        for schedule in self.store.list_schedules(office_id=office_id):
            self.remove_schedule(schedule["id"], delete=delete)
            removed.append(schedule["id"])
        return removed

    def remove_schedule(self, schedule_id, delete=True):
        was_armed = self.state.remove(schedule_id)
        if delete:
            self.store.delete_schedule(schedule_id)
        else:
            self.store.set_schedule_active(schedule_id, False)
        return was_armed

    def deactivate_schedule(self, schedule_id):
        return self.remove_schedule(schedule_id, delete=False)

    def _job_name(self, schedule_id):
        return f"schedule:{schedule_id}"

    def execute_scheduled_test(self, schedule_id, office_id, isp, time_slot):
        """
        One firing: measure the schedule's ISP and record the result.

        A missing office or a failed measurement aborts only this firing; the
        trigger stays armed and the next day's firing is the retry.
        """
        job_name = self._job_name(schedule_id)
        started = self.now()
        self.store.update_job_status(job_name, last_run_at=format_timestamp(started))

        office = self.store.get_office(office_id)
        if not office:
            logger.error("Office not found for scheduled test: %s (schedule %s)", office_id, schedule_id)
            self.store.update_job_status(job_name, last_error=f"Office not found: {office_id}", last_error_at=format_timestamp(started))
            return None

        provider = resolve_isp_label(office, isp)
        label = provider["label"]
        try:
            result = self.measure(label)
        except MeasurementError as exc:
            logger.error("Scheduled test %s for %s/%s failed: %s", schedule_id, office_id, label, exc)
            self.store.update_job_status(job_name, last_error=str(exc), last_error_at=format_timestamp(self.now()))
            return None

        raw_data = {
            "section": provider["section"],
            "selected_isp": provider["id"],
            "schedule_id": schedule_id,
            "time_slot": time_slot,
            "isp_validation": validate_isp_match(provider["name"], result.get("isp_name")),
            "result": result.get("raw_data"),
        }
        finished = self.now()
        try:
            record = self.store.insert_speed_test(
                office_id,
                label,
                result.get("download"),
                result.get("upload"),
                result.get("ping"),
                jitter=result.get("jitter"),
                packet_loss=result.get("packet_loss"),
                server_id=result.get("server_id"),
                server_name=result.get("server_name"),
                raw_data=json.dumps(raw_data, ensure_ascii=True),
                timestamp=format_timestamp(finished),
            )
        except Exception as exc:
            logger.critical(
                "Measurement for %s/%s succeeded but could not be stored, result lost: %s",
                office_id,
                label,
                exc,
            )
            self.store.update_job_status(job_name, last_error=f"store failed: {exc}", last_error_at=format_timestamp(finished))
            raise PersistenceError(f"Failed to store scheduled test for schedule {schedule_id}") from exc

        try:
            self.store.update_schedule_run(
                schedule_id,
                format_timestamp(finished),
                format_timestamp(self.next_run_time(time_slot, finished)),
            )
        except Exception as exc:
            logger.error("Failed to update bookkeeping for schedule %s: %s", schedule_id, exc)
            raise PersistenceError(f"Failed to update schedule {schedule_id}") from exc
        self.store.update_job_status(job_name, last_success_at=format_timestamp(finished), last_error="", last_error_at="")
        logger.info(
            "Scheduled test %s recorded for %s/%s: %.2f down / %.2f up",
            schedule_id,
            office_id,
            label,
            record.get("download") or 0.0,
            record.get("upload") or 0.0,
        )
        return record
