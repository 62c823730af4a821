import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from officenet import main
from officenet.errors import MeasurementError
from officenet.scheduler import ScheduleManager

SCHEDULER_SETTINGS = {
    "timezone": "America/New_York",
    "slot_times": {"MORNING": "09:00", "NOON": "12:00", "AFTERNOON": "15:00"},
}


def _frozen_datetime(instant):
    class FrozenDatetime(datetime):
        @classmethod
        def now(cls, tz=None):
            return instant if tz is None else instant.astimezone(tz)

    return FrozenDatetime


@pytest.fixture
def client(temp_db, fake_trigger, fake_measure, monkeypatch):
    monkeypatch.setenv("OFFICENET_TIMEZONE", "UTC")
    manager = ScheduleManager(
        store=temp_db, measure=fake_measure, trigger_factory=fake_trigger, settings=SCHEDULER_SETTINGS
    )
    monkeypatch.setattr(main, "schedule_manager", manager)
    return TestClient(main.app)


@pytest.fixture
def office(client):
    response = client.post(
        "/api/offices",
        json={"id": "o1", "unit_office": "Main", "isps": ["Acme", "Beta"], "section_isps": {"IT": ["Globe"]}},
    )
    assert response.status_code == 200
    return response.json()["office"]


def test_save_office_requires_name(client):
    assert client.post("/api/offices", json={"isps": ["Acme"]}).status_code == 400


def test_office_isps(client, office):
    response = client.get(f"/api/offices/{office['id']}/isps")
    labels = [isp["label"] for isp in response.json()["isps"]]
    assert labels == ["Acme", "Beta", "Globe (IT)"]
    assert client.get("/api/offices/missing/isps").status_code == 404


def test_available_isps_inside_slot(client, office, temp_db, monkeypatch):
    monkeypatch.setattr(main, "datetime", _frozen_datetime(datetime(2024, 3, 4, 12, 20, tzinfo=timezone.utc)))
    temp_db.insert_speed_test("o1", "Acme", 50.0, 10.0, 20.0, timestamp="2024-03-04T12:05:00Z")
    temp_db.insert_speed_test("o1", "Beta", 50.0, 10.0, 20.0, timestamp="2024-03-04T09:05:00Z")

    body = client.get("/api/offices/o1/available-isps").json()
    assert body["current_time_slot"] == "NOON"
    assert [isp["label"] for isp in body["tested"]] == ["Acme"]
    assert [isp["label"] for isp in body["available"]] == ["Beta", "Globe (IT)"]


def test_available_isps_outside_hours(client, office, monkeypatch):
    monkeypatch.setattr(main, "datetime", _frozen_datetime(datetime(2024, 3, 4, 22, 0, tzinfo=timezone.utc)))
    body = client.get("/api/offices/o1/available-isps").json()
    assert body["available"] == []
    assert body["current_time_slot"] is None
    assert body["message"] == main.OUTSIDE_HOURS_MESSAGE


def test_available_isps_uses_client_timezone(client, office, monkeypatch):
    # 22:00Z is 06:00 the next morning in Manila.
    monkeypatch.setattr(main, "datetime", _frozen_datetime(datetime(2024, 3, 4, 22, 0, tzinfo=timezone.utc)))
    body = client.get("/api/offices/o1/available-isps", params={"timezone": "Asia/Manila"}).json()
    assert body["current_time_slot"] == "MORNING"
    assert body["resolution"]["source"] == "client"
    assert len(body["available"]) == 3


def test_schedule_lifecycle(client, office):
    created = client.post("/api/offices/o1/schedules").json()
    assert len(created["created"]) == 9
    again = client.post("/api/offices/o1/schedules").json()
    assert again["created"] == []
    assert len(again["schedules"]) == 9

    schedules = client.get("/api/schedules").json()["schedules"]
    assert all(schedule["armed"] for schedule in schedules)

    first_id = schedules[0]["id"]
    deactivated = client.post(f"/api/schedules/{first_id}/deactivate").json()["schedule"]
    assert deactivated["is_active"] is False
    assert client.delete(f"/api/schedules/{first_id}").json() == {"removed": first_id}
    assert client.delete(f"/api/schedules/{first_id}").status_code == 404

    removed = client.delete("/api/offices/o1/schedules").json()["removed"]
    assert len(removed) == 8
    assert client.get("/api/jobs").json()["armed"] == []


def test_provision_unknown_office(client):
    assert client.post("/api/offices/nope/schedules").status_code == 404


def test_monitoring_report(client, office, temp_db):
    # Reports are cut in New York time, the scheduler's reference timezone.
    raw = json.dumps({"section": "IT"})
    temp_db.insert_speed_test("o1", "Acme", 50.0, 10.0, 20.0, timestamp="2024-03-04T14:10:00Z")
    temp_db.insert_speed_test("o1", "Globe", 50.0, 10.0, 20.0, raw_data=raw, timestamp="2024-03-04T17:10:00Z")
    temp_db.insert_speed_test("o1", "Acme", 50.0, 10.0, 20.0, timestamp="2024-03-05T14:10:00Z")

    report = client.get("/api/monitoring", params={"date": "2024-03-04"}).json()
    assert report["date"] == "2024-03-04"
    (office_report,) = report["offices"]
    assert office_report["compliance"] == {"percentage": 22, "completed_slots": 2, "total_slots": 9}
    by_label = {entry["isp"]: entry for entry in office_report["isp_compliance"]}
    assert by_label["Globe (IT)"]["tests"]["noon"] is not None
    assert report["summary"]["partially_compliant_offices"] == 1


def test_monitoring_rejects_bad_date(client):
    assert client.get("/api/monitoring", params={"date": "04/03/2024"}).status_code == 400


def test_time_endpoint(client):
    body = client.get("/api/time", params={"timezone": "Not/AZone"}).json()
    assert body["resolution"]["source"] == "server"
    assert set(body["time_slots"]) == {"morning", "noon", "afternoon"}


def test_default_firings_land_in_their_own_report_slots(client, temp_db, fake_trigger, fake_measure, monkeypatch):
    clock = {}
    manager = ScheduleManager(store=temp_db, measure=fake_measure, trigger_factory=fake_trigger, now=lambda: clock["now"])
    monkeypatch.setattr(main, "schedule_manager", manager)
    temp_db.save_office({"id": "o1", "unit_office": "Main", "isps": ["Acme"]})
    clock["now"] = datetime(2024, 3, 4, 6, 0, tzinfo=timezone.utc)
    manager.setup_office_schedules("o1")

    for trigger in fake_trigger.instances:
        time_slot = trigger.name.split(":")[1]
        # 09:00, 12:00 and 15:00 New York on 2024-03-04.
        clock["now"] = manager.first_run_time(time_slot, now=datetime(2024, 3, 4, 6, 0, tzinfo=timezone.utc))
        assert trigger.fire() is not None

    report = client.get("/api/monitoring", params={"date": "2024-03-04"}).json()
    (office_report,) = report["offices"]
    assert office_report["compliance"] == {"percentage": 100, "completed_slots": 3, "total_slots": 3}
    assert report["timezone"] == "America/New_York"


def test_reporting_timezone_falls_back_to_utc(client, temp_db, fake_trigger, fake_measure, monkeypatch):
    manager = ScheduleManager(
        store=temp_db, measure=fake_measure, trigger_factory=fake_trigger, settings={"timezone": "Not/AZone"}
    )
    monkeypatch.setattr(main, "schedule_manager", manager)
    assert main.reporting_timezone() == "UTC"


@pytest.fixture
def measured(monkeypatch):
    calls = []

    def fake(label):
        calls.append(label)
        return {"download": 90.0, "upload": 30.0, "ping": 15.0, "isp_name": "Globe Telecom", "raw_data": None}

    monkeypatch.setattr(main, "_measure", fake)
    return calls


def _freeze(monkeypatch, instant):
    monkeypatch.setattr(main, "datetime", _frozen_datetime(instant))


def test_speedtest_runs_and_records_for_selected_isp(client, office, temp_db, measured, monkeypatch):
    _freeze(monkeypatch, datetime(2024, 3, 4, 12, 20, tzinfo=timezone.utc))
    response = client.post("/api/speedtest", json={"office_id": "o1", "isp": "globe-it"})
    assert response.status_code == 200
    body = response.json()
    assert body["time_slot"] == "NOON"
    assert measured == ["Globe (IT)"]
    record = body["test"]
    assert record["isp"] == "Globe (IT)"
    assert record["timestamp"] == "2024-03-04T12:20:00Z"
    raw = json.loads(record["raw_data"])
    assert raw["section"] == "IT"
    assert raw["isp_validation"]["is_match"] is True


def test_speedtest_records_client_result_without_measuring(client, office, measured, monkeypatch):
    _freeze(monkeypatch, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
    result = {"download": 40.5, "upload": 12.0, "ping": 22.0}
    response = client.post("/api/speedtest", json={"office_id": "o1", "isp": "Acme", "result": result})
    assert response.status_code == 200
    assert response.json()["test"]["download"] == 40.5
    assert measured == []


def test_speedtest_refused_outside_testing_hours(client, office, temp_db, measured, monkeypatch):
    _freeze(monkeypatch, datetime(2024, 3, 4, 22, 0, tzinfo=timezone.utc))
    response = client.post("/api/speedtest", json={"office_id": "o1", "isp": "Acme"})
    assert response.status_code == 403
    assert response.json()["detail"] == main.OUTSIDE_HOURS_MESSAGE
    assert measured == []
    assert temp_db.list_speed_tests()[1] == 0


def test_speedtest_refused_when_slot_already_tested(client, office, temp_db, measured, monkeypatch):
    _freeze(monkeypatch, datetime(2024, 3, 4, 12, 40, tzinfo=timezone.utc))
    temp_db.insert_speed_test("o1", "Acme", 50.0, 10.0, 20.0, timestamp="2024-03-04T12:05:00Z")
    response = client.post("/api/speedtest", json={"office_id": "o1", "isp": "acme-general"})
    assert response.status_code == 409
    assert "already been tested" in response.json()["detail"]
    assert measured == []

    # A different ISP in the same slot is still allowed.
    assert client.post("/api/speedtest", json={"office_id": "o1", "isp": "Beta"}).status_code == 200


@pytest.mark.parametrize(
    "payload,status",
    [
        ({"office_id": "missing", "isp": "Acme"}, 404),
        ({"office_id": "o1", "isp": "Unknown"}, 400),
        ({"office_id": "o1", "isp": "Acme", "result": {"download": "fast", "upload": 1, "ping": 1}}, 400),
    ],
)
def test_speedtest_rejects_bad_requests(client, office, measured, monkeypatch, payload, status):
    _freeze(monkeypatch, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
    assert client.post("/api/speedtest", json=payload).status_code == status
    assert measured == []


def test_speedtest_measurement_failure(client, office, temp_db, monkeypatch):
    _freeze(monkeypatch, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))

    def failing(label):
        raise MeasurementError("no servers available")

    monkeypatch.setattr(main, "_measure", failing)
    response = client.post("/api/speedtest", json={"office_id": "o1", "isp": "Acme"})
    assert response.status_code == 502
    assert temp_db.list_speed_tests()[1] == 0


def test_speedtest_history_is_paginated(client, office, temp_db):
    for hour in (7, 12, 14):
        temp_db.insert_speed_test("o1", "Acme", float(hour), 10.0, 20.0, timestamp=f"2024-03-04T{hour:02d}:00:00Z")
    temp_db.insert_speed_test("o2", "Beta", 1.0, 1.0, 1.0, timestamp="2024-03-04T08:00:00Z")

    body = client.get("/api/speedtest", params={"office_id": "o1", "limit": 2, "page": 1}).json()
    assert [test["download"] for test in body["tests"]] == [14.0, 12.0]
    assert body["pagination"] == {"total": 3, "pages": 2, "current": 1, "limit": 2}
    second = client.get("/api/speedtest", params={"office_id": "o1", "limit": 2, "page": 2}).json()
    assert [test["download"] for test in second["tests"]] == [7.0]
    assert client.get("/api/speedtest").json()["pagination"]["total"] == 4
