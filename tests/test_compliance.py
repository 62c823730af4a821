import json
from datetime import date

import pytest

from officenet import compliance
from officenet.isp import make_provider, parse_isps_from_office
from officenet.timeslots import MORNING, NOON

OFFICE = {"id": "o1", "unit_office": "Main", "isps": json.dumps(["Acme", "Beta"])}


def _test(test_id, isp, timestamp, office_id="o1", raw_data=None, download=50.0):
    return {
        "id": test_id,
        "office_id": office_id,
        "isp": isp,
        "timestamp": timestamp,
        "download": download,
        "upload": 10.0,
        "ping": 20.0,
        "raw_data": raw_data,
    }


@pytest.mark.parametrize("completed,expected", [(0, 0), (1, 33), (2, 67), (3, 100)])
def test_slot_percentages(completed, expected):
    assert compliance.percentage(completed, 3) == expected


def test_percentage_rounds_half_up_and_handles_zero():
    assert compliance.percentage(1, 8) == 13
    assert compliance.percentage(0, 0) == 0


def test_office_scenario():
    providers = parse_isps_from_office(OFFICE)
    tests = [
        _test(1, "Acme", "2024-03-04T09:10:00Z"),
        _test(2, "Beta", "2024-03-04T12:30:00Z"),
        _test(3, "Acme", "2024-03-04T14:00:00Z"),
    ]
    report = compliance.compute_office_compliance(OFFICE, providers, tests, "UTC")

    acme, beta = report["isp_compliance"]
    assert acme["isp"] == "Acme"
    assert acme["compliance"] == {"percentage": 67, "completed_slots": 2, "total_slots": 3}
    assert acme["tests"]["morning"]["id"] == 1
    assert acme["tests"]["noon"] is None
    assert acme["tests"]["afternoon"]["id"] == 3
    assert beta["compliance"]["completed_slots"] == 1
    assert beta["compliance"]["percentage"] == 33
    assert report["compliance"] == {"percentage": 50, "completed_slots": 3, "total_slots": 6}


def test_latest_row_per_slot_is_counted_once():
    providers = parse_isps_from_office(OFFICE)
    tests = [
        _test(1, "Acme", "2024-03-04T07:00:00Z", download=10.0),
        _test(2, "Acme", "2024-03-04T10:45:00Z", download=30.0),
        _test(3, "Acme", "2024-03-04T08:00:00Z", download=20.0),
    ]
    report = compliance.compute_office_compliance(OFFICE, providers, tests, "UTC")
    acme = report["isp_compliance"][0]
    assert acme["compliance"]["completed_slots"] == 1
    assert acme["tests"]["morning"]["id"] == 2
    assert acme["counts"]["morning"] == 3
    assert acme["counts"]["total"] == 3


def test_rows_outside_testing_hours_are_ignored():
    providers = parse_isps_from_office(OFFICE)
    tests = [_test(1, "Acme", "2024-03-04T20:00:00Z"), _test(2, "Acme", "2024-03-04T05:59:00Z")]
    report = compliance.compute_office_compliance(OFFICE, providers, tests, "UTC")
    assert report["compliance"]["completed_slots"] == 0


def test_slots_follow_reporting_timezone():
    providers = parse_isps_from_office(OFFICE)
    # 04:30Z is 12:30 in Manila.
    tests = [_test(1, "Acme", "2024-03-04T04:30:00Z")]
    report = compliance.compute_office_compliance(OFFICE, providers, tests, "Asia/Manila")
    assert report["isp_compliance"][0]["tests"]["noon"]["id"] == 1


def test_office_without_providers_is_zero():
    office = {"id": "empty", "isps": "[]"}
    report = compliance.compute_office_compliance(office, [], [_test(1, "Acme", "2024-03-04T09:00:00Z")], "UTC")
    assert report["compliance"] == {"percentage": 0, "completed_slots": 0, "total_slots": 0}


def test_section_rows_are_attributed_to_their_section():
    office = {"id": "o2", "isps": ["Globe"], "section_isps": {"IT": ["Globe"]}}
    providers = parse_isps_from_office(office)
    tests = [
        _test(1, "Globe", "2024-03-04T09:00:00Z", office_id="o2", raw_data=json.dumps({"section": "IT"})),
        _test(2, "Globe (IT)", "2024-03-04T12:10:00Z", office_id="o2"),
        _test(3, "Globe", "2024-03-04T15:00:00Z", office_id="o2"),
    ]
    report = compliance.compute_office_compliance(office, providers, tests, "UTC")
    general, it = report["isp_compliance"]
    assert general["compliance"]["completed_slots"] == 1
    assert general["tests"]["afternoon"]["id"] == 3
    assert it["compliance"]["completed_slots"] == 2


def test_summarize_fleet():
    reports = [{"compliance": {"percentage": value}} for value in (100, 50, 0, 33)]
    summary = compliance.summarize_fleet(reports)
    assert summary == {
        "total_offices": 4,
        "fully_compliant_offices": 1,
        "partially_compliant_offices": 2,
        "non_compliant_offices": 1,
        "overall_compliance_percentage": 46,
    }
    assert compliance.summarize_fleet([])["overall_compliance_percentage"] == 0


def test_build_daily_report_groups_by_office():
    other = {"id": "o2", "unit_office": "Branch", "isp": "Gamma"}
    tests = [
        _test(1, "Acme", "2024-03-04T09:10:00Z"),
        _test(2, "Gamma", "2024-03-04T09:10:00Z", office_id="o2"),
        _test(3, "Gamma", "2024-03-04T12:10:00Z", office_id="o2"),
        _test(4, "Gamma", "2024-03-04T13:10:00Z", office_id="o2"),
    ]
    report = compliance.build_daily_report([OFFICE, other], tests, date(2024, 3, 4), "UTC", parse_isps_from_office)
    assert report["date"] == "2024-03-04"
    assert [office["compliance"]["percentage"] for office in report["offices"]] == [17, 100]
    assert report["summary"]["fully_compliant_offices"] == 1
    assert report["summary"]["partially_compliant_offices"] == 1
    assert set(report["time_slots"]) == {"morning", "noon", "afternoon"}


def test_split_available_isps():
    providers = [make_provider("Acme"), make_provider("Beta")]
    tests = [_test(1, "Acme", "2024-03-04T12:05:00Z"), _test(2, "Beta", "2024-03-04T09:00:00Z")]
    split = compliance.split_available_isps(providers, tests, NOON, "UTC")
    assert [p["name"] for p in split["tested"]] == ["Acme"]
    assert [p["name"] for p in split["available"]] == ["Beta"]

    morning = compliance.split_available_isps(providers, tests, MORNING, "UTC")
    assert [p["name"] for p in morning["tested"]] == ["Beta"]
    assert compliance.split_available_isps(providers, tests, None) == {"available": [], "tested": []}
