import logging
import math

from .isp import match_test_to_provider
from .timeslots import TIME_SLOTS, parse_timestamp, slot_for_timestamp, slot_window_info

logger = logging.getLogger(__name__)

SLOTS_PER_DAY = len(TIME_SLOTS)


def round_half_up(value):
    return int(math.floor(value + 0.5))


def percentage(completed, required):
    if required <= 0:
        return 0
    return round_half_up(completed / required * 100)


def _test_summary(test):
    return {
        "id": test.get("id"),
        "timestamp": test.get("timestamp"),
        "download": test.get("download"),
        "upload": test.get("upload"),
        "ping": test.get("ping"),
        "isp": test.get("isp"),
    }


def _sort_key(test):
    try:
        return parse_timestamp(test.get("timestamp"))
    except ValueError:
        return None


def bucket_tests(providers, tests, timezone="UTC"):
    """Group tests by provider id and slot; rows outside every slot are dropped."""
    buckets = {provider["id"]: {slot: [] for slot in TIME_SLOTS} for provider in providers}
    for test in tests:
        slot = slot_for_timestamp(test.get("timestamp"), timezone)
        if slot is None:
            continue
        provider, _ = match_test_to_provider(test, providers)
        if provider["id"] not in buckets:
            logger.debug("Test %s (%r) matches no configured ISP", test.get("id"), test.get("isp"))
            continue
        buckets[provider["id"]][slot].append(test)
    return buckets


def _latest(tests):
    dated = [(key, test) for key, test in ((_sort_key(test), test) for test in tests) if key is not None]
    if not dated:
        return None
    return max(dated, key=lambda item: item[0])[1]


def compute_isp_compliance(provider, slot_tests):
    latest = {slot: _latest(slot_tests.get(slot, [])) for slot in TIME_SLOTS}
    completed = sum(1 for slot in TIME_SLOTS if latest[slot] is not None)
    counts = {slot.lower(): len(slot_tests.get(slot, [])) for slot in TIME_SLOTS}
    counts["total"] = sum(counts.values())
    return {
        "isp": provider["label"],
        "provider": provider,
        "compliance": {
            "percentage": percentage(completed, SLOTS_PER_DAY),
            "completed_slots": completed,
            "total_slots": SLOTS_PER_DAY,
        },
        "tests": {slot.lower(): _test_summary(latest[slot]) if latest[slot] else None for slot in TIME_SLOTS},
        "counts": counts,
    }


def compute_office_compliance(office, providers, tests, timezone="UTC"):
    buckets = bucket_tests(providers, tests, timezone)
    isp_compliance = [compute_isp_compliance(provider, buckets[provider["id"]]) for provider in providers]
    total_required = SLOTS_PER_DAY * len(providers)
    total_completed = sum(item["compliance"]["completed_slots"] for item in isp_compliance)
    return {
        "office": {
            "id": office.get("id"),
            "unit_office": office.get("unit_office"),
            "sub_unit_office": office.get("sub_unit_office"),
            "location": office.get("location"),
            "isps": [provider["label"] for provider in providers],
        },
        "compliance": {
            "percentage": percentage(total_completed, total_required),
            "completed_slots": total_completed,
            "total_slots": total_required,
        },
        "isp_compliance": isp_compliance,
        "counts": {"total": len(tests)},
    }


def summarize_fleet(reports):
    office_percentages = [report["compliance"]["percentage"] for report in reports]
    total = len(office_percentages)
    return {
        "total_offices": total,
        "fully_compliant_offices": sum(1 for value in office_percentages if value == 100),
        "partially_compliant_offices": sum(1 for value in office_percentages if 0 < value < 100),
        "non_compliant_offices": sum(1 for value in office_percentages if value == 0),
        "overall_compliance_percentage": round_half_up(sum(office_percentages) / total) if total else 0,
    }


def build_daily_report(offices, tests, day, timezone, providers_for):
    """
    Compliance for every office on `day`.

    `tests` are the rows inside the day window; `providers_for` maps an
    office to its provider list.
    """
    by_office = {}
    for test in tests:
        by_office.setdefault(test.get("office_id"), []).append(test)
    reports = [
        compute_office_compliance(office, providers_for(office), by_office.get(office.get("id"), []), timezone)
        for office in offices
    ]
    return {
        "date": day.isoformat(),
        "timezone": timezone,
        "summary": summarize_fleet(reports),
        "offices": reports,
        "time_slots": slot_window_info(),
    }


def split_available_isps(providers, tests, slot, timezone="UTC"):
    """Which providers still need a test in `slot`, and which already have one."""
    if slot is None:
        return {"available": [], "tested": []}
    buckets = bucket_tests(providers, tests, timezone)
    available = []
    tested = []
    for provider in providers:
        if buckets[provider["id"]][slot]:
            tested.append(provider)
        else:
            available.append(provider)
    return {"available": available, "tested": tested}
