SCHEDULER_DEFAULTS = {
    "enabled": True,
    # Reference timezone for the fixed daily firing times.
    "timezone": "America/New_York",
    "slot_times": {
        "MORNING": "09:00",
        "NOON": "12:00",
        "AFTERNOON": "15:00",
    },
    "max_sleep_seconds": 60,
}

SPEEDTEST_DEFAULTS = {
    "command": "speedtest",
    "args": "--format=json --accept-license --accept-gdpr",
    "timeout_seconds": 120,
    "store_raw_output": True,
    # ISP label -> source address the test should be bound to.
    "sources": {},
}
