import pytest

from officenet import db


class FakeTrigger:
    """Trigger double: never starts a thread, fires synchronously on demand."""

    instances = []

    def __init__(self, time_of_day, timezone_name, callback, name="", max_sleep_seconds=60):
        self.time_of_day = time_of_day
        self.max_sleep_seconds = max_sleep_seconds
        self.timezone_name = timezone_name
        self.callback = callback
        self.name = name
        self.started = False
        self.cancelled = False
        self.fired = 0
        FakeTrigger.instances.append(self)

    @property
    def active(self):
        return self.started and not self.cancelled

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired += 1
        return self.callback()


class FakeMeasure:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or {
            "download": 95.5,
            "upload": 40.25,
            "ping": 12.0,
            "jitter": 1.5,
            "packet_loss": 0.0,
            "server_id": "1234",
            "server_name": "Test Server",
            "isp_name": None,
            "raw_data": None,
        }
        self.error = error

    def __call__(self, isp_label=None):
        self.calls.append(isp_label)
        if self.error is not None:
            raise self.error
        return dict(self.result)


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "officenet.db"))
    monkeypatch.setattr(db, "DB_URL", "")
    db.init_db()
    return db


@pytest.fixture
def fake_trigger():
    FakeTrigger.instances = []
    return FakeTrigger


@pytest.fixture
def fake_measure():
    return FakeMeasure()
