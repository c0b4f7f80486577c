import threading
import time

import pytest
import requests

from facility_ingest.core import fetcher
from facility_ingest.core.config import Settings
from facility_ingest.core.errors import FetchCancelledError, SourceUnavailableError


class DummyResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1")
        return self._payload


class DummySession:
    def __init__(self, outcomes=None):
        self.headers = {}
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.closed = False

    def request(self, method, url, params=None, data=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "data": data, "json": json, "timeout": timeout})
        outcome = self.outcomes.pop(0) if self.outcomes else DummyResponse()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_jitter(monkeypatch):
    monkeypatch.setattr(fetcher.random, "uniform", lambda a, b: 0.0)


def _make(session, sleeps=None, **kwargs):
    options = {"min_interval": 0.0, "sleep": sleeps.append if sleeps is not None else None}
    options.update(kwargs)
    return fetcher.RateLimitedFetcher(session=session, **options)


def test_fetch_returns_decoded_json_and_sets_headers():
    session = DummySession([DummyResponse(payload={"elements": []})])
    client = _make(session, user_agent="TestAgent/1.0", timeout=12)

    payload = client.fetch("https://overpass.example/api", method="POST", data={"data": "q"})

    assert payload == {"elements": []}
    assert session.headers["User-Agent"] == "TestAgent/1.0"
    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["timeout"] == 12


def test_fetch_retries_with_exponential_backoff():
    sleeps = []
    session = DummySession([requests.ConnectionError("boom"), DummyResponse(status_code=503), DummyResponse(payload=[1])])
    client = _make(session, sleeps)

    assert client.fetch("https://api.example/data") == [1]
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_fetch_raises_source_unavailable_after_exhausting_attempts(caplog):
    sleeps = []
    session = DummySession([requests.Timeout("slow")] * 3)
    client = _make(session, sleeps, max_retries=3)

    with caplog.at_level("ERROR"):
        with pytest.raises(SourceUnavailableError) as excinfo:
            client.fetch("https://slow.example/api")

    assert excinfo.value.source == "slow.example"
    assert "slow.example" in str(excinfo.value)
    assert len(session.calls) == 3
    # No pause after the final attempt.
    assert sleeps == [1.0, 2.0]
    assert "exhausted 3 attempts" in " ".join(caplog.messages)


def test_fetch_retries_undecodable_json():
    session = DummySession([DummyResponse(invalid_json=True), DummyResponse(payload={"ok": True})])
    client = _make(session, [])

    assert client.fetch("https://api.example/data") == {"ok": True}


def test_fetch_spaces_requests_per_host():
    sleeps = []
    session = DummySession()
    client = _make(session, sleeps, min_interval=1.0, clock=lambda: 100.0)

    client.fetch("https://a.example/one")
    client.fetch("https://a.example/two")
    client.fetch("https://b.example/one")

    assert sleeps == [1.0]


def test_fetch_caps_concurrent_requests():
    release = threading.Event()
    lock = threading.Lock()
    state = {"in_flight": 0, "max": 0}

    class BlockingSession(DummySession):
        def request(self, *args, **kwargs):
            with lock:
                state["in_flight"] += 1
                state["max"] = max(state["max"], state["in_flight"])
            release.wait(2)
            with lock:
                state["in_flight"] -= 1
            return DummyResponse(payload={})

    client = _make(BlockingSession(), [], max_concurrent=2)
    threads = [threading.Thread(target=client.fetch, args=(f"https://host{i}.example/",)) for i in range(5)]
    for thread in threads:
        thread.start()
    time.sleep(0.1)
    release.set()
    for thread in threads:
        thread.join(5)

    assert 1 <= state["max"] <= 2


def test_fetch_aborts_when_cancelled_before_attempt():
    session = DummySession()
    client = _make(session, [])
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(FetchCancelledError):
        client.fetch("https://api.example/data", cancel_event=cancel)

    assert session.calls == []


def test_cancellation_interrupts_backoff_wait():
    cancel = threading.Event()

    class CancellingSession(DummySession):
        def request(self, *args, **kwargs):
            cancel.set()
            raise requests.ConnectionError("down")

    client = fetcher.RateLimitedFetcher(session=CancellingSession(), min_interval=0.0)

    with pytest.raises(SourceUnavailableError) as excinfo:
        client.fetch("https://api.example/data", cancel_event=cancel)

    assert isinstance(excinfo.value, FetchCancelledError)


def test_fetch_serves_repeated_requests_from_cache():
    session = DummySession([DummyResponse(payload={"n": 1}), DummyResponse(payload={"n": 2})])
    client = _make(session, [], cache_ttl=60)

    first = client.fetch("https://api.example/data", params={"q": "toilet"})
    second = client.fetch("https://api.example/data", params={"q": "toilet"})

    assert first == second == {"n": 1}
    assert len(session.calls) == 1


def test_backoff_delay_formula(monkeypatch):
    monkeypatch.setattr(fetcher.random, "uniform", lambda a, b: b)

    assert fetcher.backoff_delay(1) == pytest.approx(1.5)
    assert fetcher.backoff_delay(3) == pytest.approx(4.5)


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        fetcher.RateLimitedFetcher(session=DummySession(), max_concurrent=0)
    with pytest.raises(ValueError):
        fetcher.RateLimitedFetcher(session=DummySession(), max_retries=0)


def test_from_settings_and_close_leave_injected_session_open():
    session = DummySession()
    settings = Settings(max_retries=4, max_concurrent_requests=2, fetch_timeout=9.0, min_request_interval=0.5)

    with fetcher.RateLimitedFetcher.from_settings(settings, session=session) as client:
        assert client.max_retries == 4
        assert client.max_concurrent == 2
        assert client.timeout == 9.0
        assert client.min_interval == 0.5

    assert session.closed is False


def test_cancellation_stops_fetch_queued_behind_concurrency_cap():
    started = threading.Event()
    release = threading.Event()
    cancel = threading.Event()
    outcomes = {}

    class BlockingSession(DummySession):
        def request(self, method, url, **kwargs):
            self.calls.append(url)
            started.set()
            release.wait(2)
            return DummyResponse(payload={"ok": True})

    session = BlockingSession()
    client = _make(session, [], max_concurrent=1)

    def run(name, url, event):
        try:
            outcomes[name] = client.fetch(url, cancel_event=event)
        except SourceUnavailableError as exc:
            outcomes[name] = exc

    first = threading.Thread(target=run, args=("first", "https://a.example/1", None))
    first.start()
    assert started.wait(2)
    queued = threading.Thread(target=run, args=("queued", "https://b.example/2", cancel))
    queued.start()
    time.sleep(0.1)
    cancel.set()
    queued.join(2)
    release.set()
    first.join(2)

    assert session.calls == ["https://a.example/1"]
    assert isinstance(outcomes["queued"], FetchCancelledError)
    assert outcomes["first"] == {"ok": True}


def test_result_of_request_finishing_after_cancel_is_discarded():
    cancel = threading.Event()

    class SlowSession(DummySession):
        def request(self, *args, **kwargs):
            cancel.set()
            return DummyResponse(payload={"late": True})

    client = _make(SlowSession(), [])

    with pytest.raises(FetchCancelledError):
        client.fetch("https://api.example/data", cancel_event=cancel)
