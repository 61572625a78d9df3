import pytest
import requests

import weather
from config import Settings
from errors import UpstreamUnavailableError
from weather import WeatherOracle, describes_rain


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeGet:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, Exception):
            raise result
        return result


class Ticker:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def conditions(main, description=""):
    return {"weather": [{"main": main, "description": description}]}


@pytest.fixture()
def ticker():
    return Ticker()


@pytest.fixture()
def keyed_oracle(ticker):
    return WeatherOracle(Settings(weather_api_key="secret", weather_timeout_seconds=5), clock=ticker)


@pytest.mark.parametrize(
    "main, description, expected",
    [
        ("Rain", "moderate rain", True),
        ("Drizzle", "", True),
        ("Thunderstorm", "", True),
        ("Clouds", "light drizzle nearby", True),
        ("Clear", "clear sky", False),
        ("Snow", "", False),
    ],
)
def test_describes_rain(main, description, expected):
    assert describes_rain(conditions(main, description)) is expected


def test_describes_rain_without_conditions():
    assert describes_rain({}) is False
    assert describes_rain({"weather": []}) is False


def test_missing_key_answers_dry_without_request(monkeypatch):
    fake = FakeGet(FakeResponse(conditions("Rain")))
    monkeypatch.setattr(weather.requests, "get", fake)

    assert WeatherOracle(Settings()).is_raining() is False
    assert fake.calls == []


def test_request_uses_location_and_timeout(monkeypatch, keyed_oracle):
    fake = FakeGet(FakeResponse(conditions("Rain")))
    monkeypatch.setattr(weather.requests, "get", fake)

    assert keyed_oracle.is_raining() is True
    call = fake.calls[0]
    assert call["timeout"] == 5
    assert call["params"]["lat"] == -22.9068
    assert call["params"]["lon"] == -43.1729
    assert call["params"]["appid"] == "secret"


def test_result_is_cached(monkeypatch, keyed_oracle, ticker):
    fake = FakeGet(FakeResponse(conditions("Rain")), FakeResponse(conditions("Clear")))
    monkeypatch.setattr(weather.requests, "get", fake)

    assert keyed_oracle.is_raining() is True
    ticker.t += 599
    assert keyed_oracle.is_raining() is True
    assert len(fake.calls) == 1

    ticker.t += 2
    assert keyed_oracle.is_raining() is False
    assert len(fake.calls) == 2


def test_timeout_answers_dry(monkeypatch, keyed_oracle):
    monkeypatch.setattr(weather.requests, "get", FakeGet(requests.Timeout("slow")))

    assert keyed_oracle.is_raining() is False


def test_error_status_answers_dry_and_is_not_cached(monkeypatch, keyed_oracle):
    fake = FakeGet(FakeResponse(status_code=500), FakeResponse(conditions("Rain")))
    monkeypatch.setattr(weather.requests, "get", fake)

    assert keyed_oracle.is_raining() is False
    assert keyed_oracle.is_raining() is True
    assert len(fake.calls) == 2


def test_invalid_json_is_upstream_error(monkeypatch, keyed_oracle):
    monkeypatch.setattr(weather.requests, "get", FakeGet(FakeResponse(payload=None)))

    with pytest.raises(UpstreamUnavailableError):
        keyed_oracle.fetch_conditions()
    assert keyed_oracle.is_raining() is False



@pytest.mark.parametrize(
    "payload",
    [
        {"weather": "rain"},
        {"weather": ["Rain"]},
        {"weather": [None]},
        {"weather": {"main": "Rain"}},
    ],
)
def test_malformed_conditions_answer_dry(monkeypatch, keyed_oracle, payload):
    assert describes_rain(payload) is False
    monkeypatch.setattr(weather.requests, "get", FakeGet(FakeResponse(payload)))

    assert keyed_oracle.is_raining() is False


def test_non_object_document_is_upstream_error(monkeypatch, keyed_oracle):
    monkeypatch.setattr(weather.requests, "get", FakeGet(FakeResponse([])))

    with pytest.raises(UpstreamUnavailableError):
        keyed_oracle.fetch_conditions()
    assert keyed_oracle.is_raining() is False
