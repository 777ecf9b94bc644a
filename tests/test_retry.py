import httpx
import openai
import pytest

from storyhub.config import ConfigurationError
from storyhub.storyteller.parsing import StoryParseError, StoryValidationError
from storyhub.storyteller.retry import ErrorClass, backoff_delay, classify_error, with_retries


def status_error(status: int, message: str = "error") -> openai.APIStatusError:
    request = httpx.Request("POST", "https://api.siliconflow.cn/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return openai.APIStatusError(message, response=response, body=None)


@pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
def test_rate_limit_and_server_errors_are_transient(status):
    assert classify_error(status_error(status)) is ErrorClass.TRANSIENT


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
def test_client_errors_are_fatal(status):
    assert classify_error(status_error(status)) is ErrorClass.FATAL


def test_network_errors_are_transient():
    request = httpx.Request("POST", "https://api.siliconflow.cn/v1/audio/speech")
    assert classify_error(openai.APIConnectionError(request=request)) is ErrorClass.TRANSIENT
    assert classify_error(httpx.ConnectError("boom", request=request)) is ErrorClass.TRANSIENT
    assert classify_error(ConnectionResetError("reset by peer")) is ErrorClass.TRANSIENT
    assert classify_error(TimeoutError()) is ErrorClass.TRANSIENT


def test_message_heuristics():
    assert classify_error(RuntimeError("Request processing failed")) is ErrorClass.TRANSIENT
    assert classify_error(RuntimeError("TypeError: fetch failed")) is ErrorClass.TRANSIENT
    assert classify_error(RuntimeError("read ECONNRESET")) is ErrorClass.TRANSIENT
    assert classify_error(RuntimeError("upstream returned 503")) is ErrorClass.TRANSIENT
    assert classify_error(ValueError("bad input")) is ErrorClass.FATAL


def test_vendor_message_wins_over_client_status():
    assert classify_error(status_error(400, "Request processing failed")) is ErrorClass.TRANSIENT


def test_configuration_errors_are_fatal():
    assert classify_error(ConfigurationError("Missing SILICONFLOW_API_KEY")) is ErrorClass.FATAL


def test_parse_errors_follow_setting():
    assert classify_error(StoryParseError("bad json")) is ErrorClass.TRANSIENT
    assert classify_error(StoryValidationError("no title")) is ErrorClass.TRANSIENT
    assert classify_error(StoryParseError("bad json"), retry_on_parse_error=False) is ErrorClass.FATAL


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert backoff_delay(3, base_delay=0.5, max_delay=1.5) == 1.5


@pytest.mark.anyio
async def test_transient_error_retried_until_success(fake_sleep, recorded_sleeps):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise status_error(503)
        return "ok"

    assert await with_retries("Story generation", flaky, sleep=fake_sleep) == "ok"
    assert len(calls) == 3
    assert recorded_sleeps == [1.0, 2.0]


@pytest.mark.anyio
async def test_fatal_error_raised_immediately(fake_sleep, recorded_sleeps):
    calls = []

    async def broken():
        calls.append(1)
        raise status_error(401, "invalid api key")

    with pytest.raises(openai.APIStatusError):
        await with_retries("Story generation", broken, sleep=fake_sleep)
    assert len(calls) == 1
    assert recorded_sleeps == []


@pytest.mark.anyio
async def test_gives_up_after_max_attempts_with_last_error(fake_sleep, recorded_sleeps):
    calls = []

    async def always_down():
        calls.append(1)
        raise RuntimeError(f"Request processing failed ({len(calls)})")

    with pytest.raises(RuntimeError, match=r"\(5\)"):
        await with_retries("Audio generation", always_down, max_attempts=5, sleep=fake_sleep)
    assert len(calls) == 5
    assert recorded_sleeps == [1.0, 2.0, 4.0, 8.0]
