from datetime import datetime, timedelta, timezone

import pytest

from analyzer import (
    NO_RESULTS_EXPLANATION, AnalysisInvoker, is_daily_limit, parse_analysis,
    parse_duration, parse_reset_seconds, parse_retry_seconds, read_quota,
)
from conftest import (
    VERDICT_ACTIVE, FakeAnthropic, FakeRawResponse, make_urls, rate_limit_error, server_error,
)
from errors import ResponseValidationError
from models import COMPLETE, ERROR, FETCHING, ScrapedResult

DAILY_LIMIT_MESSAGE = (
    "Rate limit reached for claude on tokens per day (TPD): Limit 500000, Used 499800. "
    "Please try again in 1h2m3s."
)


def analysis_ready_job(controller, count=2, model="CDQ2B20-10DZ"):
    job_id = controller.create("SMC", model)
    controller.set_urls(job_id, make_urls(count))
    controller.set_status(job_id, FETCHING)
    for index in range(count):
        controller.save_url_result(
            job_id, index, ScrapedResult(url=f"https://example.com/p{index}", content=f"{model} in stock")
        )
    return job_id


def invoker_with(controller, fake_sleep, *answers, quota=None):
    client = FakeAnthropic(answers=answers, quota=quota)
    invoker = AnalysisInvoker(
        controller, client=client, model="test-model", max_retries=3,
        min_tokens=500, rate_limit_buffer=2, preflight_buffer=1, sleep=fake_sleep,
    )
    return invoker, client


def test_parse_duration():
    assert parse_duration("7.66s") == pytest.approx(7.66)
    assert parse_duration("1h2m3s") == 3723
    assert parse_duration("7m54.336s") == pytest.approx(474.336)
    assert parse_duration("250ms") == pytest.approx(0.25)
    assert parse_duration("12") == 12
    assert parse_duration("soon") is None


def test_parse_reset_seconds_accepts_timestamps():
    now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    later = (now + timedelta(seconds=30)).isoformat().replace("+00:00", "Z")

    assert parse_reset_seconds("7.66s") == pytest.approx(7.66)
    assert parse_reset_seconds(later, now=now) == pytest.approx(30)
    assert parse_reset_seconds(None) is None


def test_parse_retry_seconds():
    assert parse_retry_seconds(DAILY_LIMIT_MESSAGE) == 3723
    assert parse_retry_seconds("Rate limit reached") is None


def test_is_daily_limit():
    assert is_daily_limit(DAILY_LIMIT_MESSAGE)
    assert not is_daily_limit("Rate limit reached for tokens per minute")


def test_read_quota():
    quota = read_quota({
        "anthropic-ratelimit-tokens-remaining": "120",
        "anthropic-ratelimit-tokens-limit": "50000",
        "anthropic-ratelimit-tokens-reset": "7.66s",
    })
    assert quota == {"remainingTokens": 120, "limitTokens": 50000, "resetSeconds": pytest.approx(7.66)}


def test_parse_analysis_plain_and_fenced():
    assert parse_analysis(VERDICT_ACTIVE)["status"] == "ACTIVE"
    assert parse_analysis(f"```json\n{VERDICT_ACTIVE}\n```")["status"] == "ACTIVE"


def test_parse_analysis_extracts_object_from_prose():
    text = f"Here is my assessment:\n{VERDICT_ACTIVE}\nLet me know if you need more."
    assert parse_analysis(text)["successor"]["status"] == "UNKNOWN"


def test_parse_analysis_rejects_bad_answers():
    with pytest.raises(ResponseValidationError):
        parse_analysis("I could not decide.")
    with pytest.raises(ResponseValidationError):
        parse_analysis('{"status": "ACTIVE"}')


def test_scenario_a_run_completes_job(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    invoker, client = invoker_with(controller, fake_sleep, FakeRawResponse(VERDICT_ACTIVE))

    result = invoker.run(job_id)

    job = controller.get(job_id)
    assert job.status == COMPLETE
    assert job.final_result.status == "ACTIVE"
    assert job.final_result.explanation
    assert job.final_result.successor.status == "UNKNOWN"
    assert result.rate_limits["remainingTokens"] == 40000

    [call] = client.messages.analysis_calls()
    prompt = call["messages"][0]["content"]
    assert "RESULT #1:" in prompt and "RESULT #2:" in prompt
    assert call["temperature"] == 0


def test_second_trigger_is_ignored(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    invoker, client = invoker_with(controller, fake_sleep, FakeRawResponse(VERDICT_ACTIVE))

    invoker.run(job_id)
    assert invoker.run(job_id) is None
    assert len(client.messages.analysis_calls()) == 1


def test_scenario_c_daily_limit(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    invoker, client = invoker_with(controller, fake_sleep, rate_limit_error(DAILY_LIMIT_MESSAGE))

    assert invoker.run(job_id) is None

    job = controller.get(job_id)
    assert job.status == ERROR
    assert job.is_daily_limit is True
    assert job.retry_seconds == 3723
    assert job.final_result is None
    assert len(client.messages.analysis_calls()) == 1


def test_window_rate_limit_waits_for_reset(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    limited = rate_limit_error(
        "Rate limit reached for tokens per minute",
        headers={"anthropic-ratelimit-tokens-reset": "5s"},
    )
    invoker, _ = invoker_with(controller, fake_sleep, limited, FakeRawResponse(VERDICT_ACTIVE))

    invoker.run(job_id)

    assert controller.get(job_id).status == COMPLETE
    assert fake_sleep.calls == [7.0]


def test_api_errors_exhaust_into_job_error(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    invoker, _ = invoker_with(controller, fake_sleep, server_error(), server_error(), server_error())

    invoker.run(job_id)

    job = controller.get(job_id)
    assert job.status == ERROR
    assert "LLM API call failed" in job.error
    assert fake_sleep.calls == [2.0, 4.0]


def test_invalid_answer_fails_job(controller, fake_sleep):
    job_id = analysis_ready_job(controller)
    invoker, _ = invoker_with(controller, fake_sleep, FakeRawResponse("no idea"))

    invoker.run(job_id)

    job = controller.get(job_id)
    assert job.status == ERROR
    assert job.final_result is None


def test_job_without_urls_is_unknown(controller, fake_sleep):
    job_id = controller.create("Nobody", "ZZ-1")
    controller.set_urls(job_id, [])
    controller.set_status(job_id, FETCHING)
    invoker, client = invoker_with(controller, fake_sleep)

    result = invoker.run(job_id)

    assert result.status == "UNKNOWN"
    assert result.explanation == NO_RESULTS_EXPLANATION
    assert controller.get(job_id).status == COMPLETE
    assert client.messages.calls == []


def test_wait_for_quota_sleeps_when_low(controller, fake_sleep):
    low = {
        "anthropic-ratelimit-tokens-remaining": "100",
        "anthropic-ratelimit-tokens-limit": "50000",
        "anthropic-ratelimit-tokens-reset": "10s",
    }
    invoker, _ = invoker_with(controller, fake_sleep, quota=low)

    assert invoker.wait_for_quota() == 11.0
    assert fake_sleep.calls == [11.0]


def test_wait_for_quota_proceeds_when_probe_fails(controller, fake_sleep):
    invoker, _ = invoker_with(controller, fake_sleep, quota=server_error())

    assert invoker.wait_for_quota() == 0.0
    assert fake_sleep.calls == []
