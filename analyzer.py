"""
analyzer.py — Lifecycle verdict via the Claude API.
Reads the provider's quota headers before and after each call, waits out
per-window limits, and stops for good on the per-day limit.
"""

import json
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import anthropic

from config import ANTHROPIC_API_KEY, DAILY_LIMIT_MARKERS, LLM, LLM_MODEL, QUOTA_HEADERS
from content import format_results
from errors import (
    DailyQuotaExhaustedError,
    RateLimitError,
    ResponseValidationError,
    TransientNetworkError,
)
from job_controller import JobController
from models import ERROR, AnalysisResult, Subject, Successor, parse_iso
from monitoring import get_logger, log_attempt

logger = get_logger("analyzer")

# Longest model answer the fallback JSON extraction will scan
MAX_EXTRACTION_INPUT = 40960

# Wait used when a 429 carries no reset information
DEFAULT_RESET_SECONDS = 60.0

NO_RESULTS_EXPLANATION = "No search results found"

ANALYSIS_PROMPT = """TASK: Determine if the product "{model}" by {maker} is discontinued (end-of-life).

SEARCH RESULTS:
{context}

ANALYSIS RULES:

1. EXACT PRODUCT IDENTIFICATION
- You are analyzing "{model}" ONLY
- Variants with ANY character difference (suffixes, prefixes, version numbers) are DIFFERENT products
- Only use information explicitly about "{model}"

2. EVIDENCE OF ACTIVE STATUS
- Currently sold on the manufacturer's website or by authorized retailers
- A price or a delivery date is listed for "{model}"
- "{model}" is listed as the REPLACEMENT/SUCCESSOR for another product
- A specification page with no sign of discontinuation means ACTIVE

3. EVIDENCE OF DISCONTINUED STATUS (only with concrete proof)
- Listed in an official discontinuation/EOL table or announcement
- Clear statement tied to "{model}": "discontinued", "end of life", "生産終了", "販売終了", "受注終了"
- Appearing in a document about OTHER discontinued products is NOT proof
- Auction or secondhand listings are NOT evidence

4. REPLACEMENT LOGIC
- "X → Y" means X is discontinued and Y is the active replacement
- If "{model}" is the replacement target, "{model}" is ACTIVE

5. SUCCESSOR
- If discontinued, report a successor only if one is explicitly named for this exact product
- If active, no successor is needed

If the information is insufficient or conflicting, answer UNKNOWN and say why.

Respond ONLY with valid JSON, no other text:
{{
    "status": "ACTIVE" | "DISCONTINUED" | "UNKNOWN",
    "explanation": "ONE brief sentence citing the most definitive source (Result #N: URL, key evidence)",
    "successor": {{
        "status": "FOUND" | "UNKNOWN",
        "model": "model name or null",
        "explanation": "Brief explanation or 'Product is active, no successor needed'"
    }}
}}"""

_RETRY_IN = re.compile(r"Please try again in ((?:\d+h)?(?:\d+m)?(?:\d+(?:\.\d+)?s))")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")
_FIRST_JSON_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")


def parse_duration(text: str) -> Optional[float]:
    """Seconds in a duration like "1h2m3s", "7m54.336s" or "7.66s". None if unparseable."""
    text = text.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(f"{n}{u}" for n, u in parts) != text:
        return None

    units = {"h": 3600, "m": 60, "s": 1, "ms": 0.001}
    return sum(float(number) * units[unit] for number, unit in parts)


def parse_reset_seconds(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds until a quota resets. Accepts durations ("7.66s") and
    absolute RFC 3339 timestamps, which Anthropic sends.
    """
    if not value:
        return None

    seconds = parse_duration(value)
    if seconds is not None:
        return seconds

    try:
        reset_at = parse_iso(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unrecognized quota reset value: {value}")
        return None
    moment = now or datetime.now(timezone.utc)
    return max(0.0, (reset_at - moment).total_seconds())


def parse_retry_seconds(message: str) -> Optional[float]:
    """Extract the wait from "... Please try again in 1h2m3s ..." messages."""
    match = _RETRY_IN.search(message or "")
    if not match:
        return None
    return parse_duration(match.group(1))


def is_daily_limit(message: str, markers: list[str] = DAILY_LIMIT_MARKERS) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in markers)


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    if text.startswith("json"):
        text = text[4:].strip()
    return text


def parse_analysis(text: str) -> dict:
    """Parse the model's JSON answer, falling back to the first object embedded in prose."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as parse_error:
        if len(cleaned) > MAX_EXTRACTION_INPUT:
            raise ResponseValidationError("Response exceeds maximum expected size") from parse_error
        match = _FIRST_JSON_OBJECT.search(cleaned)
        if not match:
            raise ResponseValidationError(
                f"No JSON object found in response. Original parse error: {parse_error}"
            ) from parse_error
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as extraction_error:
            raise ResponseValidationError(
                f"Failed to parse extracted JSON: {extraction_error} "
                f"(original error: {parse_error})"
            ) from extraction_error

    validate_analysis(data)
    return data


def validate_analysis(data) -> None:
    if not isinstance(data, dict):
        raise ResponseValidationError("Analysis result is not a JSON object")
    if not data.get("status") or not data.get("explanation") or not isinstance(data.get("successor"), dict):
        raise ResponseValidationError("Invalid analysis result structure")


def read_quota(headers, now: Optional[datetime] = None) -> dict:
    """Rate-limit snapshot from response headers."""
    def as_int(name):
        value = headers.get(QUOTA_HEADERS[name])
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    return {
        "remainingTokens": as_int("remaining_tokens"),
        "limitTokens": as_int("limit_tokens"),
        "resetSeconds": parse_reset_seconds(headers.get(QUOTA_HEADERS["reset_tokens"]), now),
    }


def build_prompt(maker: str, model: str, context: str) -> str:
    return ANALYSIS_PROMPT.format(maker=maker, model=model, context=context)


class AnalysisInvoker:
    def __init__(
        self,
        controller: JobController,
        client: Optional[anthropic.Anthropic] = None,
        model: str = LLM_MODEL,
        max_tokens: int = LLM["max_tokens"],
        max_retries: int = LLM["max_retries"],
        min_tokens: int = LLM["min_tokens_for_analysis"],
        rate_limit_buffer: float = LLM["rate_limit_buffer_seconds"],
        preflight_buffer: float = LLM["preflight_buffer_seconds"],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.client = client or anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.min_tokens = min_tokens
        self.rate_limit_buffer = rate_limit_buffer
        self.preflight_buffer = preflight_buffer
        self.sleep = sleep

    # --- Quota ---

    def check_quota(self) -> Optional[dict]:
        """Probe with a one-token request and read the quota headers. None if the probe fails."""
        try:
            raw = self.client.messages.with_raw_response.create(
                model=self.model,
                max_tokens=1,
                messages=[{"role": "user", "content": "ping"}],
            )
            quota = read_quota(raw.headers)
        except anthropic.RateLimitError as e:
            quota = read_quota(e.response.headers)
            quota["remainingTokens"] = quota["remainingTokens"] or 0
        except anthropic.APIError as e:
            logger.error(f"Quota probe failed, proceeding anyway: {e}")
            return None

        logger.info(
            f"LLM tokens remaining: {quota['remainingTokens']}, "
            f"reset in: {quota['resetSeconds'] if quota['resetSeconds'] is not None else 'N/A'}s"
        )
        return quota

    def wait_for_quota(self) -> float:
        """Sleep until the token window resets if too few tokens remain. Returns seconds waited."""
        quota = self.check_quota()
        if not quota:
            return 0.0
        remaining = quota["remainingTokens"]
        reset = quota["resetSeconds"]
        if remaining is None or remaining >= self.min_tokens or not reset:
            return 0.0

        wait = reset + self.preflight_buffer
        logger.info(f"LLM tokens low ({remaining}), waiting {wait:.1f}s for the window to reset")
        self.sleep(wait)
        return wait

    # --- Analysis ---

    def analyze(self, subject: Subject, context: str) -> AnalysisResult:
        """One verdict for a subject. Raises DailyQuotaExhaustedError, RateLimitError,
        TransientNetworkError or ResponseValidationError."""
        prompt = build_prompt(subject.maker, subject.model, context)
        logger.debug(f"Analysis prompt for {subject.maker} {subject.model}:\n{prompt}")

        raw = self._call_with_retry(prompt)
        message = raw.parse()
        text = "".join(block.text for block in message.content if getattr(block, "type", "text") == "text")
        data = parse_analysis(text)

        result = AnalysisResult.from_dict(data)
        result.rate_limits = read_quota(raw.headers)
        return result

    def _call_with_retry(self, prompt: str):
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.client.messages.with_raw_response.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=0,
                    messages=[{"role": "user", "content": prompt}],
                )
            except anthropic.RateLimitError as e:
                message = str(e)
                if is_daily_limit(message):
                    retry_seconds = parse_retry_seconds(message)
                    recover = f" Tokens will recover in approximately {retry_seconds:.0f}s." if retry_seconds else ""
                    logger.error(f"LLM daily token limit reached, analysis cancelled.{recover}")
                    raise DailyQuotaExhaustedError(
                        f"Daily token limit reached. Analysis cancelled.{recover}",
                        retry_seconds=retry_seconds,
                    ) from e

                reset = read_quota(e.response.headers)["resetSeconds"]
                if reset is None:
                    reset = _retry_after(e.response.headers)
                last_error = RateLimitError(message, reset_seconds=reset)
                log_attempt(logger, "LLM analysis", attempt, self.max_retries, "rate limited")
                if attempt < self.max_retries:
                    wait = reset + self.rate_limit_buffer
                    logger.info(f"Waiting {wait:.1f}s for the rate-limit window")
                    self.sleep(wait)
            except anthropic.APIError as e:
                status_code = getattr(e, "status_code", None)
                last_error = TransientNetworkError(f"LLM API call failed: {e}", status_code=status_code)
                log_attempt(logger, "LLM analysis", attempt, self.max_retries, str(e))
                if attempt < self.max_retries:
                    self.sleep(2.0 * (2 ** (attempt - 1)))

        raise last_error

    def run(self, job_id: str) -> Optional[AnalysisResult]:
        """
        Analyze a job whose URLs are all complete and persist the outcome.
        A second trigger for the same job is a no-op. Returns the verdict, or None
        when nothing was saved.
        """
        if not self.controller.begin_analysis(job_id):
            logger.info(f"Job {job_id}: duplicate analysis trigger ignored")
            return None

        job = self.controller.require(job_id)
        logger.info(
            f"Analyzing job {job_id} ({job.subject.maker} {job.subject.model}, "
            f"{job.completed_count()}/{len(job.urls)} URLs)"
        )

        try:
            if not job.urls:
                result = AnalysisResult(
                    status="UNKNOWN",
                    explanation=NO_RESULTS_EXPLANATION,
                    successor=Successor(status="UNKNOWN", model=None, explanation=""),
                )
            else:
                self.wait_for_quota()
                result = self.analyze(job.subject, format_results(job))
            self.controller.save_final_result(job_id, result)
            return result
        except DailyQuotaExhaustedError as e:
            self.controller.set_status(
                job_id, ERROR, str(e),
                metadata={"isDailyLimit": True, "retrySeconds": e.retry_seconds},
            )
            return None
        except Exception as e:
            logger.error(f"Analysis failed for job {job_id}: {e}")
            self.controller.set_status(job_id, ERROR, str(e))
            return None


def _retry_after(headers) -> float:
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else DEFAULT_RESET_SECONDS
    except ValueError:
        return DEFAULT_RESET_SECONDS
