"""
models.py — Data models for the EOL Checker.
Records are stored as JSON with camelCase keys; the dataclasses use snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Job status values, in pipeline order
CREATED = "created"
URLS_READY = "urls_ready"
FETCHING = "fetching"
ANALYZING = "analyzing"
COMPLETE = "complete"
ERROR = "error"

ACTIVE_STATUSES = (CREATED, URLS_READY, FETCHING, ANALYZING)
TERMINAL_STATUSES = (COMPLETE, ERROR)

# UrlTask status values
URL_PENDING = "pending"
URL_FETCHING = "fetching"
URL_COMPLETE = "complete"

GENERIC_STRATEGY = "generic"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subject:
    """The catalog item a job evaluates."""
    maker: str
    model: str


@dataclass
class UrlTask:
    """One candidate page in a job's scrape plan."""
    index: int
    url: str
    title: str = ""
    snippet: str = ""
    dispatch_strategy: str = GENERIC_STRATEGY
    params: dict = field(default_factory=dict)
    status: str = URL_PENDING

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "dispatchStrategy": self.dispatch_strategy,
            "params": dict(self.params),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UrlTask":
        return cls(
            index=int(data["index"]),
            url=data.get("url", ""),
            title=data.get("title") or "",
            snippet=data.get("snippet") or "",
            dispatch_strategy=data.get("dispatchStrategy") or GENERIC_STRATEGY,
            params=dict(data.get("params") or {}),
            status=data.get("status", URL_PENDING),
        )


@dataclass
class ScrapedResult:
    """Content delivered for one URL (or a placeholder explaining why there is none)."""
    url: str
    content: Optional[str] = None
    title: Optional[str] = None
    snippet: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "content": self.content,
            "title": self.title,
            "snippet": self.snippet,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScrapedResult":
        return cls(
            url=data.get("url") or "",
            content=data.get("content"),
            title=data.get("title"),
            snippet=data.get("snippet"),
        )


@dataclass
class Successor:
    status: str = "UNKNOWN"  # "FOUND" or "UNKNOWN"
    model: Optional[str] = None
    explanation: str = ""


@dataclass
class AnalysisResult:
    """The model's verdict for one subject."""
    status: str  # "ACTIVE", "DISCONTINUED" or "UNKNOWN"
    explanation: str
    successor: Successor = field(default_factory=Successor)
    rate_limits: Optional[dict] = None

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "explanation": self.explanation,
            "successor": {
                "status": self.successor.status,
                "model": self.successor.model,
                "explanation": self.successor.explanation,
            },
        }
        if self.rate_limits is not None:
            data["rateLimits"] = dict(self.rate_limits)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisResult":
        successor = data.get("successor") or {}
        return cls(
            status=str(data.get("status", "UNKNOWN")).upper(),
            explanation=data.get("explanation") or "",
            successor=Successor(
                status=str(successor.get("status", "UNKNOWN")).upper(),
                model=successor.get("model"),
                explanation=successor.get("explanation") or "",
            ),
            rate_limits=data.get("rateLimits"),
        )

    @classmethod
    def unknown(cls, explanation: str) -> "AnalysisResult":
        return cls(status="UNKNOWN", explanation=explanation)


@dataclass
class Job:
    """Durable record tracking one end-to-end lifecycle check."""
    job_id: str
    subject: Subject
    status: str = CREATED
    urls: list[UrlTask] = field(default_factory=list)
    url_results: dict[int, ScrapedResult] = field(default_factory=dict)
    final_result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    is_daily_limit: bool = False
    retry_seconds: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    def task(self, index: int) -> Optional[UrlTask]:
        for task in self.urls:
            if task.index == index:
                return task
        return None

    def next_pending(self) -> Optional[UrlTask]:
        for task in self.urls:
            if task.status == URL_PENDING:
                return task
        return None

    def all_urls_complete(self) -> bool:
        return all(task.status == URL_COMPLETE for task in self.urls)

    def completed_count(self) -> int:
        return sum(1 for task in self.urls if task.status == URL_COMPLETE)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "maker": self.subject.maker,
            "model": self.subject.model,
            "status": self.status,
            "urls": [task.to_dict() for task in self.urls],
            "urlResults": {str(i): r.to_dict() for i, r in self.url_results.items()},
            "finalResult": self.final_result.to_dict() if self.final_result else None,
            "error": self.error,
            "isDailyLimit": self.is_daily_limit,
            "retrySeconds": self.retry_seconds,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        final = data.get("finalResult")
        return cls(
            job_id=data["jobId"],
            subject=Subject(maker=data.get("maker", ""), model=data.get("model", "")),
            status=data.get("status", CREATED),
            urls=[UrlTask.from_dict(u) for u in data.get("urls") or []],
            url_results={
                int(i): ScrapedResult.from_dict(r)
                for i, r in (data.get("urlResults") or {}).items()
            },
            final_result=AnalysisResult.from_dict(final) if final else None,
            error=data.get("error"),
            is_daily_limit=bool(data.get("isDailyLimit", False)),
            retry_seconds=data.get("retrySeconds"),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("createdAt") or utc_now_iso(),
            completed_at=data.get("completedAt"),
        )


@dataclass
class SaveOutcome:
    """Result of persisting one URL result."""
    all_done: bool
    newly_completed: bool


@dataclass
class AutoCheckState:
    """Process-wide scheduler state. Persisted, never held in memory between ticks."""
    enabled: bool = False
    is_running: bool = False
    daily_counter: int = 0
    last_reset_date: Optional[str] = None  # YYYY-MM-DD in the quota timezone
    last_activity_time: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "isRunning": self.is_running,
            "dailyCounter": self.daily_counter,
            "lastResetDate": self.last_reset_date,
            "lastActivityTime": self.last_activity_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AutoCheckState":
        return cls(
            enabled=bool(data.get("enabled", False)),
            is_running=bool(data.get("isRunning", False)),
            daily_counter=int(data.get("dailyCounter", 0)),
            last_reset_date=data.get("lastResetDate"),
            last_activity_time=data.get("lastActivityTime"),
        )


@dataclass
class CatalogItem:
    """One part in the catalog."""
    id: int
    sap_number: str
    maker: str
    model: str
    status: Optional[str] = None
    status_comment: Optional[str] = None
    successor_model: Optional[str] = None
    successor_comment: Optional[str] = None
    checked_at: Optional[str] = None


@dataclass
class Task:
    """A unit of deferred work in the durable queue."""
    id: int
    kind: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    run_after: str
    dedup_key: Optional[str] = None
    last_error: Optional[str] = None
