#!/usr/bin/env python3
"""
List Builder - Recruitment Lead List-Building Job Orchestrator

Production Features:
- Typed errors mapped onto a durable job row and a structured trigger response
- Token-bucket rate limiting and circuit breakers per external API
- Bounded exponential-backoff polling for asynchronous enrichment requests
- Idempotent result persistence keyed by (job_id, apollo_person_id), so a
  re-triggered job resumes with the people it has not persisted yet
- Per-job log capture stored on the job row

Steps:
1. Load the job row from Supabase and read its configuration.
2. Search Apollo for companies matching the size, location and hiring-keyword
   filters. No companies completes the job with zero results.
3. Search Apollo for people with the target titles at each company, in
   discovery order, until the job's result limit is reached.
4. Submit the people to BetterContact in batches of 100, wait for each batch
   to finish and write the enriched leads to Supabase.
5. Mark the job completed with its result count (or failed with the error).

Environment variables configure API endpoints and credentials. Run with
`python list_builder.py --job-id <uuid>`.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from log_capture import JobLogCapture

TERMINAL_ENRICHMENT_STATES = {"terminated", "completed", "done", "finished"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Known failure with a short message and a details string."""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class InvalidRequestError(ApplicationError):
    def __init__(self, details: str):
        super().__init__("Invalid Request", details)


class JobNotFoundError(ApplicationError):
    def __init__(self, job_id: str):
        super().__init__("Job Not Found", f"Could not find job with ID {job_id}.")
        self.job_id = job_id


class ConfigurationError(ApplicationError, ValueError):
    pass


class DiscoveryApiError(ApplicationError):
    def __init__(self, endpoint: str, details: str):
        super().__init__(f"Apollo API Error: {endpoint}", details)
        self.endpoint = endpoint


class EnrichmentApiError(ApplicationError):
    pass


class RecordsApiError(ApplicationError):
    def __init__(self, status: int, body: str):
        super().__init__(f"Records API Error: {status}", body)
        self.status = status
        self.body = body


class DatastoreError(ApplicationError):
    pass


class CircuitOpenError(ApplicationError):
    def __init__(self, name: str):
        super().__init__(f"Circuit Open: {name}", f"Circuit breaker {name} is OPEN; skipping call.")
        self.name = name


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    FINDING_COMPANIES = "finding_companies"
    FINDING_PEOPLE = "finding_people"
    ENRICHING = "enriching"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED_ENRICHMENT = "failed_enrichment"


def _string_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidRequestError(f"{name} must be a list of strings")
    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise InvalidRequestError(f"{name} must be a list of strings")
        stripped = item.strip()
        if stripped:
            items.append(stripped)
    return items


@dataclass(frozen=True)
class JobConfig:
    """Filters and limits for one list-building job."""

    target_titles: Tuple[str, ...]
    company_size_ranges: Tuple[str, ...]
    company_locations: Tuple[str, ...]
    job_keywords: Tuple[str, ...]
    result_limit: int
    tenant_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, tenant_id: Optional[str] = None) -> "JobConfig":
        if not isinstance(data, dict):
            raise InvalidRequestError("Job config must be an object")
        limit = data.get("result_limit")
        if isinstance(limit, str) and limit.strip().isdigit():
            limit = int(limit.strip())
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise InvalidRequestError("result_limit must be a non-negative integer")
        return cls(
            target_titles=tuple(_string_list(data.get("target_titles"), "target_titles")),
            company_size_ranges=tuple(_string_list(data.get("company_size_ranges"), "company_size_ranges")),
            company_locations=tuple(_string_list(data.get("company_locations"), "company_locations")),
            job_keywords=tuple(_string_list(data.get("job_keywords"), "job_keywords")),
            result_limit=limit,
            tenant_id=tenant_id or data.get("airtable_client_id"),
        )

    @classmethod
    def from_job_row(cls, job: Dict[str, Any]) -> "JobConfig":
        return cls.from_dict(job.get("config"), tenant_id=job.get("airtable_client_id"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_titles": list(self.target_titles),
            "company_size_ranges": list(self.company_size_ranges),
            "company_locations": list(self.company_locations),
            "job_keywords": list(self.job_keywords),
            "result_limit": self.result_limit,
        }


@dataclass(frozen=True)
class CandidateCompany:
    external_id: str
    name: str
    domain: str
    size_bucket: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None


@dataclass(frozen=True)
class CandidatePerson:
    external_id: str
    name: str
    title: Optional[str]
    seniority: Optional[str]
    linkedin_url: Optional[str]
    parent_company_external_id: str


@dataclass(frozen=True)
class EnrichmentRequest:
    first_name: str
    last_name: str
    company_domain: str
    linkedin_url: Optional[str]
    correlation_key: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company_domain": self.company_domain,
            "linkedin_url": self.linkedin_url,
            "custom_fields": {"correlation_key": self.correlation_key},
        }


@dataclass(frozen=True)
class EnrichmentResult:
    correlation_key: str
    email: Optional[str]
    phone: Optional[str]


def correlation_key_for(job_id: str, person_external_id: str) -> str:
    return f"{job_id}:{person_external_id}"


def split_full_name(name: str) -> Tuple[str, str]:
    tokens = (name or "").split()
    if not tokens:
        return "", ""
    return tokens[0], " ".join(tokens[1:])


@dataclass(frozen=True)
class EnrichmentRecord:
    """A discovered person tagged with their company, before and after enrichment."""

    job_id: str
    person: CandidatePerson
    company_name: str
    company_domain: str
    company_size: Optional[str]
    company_industry: Optional[str]
    company_location: Optional[str]
    email: Optional[str] = None
    phone: Optional[str] = None
    enrichment_status: EnrichmentStatus = EnrichmentStatus.PENDING

    @classmethod
    def from_candidates(cls, job_id: str, company: CandidateCompany, person: CandidatePerson) -> "EnrichmentRecord":
        return cls(
            job_id=job_id,
            person=person,
            company_name=company.name,
            company_domain=company.domain,
            company_size=company.size_bucket,
            company_industry=company.industry,
            company_location=company.location,
        )

    @property
    def correlation_key(self) -> str:
        return correlation_key_for(self.job_id, self.person.external_id)

    def enrichment_request(self) -> EnrichmentRequest:
        first_name, last_name = split_full_name(self.person.name)
        return EnrichmentRequest(
            first_name=first_name,
            last_name=last_name,
            company_domain=self.company_domain,
            linkedin_url=self.person.linkedin_url,
            correlation_key=self.correlation_key,
        )

    def resolve(self, email: Optional[str], phone: Optional[str]) -> "EnrichmentRecord":
        email = email or None
        phone = phone or None
        status = EnrichmentStatus.ENRICHED if (email or phone) else EnrichmentStatus.FAILED_ENRICHMENT
        return replace(self, email=email, phone=phone, enrichment_status=status)

    def to_row(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "company_name": self.company_name,
            "company_domain": self.company_domain,
            "company_size": self.company_size,
            "company_industry": self.company_industry,
            "company_location": self.company_location,
            "apollo_organization_id": self.person.parent_company_external_id,
            "person_name": self.person.name,
            "person_title": self.person.title,
            "person_seniority": self.person.seniority,
            "person_linkedin": self.person.linkedin_url,
            "apollo_person_id": self.person.external_id,
            "person_email": self.email,
            "person_phone": self.phone,
            "enrichment_status": self.enrichment_status.value,
        }


def normalize_domain(value: Optional[str]) -> str:
    """Reduce a website URL or hostname to a bare lowercase domain."""
    d = (value or "").strip().lower()
    if not d:
        return ""
    if "://" in d:
        parsed = urllib.parse.urlparse(d)
        d = parsed.netloc or parsed.path
    d = d.split("/")[0].split(":")[0]
    if d.startswith("www."):
        d = d[4:]
    try:
        d = d.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return d


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 60.0,
) -> Any:
    """
    Perform a single HTTP request with JSON support.

    Args:
        method: HTTP method (GET/POST/PATCH/etc.)
        url: Base URL (without query params)
        headers: Optional request headers
        json_body: Optional payload; serialized to JSON if provided
        params: Optional dict appended as query string; list values repeat the key
        timeout: Request timeout in seconds

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.

    Raises:
        urllib.error.HTTPError for non-2xx responses, urllib.error.URLError for network errors.
    """
    headers = dict(headers or {})
    data: Optional[bytes] = None

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None}, doseq=True)
        url = f"{url}?{encoded}"

    req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read()
        if not raw:
            return {}

        content_type = resp.headers.get("Content-Type", "")
        text = raw.decode("utf-8", errors="ignore")

        if "application/json" in content_type.lower():
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logging.debug("Failed to decode JSON despite header; returning text")
        else:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                pass
        return text


def _read_error_body(error: urllib.error.HTTPError) -> str:
    try:
        body = error.read()
    except Exception:  # noqa: BLE001
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="ignore")
    return str(body or "")


def with_retries(func: Callable[..., Any], *args: Any, attempts: int = 3, delay: float = 1.0, **kwargs: Any) -> Any:
    """Call ``func`` up to ``attempts`` times, sleeping ``delay * attempt`` between failures."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            if attempt >= attempts:
                raise
            logging.warning("Attempt %d/%d failed: %s", attempt, attempts, exc)
            time.sleep(delay * attempt)


# ---------------------------------------------------------------------------
# Circuit breaker pattern for external service resilience
# ---------------------------------------------------------------------------

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    Circuit breaker shared by every job a process runs against one API.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Service failing, reject requests immediately
    - HALF_OPEN: Test if service recovered with limited requests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: type = Exception,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.is_failure = is_failure
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

    def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        if self.state == CircuitState.OPEN:
            if self.last_failure_time and time.time() - self.last_failure_time > self.recovery_timeout:
                logging.info("Circuit breaker %s entering HALF_OPEN state", self.name)
                self.state = CircuitState.HALF_OPEN
            else:
                raise CircuitOpenError(self.name)

        try:
            result = func(*args, **kwargs)
        except self.expected_exception as exc:
            if self.is_failure is None or self.is_failure(exc):
                self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            logging.info("Circuit breaker %s recovered, entering CLOSED state", self.name)
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            logging.error(
                "Circuit breaker %s OPEN after %d failures",
                self.name,
                self.failure_count,
            )
            self.state = CircuitState.OPEN


def _is_service_failure(exc: BaseException) -> bool:
    """Server errors and network failures count against a breaker; 4xx answers do not."""
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code >= 500
    return isinstance(exc, OSError)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimiter:
    """Token bucket limiting requests per minute to one external API.

    One limiter is shared by every client that talks to the same API, so the
    company and person searches draw from a single Apollo budget.
    """

    def __init__(
        self,
        name: str,
        requests_per_minute: int,
        *,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.requests_per_minute = max(0, requests_per_minute)
        self.capacity = float(max(1, burst))
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()

    @property
    def enabled(self) -> bool:
        return self.requests_per_minute > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.requests_per_minute / 60.0)

    def acquire(self) -> float:
        """Take one token, sleeping until one is available. Returns seconds waited."""
        if not self.enabled:
            return 0.0
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0.0
        wait_for = (1.0 - self.tokens) * 60.0 / self.requests_per_minute
        logging.debug("Rate limiter %s waiting %.2fs", self.name, wait_for)
        self._sleep(wait_for)
        self._refill()
        self.tokens = max(0.0, self.tokens - 1.0)
        return wait_for


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env.local") -> None:
    """
    Load environment variables from a simple KEY=VALUE file if present.

    Existing environment variables take precedence. The first file found is
    used, searching LIST_BUILDER_ENV_FILE, then `path` relative to the working
    directory, then relative to this script's directory.
    """
    if not path:
        return

    candidates: List[str] = []
    override = os.getenv("LIST_BUILDER_ENV_FILE")
    if override:
        candidates.append(os.path.expanduser(override))
    if os.path.isabs(path):
        candidates.append(path)
    else:
        candidates.append(os.path.join(os.getcwd(), path))
        candidates.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), path))

    for candidate in candidates:
        if not os.path.isfile(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
            return
        except OSError as exc:
            print(f"Warning: failed to load environment file {candidate}: {exc}", file=sys.stderr)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    supabase_url: str = field(
        default_factory=lambda: os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or ""
    )
    supabase_key: str = field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_ANON_KEY") or ""
    )
    jobs_table: str = field(default_factory=lambda: os.getenv("LIST_BUILDING_JOBS_TABLE", "list_building_jobs"))
    results_table: str = field(
        default_factory=lambda: os.getenv("LIST_BUILDING_RESULTS_TABLE", "list_building_results")
    )
    supabase_request_timeout: float = field(
        default_factory=lambda: float(os.getenv("SUPABASE_REQUEST_TIMEOUT", "15"))
    )

    apollo_api_key: str = field(default_factory=lambda: os.getenv("APOLLO_API_KEY", ""))
    apollo_base_url: str = field(default_factory=lambda: os.getenv("APOLLO_BASE_URL", "https://api.apollo.io/v1"))
    bettercontact_api_key: str = field(default_factory=lambda: os.getenv("BETTERCONTACT_API_KEY", ""))
    bettercontact_base_url: str = field(
        default_factory=lambda: os.getenv("BETTERCONTACT_BASE_URL", "https://app.bettercontact.rocks/api/v2")
    )

    airtable_api_token: str = field(default_factory=lambda: os.getenv("AIRTABLE_API_TOKEN", ""))
    airtable_base_id: str = field(default_factory=lambda: os.getenv("AIRTABLE_BASE_ID", ""))
    airtable_base_url: str = field(default_factory=lambda: os.getenv("AIRTABLE_BASE_URL", "https://api.airtable.com/v0"))
    airtable_clients_table: str = field(default_factory=lambda: os.getenv("AIRTABLE_CLIENTS_TABLE", "Clients"))

    discovery_request_timeout: float = field(
        default_factory=lambda: float(os.getenv("DISCOVERY_REQUEST_TIMEOUT", "60"))
    )
    enrichment_request_timeout: float = field(
        default_factory=lambda: float(os.getenv("ENRICHMENT_REQUEST_TIMEOUT", "60"))
    )
    records_request_timeout: float = field(
        default_factory=lambda: float(os.getenv("RECORDS_REQUEST_TIMEOUT", "30"))
    )

    company_page_size: int = field(default_factory=lambda: int(os.getenv("COMPANY_PAGE_SIZE", "50")))
    people_page_size: int = field(default_factory=lambda: int(os.getenv("PEOPLE_PAGE_SIZE", "10")))
    enrichment_batch_size: int = field(default_factory=lambda: int(os.getenv("ENRICHMENT_BATCH_SIZE", "100")))
    max_result_limit: int = field(default_factory=lambda: int(os.getenv("MAX_RESULT_LIMIT", "1000")))

    enrichment_poll_initial_delay: float = field(
        default_factory=lambda: float(os.getenv("ENRICHMENT_POLL_INITIAL_DELAY", "5"))
    )
    enrichment_poll_backoff: float = field(default_factory=lambda: float(os.getenv("ENRICHMENT_POLL_BACKOFF", "2")))
    enrichment_poll_max_delay: float = field(
        default_factory=lambda: float(os.getenv("ENRICHMENT_POLL_MAX_DELAY", "60"))
    )
    enrichment_poll_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("ENRICHMENT_POLL_MAX_ATTEMPTS", "6"))
    )

    # 0 = disabled
    apollo_rate_limit_rpm: int = field(default_factory=lambda: int(os.getenv("APOLLO_RATE_LIMIT_RPM", "0")))
    bettercontact_rate_limit_rpm: int = field(
        default_factory=lambda: int(os.getenv("BETTERCONTACT_RATE_LIMIT_RPM", "0"))
    )

    circuit_breaker_enabled: bool = field(default_factory=lambda: _env_bool("CIRCUIT_BREAKER_ENABLED", "true"))
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5")))
    circuit_breaker_timeout: float = field(default_factory=lambda: float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "300")))

    job_state_write_attempts: int = field(default_factory=lambda: int(os.getenv("JOB_STATE_WRITE_ATTEMPTS", "3")))
    job_state_write_delay: float = field(default_factory=lambda: float(os.getenv("JOB_STATE_WRITE_DELAY", "1.0")))

    def validate(self) -> None:
        """Ensure datastore settings exist and numeric settings are in range."""
        missing = []
        invalid = []

        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_key:
            missing.append("SUPABASE_SERVICE_KEY or SUPABASE_ANON_KEY")

        for name, value, low, high in [
            ("COMPANY_PAGE_SIZE", self.company_page_size, 1, 100),
            ("PEOPLE_PAGE_SIZE", self.people_page_size, 1, 100),
            ("ENRICHMENT_BATCH_SIZE", self.enrichment_batch_size, 1, 100),
            ("ENRICHMENT_POLL_MAX_ATTEMPTS", self.enrichment_poll_max_attempts, 1, 50),
            ("JOB_STATE_WRITE_ATTEMPTS", self.job_state_write_attempts, 1, 10),
        ]:
            if value < low or value > high:
                invalid.append(f"{name} out of range: {value} ({low}-{high})")
        if self.max_result_limit < 1:
            invalid.append(f"MAX_RESULT_LIMIT too low: {self.max_result_limit}")
        if self.enrichment_poll_initial_delay < 0:
            invalid.append(f"ENRICHMENT_POLL_INITIAL_DELAY cannot be negative (got {self.enrichment_poll_initial_delay})")
        if self.enrichment_poll_backoff < 1:
            invalid.append(f"ENRICHMENT_POLL_BACKOFF must be at least 1 (got {self.enrichment_poll_backoff})")
        for name, value in [
            ("APOLLO_RATE_LIMIT_RPM", self.apollo_rate_limit_rpm),
            ("BETTERCONTACT_RATE_LIMIT_RPM", self.bettercontact_rate_limit_rpm),
        ]:
            if value < 0:
                invalid.append(f"{name} cannot be negative (got {value})")

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ValueError(f"Invalid configuration: {'; '.join(invalid)}")

    def require_api_keys(self) -> None:
        if not self.apollo_api_key or not self.bettercontact_api_key:
            raise ConfigurationError(
                "API keys missing",
                "Apollo or BetterContact API keys are not set in environment variables.",
            )


# ---------------------------------------------------------------------------
# Supabase job store
# ---------------------------------------------------------------------------

class SupabaseJobStore:
    """Supabase REST access to list-building jobs and their result rows."""

    def __init__(self, config: Config):
        self.base_url = config.supabase_url.rstrip("/")
        self.jobs_table = config.jobs_table
        self.results_table = config.results_table
        self.timeout = config.supabase_request_timeout
        self.headers = {
            "apikey": config.supabase_key,
            "Authorization": f"Bearer {config.supabase_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Any] = None,
        *,
        prefer: Optional[str] = None,
        drop_empty: bool = True,
    ) -> Tuple[int, Optional[Any]]:
        data: Optional[bytes] = None
        if isinstance(payload, dict) and drop_empty:
            filtered = {
                key: value
                for key, value in payload.items()
                if value not in (None, "", [], {}, float("inf"), float("-inf"))
            }
            if filtered:
                data = json.dumps(filtered).encode("utf-8")
        elif payload is not None:
            # Bulk inserts need identical keys on every row; lists and PATCH bodies go out as is.
            data = json.dumps(payload).encode("utf-8")
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        req = urllib.request.Request(path, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
                if not body:
                    return resp.status, None
                try:
                    return resp.status, json.loads(body.decode("utf-8"))
                except json.JSONDecodeError:
                    return resp.status, body.decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = _read_error_body(exc)
            logging.warning("Supabase %s %s failed (%s): %s", method, path, exc.code, error_body)
            return exc.code, error_body
        except Exception as exc:  # noqa: BLE001
            logging.warning("Supabase %s %s error: %s", method, path, exc)
            return 0, str(exc)

    @staticmethod
    def _quote(value: str) -> str:
        return urllib.parse.quote(str(value), safe="")

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        url = f"{self._table_url(self.jobs_table)}?select=*&id=eq.{self._quote(job_id)}&limit=1"
        status, data = self._request("GET", url)
        if status != 200:
            raise DatastoreError("Database Read Error", f"Loading job {job_id} returned status {status}: {data}")
        if isinstance(data, list) and data:
            return data[0]
        return None

    def create_job(
        self,
        tenant_id: str,
        config: JobConfig,
        *,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not tenant_id:
            raise InvalidRequestError("Missing required field: airtable_client_id")
        payload = {
            "user_id": user_id,
            "airtable_client_id": tenant_id,
            "config": config.to_dict(),
            "status": JobStatus.PENDING.value,
            "progress": {"step": 0, "message": "Job created."},
        }
        status, data = self._request("POST", self._table_url(self.jobs_table), payload)
        if status in (200, 201):
            if isinstance(data, list) and data:
                return data[0]
            if isinstance(data, dict):
                return data
        raise DatastoreError("Database Insert Error", f"Creating job returned status {status}: {data}")

    def update_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        url = f"{self._table_url(self.jobs_table)}?id=eq.{self._quote(job_id)}"
        # None goes out as JSON null so a field can be cleared.
        status, data = self._request("PATCH", url, fields, prefer="return=minimal", drop_empty=False)
        if status not in (200, 201, 204):
            raise DatastoreError("Database Update Error", f"Updating job {job_id} returned status {status}: {data}")

    def insert_results(self, rows: List[Dict[str, Any]]) -> int:
        """Upsert result rows on (job_id, apollo_person_id); returns the number written."""
        if not rows:
            return 0
        url = f"{self._table_url(self.results_table)}?on_conflict=job_id,apollo_person_id"
        status, data = self._request(
            "POST",
            url,
            rows,
            prefer="return=minimal,resolution=merge-duplicates",
        )
        if status not in (200, 201, 204):
            raise DatastoreError("Database Insert Error", f"Inserting {len(rows)} results returned status {status}: {data}")
        return len(rows)

    def fetch_persisted_person_ids(self, job_id: str) -> Set[str]:
        url = (
            f"{self._table_url(self.results_table)}"
            f"?select=apollo_person_id&job_id=eq.{self._quote(job_id)}"
        )
        status, data = self._request("GET", url)
        if status != 200:
            raise DatastoreError("Database Read Error", f"Loading results for job {job_id} returned status {status}: {data}")
        if not isinstance(data, list):
            return set()
        return {str(row["apollo_person_id"]) for row in data if isinstance(row, dict) and row.get("apollo_person_id")}

    def fetch_pending_jobs(self, limit: int = 1) -> List[Dict[str, Any]]:
        url = (
            f"{self._table_url(self.jobs_table)}"
            f"?select=*&status=eq.{JobStatus.PENDING.value}&order=created_at.asc&limit={max(1, limit)}"
        )
        status, data = self._request("GET", url)
        if status == 200 and isinstance(data, list):
            return data
        logging.warning("Failed to fetch pending jobs (status %s)", status)
        return []

    def save_run_logs(self, job_id: str, lines: List[str]) -> None:
        self.update_job(
            job_id,
            {
                "run_logs": {
                    "captured_at": datetime.now(timezone.utc).isoformat(),
                    "lines": lines,
                }
            },
        )


# ---------------------------------------------------------------------------
# External records store (Airtable)
# ---------------------------------------------------------------------------

class RecordsStoreClient:
    """Tabular records API: create, patch and cursor-paginated queries."""

    def __init__(self, config: Config):
        self.base_url = f"{config.airtable_base_url.rstrip('/')}/{config.airtable_base_id}"
        self.clients_table = config.airtable_clients_table
        self.timeout = config.records_request_timeout
        self.headers = {
            "Authorization": f"Bearer {config.airtable_api_token}",
            "Content-Type": "application/json",
        }
        if not config.airtable_api_token or not config.airtable_base_id:
            raise ConfigurationError(
                "Airtable configuration missing",
                "AIRTABLE_API_TOKEN and AIRTABLE_BASE_ID must be set.",
            )

    def _table_url(self, table: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{urllib.parse.quote(table, safe='')}"
        if record_id:
            url = f"{url}/{urllib.parse.quote(record_id, safe='')}"
        return url

    def _call(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = _http_request(
                method,
                url,
                headers=self.headers,
                json_body=json_body,
                params=params,
                timeout=self.timeout,
            )
        except urllib.error.HTTPError as exc:
            raise RecordsApiError(exc.code, _read_error_body(exc)) from exc
        except OSError as exc:
            raise RecordsApiError(0, str(getattr(exc, "reason", exc))) from exc
        if not isinstance(response, dict):
            raise RecordsApiError(200, f"Unexpected response: {str(response)[:500]}")
        return response

    def create(self, table: str, fields: Dict[str, Any]) -> str:
        response = self._call("POST", self._table_url(table), json_body={"fields": fields})
        record_id = response.get("id")
        if not record_id:
            raise RecordsApiError(200, f"Create response missing record id: {json.dumps(response)[:500]}")
        return str(record_id)

    def patch(self, table: str, record_id: str, fields: Dict[str, Any]) -> None:
        self._call("PATCH", self._table_url(table, record_id), json_body={"fields": fields})

    def query(
        self,
        table: str,
        filter_formula: Optional[str] = None,
        fields: Optional[Iterable[str]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every matching record, following offset cursors until exhausted."""
        params: Dict[str, Any] = {}
        if filter_formula:
            params["filterByFormula"] = filter_formula
        if fields:
            params["fields[]"] = list(fields)
        url = self._table_url(table)
        offset: Optional[str] = None
        while True:
            page_params = dict(params)
            if offset:
                page_params["offset"] = offset
            page = self._call("GET", url, params=page_params or None)
            for record in page.get("records") or []:
                if isinstance(record, dict):
                    yield record
            offset = page.get("offset")
            if not offset:
                return

    def list_tenants(self) -> List[Dict[str, Any]]:
        """Every client record mapped to {id, name, email, status}."""
        tenants: List[Dict[str, Any]] = []
        for record in self.query(self.clients_table):
            fields = record.get("fields") or {}
            tenants.append(
                {
                    "id": record.get("id"),
                    "name": fields.get("Client Name") or fields.get("Name") or "Unnamed Client",
                    "email": fields.get("Email"),
                    "status": fields.get("Status"),
                }
            )
        logging.info("Records store returned %d tenants", len(tenants))
        return tenants


# ---------------------------------------------------------------------------
# Apollo discovery
# ---------------------------------------------------------------------------

class ApolloSearchClient:
    """Shared request handling for the Apollo search endpoints."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.apollo.io/v1",
        timeout: float = 60.0,
        page_size: int = 50,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker

    def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        def _send() -> Any:
            return _http_request(
                "POST",
                url,
                headers={"X-Api-Key": self.api_key, "Cache-Control": "no-cache"},
                json_body=body,
                timeout=self.timeout,
            )

        try:
            if self.circuit_breaker is not None:
                response = self.circuit_breaker.call(_send)
            else:
                response = _send()
        except urllib.error.HTTPError as exc:
            details = _read_error_body(exc) or f"HTTP {exc.code}"
            raise DiscoveryApiError(endpoint, details) from exc
        except OSError as exc:
            raise DiscoveryApiError(endpoint, str(getattr(exc, "reason", exc))) from exc
        if not isinstance(response, dict):
            raise DiscoveryApiError(endpoint, f"Unexpected response: {str(response)[:500]}")
        return response


class CompanyDiscoveryClient(ApolloSearchClient):
    """Single-page organization search mapped to CandidateCompany records."""

    endpoint = "mixed_companies/search"

    def search_organizations(
        self,
        *,
        job_title_signals: Sequence[str],
        locations: Sequence[str],
        size_ranges: Sequence[str],
    ) -> List[CandidateCompany]:
        body: Dict[str, Any] = {"page": 1, "per_page": self.page_size}
        if job_title_signals:
            body["q_organization_job_titles"] = list(job_title_signals)
        if locations:
            body["organization_locations"] = list(locations)
        if size_ranges:
            body["organization_num_employees_ranges"] = list(size_ranges)
        logging.info(
            "Searching Apollo organizations (keywords=%d, locations=%d, size_ranges=%d)",
            len(job_title_signals),
            len(locations),
            len(size_ranges),
        )
        response = self._post(self.endpoint, body)
        organizations = response.get("organizations") or []
        companies = [
            self._normalize_company(org)
            for org in organizations[: self.page_size]
            if isinstance(org, dict) and org.get("id")
        ]
        logging.info("Apollo returned %d organizations", len(companies))
        return companies

    @staticmethod
    def _normalize_company(org: Dict[str, Any]) -> CandidateCompany:
        size = org.get("num_employees_range") or org.get("estimated_num_employees")
        return CandidateCompany(
            external_id=str(org["id"]),
            name=(org.get("name") or "").strip(),
            domain=normalize_domain(org.get("primary_domain") or org.get("website_url")),
            size_bucket=str(size) if size not in (None, "") else None,
            industry=org.get("industry") or None,
            location=org.get("city") or org.get("state") or org.get("country") or None,
        )


class PersonDiscoveryClient(ApolloSearchClient):
    """People search scoped to one organization, mapped to CandidatePerson records."""

    endpoint = "mixed_people/search"

    def __init__(self, api_key: str, **kwargs: Any):
        kwargs.setdefault("page_size", 10)
        super().__init__(api_key, **kwargs)

    def search_people(
        self,
        *,
        organization_external_id: str,
        titles: Sequence[str],
    ) -> List[CandidatePerson]:
        body: Dict[str, Any] = {
            "organization_ids": [organization_external_id],
            "page": 1,
            "per_page": self.page_size,
        }
        if titles:
            body["person_titles"] = list(titles)
        response = self._post(self.endpoint, body)
        people = [
            self._normalize_person(person, organization_external_id)
            for person in (response.get("people") or [])[: self.page_size]
            if isinstance(person, dict) and person.get("id")
        ]
        logging.info("Apollo returned %d people for organization %s", len(people), organization_external_id)
        return people

    @staticmethod
    def _normalize_person(person: Dict[str, Any], organization_external_id: str) -> CandidatePerson:
        name = " ".join(
            part.strip() for part in (person.get("first_name") or "", person.get("last_name") or "") if part and part.strip()
        )
        return CandidatePerson(
            external_id=str(person["id"]),
            name=name or (person.get("name") or "").strip(),
            title=person.get("title") or None,
            seniority=person.get("seniority") or None,
            linkedin_url=person.get("linkedin_url") or None,
            parent_company_external_id=organization_external_id,
        )


# ---------------------------------------------------------------------------
# BetterContact enrichment
# ---------------------------------------------------------------------------

class ContactEnrichmentClient:
    """Submits asynchronous enrichment batches and polls for their results."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://app.bettercontact.rocks/api/v2",
        timeout: float = 60.0,
        poll_initial_delay: float = 5.0,
        poll_backoff: float = 2.0,
        poll_max_delay: float = 60.0,
        poll_max_attempts: int = 6,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_initial_delay = max(0.0, poll_initial_delay)
        self.poll_backoff = max(1.0, poll_backoff)
        self.poll_max_delay = max(self.poll_initial_delay, poll_max_delay)
        self.poll_max_attempts = max(1, poll_max_attempts)
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker

    def _call(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        def _send() -> Any:
            return _http_request(
                method,
                url,
                headers={"X-API-Key": self.api_key},
                json_body=body,
                timeout=self.timeout,
            )

        try:
            if self.circuit_breaker is not None:
                response = self.circuit_breaker.call(_send)
            else:
                response = _send()
        except urllib.error.HTTPError as exc:
            details = _read_error_body(exc) or f"HTTP {exc.code}"
            raise EnrichmentApiError(f"BetterContact API Error: {endpoint}", details) from exc
        except OSError as exc:
            raise EnrichmentApiError(
                f"BetterContact API Error: {endpoint}", str(getattr(exc, "reason", exc))
            ) from exc
        if not isinstance(response, dict):
            raise EnrichmentApiError(f"BetterContact API Error: {endpoint}", f"Unexpected response: {str(response)[:500]}")
        return response

    def submit_enrichment(self, batch: Sequence[EnrichmentRequest]) -> str:
        body = {
            "data": [item.to_payload() for item in batch],
            "enrich_email_address": True,
            "enrich_phone_number": True,
        }
        logging.info("Submitting %d contacts to BetterContact", len(batch))
        response = self._call("POST", "async", body)
        if not response.get("success") or not response.get("id"):
            raise EnrichmentApiError("BetterContact Submission Failed", json.dumps(response, default=str))
        return str(response["id"])

    def fetch_results(self, enrichment_job_id: str) -> List[EnrichmentResult]:
        """Poll with exponential backoff until the request finishes, then parse its results."""
        delay = self.poll_initial_delay
        for attempt in range(1, self.poll_max_attempts + 1):
            time.sleep(delay)
            response = self._call("GET", f"async/{enrichment_job_id}")
            if not response.get("success", True) or response.get("error"):
                raise EnrichmentApiError("BetterContact Polling Failed", json.dumps(response, default=str))
            state = str(response.get("status") or "").strip().lower()
            if not state or state in TERMINAL_ENRICHMENT_STATES:
                results = self._parse_results(response)
                logging.info(
                    "Enrichment request %s finished with %d results (attempt %d)",
                    enrichment_job_id,
                    len(results),
                    attempt,
                )
                return results
            logging.info(
                "Enrichment request %s still %s (attempt %d/%d)",
                enrichment_job_id,
                state,
                attempt,
                self.poll_max_attempts,
            )
            delay = min(max(delay, 1.0) * self.poll_backoff, self.poll_max_delay)
        raise EnrichmentApiError(
            "BetterContact Polling Timed Out",
            f"Request {enrichment_job_id} not finished after {self.poll_max_attempts} attempts",
        )

    @staticmethod
    def _parse_results(response: Dict[str, Any]) -> List[EnrichmentResult]:
        results: List[EnrichmentResult] = []
        for item in response.get("data") or response.get("results") or []:
            if not isinstance(item, dict):
                continue
            custom = item.get("custom_fields") or {}
            key = custom.get("correlation_key") or item.get("correlation_key")
            if not key and custom.get("job_id") and custom.get("apollo_person_id"):
                key = correlation_key_for(str(custom["job_id"]), str(custom["apollo_person_id"]))
            if not key:
                continue
            results.append(
                EnrichmentResult(
                    correlation_key=str(key),
                    email=item.get("contact_email_address") or item.get("email") or None,
                    phone=item.get("contact_phone_number") or item.get("phone") or None,
                )
            )
        return results


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ListBuildingOrchestrator:
    """Drives list-building jobs from company discovery to persisted leads."""

    def __init__(
        self,
        config: Config,
        *,
        store: Optional[SupabaseJobStore] = None,
        company_discovery: Optional[CompanyDiscoveryClient] = None,
        person_discovery: Optional[PersonDiscoveryClient] = None,
        enrichment: Optional[ContactEnrichmentClient] = None,
    ):
        config.validate()
        self.config = config
        self.store = store or SupabaseJobStore(config)
        self.company_discovery = company_discovery
        self.person_discovery = person_discovery
        self.enrichment = enrichment

        self.rate_limiters = {
            "apollo": RateLimiter("apollo", config.apollo_rate_limit_rpm),
            "bettercontact": RateLimiter("bettercontact", config.bettercontact_rate_limit_rpm),
        }
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        if config.circuit_breaker_enabled:
            self.circuit_breakers = {
                name: CircuitBreaker(
                    name,
                    config.circuit_breaker_threshold,
                    config.circuit_breaker_timeout,
                    is_failure=_is_service_failure,
                )
                for name in ("apollo", "bettercontact")
            }

    def _ensure_clients(self) -> None:
        cfg = self.config
        apollo_kwargs = {
            "base_url": cfg.apollo_base_url,
            "timeout": cfg.discovery_request_timeout,
            "rate_limiter": self.rate_limiters["apollo"],
            "circuit_breaker": self.circuit_breakers.get("apollo"),
        }
        if self.company_discovery is None:
            self.company_discovery = CompanyDiscoveryClient(
                cfg.apollo_api_key, page_size=cfg.company_page_size, **apollo_kwargs
            )
        if self.person_discovery is None:
            self.person_discovery = PersonDiscoveryClient(
                cfg.apollo_api_key, page_size=cfg.people_page_size, **apollo_kwargs
            )
        if self.enrichment is None:
            self.enrichment = ContactEnrichmentClient(
                cfg.bettercontact_api_key,
                base_url=cfg.bettercontact_base_url,
                timeout=cfg.enrichment_request_timeout,
                poll_initial_delay=cfg.enrichment_poll_initial_delay,
                poll_backoff=cfg.enrichment_poll_backoff,
                poll_max_delay=cfg.enrichment_poll_max_delay,
                poll_max_attempts=cfg.enrichment_poll_max_attempts,
                rate_limiter=self.rate_limiters["bettercontact"],
                circuit_breaker=self.circuit_breakers.get("bettercontact"),
            )

    def _write_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        with_retries(
            self.store.update_job,
            job_id,
            fields,
            attempts=self.config.job_state_write_attempts,
            delay=self.config.job_state_write_delay,
        )

    def _transition(self, job_id: str, status: JobStatus, step: int, message: str, **extra: Any) -> None:
        logging.info("Job %s -> %s (step %d): %s", job_id, status.value, step, message)
        fields: Dict[str, Any] = {"status": status.value, "progress": {"step": step, "message": message}}
        fields.update(extra)
        self._write_job(job_id, fields)

    def execute(self, job_id: str) -> Dict[str, Any]:
        """Run every stage for one job. Raises on any failure; the caller records it."""
        job = self.store.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        job_config = JobConfig.from_job_row(job)
        previous_status = job.get("status")
        if previous_status and previous_status != JobStatus.PENDING.value:
            logging.warning("Job %s is already %s; running again from the first stage", job_id, previous_status)

        self.config.require_api_keys()
        self._ensure_clients()

        result_limit = min(job_config.result_limit, self.config.max_result_limit)
        if job_config.result_limit > self.config.max_result_limit:
            logging.warning(
                "Requested result_limit %d exceeds max %d, capping",
                job_config.result_limit,
                self.config.max_result_limit,
            )
        already_persisted = self.store.fetch_persisted_person_ids(job_id)

        # A re-run starts clean: fields left by an earlier failure or completion are cleared.
        self._transition(
            job_id,
            JobStatus.FINDING_COMPANIES,
            1,
            "Searching for target companies...",
            error=None,
            completed_at=None,
        )
        companies = self.company_discovery.search_organizations(
            job_title_signals=job_config.job_keywords,
            locations=job_config.company_locations,
            size_ranges=job_config.company_size_ranges,
        )
        if not companies:
            self._transition(
                job_id,
                JobStatus.COMPLETED,
                1,
                "No companies found matching criteria.",
                result_count=len(already_persisted),
                completed_at=datetime.now(timezone.utc).isoformat(),
            )
            return {
                "job_id": job_id,
                "status": JobStatus.COMPLETED.value,
                "companies_found": 0,
                "result_count": len(already_persisted),
            }

        self._transition(
            job_id,
            JobStatus.FINDING_PEOPLE,
            2,
            f"Found {len(companies)} companies. Searching for people...",
        )
        leads = self._collect_leads(job_id, companies, job_config.target_titles, result_limit)

        self._transition(
            job_id,
            JobStatus.ENRICHING,
            3,
            f"Found {len(leads)} leads. Starting enrichment...",
        )
        result_count = self._enrich_and_persist(job_id, leads, already_persisted)

        self._transition(
            job_id,
            JobStatus.COMPLETED,
            4,
            "List building completed.",
            result_count=result_count,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        return {
            "job_id": job_id,
            "status": JobStatus.COMPLETED.value,
            "companies_found": len(companies),
            "leads_found": len(leads),
            "result_count": result_count,
        }

    def _collect_leads(
        self,
        job_id: str,
        companies: Sequence[CandidateCompany],
        titles: Sequence[str],
        result_limit: int,
    ) -> List[EnrichmentRecord]:
        # Discovery order wins: earlier companies fill the quota first.
        leads: List[EnrichmentRecord] = []
        for company in companies:
            if len(leads) >= result_limit:
                break
            people = self.person_discovery.search_people(
                organization_external_id=company.external_id,
                titles=titles,
            )
            for person in people:
                if len(leads) >= result_limit:
                    break
                leads.append(EnrichmentRecord.from_candidates(job_id, company, person))
        logging.info("Collected %d leads from %d companies (limit %d)", len(leads), len(companies), result_limit)
        return leads

    def _enrich_and_persist(
        self,
        job_id: str,
        leads: Sequence[EnrichmentRecord],
        already_persisted: Set[str],
    ) -> int:
        pending = [lead for lead in leads if lead.person.external_id not in already_persisted]
        written = len(leads) - len(pending)
        if written:
            logging.info("Skipping %d leads already persisted for job %s", written, job_id)

        batch_size = self.config.enrichment_batch_size
        total_batches = math.ceil(len(pending) / batch_size) if pending else 0
        for index, batch in enumerate(chunked(pending, batch_size), start=1):
            logging.info("Enriching batch %d/%d (%d leads)", index, total_batches, len(batch))
            enrichment_id = self.enrichment.submit_enrichment([lead.enrichment_request() for lead in batch])
            results = self.enrichment.fetch_results(enrichment_id)
            records = self._match_results(batch, results)
            self.store.insert_results([record.to_row() for record in records])
            written += len(records)
            enriched = sum(1 for record in records if record.enrichment_status is EnrichmentStatus.ENRICHED)
            logging.info("Batch %d/%d persisted %d rows (%d enriched)", index, total_batches, len(records), enriched)
            self._write_job(job_id, {"progress": {"step": 3, "message": f"Enriched {written} of {len(leads)} leads."}})
        return written

    @staticmethod
    def _match_results(
        batch: Sequence[EnrichmentRecord],
        results: Iterable[EnrichmentResult],
    ) -> List[EnrichmentRecord]:
        by_key = {}
        for result in results:
            by_key[result.correlation_key] = result
        # Only people with a returned result get a row.
        records = []
        for lead in batch:
            result = by_key.get(lead.correlation_key)
            if result is None:
                continue
            records.append(lead.resolve(result.email, result.phone))
        missing = len(batch) - len(records)
        if missing:
            logging.warning("No enrichment result for %d of %d leads; they are not persisted", missing, len(batch))
        return records

    def _mark_failed(self, job_id: str, message: str, details: str) -> None:
        try:
            self._write_job(job_id, {"status": JobStatus.FAILED.value, "error": f"{message}: {details}"})
        except Exception as exc:  # noqa: BLE001
            logging.error("Failed to update job %s status: %s", job_id, exc)

    def handle_trigger(self, body: Any) -> Tuple[int, Dict[str, Any]]:
        """Trigger contract: ``{"jobId": ...}`` in, ``(status_code, payload)`` out."""
        job_id = body.get("jobId") if isinstance(body, dict) else None
        if not job_id:
            error = InvalidRequestError("Missing jobId in request body.")
            logging.error("Rejected trigger: %s", error)
            return 400, {"error": error.message, "details": error.details}
        job_id = str(job_id)

        with JobLogCapture(self.store, job_id):
            try:
                self.execute(job_id)
            except Exception as exc:  # pylint: disable=broad-except
                logging.error("Error executing list-building job %s: %s", job_id, exc, exc_info=True)
                if isinstance(exc, ApplicationError):
                    status, message, details = 400, exc.message, exc.details
                else:
                    status, message, details = 500, "Internal Server Error", str(exc) or exc.__class__.__name__
                if not isinstance(exc, JobNotFoundError):
                    self._mark_failed(job_id, message, details)
                return status, {"error": message, "details": details}
        return 200, {"success": True, "message": "List building process completed."}


class PendingJobProcessor:
    """Run pending list-building jobs from Supabase, oldest first."""

    def __init__(self, config: Config, orchestrator: Optional[ListBuildingOrchestrator] = None):
        self.orchestrator = orchestrator or ListBuildingOrchestrator(config)
        self.store = self.orchestrator.store

    def process(self, limit: int = 1) -> List[Tuple[str, int]]:
        pending = self.store.fetch_pending_jobs(limit)
        if not pending:
            logging.info("No pending list-building jobs found")
            return []
        outcomes: List[Tuple[str, int]] = []
        for job in pending:
            job_id = job.get("id")
            if job_id is None:
                continue
            status, payload = self.orchestrator.handle_trigger({"jobId": job_id})
            if status == 200:
                logging.info("Job %s processed successfully", job_id)
            else:
                logging.error("Job %s failed: %s", job_id, payload.get("details") or payload.get("error"))
            outcomes.append((str(job_id), status))
        return outcomes


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recruitment lead list-building jobs")
    parser.add_argument("--job-id", help="Execute the list-building job with this ID")
    parser.add_argument("--create-job", action="store_true", help="Create a pending job from the filters below")
    parser.add_argument("--tenant", help="Tenant (client record) the leads are destined for")
    parser.add_argument("--titles", nargs="*", default=[], help="Target person titles")
    parser.add_argument("--sizes", nargs="*", default=[], help="Employee-count ranges, e.g. 50,200")
    parser.add_argument("--locations", nargs="*", default=[], help="Company locations")
    parser.add_argument("--keywords", nargs="*", default=[], help="Hiring-signal job keywords")
    parser.add_argument(
        "--limit",
        type=int,
        help="Result limit for --create-job, or maximum jobs to run with --process-pending (default 1)",
    )
    parser.add_argument("--run", action="store_true", help="Execute the job right after --create-job")
    parser.add_argument(
        "--process-pending",
        action="store_true",
        help="Execute pending jobs from Supabase and exit",
    )
    parser.add_argument("--list-tenants", action="store_true", help="Print tenant records from the records store")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--output", help="Optional path to write the JSON result")
    return parser


def _emit(result: Any, output: Optional[str]) -> None:
    output_json = json.dumps(result, indent=2, default=str)
    print(output_json)
    if output:
        with open(output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", output)


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    if not (args.job_id or args.create_job or args.process_pending or args.list_tenants):
        parser.error("one of --job-id, --create-job, --process-pending or --list-tenants is required")
    if args.create_job and (not args.tenant or args.limit is None):
        parser.error("--create-job requires --tenant and --limit")

    try:
        config = Config()
        if args.list_tenants:
            _emit(RecordsStoreClient(config).list_tenants(), args.output)
            return 0

        orchestrator = ListBuildingOrchestrator(config)
        if args.process_pending:
            outcomes = PendingJobProcessor(config, orchestrator).process(limit=max(1, args.limit or 1))
            _emit([{"job_id": job_id, "status_code": code} for job_id, code in outcomes], args.output)
            return 0 if all(code == 200 for _, code in outcomes) else 1

        job_id = args.job_id
        if args.create_job:
            job_config = JobConfig.from_dict(
                {
                    "target_titles": args.titles,
                    "company_size_ranges": args.sizes,
                    "company_locations": args.locations,
                    "job_keywords": args.keywords,
                    "result_limit": args.limit,
                },
                tenant_id=args.tenant,
            )
            job = orchestrator.store.create_job(args.tenant, job_config)
            logging.info("Created job %s", job.get("id"))
            if not args.run:
                _emit(job, args.output)
                return 0
            job_id = job.get("id")
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1

    status, payload = orchestrator.handle_trigger({"jobId": job_id})
    _emit(payload, args.output)
    return 0 if status == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
