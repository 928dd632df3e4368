import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from list_builder import (  # noqa: E402
    CandidateCompany,
    CandidatePerson,
    CircuitBreaker,
    Config,
    EnrichmentResult,
)


def pytest_configure(config):
    for marker in ("unit", "integration", "http", "circuit_breaker"):
        config.addinivalue_line("markers", f"{marker}: {marker} tests")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # Never read a developer's .env.local
    monkeypatch.setenv("LIST_BUILDER_ENV_FILE", os.path.join(ROOT, "tests", "missing.env"))
    monkeypatch.setenv("CIRCUIT_BREAKER_ENABLED", "false")
    monkeypatch.setenv("ENRICHMENT_POLL_INITIAL_DELAY", "0")
    monkeypatch.setenv("JOB_STATE_WRITE_DELAY", "0")

    # Satisfy config validation with dummy values
    monkeypatch.setenv("SUPABASE_URL", "http://localhost:54321")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "test_service_key")
    monkeypatch.setenv("APOLLO_API_KEY", "test_apollo_key")
    monkeypatch.setenv("BETTERCONTACT_API_KEY", "test_bettercontact_key")
    monkeypatch.setenv("AIRTABLE_API_TOKEN", "test_airtable_token")
    monkeypatch.setenv("AIRTABLE_BASE_ID", "appTEST")
    for name in ("APOLLO_RATE_LIMIT_RPM", "BETTERCONTACT_RATE_LIMIT_RPM", "ENRICHMENT_BATCH_SIZE", "MAX_RESULT_LIMIT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def base_config():
    return Config()


@pytest.fixture
def circuit_breaker():
    return CircuitBreaker(name="test", failure_threshold=3, recovery_timeout=60.0)


def fake_company(i, name_prefix="Co"):
    return CandidateCompany(
        external_id=f"org{i}",
        name=f"{name_prefix}{i}",
        domain=f"example{i}.com",
        size_bucket="51-200",
        industry="staffing",
        location="Chicago",
    )


def fake_person(company_id, i):
    return CandidatePerson(
        external_id=f"{company_id}-p{i}",
        name=f"Alex Doe{i}",
        title="Head of Talent",
        seniority="director",
        linkedin_url=f"https://linkedin.com/in/alex-{company_id}-{i}",
        parent_company_external_id=company_id,
    )


def make_job(job_id="job-1", result_limit=10, status="pending", **config):
    job_config = {
        "target_titles": ["Head of Talent"],
        "company_size_ranges": ["51,200"],
        "company_locations": ["United States"],
        "job_keywords": ["recruiter"],
        "result_limit": result_limit,
    }
    job_config.update(config)
    return {
        "id": job_id,
        "status": status,
        "airtable_client_id": "recTENANT",
        "config": job_config,
        "progress": {"step": 0, "message": "Job created."},
    }


class FakeJobStore:
    """In-memory stand-in for SupabaseJobStore that records every write."""

    def __init__(self, jobs=None):
        self.jobs = {job["id"]: dict(job) for job in (jobs or [])}
        self.updates = []
        self.results = {}
        self.insert_calls = []
        self.run_logs = {}
        self.fail_insert_on_call = None
        self.fail_updates = 0

    def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    def create_job(self, tenant_id, config, user_id=None):
        job_id = f"job-{len(self.jobs) + 1}"
        job = {
            "id": job_id,
            "airtable_client_id": tenant_id,
            "user_id": user_id,
            "config": config.to_dict(),
            "status": "pending",
            "progress": {"step": 0, "message": "Job created."},
        }
        self.jobs[job_id] = job
        return dict(job)

    def update_job(self, job_id, fields):
        if self.fail_updates:
            self.fail_updates -= 1
            raise RuntimeError("update failed")
        self.updates.append((job_id, dict(fields)))
        self.jobs.setdefault(job_id, {"id": job_id}).update(fields)

    def insert_results(self, rows):
        self.insert_calls.append(list(rows))
        if self.fail_insert_on_call is not None and len(self.insert_calls) == self.fail_insert_on_call:
            from list_builder import DatastoreError

            raise DatastoreError("Database Insert Error", "duplicate key")
        for row in rows:
            self.results[(row["job_id"], row["apollo_person_id"])] = dict(row)
        return len(rows)

    def fetch_persisted_person_ids(self, job_id):
        return {person_id for (jid, person_id) in self.results if jid == job_id}

    def fetch_pending_jobs(self, limit=1):
        pending = [job for job in self.jobs.values() if job.get("status") == "pending"]
        return [dict(job) for job in pending[:limit]]

    def save_run_logs(self, job_id, lines):
        self.run_logs[job_id] = list(lines)

    def statuses(self, job_id):
        return [fields["status"] for jid, fields in self.updates if jid == job_id and "status" in fields]

    def steps(self, job_id):
        return [fields["progress"]["step"] for jid, fields in self.updates if jid == job_id and "progress" in fields]


class FakeCompanyDiscovery:
    def __init__(self, companies=None, error=None):
        self.companies = list(companies or [])
        self.error = error
        self.calls = []

    def search_organizations(self, *, job_title_signals, locations, size_ranges):
        self.calls.append(
            {"job_title_signals": list(job_title_signals), "locations": list(locations), "size_ranges": list(size_ranges)}
        )
        if self.error is not None:
            raise self.error
        return list(self.companies)


class FakePersonDiscovery:
    def __init__(self, people_by_company=None):
        self.people_by_company = people_by_company or {}
        self.calls = []

    def search_people(self, *, organization_external_id, titles):
        self.calls.append(organization_external_id)
        return list(self.people_by_company.get(organization_external_id, []))


class FakeEnrichment:
    """Resolves every submitted contact with an email unless told otherwise.

    A ``resolve`` callable returning None leaves that contact out of the results.
    """

    def __init__(self, resolve=None, fail_submission_on=None):
        self.resolve = resolve or (lambda request: (f"{request.first_name.lower()}@{request.company_domain}", None))
        self.fail_submission_on = fail_submission_on
        self.submissions = []
        self._pending = {}

    def submit_enrichment(self, batch):
        self.submissions.append(list(batch))
        if self.fail_submission_on is not None and len(self.submissions) == self.fail_submission_on:
            from list_builder import EnrichmentApiError

            raise EnrichmentApiError("BetterContact Submission Failed", '{"success": false}')
        enrichment_id = f"enr-{len(self.submissions)}"
        self._pending[enrichment_id] = list(batch)
        return enrichment_id

    def fetch_results(self, enrichment_job_id):
        results = []
        for request in self._pending.pop(enrichment_job_id):
            resolved = self.resolve(request)
            if resolved is None:
                continue
            email, phone = resolved
            results.append(EnrichmentResult(correlation_key=request.correlation_key, email=email, phone=phone))
        return results
