import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from promo_worker import fallback_limiter, metrics, services
from promo_worker.config import Settings
from promo_worker.did import DIDClient
from promo_worker.main import app
from promo_worker.pipeline.models import Job, VideoKind
from promo_worker.pipeline.proxy import VideoProxy
from promo_worker.pipeline.reconciler import Reconciler
from promo_worker.pipeline.submitter import Submitter
from promo_worker.pipeline.webhooks import WebhookReceiver
from promo_worker.runway import RunwayClient


def ago(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()


class FakeJobStore:
    """In-memory jobs table with the same guarded-write semantics as Supabase."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.logs: list[tuple[str, str, dict]] = []
        self.writes: list[tuple[str, str, object]] = []
        self._lock = threading.Lock()

    def add(self, job_id: str, **values) -> Job:
        row = {"id": job_id, "status": "pending", "created_at": ago(0)}
        row.update(values)
        self.rows[job_id] = row
        return Job.model_validate(row)

    def value(self, job_id: str, field: str):
        return self.rows[job_id].get(field)

    @staticmethod
    def _matches(current, expected) -> bool:
        if expected is None:
            return current is None
        if expected.endswith("*"):
            return current is not None and current.startswith(expected[:-1])
        return current == expected

    def get(self, job_id):
        row = self.rows.get(job_id)
        return Job.model_validate(dict(row)) if row else None

    def list_pending(self):
        return [
            Job.model_validate(dict(row)) for row in self.rows.values()
            if any(str(row.get(k.field) or "").startswith("pending:") for k in VideoKind)
        ]

    def find_by_marker(self, field, marker):
        for row in self.rows.values():
            if row.get(field) == marker:
                return Job.model_validate(dict(row))
        return None

    def update_if(self, job_id, field, expected, new_value, extra=None):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None or not self._matches(row.get(field), expected):
                return False
            row[field] = new_value
            row.update(extra or {})
            self.writes.append((job_id, field, new_value))
            return True

    def update_status_if(self, job_id, new_status, expected_statuses):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None or row.get("status") not in expected_statuses:
                return False
            row["status"] = new_status
            return True

    def update(self, job_id, values):
        self.rows[job_id].update(values)

    def log_step(self, job_id, step, data=None):
        self.logs.append((job_id, step, data or {}))

    def steps(self, job_id):
        return [step for jid, step, _ in self.logs if jid == job_id]


@pytest.fixture(autouse=True)
def _clean_state():
    metrics.reset()
    fallback_limiter.reset()
    yield
    app.dependency_overrides.clear()
    services.reset()


@pytest.fixture
def settings():
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_key="service-key",
        did_api_key="user:pass",
        runway_api_key="rw-key",
        status_retry_base_delay=0.01,
        status_retry_max_delay=0.05,
        runway_poll_interval=0,
        runway_max_poll_attempts=3,
    )


@pytest.fixture
def store():
    return FakeJobStore()


@pytest.fixture
def did():
    return MagicMock(spec=DIDClient)


@pytest.fixture
def runway():
    return MagicMock(spec=RunwayClient)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def submitter(store, settings, did, runway, sleeps):
    return Submitter(store, settings, did, runway, sleep=sleeps.append)


@pytest.fixture
def reconciler(store, settings, did, sleeps):
    return Reconciler(store, settings, did, sleep=sleeps.append)


@pytest.fixture
def receiver(store):
    return WebhookReceiver(store)


@pytest.fixture
def client(monkeypatch, settings, store, submitter, reconciler, receiver, did):
    """TestClient wired to the fake store and mocked providers."""
    monkeypatch.setattr(services, "_settings", settings)
    app.dependency_overrides[services.get_settings] = lambda: settings
    app.dependency_overrides[services.get_store] = lambda: store
    app.dependency_overrides[services.get_redis] = lambda: None
    app.dependency_overrides[services.get_submitter] = lambda: submitter
    app.dependency_overrides[services.get_reconciler] = lambda: reconciler
    app.dependency_overrides[services.get_webhook_receiver] = lambda: receiver
    app.dependency_overrides[services.get_proxy] = lambda: VideoProxy(store, settings, did)
    return TestClient(app)
