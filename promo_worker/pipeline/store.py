"""
Job store backed by the Supabase ``jobs`` table.

Every write that moves a video field is a conditional update: the row is
matched on ``id`` *and* on the value the writer expects to replace, and the
returned rows tell us whether we won. That gives first-terminal-wins
without any locking between the sweep, webhooks and the proxy.
"""

import json
import logging
from typing import Optional

from supabase import Client, create_client

from ..config import Settings
from .models import Job, VideoKind
from .states import PENDING_PREFIX, now_iso

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"
LOGS_TABLE = "job_logs"


class SupabaseJobStore:
    def __init__(self, client: Client):
        self.sb = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseJobStore":
        if not settings.supabase_url or not settings.supabase_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_key))

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[Job]:
        result = self.sb.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        rows = result.data or []
        return Job.model_validate(rows[0]) if rows else None

    def list_pending(self) -> list[Job]:
        """Jobs with at least one video field still ``pending:``."""
        pattern = f"{PENDING_PREFIX}*"
        result = (
            self.sb.table(JOBS_TABLE)
            .select("*")
            .or_(
                f"{VideoKind.AVATAR.field}.like.{pattern},"
                f"{VideoKind.CINEMATIC.field}.like.{pattern}"
            )
            .execute()
        )
        return [Job.model_validate(row) for row in (result.data or [])]

    def find_by_marker(self, field: str, marker: str) -> Optional[Job]:
        result = self.sb.table(JOBS_TABLE).select("*").eq(field, marker).limit(1).execute()
        rows = result.data or []
        return Job.model_validate(rows[0]) if rows else None

    # ── Writes ───────────────────────────────────────────────────────────

    def update_if(
        self,
        job_id: str,
        field: str,
        expected: Optional[str],
        new_value: Optional[str],
        extra: Optional[dict] = None,
    ) -> bool:
        """
        Set ``field`` to ``new_value`` only if it currently holds ``expected``.

        ``expected`` is an exact value, a ``prefix*`` pattern, or None for
        "is null". Returns True if a row was updated.
        """
        values = {field: new_value, "updated_at": now_iso()}
        if extra:
            values.update(extra)

        query = self.sb.table(JOBS_TABLE).update(values).eq("id", job_id)
        if expected is None:
            query = query.is_(field, "null")
        elif expected.endswith("*"):
            query = query.like(field, expected[:-1] + "%")
        else:
            query = query.eq(field, expected)

        result = query.execute()
        updated = bool(result.data)
        if not updated:
            logger.info(f"Job {job_id}: guarded write on {field} skipped (expected {expected!r})")
        return updated

    def update_status_if(self, job_id: str, new_status: str, expected_statuses: list[str]) -> bool:
        result = (
            self.sb.table(JOBS_TABLE)
            .update({"status": new_status, "updated_at": now_iso()})
            .eq("id", job_id)
            .in_("status", expected_statuses)
            .execute()
        )
        return bool(result.data)

    def update(self, job_id: str, values: dict) -> None:
        """Unconditional write for columns outside the state machine."""
        self.sb.table(JOBS_TABLE).update({**values, "updated_at": now_iso()}).eq("id", job_id).execute()

    def log_step(self, job_id: str, step: str, data: Optional[dict] = None) -> None:
        """Append to the job step log. Failure here never fails the caller."""
        try:
            self.sb.table(LOGS_TABLE).insert({
                "job_id": job_id,
                "step": step,
                "data": json.dumps(data or {}, default=str),
                "timestamp": now_iso(),
            }).execute()
        except Exception as e:
            logger.warning(f"Failed to write job log {step} for {job_id}: {e}")
