"""Job store backed by the Supabase ``ai_jobs`` table and the job-runner function."""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from supabase import Client

from wardrobe_ai.config import settings
from wardrobe_ai.db.supabase_client import get_supabase
from wardrobe_ai.jobs.models import Job, JobStatus, JobType
from wardrobe_ai.jobs.store import JobStore

logger = logging.getLogger(__name__)

JOBS_TABLE = "ai_jobs"


class SupabaseJobStore(JobStore):
    """Reads and writes ``ai_jobs`` rows; triggers the serverless job runner.

    The Supabase client is synchronous, so every table call runs in the
    default thread executor.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        runner_url: Optional[str] = None,
        access_token: Optional[str] = None,
        trigger_timeout: Optional[float] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client
        self._runner_url = (runner_url or settings.job_runner_url).rstrip("/") + settings.job_runner_path
        self._access_token = access_token or settings.supabase_access_token
        self._trigger_timeout = trigger_timeout or settings.trigger_timeout_seconds
        self._http = http

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _run(self, fn: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def create_job(
        self, owner_id: str, job_type: JobType, input: Dict[str, Any]
    ) -> Job:
        def _insert():
            return (
                self.client.table(JOBS_TABLE)
                .insert({
                    "owner_user_id": owner_id,
                    "job_type": job_type.value,
                    "input": input,
                    "status": JobStatus.QUEUED.value,
                })
                .execute()
            )

        response = await self._run(_insert)
        if not response.data:
            raise RuntimeError(f"Insert into {JOBS_TABLE} returned no row")
        return Job.model_validate(response.data[0])

    async def trigger(self, job_id: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"

        try:
            if self._http is not None:
                response = await self._http.post(
                    self._runner_url,
                    json={"job_id": job_id},
                    headers=headers,
                    timeout=self._trigger_timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._trigger_timeout) as http:
                    response = await http.post(self._runner_url, json={"job_id": job_id}, headers=headers)
        except httpx.ReadTimeout:
            # The runner answers only after the job finishes; the request was delivered.
            logger.debug("Runner still busy with job %s; trigger accepted", job_id)
            return
        response.raise_for_status()

    async def get_job(self, job_id: str) -> Optional[Job]:
        def _select():
            return (
                self.client.table(JOBS_TABLE)
                .select("*")
                .eq("id", job_id)
                .limit(1)
                .execute()
            )

        response = await self._run(_select)
        rows = response.data or []
        return Job.model_validate(rows[0]) if rows else None

    async def list_jobs(
        self,
        owner_id: str,
        job_type: JobType,
        statuses: Iterable[JobStatus],
        updated_since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Job]:
        status_values = [s.value for s in statuses]

        def _select():
            query = (
                self.client.table(JOBS_TABLE)
                .select("*")
                .eq("job_type", job_type.value)
                .eq("owner_user_id", owner_id)
                .in_("status", status_values)
            )
            if updated_since is not None:
                query = query.gte("updated_at", updated_since.isoformat())
            return query.order("updated_at", desc=True).limit(limit).execute()

        response = await self._run(_select)
        return [Job.model_validate(row) for row in response.data or []]
