"""Job state projector.

Turns the contract's per-job storage into a snapshot of the jobs a viewer
cares about, and keeps it fresh. The snapshot is replaced wholesale, never
patched: a status only changes when a new projection reads it from chain.

Refresh triggers are the poll interval and relevant contract events. Events
never carry state into the snapshot; they only wake the refresh loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable

from gateway import ContractGateway, JobEvent, JobRecord
from protocol import (
    DEFAULT_POLL_INTERVAL, ZERO_ADDRESS, JobBoardError, JobStatus, NotFoundError,
    Role, from_wei, same_address,
)

logger = logging.getLogger(__name__)

LISTING_STATUSES = {JobStatus.OPEN, JobStatus.ASSIGNED}


class Scope(Enum):
    POSTED = "posted"        # jobs I posted
    ASSIGNED = "assigned"    # jobs assigned to me
    LISTING = "listing"      # everything OPEN or ASSIGNED
    DETAIL = "detail"        # one job id


def role_of(employer: str, freelancer: str | None, viewer: str | None) -> Role:
    if same_address(viewer, employer):
        return Role.EMPLOYER
    if same_address(viewer, freelancer):
        return Role.FREELANCER
    return Role.OTHER


@dataclass(frozen=True)
class Job:
    """One projected job, relative to the viewer who projected it."""
    id: int
    title: str
    description_ref: str
    budget: int
    employer: str
    freelancer: str | None
    status: JobStatus
    escrow_amount: int = 0
    escrowed_at: int | None = None
    viewer: str | None = None

    @classmethod
    def from_record(cls, record: JobRecord, escrow_amount: int, viewer: str | None) -> "Job":
        freelancer = record.freelancer
        if not freelancer or freelancer == ZERO_ADDRESS:
            freelancer = None
        return cls(
            id=record.id,
            title=record.title,
            description_ref=record.description_ref,
            budget=record.budget,
            employer=record.employer,
            freelancer=freelancer,
            status=record.status,
            escrow_amount=int(escrow_amount),
            escrowed_at=record.escrowed_at or None,
            viewer=viewer,
        )

    @property
    def escrowed(self) -> bool:
        return self.budget > 0 and self.escrow_amount == self.budget

    @property
    def role(self) -> Role:
        return role_of(self.employer, self.freelancer, self.viewer)

    @property
    def is_employer(self) -> bool:
        return self.role is Role.EMPLOYER

    @property
    def is_freelancer(self) -> bool:
        return self.role is Role.FREELANCER

    @property
    def status_text(self) -> str:
        return self.status.name

    @property
    def budget_ether(self) -> Decimal:
        return from_wei(self.budget)


@dataclass(frozen=True)
class Snapshot:
    jobs: tuple[Job, ...] = ()
    error: Exception | None = None
    refreshed_at: float = field(default_factory=time.time)

    def get(self, job_id: int) -> Job | None:
        for job in self.jobs:
            if job.id == int(job_id):
                return job
        return None

    @property
    def ids(self) -> set[int]:
        return {job.id for job in self.jobs}


Listener = Callable[[Snapshot], Awaitable[None]]


class JobStateProjector:
    """Owns one Snapshot for one (viewer, scope) and refreshes it."""

    def __init__(self, gateway: ContractGateway, scope: Scope = Scope.LISTING,
                 job_id: int | None = None, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 resubscribe_delay: float = 5.0):
        if scope is Scope.DETAIL and job_id is None:
            raise ValueError("DETAIL scope needs a job_id")
        self.gateway = gateway
        self.scope = scope
        self.job_id = int(job_id) if job_id is not None else None
        self.poll_interval = poll_interval
        self.resubscribe_delay = resubscribe_delay
        self.snapshot = Snapshot(refreshed_at=0.0)
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._trigger = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._events_task: asyncio.Task | None = None

    @property
    def viewer(self) -> str | None:
        return self.gateway.account

    # --- Listeners ---

    def add_listener(self, fn: Listener):
        self._listeners.append(fn)

    def remove_listener(self, fn: Listener):
        if fn in self._listeners:
            self._listeners.remove(fn)

    async def _publish(self, snapshot: Snapshot):
        for fn in list(self._listeners):
            try:
                await fn(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    # --- Projection ---

    def in_scope(self, record: JobRecord) -> bool:
        if self.scope is Scope.POSTED:
            return same_address(record.employer, self.viewer)
        if self.scope is Scope.ASSIGNED:
            return same_address(record.freelancer, self.viewer)
        if self.scope is Scope.LISTING:
            return record.status in LISTING_STATUSES
        return record.id == self.job_id

    async def _fetch_one(self, job_id: int) -> Job | None:
        """Fetch one job. None when out of scope or the fetch failed."""
        try:
            record = await self.gateway.get_job(job_id)
            if not self.in_scope(record):
                return None
            escrow = await self.gateway.get_escrow_amount(job_id)
        except (JobBoardError, ValueError) as e:
            logger.warning("Skipping job %s: %s", job_id, e)
            return None
        except Exception:
            logger.exception("Skipping job %s: unexpected fetch failure", job_id)
            return None
        return Job.from_record(record, escrow, self.viewer)

    async def _project(self) -> Snapshot:
        if self.scope is Scope.DETAIL:
            record = await self.gateway.get_job(self.job_id)
            escrow = await self.gateway.get_escrow_amount(self.job_id)
            return Snapshot(jobs=(Job.from_record(record, escrow, self.viewer),))

        count = await self.gateway.get_job_count()
        # Newest first
        results = await asyncio.gather(*(self._fetch_one(i) for i in range(count, 0, -1)))
        jobs = sorted((j for j in results if j is not None), key=lambda j: j.id, reverse=True)
        return Snapshot(jobs=tuple(jobs))

    async def refresh(self) -> Snapshot:
        """Re-project from chain and atomically replace the snapshot."""
        async with self._lock:
            try:
                snapshot = await self._project()
            except NotFoundError as e:
                logger.info("Job %s not found", self.job_id)
                snapshot = Snapshot(error=e)
            except (JobBoardError, ValueError) as e:
                logger.warning("Projection (%s) failed: %s", self.scope.value, e)
                snapshot = Snapshot(error=e)
            except Exception as e:
                logger.exception("Projection (%s) failed", self.scope.value)
                snapshot = Snapshot(error=e)
            self.snapshot = snapshot
        await self._publish(snapshot)
        return snapshot

    # --- Triggers ---

    def is_relevant(self, event: JobEvent) -> bool:
        if self.scope is Scope.LISTING:
            return True
        if self.scope is Scope.DETAIL:
            return event.job_id == self.job_id
        if event.job_id in self.snapshot.ids:
            return True
        if self.scope is Scope.POSTED:
            return event.name == "JobPosted" and same_address(event.args.get("employer"), self.viewer)
        return event.name == "JobApplied" and same_address(event.args.get("freelancer"), self.viewer)

    def trigger(self):
        """Wake the refresh loop now."""
        self._trigger.set()

    async def _watch_events(self):
        while True:
            try:
                async for event in self.gateway.subscribe():
                    if self.is_relevant(event):
                        logger.debug("Event %s for job %s triggers refresh", event.name, event.job_id)
                        self._trigger.set()
                logger.info("Event subscription ended, resubscribing")
            except JobBoardError as e:
                logger.warning("Event subscription failed: %s (polling continues)", e)
            except Exception:
                logger.exception("Event subscription failed (polling continues)")
            await asyncio.sleep(self.resubscribe_delay)

    async def _run(self):
        while True:
            try:
                await asyncio.wait_for(self._trigger.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._trigger.clear()
            try:
                await self.refresh()
            except Exception:
                logger.exception("Scheduled refresh (%s) failed", self.scope.value)

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    async def start(self):
        if self._loop_task is not None:
            return
        await self.refresh()
        self._events_task = asyncio.create_task(self._watch_events())
        self._loop_task = asyncio.create_task(self._run())

    async def stop(self):
        await _cancel(self._events_task)
        await _cancel(self._loop_task)
        self._events_task = None
        self._loop_task = None

    async def rebind(self, gateway: ContractGateway) -> Snapshot:
        """Swap in a new gateway (account or network change) and re-project."""
        was_running = self._events_task is not None
        await _cancel(self._events_task)
        self._events_task = None
        self.gateway = gateway
        snapshot = await self.refresh()
        if was_running:
            self._events_task = asyncio.create_task(self._watch_events())
        return snapshot

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()


async def _cancel(task: asyncio.Task | None):
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
