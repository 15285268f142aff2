"""Job lifecycle: closed action set, guards, transition table and executor.

A job moves OPEN -> ASSIGNED -> AWAITING_APPROVAL -> COMPLETED, with side
exits OPEN -> REFUNDED and ASSIGNED|AWAITING_APPROVAL -> DISPUTED.
Guards here are the client-side pre-check only; the contract is the final
arbiter and the status is only ever advanced by re-projection.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from decimal import InvalidOperation
from enum import Enum
from typing import Awaitable, Callable

from gateway import ContractGateway, PendingTransaction
from projector import Job, JobStateProjector, Snapshot, role_of
from protocol import (
    ACTION_STATE_TTL, REFUND_COOLDOWN_SECONDS, STATUS_TRANSITIONS,
    ChatUnavailableError, GuardViolationError, JobBoardError, JobStatus,
    NetworkUnavailableError, Role, TransactionRejectedError, TransactionRevertedError,
    shorten_address, to_wei,
)
from textstore import TextStore

logger = logging.getLogger(__name__)


class JobAction(Enum):
    ESCROW = "escrow"
    APPLY = "apply"
    REFUND = "refund"
    MARK_DONE = "mark_done"
    RAISE_DISPUTE = "raise_dispute"
    RELEASE = "release"

    @property
    def label(self) -> str:
        return self.name.replace("_", " ")


# Short forms accepted from the command line
ACTION_ALIASES = {
    "done": JobAction.MARK_DONE,
    "dispute": JobAction.RAISE_DISPUTE,
}


def parse_action(tag: str) -> JobAction:
    """Resolve an action tag. Unknown tags are rejected, never defaulted."""
    key = str(tag).strip().lower().replace("-", "_").replace(" ", "_")
    if key in ACTION_ALIASES:
        return ACTION_ALIASES[key]
    try:
        return JobAction(key)
    except ValueError:
        raise ValueError(f"Unknown action: {tag!r}")


@dataclass(frozen=True)
class Transition:
    source: JobStatus
    action: JobAction
    roles: frozenset
    target: JobStatus
    # True: must be escrowed, False: must not be, None: not checked
    escrowed: bool | None = None


PARTIES = frozenset({Role.EMPLOYER, Role.FREELANCER})

TRANSITIONS = (
    Transition(JobStatus.OPEN, JobAction.ESCROW, frozenset({Role.EMPLOYER}), JobStatus.OPEN, escrowed=False),
    Transition(JobStatus.OPEN, JobAction.APPLY, frozenset({Role.OTHER}), JobStatus.ASSIGNED, escrowed=True),
    Transition(JobStatus.OPEN, JobAction.REFUND, frozenset({Role.EMPLOYER}), JobStatus.REFUNDED, escrowed=True),
    Transition(JobStatus.ASSIGNED, JobAction.MARK_DONE, frozenset({Role.FREELANCER}), JobStatus.AWAITING_APPROVAL),
    Transition(JobStatus.ASSIGNED, JobAction.RAISE_DISPUTE, PARTIES, JobStatus.DISPUTED),
    Transition(JobStatus.AWAITING_APPROVAL, JobAction.RELEASE, frozenset({Role.EMPLOYER}), JobStatus.COMPLETED),
    Transition(JobStatus.AWAITING_APPROVAL, JobAction.RAISE_DISPUTE, PARTIES, JobStatus.DISPUTED),
)

_TABLE = {(t.source, t.action): t for t in TRANSITIONS}


def next_status(status: JobStatus, action: JobAction) -> JobStatus:
    transition = _TABLE.get((status, action))
    if transition is None:
        raise ValueError(f"{action.label} is not valid from {status.name}")
    return transition.target


def is_forward(current: JobStatus, candidate: JobStatus) -> bool:
    """True if candidate is reachable from current along the transition table."""
    seen = set()
    frontier = [current]
    while frontier:
        status = frontier.pop()
        for nxt in STATUS_TRANSITIONS[status]:
            if nxt == candidate:
                return True
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return False


def _role_names(roles) -> str:
    names = sorted("employer" if r is Role.EMPLOYER else "freelancer" if r is Role.FREELANCER
                   else "non-party account" for r in roles)
    return " or ".join(names)


def guard_violations(action: JobAction, job: Job, viewer: str | None = None,
                     now: float | None = None,
                     cooldown: int = REFUND_COOLDOWN_SECONDS) -> list[str]:
    """Every reason this viewer cannot take this action on this job right now."""
    viewer = viewer if viewer is not None else job.viewer
    if not viewer:
        return ["Wallet is not connected"]

    transition = _TABLE.get((job.status, action))
    if transition is None:
        return [f"{action.label} is not allowed while the job is {job.status.name}"]

    failures = []
    role = role_of(job.employer, job.freelancer, viewer)
    if role not in transition.roles:
        if action is JobAction.APPLY:
            failures.append("Employer cannot apply to their own job")
        else:
            failures.append(f"Only the {_role_names(transition.roles)} can {action.label.lower()}")

    if action is JobAction.APPLY and job.freelancer is not None:
        failures.append("Job already assigned")

    if transition.escrowed is True and not job.escrowed:
        failures.append("Funds not escrowed")
    elif transition.escrowed is False and job.escrowed:
        failures.append("Funds already escrowed")

    if action is JobAction.REFUND and job.escrowed_at:
        now = time.time() if now is None else now
        available_at = job.escrowed_at + cooldown
        if now < available_at:
            remaining = int(available_at - now)
            failures.append(f"Refund not yet available ({remaining // 3600}h remaining)")

    return failures


def check_guard(action: JobAction, job: Job, viewer: str | None = None, now: float | None = None):
    failures = guard_violations(action, job, viewer, now)
    if failures:
        raise GuardViolationError("; ".join(failures))


def available_actions(job: Job, viewer: str | None = None, now: float | None = None) -> list[JobAction]:
    return [a for a in JobAction if not guard_violations(a, job, viewer, now)]


# --- Dispatch: one gateway call per action ---

_DISPATCH: dict[JobAction, Callable[[ContractGateway, Job], Awaitable[PendingTransaction]]] = {
    JobAction.ESCROW: lambda gw, job: gw.escrow_funds(job.id, job.budget),
    JobAction.APPLY: lambda gw, job: gw.apply_for_job(job.id),
    JobAction.REFUND: lambda gw, job: gw.refund_employer(job.id),
    JobAction.MARK_DONE: lambda gw, job: gw.mark_work_done(job.id),
    JobAction.RAISE_DISPUTE: lambda gw, job: gw.raise_dispute(job.id),
    JobAction.RELEASE: lambda gw, job: gw.release_payment(job.id),
}

_missing = set(JobAction) - set(_DISPATCH)
if _missing:
    raise TypeError(f"No gateway call for actions: {sorted(a.name for a in _missing)}")


def system_notice(action: JobAction, job: Job, actor: str) -> str:
    who = shorten_address(actor)
    if action is JobAction.RAISE_DISPUTE:
        return f"Dispute raised by {who}. Please discuss."
    if action is JobAction.RELEASE:
        return f"Payment released by Employer ({who}). Job complete."
    if action is JobAction.APPLY:
        return f"User {who} applied and was assigned as Freelancer."
    if action is JobAction.ESCROW:
        return f"Employer ({who}) escrowed {job.budget_ether.normalize():f} ETH."
    if action is JobAction.REFUND:
        return f"Employer ({who}) received refund. Job closed."
    return f"Work marked as done by Freelancer ({who}). Awaiting Employer payment release."


# --- Action state records ---

class Phase(Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ActionRecord:
    job_id: int
    action: JobAction | None
    phase: Phase
    message: str = ""
    error: Exception | None = None

    @property
    def finished(self) -> bool:
        return self.phase is not Phase.LOADING

    @property
    def ok(self) -> bool:
        return self.phase is Phase.SUCCESS


class ActionStateBook:
    """One slot per job id. Finished records expire after `ttl` seconds."""

    def __init__(self, ttl: float = ACTION_STATE_TTL):
        self.ttl = ttl
        self._records: dict[int, ActionRecord] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}

    def get(self, job_id: int) -> ActionRecord | None:
        return self._records.get(int(job_id))

    def __len__(self):
        return len(self._records)

    def _cancel_timer(self, job_id: int):
        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def set(self, record: ActionRecord) -> ActionRecord:
        job_id = int(record.job_id)
        self._cancel_timer(job_id)
        self._records[job_id] = record
        if record.finished and self.ttl > 0:
            loop = asyncio.get_running_loop()
            self._timers[job_id] = loop.call_later(self.ttl, self._expire, job_id, record)
        return record

    def _expire(self, job_id: int, record: ActionRecord):
        self._timers.pop(job_id, None)
        # A newer action on the same job keeps its slot
        if self._records.get(job_id) is record:
            del self._records[job_id]

    def clear_finished(self):
        for job_id in [j for j, r in self._records.items() if r.finished]:
            self._cancel_timer(job_id)
            del self._records[job_id]

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def close(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._records.clear()


# --- Executor ---

Notify = Callable[[str], Awaitable[None]]


class LifecycleController:
    """Runs actions for one viewer against one projection.

    perform() never raises for per-job failures; they land in the job's
    action slot and in the returned record.
    """

    def __init__(self, gateway: ContractGateway, projector: JobStateProjector,
                 action_states: ActionStateBook | None = None, notify: Notify | None = None,
                 text_store: TextStore | None = None, clock: Callable[[], float] = time.time):
        self.gateway = gateway
        self.projector = projector
        self.states = action_states if action_states is not None else ActionStateBook()
        self.notify = notify
        self.text_store = text_store
        self.clock = clock
        projector.add_listener(self._on_snapshot)

    async def _on_snapshot(self, snapshot: Snapshot):
        self.states.clear_finished()

    def rebind(self, gateway: ContractGateway):
        self.gateway = gateway

    def _finish(self, job_id: int, action: JobAction, phase: Phase, message: str,
                error: Exception | None = None) -> ActionRecord:
        return self.states.set(ActionRecord(job_id, action, phase, message, error))

    async def perform(self, action: JobAction | str, job_id: int) -> ActionRecord:
        if not isinstance(action, JobAction):
            action = parse_action(action)
        job_id = int(job_id)

        job = self.projector.snapshot.get(job_id)
        if job is None:
            err = GuardViolationError(f"Job {job_id} is not loaded")
            return self._finish(job_id, action, Phase.ERROR, str(err), err)
        viewer = self.gateway.account
        try:
            check_guard(action, job, viewer, self.clock())
        except GuardViolationError as e:
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} blocked: {e}", e)

        self.states.set(ActionRecord(job_id, action, Phase.LOADING, f"{action.label}..."))
        try:
            pending = await _DISPATCH[action](self.gateway, job)
            self.states.set(ActionRecord(job_id, action, Phase.LOADING, f"Confirming {action.label}..."))
            await pending.wait()
        except TransactionRejectedError as e:
            logger.info("%s on job %s cancelled by signer", action.name, job_id)
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} cancelled", e)
        except TransactionRevertedError as e:
            logger.warning("%s on job %s reverted: %s", action.name, job_id, e.reason)
            await self.projector.refresh()
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} failed: {e.reason}", e)
        except NetworkUnavailableError as e:
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} failed: network unavailable", e)
        except JobBoardError as e:
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} failed: {e}", e)
        except Exception as e:
            logger.exception("%s on job %s failed unexpectedly", action.name, job_id)
            await self.projector.refresh()
            return self._finish(job_id, action, Phase.ERROR, f"{action.label} failed: {e}", e)

        logger.info("%s on job %s confirmed", action.name, job_id)
        # Chat opens on ASSIGNED and closes on COMPLETED/REFUNDED: try the
        # notice on both sides of the re-projection
        notice = system_notice(action, job, viewer)
        sent = await self._post_notice(notice, final=False)
        await self.projector.refresh()
        if not sent:
            await self._post_notice(notice)
        return self._finish(job_id, action, Phase.SUCCESS, f"{action.label} successful!")

    async def _post_notice(self, text: str, final: bool = True) -> bool:
        if self.notify is None:
            return True
        try:
            await self.notify(text)
        except ChatUnavailableError as e:
            if final:
                logger.warning("System notice not sent (%s): %s", e, text)
            return False
        return True

    async def post_job(self, title: str, description: str, budget_ether) -> int:
        """Upload the description, post the job, return its id once confirmed."""
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            raise GuardViolationError("Please fill in all fields (Title, Description, Budget)")
        try:
            budget = to_wei(str(budget_ether).strip())
        except (InvalidOperation, ValueError, OverflowError):
            raise GuardViolationError(f"Invalid budget: {budget_ether!r}")
        if budget <= 0:
            raise GuardViolationError("Budget must be a positive amount")
        if not self.gateway.account:
            raise GuardViolationError("Wallet is not connected")
        if self.text_store is None:
            raise GuardViolationError("No text store configured for descriptions")

        slug = re.sub(r"\s+", "_", title[:20])
        cid = await self.text_store.put(
            {"description": description}, name=f"JobDesc_{slug}_{int(self.clock() * 1000)}",
        )
        pending = await self.gateway.post_job(title, cid, budget)
        receipt = await pending.wait()
        job_id = receipt.job_id_for("JobPosted")
        logger.info("Posted job %s (%s)", job_id, title)
        await self.projector.refresh()
        return job_id
