"""Viewer session: wires gateway, projector, lifecycle and chat together.

A session owns the shared gateway. Views (dashboards, job detail) are
scoped resources: use them as async context managers so their refresh
loop, event subscription, expiry timers and chat socket are torn down on
exit. Switching account replaces the gateway wholesale and rebinds every
open view.

Usage:
    session = JobBoardSession(gateway, text_store=store)
    async with session.job_detail(7) as view:
        await view.perform("apply")
        await view.send("hi")
"""

import logging

from chat import ChatGate, ChatMessage, Connector
from gateway import ContractGateway
from lifecycle import ActionRecord, ActionStateBook, JobAction, LifecycleController, available_actions
from projector import Job, JobStateProjector, Scope, Snapshot
from protocol import CHAT_RECONNECT_ATTEMPTS, CHAT_RETRY_DELAY, DEFAULT_POLL_INTERVAL, DEFAULT_RELAY_URL
from textstore import NO_DESCRIPTION, TextStore, fetch_description

logger = logging.getLogger(__name__)


class JobBoardSession:

    def __init__(self, gateway: ContractGateway, text_store: TextStore | None = None,
                 relay_url: str = DEFAULT_RELAY_URL, chat_connector: Connector | None = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 chat_attempts: int = CHAT_RECONNECT_ATTEMPTS,
                 chat_retry_delay: float = CHAT_RETRY_DELAY):
        self.gateway = gateway
        self.text_store = text_store
        self.relay_url = relay_url
        self.chat_connector = chat_connector
        self.poll_interval = poll_interval
        self.chat_attempts = chat_attempts
        self.chat_retry_delay = chat_retry_delay
        self._views: list = []

    @property
    def account(self) -> str | None:
        return self.gateway.account

    def dashboard(self, scope: Scope = Scope.LISTING) -> "Dashboard":
        return Dashboard(self, scope)

    def job_detail(self, job_id: int) -> "JobDetailView":
        return JobDetailView(self, job_id)

    def _register(self, view):
        self._views.append(view)

    def _unregister(self, view):
        if view in self._views:
            self._views.remove(view)

    @property
    def open_views(self) -> int:
        return len(self._views)

    async def switch_account(self, gateway: ContractGateway):
        """Account or network changed: new gateway, every open view re-projects."""
        old = self.gateway
        self.gateway = gateway
        logger.info("Switching account to %s", gateway.account)
        for view in list(self._views):
            await view.rebind(gateway)
        if old is not gateway:
            await old.close()

    async def close(self):
        for view in list(self._views):
            await view.close()
        await self.gateway.close()


class Dashboard:
    """A list view: one projector scope plus the actions taken from it."""

    def __init__(self, session: JobBoardSession, scope: Scope = Scope.LISTING):
        self.session = session
        self.projector = JobStateProjector(session.gateway, scope, poll_interval=session.poll_interval)
        self.states = ActionStateBook()
        self.controller = LifecycleController(
            session.gateway, self.projector, self.states, text_store=session.text_store,
        )

    @property
    def snapshot(self) -> Snapshot:
        return self.projector.snapshot

    @property
    def jobs(self) -> tuple[Job, ...]:
        return self.projector.snapshot.jobs

    def action_state(self, job_id: int) -> ActionRecord | None:
        return self.states.get(job_id)

    async def perform(self, action: JobAction | str, job_id: int) -> ActionRecord:
        return await self.controller.perform(action, job_id)

    async def post_job(self, title: str, description: str, budget_ether) -> int:
        return await self.controller.post_job(title, description, budget_ether)

    async def rebind(self, gateway: ContractGateway):
        self.states.clear_finished()
        self.controller.rebind(gateway)
        await self.projector.rebind(gateway)

    async def open(self):
        self.session._register(self)
        await self.projector.start()

    async def close(self):
        await self.projector.stop()
        self.states.close()
        self.session._unregister(self)

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc):
        await self.close()


class JobDetailView:
    """One job: its projection, description, actions and chat channel."""

    def __init__(self, session: JobBoardSession, job_id: int):
        self.session = session
        self.job_id = int(job_id)
        self.projector = JobStateProjector(
            session.gateway, Scope.DETAIL, job_id=self.job_id, poll_interval=session.poll_interval,
        )
        self.chat = ChatGate(
            session.relay_url, viewer=session.gateway.account, connector=session.chat_connector,
            max_attempts=session.chat_attempts, retry_delay=session.chat_retry_delay,
        )
        self.states = ActionStateBook()
        self.controller = LifecycleController(
            session.gateway, self.projector, self.states,
            notify=self.chat.post_system_notice, text_store=session.text_store,
        )
        self.description = NO_DESCRIPTION
        self._description_ref: str | None = None
        self.projector.add_listener(self._on_snapshot)

    async def _on_snapshot(self, snapshot: Snapshot):
        job = snapshot.get(self.job_id)
        await self.chat.update(job)
        if job is not None and job.description_ref != self._description_ref:
            self._description_ref = job.description_ref
            if self.session.text_store is None:
                self.description = NO_DESCRIPTION
            else:
                self.description = await fetch_description(self.session.text_store, job.description_ref)

    # --- State ---

    @property
    def job(self) -> Job | None:
        return self.projector.snapshot.get(self.job_id)

    @property
    def error(self) -> Exception | None:
        return self.projector.snapshot.error

    @property
    def actions(self) -> list[JobAction]:
        job = self.job
        if job is None:
            return []
        return available_actions(job, self.session.gateway.account)

    @property
    def action_state(self) -> ActionRecord | None:
        return self.states.get(self.job_id)

    @property
    def messages(self) -> list[ChatMessage]:
        return self.chat.messages

    # --- Commands ---

    async def perform(self, action: JobAction | str) -> ActionRecord:
        return await self.controller.perform(action, self.job_id)

    async def send(self, text: str):
        await self.chat.send(text)

    async def refresh(self) -> Snapshot:
        return await self.projector.refresh()

    async def rebind(self, gateway: ContractGateway):
        await self.chat.close()
        self.chat.viewer = gateway.account
        self.states.clear_finished()
        self.controller.rebind(gateway)
        await self.projector.rebind(gateway)

    # --- Scope ---

    async def open(self):
        self.session._register(self)
        await self.projector.start()

    async def close(self):
        await self.projector.stop()
        await self.chat.close()
        self.states.close()
        self.session._unregister(self)

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc):
        await self.close()
