"""Tests for lifecycle.py -- transition table, guards and the action executor."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import asyncio

import pytest

import lifecycle
from lifecycle import (
    ActionRecord, ActionStateBook, JobAction, LifecycleController, Phase,
    available_actions, check_guard, guard_violations, is_forward, next_status,
    parse_action, system_notice,
)
from projector import Job, JobStateProjector, Scope
from protocol import (
    REFUND_COOLDOWN_SECONDS, ChatUnavailableError, GuardViolationError, JobStatus,
    NetworkUnavailableError, TransactionRejectedError, TransactionRevertedError, to_wei,
)
from simchain import SimGateway
from textstore import MemoryTextStore
from conftest import EMPLOYER, FREELANCER, OTHER, make_job


def job(status=JobStatus.OPEN, escrowed=True, freelancer=None, escrowed_at=None, viewer=None):
    budget = to_wei("1")
    if status not in (JobStatus.OPEN, JobStatus.REFUNDED) and freelancer is None:
        freelancer = FREELANCER
    return Job(
        id=1, title="Logo", description_ref="bafy", budget=budget,
        employer=EMPLOYER, freelancer=freelancer, status=status,
        escrow_amount=budget if escrowed else 0, escrowed_at=escrowed_at, viewer=viewer,
    )


class TestActions:
    @pytest.mark.parametrize("tag,action", [
        ("escrow", JobAction.ESCROW),
        ("APPLY", JobAction.APPLY),
        ("mark-done", JobAction.MARK_DONE),
        ("done", JobAction.MARK_DONE),
        ("raise dispute", JobAction.RAISE_DISPUTE),
        ("dispute", JobAction.RAISE_DISPUTE),
        ("release", JobAction.RELEASE),
    ])
    def test_parse(self, tag, action):
        assert parse_action(tag) is action

    def test_unknown_tag_rejected(self):
        with pytest.raises(ValueError, match="Unknown action"):
            parse_action("cancel")

    def test_every_action_has_a_gateway_call(self):
        assert set(lifecycle._DISPATCH) == set(JobAction)

    def test_labels(self):
        assert JobAction.RAISE_DISPUTE.label == "raise dispute"


class TestTransitions:
    def test_next_status(self):
        assert next_status(JobStatus.OPEN, JobAction.APPLY) is JobStatus.ASSIGNED
        assert next_status(JobStatus.OPEN, JobAction.ESCROW) is JobStatus.OPEN
        assert next_status(JobStatus.AWAITING_APPROVAL, JobAction.RELEASE) is JobStatus.COMPLETED
        assert next_status(JobStatus.ASSIGNED, JobAction.RAISE_DISPUTE) is JobStatus.DISPUTED

    def test_invalid_pair(self):
        with pytest.raises(ValueError):
            next_status(JobStatus.COMPLETED, JobAction.RELEASE)

    def test_is_forward(self):
        assert is_forward(JobStatus.OPEN, JobStatus.COMPLETED)
        assert is_forward(JobStatus.ASSIGNED, JobStatus.DISPUTED)
        assert not is_forward(JobStatus.ASSIGNED, JobStatus.OPEN)
        assert not is_forward(JobStatus.COMPLETED, JobStatus.COMPLETED)
        assert not is_forward(JobStatus.DISPUTED, JobStatus.COMPLETED)
        assert not is_forward(JobStatus.OPEN, JobStatus.OPEN)


class TestAvailableActions:
    @pytest.mark.parametrize("status,escrowed,viewer,expected", [
        (JobStatus.OPEN, True, EMPLOYER, [JobAction.REFUND]),
        (JobStatus.OPEN, True, FREELANCER, [JobAction.APPLY]),
        (JobStatus.OPEN, True, OTHER, [JobAction.APPLY]),
        (JobStatus.OPEN, False, EMPLOYER, [JobAction.ESCROW]),
        (JobStatus.OPEN, False, OTHER, []),
        (JobStatus.ASSIGNED, True, EMPLOYER, [JobAction.RAISE_DISPUTE]),
        (JobStatus.ASSIGNED, True, FREELANCER, [JobAction.MARK_DONE, JobAction.RAISE_DISPUTE]),
        (JobStatus.ASSIGNED, True, OTHER, []),
        (JobStatus.AWAITING_APPROVAL, True, EMPLOYER, [JobAction.RAISE_DISPUTE, JobAction.RELEASE]),
        (JobStatus.AWAITING_APPROVAL, True, FREELANCER, [JobAction.RAISE_DISPUTE]),
        (JobStatus.AWAITING_APPROVAL, True, OTHER, []),
        (JobStatus.COMPLETED, False, EMPLOYER, []),
        (JobStatus.COMPLETED, False, FREELANCER, []),
        (JobStatus.REFUNDED, False, EMPLOYER, []),
        (JobStatus.DISPUTED, True, EMPLOYER, []),
        (JobStatus.DISPUTED, True, FREELANCER, []),
    ])
    def test_matrix(self, status, escrowed, viewer, expected):
        assert available_actions(job(status, escrowed), viewer) == expected


class TestGuards:
    def test_no_wallet(self):
        assert guard_violations(JobAction.APPLY, job()) == ["Wallet is not connected"]

    def test_viewer_defaults_to_projection_viewer(self):
        assert available_actions(job(viewer=OTHER)) == [JobAction.APPLY]

    def test_wrong_status(self):
        failures = guard_violations(JobAction.RELEASE, job(), EMPLOYER)
        assert failures == ["release is not allowed while the job is OPEN"]

    def test_employer_cannot_apply(self):
        failures = guard_violations(JobAction.APPLY, job(), EMPLOYER)
        assert "Employer cannot apply to their own job" in failures

    def test_apply_needs_escrow(self):
        assert guard_violations(JobAction.APPLY, job(escrowed=False), OTHER) == ["Funds not escrowed"]

    def test_only_parties_dispute(self):
        with pytest.raises(GuardViolationError, match="Only the employer or freelancer can raise dispute"):
            check_guard(JobAction.RAISE_DISPUTE, job(JobStatus.ASSIGNED), OTHER)

    def test_only_employer_releases(self):
        with pytest.raises(GuardViolationError, match="Only the employer can release"):
            check_guard(JobAction.RELEASE, job(JobStatus.AWAITING_APPROVAL), FREELANCER)

    def test_refund_cooldown(self):
        escrowed_at = 1_000_000
        j = job(escrowed_at=escrowed_at)
        early = escrowed_at + 10 * 3600
        failures = guard_violations(JobAction.REFUND, j, EMPLOYER, now=early)
        assert failures == ["Refund not yet available (158h remaining)"]
        late = escrowed_at + REFUND_COOLDOWN_SECONDS + 1
        assert guard_violations(JobAction.REFUND, j, EMPLOYER, now=late) == []

    def test_refund_without_timestamp_defers_to_contract(self):
        assert guard_violations(JobAction.REFUND, job(escrowed_at=None), EMPLOYER, now=0) == []


def test_system_notices():
    j = job(JobStatus.ASSIGNED)
    assert system_notice(JobAction.APPLY, j, FREELANCER) == \
        "User 0x2222...2222 applied and was assigned as Freelancer."
    assert system_notice(JobAction.RAISE_DISPUTE, j, EMPLOYER) == \
        "Dispute raised by 0x1111...1111. Please discuss."
    assert system_notice(JobAction.RELEASE, j, EMPLOYER) == \
        "Payment released by Employer (0x1111...1111). Job complete."
    assert system_notice(JobAction.ESCROW, j, EMPLOYER) == "Employer (0x1111...1111) escrowed 1 ETH."


class TestActionStateBook:
    @pytest.mark.asyncio
    async def test_finished_records_expire(self):
        book = ActionStateBook(ttl=0.01)
        book.set(ActionRecord(1, JobAction.APPLY, Phase.SUCCESS, "apply successful!"))
        assert book.get(1).ok
        assert book.pending_timers == 1
        await asyncio.sleep(0.05)
        assert book.get(1) is None
        assert book.pending_timers == 0

    @pytest.mark.asyncio
    async def test_loading_records_do_not_expire(self):
        book = ActionStateBook(ttl=0.01)
        book.set(ActionRecord(1, JobAction.APPLY, Phase.SUCCESS, "done"))
        book.set(ActionRecord(1, JobAction.RELEASE, Phase.LOADING, "release..."))
        await asyncio.sleep(0.05)
        assert book.get(1).action is JobAction.RELEASE

    @pytest.mark.asyncio
    async def test_stale_timer_keeps_newer_record(self):
        book = ActionStateBook(ttl=10)
        old = ActionRecord(1, JobAction.APPLY, Phase.ERROR, "apply failed")
        new = ActionRecord(1, JobAction.APPLY, Phase.LOADING, "apply...")
        book.set(old)
        book.set(new)
        book._expire(1, old)
        assert book.get(1) is new

    @pytest.mark.asyncio
    async def test_slots_are_per_job(self):
        book = ActionStateBook(ttl=10)
        book.set(ActionRecord(1, JobAction.APPLY, Phase.LOADING))
        book.set(ActionRecord(2, JobAction.ESCROW, Phase.ERROR, "escrow failed"))
        assert book.get(1).phase is Phase.LOADING
        assert book.get(2).phase is Phase.ERROR
        book.clear_finished()
        assert book.get(2) is None
        assert book.get(1) is not None
        assert len(book) == 1

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self):
        book = ActionStateBook(ttl=10)
        book.set(ActionRecord(1, JobAction.APPLY, Phase.SUCCESS))
        book.close()
        assert book.pending_timers == 0
        assert len(book) == 0


async def controller_for(gateway, job_id, notify=None, text_store=None):
    projector = JobStateProjector(gateway, Scope.DETAIL, job_id=job_id)
    await projector.refresh()
    return LifecycleController(gateway, projector, notify=notify, text_store=text_store)


class TestController:
    @pytest.mark.asyncio
    async def test_apply_success_posts_notice(self, chain, freelancer_gw):
        job_id = await make_job(chain)
        notices = []

        async def notify(text):
            notices.append(text)

        controller = await controller_for(freelancer_gw, job_id, notify=notify)
        record = await controller.perform("apply", job_id)
        assert record.ok
        assert record.message == "apply successful!"
        assert controller.states.get(job_id) is record
        assert controller.projector.snapshot.get(job_id).status is JobStatus.ASSIGNED
        assert notices == ["User 0x2222...2222 applied and was assigned as Freelancer."]
        controller.states.close()

    @pytest.mark.asyncio
    async def test_notice_retried_after_refresh(self, chain, employer_gw):
        job_id = await make_job(chain, escrow=False)
        attempts = []

        async def notify(text):
            attempts.append(text)
            if len(attempts) == 1:
                raise ChatUnavailableError("chat closed")

        controller = await controller_for(employer_gw, job_id, notify=notify)
        record = await controller.perform(JobAction.ESCROW, job_id)
        assert record.ok
        assert len(attempts) == 2
        controller.states.close()

    @pytest.mark.asyncio
    async def test_unavailable_chat_does_not_fail_action(self, chain, employer_gw):
        job_id = await make_job(chain, escrow=False)

        async def notify(text):
            raise ChatUnavailableError("chat closed")

        controller = await controller_for(employer_gw, job_id, notify=notify)
        record = await controller.perform(JobAction.ESCROW, job_id)
        assert record.ok
        assert controller.projector.snapshot.get(job_id).escrowed
        controller.states.close()

    @pytest.mark.asyncio
    async def test_guard_blocks_before_sending(self, chain, other_gw):
        job_id = await make_job(chain, JobStatus.ASSIGNED)
        sent_before = len(chain.transactions())
        controller = await controller_for(other_gw, job_id)

        record = await controller.perform(JobAction.RAISE_DISPUTE, job_id)
        assert record.phase is Phase.ERROR
        assert record.message.startswith("raise dispute blocked:")
        assert isinstance(record.error, GuardViolationError)
        assert len(chain.transactions()) == sent_before
        controller.states.close()

    @pytest.mark.asyncio
    async def test_signer_rejection(self, chain):
        job_id = await make_job(chain)
        gw = SimGateway(chain, account=FREELANCER, approve=lambda description: False)
        controller = await controller_for(gw, job_id)

        record = await controller.perform(JobAction.APPLY, job_id)
        assert record.message == "apply cancelled"
        assert isinstance(record.error, TransactionRejectedError)
        assert controller.projector.snapshot.get(job_id).status is JobStatus.OPEN
        controller.states.close()

    @pytest.mark.asyncio
    async def test_stale_view_reverts_and_refreshes(self, chain, freelancer_gw, other_gw):
        job_id = await make_job(chain)
        controller = await controller_for(freelancer_gw, job_id)
        # Someone else gets there first; our snapshot still says OPEN
        await (await other_gw.apply_for_job(job_id)).wait()
        assert controller.projector.snapshot.get(job_id).status is JobStatus.OPEN

        record = await controller.perform(JobAction.APPLY, job_id)
        assert record.phase is Phase.ERROR
        assert record.message == "apply failed: Job is not open"
        assert isinstance(record.error, TransactionRevertedError)
        refreshed = controller.projector.snapshot.get(job_id)
        assert refreshed.status is JobStatus.ASSIGNED
        assert refreshed.freelancer == OTHER
        controller.states.close()

    @pytest.mark.asyncio
    async def test_network_failure(self, chain, freelancer_gw):
        job_id = await make_job(chain)
        controller = await controller_for(freelancer_gw, job_id)
        chain.offline = True
        record = await controller.perform(JobAction.APPLY, job_id)
        assert record.message == "apply failed: network unavailable"
        assert isinstance(record.error, NetworkUnavailableError)
        controller.states.close()

    @pytest.mark.asyncio
    async def test_unexpected_error_finishes_the_slot(self, chain):
        class MalformedNode(SimGateway):
            async def apply_for_job(self, job_id):
                raise RuntimeError("node returned malformed response")

        job_id = await make_job(chain)
        controller = await controller_for(MalformedNode(chain, account=FREELANCER), job_id)
        record = await controller.perform(JobAction.APPLY, job_id)
        assert record.phase is Phase.ERROR
        assert record.message == "apply failed: node returned malformed response"
        assert isinstance(record.error, RuntimeError)
        assert controller.states.get(job_id) is record
        assert controller.states.pending_timers == 1
        assert controller.projector.snapshot.get(job_id).status is JobStatus.OPEN
        controller.states.close()

    @pytest.mark.asyncio
    async def test_job_not_in_snapshot(self, chain, freelancer_gw):
        job_id = await make_job(chain)
        controller = await controller_for(freelancer_gw, job_id)
        record = await controller.perform(JobAction.APPLY, 99)
        assert record.phase is Phase.ERROR
        assert "not loaded" in record.message

    @pytest.mark.asyncio
    async def test_unknown_action(self, chain, freelancer_gw):
        job_id = await make_job(chain)
        controller = await controller_for(freelancer_gw, job_id)
        with pytest.raises(ValueError):
            await controller.perform("cancel", job_id)

    @pytest.mark.asyncio
    async def test_refresh_clears_finished_records(self, chain, other_gw):
        job_id = await make_job(chain, JobStatus.ASSIGNED)
        controller = await controller_for(other_gw, job_id)
        await controller.perform(JobAction.RAISE_DISPUTE, job_id)
        assert controller.states.get(job_id) is not None
        await controller.projector.refresh()
        assert controller.states.get(job_id) is None
        assert controller.states.pending_timers == 0


class RecordingStore(MemoryTextStore):
    def __init__(self):
        super().__init__()
        self.names = []

    async def put(self, obj, name=""):
        self.names.append(name)
        return await super().put(obj, name)


class TestPostJob:
    @pytest.mark.asyncio
    async def test_post_uploads_description_then_posts(self, chain, employer_gw):
        store = RecordingStore()
        projector = JobStateProjector(employer_gw, Scope.POSTED)
        controller = LifecycleController(employer_gw, projector, text_store=store, clock=lambda: 1700000000.5)

        job_id = await controller.post_job("Logo design", "A clean vector logo", "1.5")
        assert job_id == 1
        assert store.names == ["JobDesc_Logo_design_1700000000500"]
        record = chain.job(job_id)
        assert store.objects[record.description_ref] == {"description": "A clean vector logo"}
        assert record.budget == to_wei("1.5")
        assert projector.snapshot.ids == {job_id}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title,description,budget,match", [
        ("", "desc", "1", "Please fill in all fields"),
        ("Logo", "  ", "1", "Please fill in all fields"),
        ("Logo", "desc", "abc", "Invalid budget"),
        ("Logo", "desc", "inf", "Invalid budget"),
        ("Logo", "desc", "0", "positive"),
        ("Logo", "desc", "-2", "positive"),
    ])
    async def test_invalid_input_posts_nothing(self, chain, employer_gw, title, description, budget, match):
        store = MemoryTextStore()
        controller = LifecycleController(employer_gw, JobStateProjector(employer_gw), text_store=store)
        with pytest.raises(GuardViolationError, match=match):
            await controller.post_job(title, description, budget)
        assert store.objects == {}
        assert chain.job_count() == 0

    @pytest.mark.asyncio
    async def test_needs_wallet(self, chain):
        gw = SimGateway(chain)
        controller = LifecycleController(gw, JobStateProjector(gw), text_store=MemoryTextStore())
        with pytest.raises(GuardViolationError, match="Wallet is not connected"):
            await controller.post_job("Logo", "desc", "1")
