"""Simulated JobBoard chain for development and integration testing.

SimChain holds contract state in SQLite and enforces the same
preconditions as the deployed contract, with the same "JobBoard: ..."
revert reasons:
- escrow must equal the budget, once, by the employer, while OPEN
- apply needs an escrowed OPEN job, not your own, not already assigned
- refund only after the cooldown since escrow has elapsed
- release/mark-done/dispute by the right party in the right status

Transactions are mined when their PendingTransaction is awaited, so two
actors acting on the same stale view see a revert on the loser's side.

Usage:
    chain = SimChain()
    chain.fund(employer, "5")
    gw = SimGateway(chain, account=employer)
    receipt = await (await gw.post_job("Logo", "Qm...", to_wei("1"))).wait()
"""

import asyncio
import hashlib
import logging
import sqlite3
import time
from decimal import Decimal
from typing import AsyncIterator, Callable

from gateway import ContractGateway, JobEvent, JobRecord, PendingTransaction, TransactionReceipt
from protocol import (
    REFUND_COOLDOWN_SECONDS, ZERO_ADDRESS, JobStatus, NetworkUnavailableError,
    NotFoundError, TransactionRevertedError, clean_revert_reason, same_address, to_wei,
)

logger = logging.getLogger(__name__)


class SimRevert(Exception):
    """Raised inside a simulated contract call; becomes TransactionRevertedError."""


class SimChain:
    """In-process JobBoard contract state + a tiny block/event log."""

    def __init__(self, db_path: str = ":memory:", now: Callable[[], float] = time.time,
                 cooldown: int = REFUND_COOLDOWN_SECONDS):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._now = now
        self._offset = 0.0
        self.cooldown = cooldown
        self.block_number = 0
        self._tx_counter = 0
        self._subscribers: list[asyncio.Queue] = []

        # Test hooks
        self.offline = False
        self.fail_reads: set[int] = set()

        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                employer TEXT NOT NULL,
                freelancer TEXT NOT NULL DEFAULT '',
                title TEXT NOT NULL,
                description_cid TEXT NOT NULL DEFAULT '',
                budget TEXT NOT NULL,
                status INTEGER NOT NULL DEFAULT 0,
                escrow TEXT NOT NULL DEFAULT '0',
                escrowed_at REAL NOT NULL DEFAULT 0
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                wei TEXT NOT NULL DEFAULT '0'
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                hash TEXT PRIMARY KEY,
                sender TEXT NOT NULL,
                method TEXT NOT NULL,
                value TEXT NOT NULL,
                status INTEGER NOT NULL,
                block INTEGER NOT NULL,
                reason TEXT NOT NULL DEFAULT ''
            )
        """)
        self.db.commit()
        # Resume block height and tx numbering from an existing database file
        row = self.db.execute(
            "SELECT COUNT(*) AS n, COALESCE(MAX(block), 0) AS height FROM transactions"
        ).fetchone()
        self._tx_counter = int(row["n"])
        self.block_number = int(row["height"])

    # --- Clock ---

    def now(self) -> float:
        return self._now() + self._offset

    def advance(self, seconds: float):
        """Move the chain clock forward (e.g. past the refund cooldown)."""
        self._offset += seconds

    # --- Balances ---

    def _balance(self, address: str) -> int:
        row = self.db.execute(
            "SELECT wei FROM balances WHERE address = ?", (address.lower(),)
        ).fetchone()
        return int(row["wei"]) if row else 0

    def _set_balance(self, address: str, wei: int):
        self.db.execute(
            "INSERT INTO balances (address, wei) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET wei = ?",
            (address.lower(), str(wei), str(wei)),
        )

    def fund(self, address: str, amount_ether: str | Decimal):
        """Credit an account (faucet)."""
        self._set_balance(address, self._balance(address) + to_wei(amount_ether))
        self.db.commit()

    def balance_of(self, address: str) -> int:
        return self._balance(address)

    # --- Reads ---

    def _check_online(self):
        if self.offline:
            raise NetworkUnavailableError("Simulated chain is offline")

    def job_count(self) -> int:
        self._check_online()
        row = self.db.execute("SELECT COUNT(*) AS n FROM jobs").fetchone()
        return int(row["n"])

    def _row(self, job_id: int):
        return self.db.execute("SELECT * FROM jobs WHERE id = ?", (int(job_id),)).fetchone()

    def job(self, job_id: int) -> JobRecord:
        self._check_online()
        if int(job_id) in self.fail_reads:
            raise NetworkUnavailableError(f"Simulated read failure for job {job_id}")
        row = self._row(job_id)
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return JobRecord(
            id=row["id"],
            employer=row["employer"],
            freelancer=row["freelancer"] or ZERO_ADDRESS,
            title=row["title"],
            description_ref=row["description_cid"],
            budget=int(row["budget"]),
            status=JobStatus(row["status"]),
            escrowed_at=int(row["escrowed_at"]),
        )

    def escrow_amount(self, job_id: int) -> int:
        self._check_online()
        if int(job_id) in self.fail_reads:
            raise NetworkUnavailableError(f"Simulated read failure for job {job_id}")
        row = self._row(job_id)
        return int(row["escrow"]) if row else 0

    # --- Contract methods ---

    def _existing(self, job_id: int):
        row = self._row(job_id)
        if row is None:
            raise SimRevert("JobBoard: Job does not exist")
        return row

    def _update(self, job_id: int, **fields):
        cols = ", ".join(f"{k} = ?" for k in fields)
        self.db.execute(f"UPDATE jobs SET {cols} WHERE id = ?", (*fields.values(), int(job_id)))

    def _post_job(self, sender, value, title, description_cid, budget):
        if not str(title).strip():
            raise SimRevert("JobBoard: Title cannot be empty")
        if int(budget) <= 0:
            raise SimRevert("JobBoard: Budget must be greater than zero")
        cursor = self.db.execute(
            "INSERT INTO jobs (employer, title, description_cid, budget) VALUES (?, ?, ?, ?)",
            (sender, title, description_cid, str(int(budget))),
        )
        job_id = cursor.lastrowid
        return [("JobPosted", job_id, {"employer": sender, "title": title, "budget": int(budget)})]

    def _escrow_funds(self, sender, value, job_id):
        row = self._existing(job_id)
        if not same_address(sender, row["employer"]):
            raise SimRevert("JobBoard: Only employer can escrow funds")
        if row["status"] != JobStatus.OPEN:
            raise SimRevert("JobBoard: Job is not open")
        if int(row["escrow"]) > 0:
            raise SimRevert("JobBoard: Funds already escrowed")
        if int(value) != int(row["budget"]):
            raise SimRevert("JobBoard: Escrow amount must equal budget")
        balance = self._balance(sender)
        if balance < int(value):
            raise SimRevert("insufficient funds for transfer")
        self._set_balance(sender, balance - int(value))
        self._update(job_id, escrow=str(int(value)), escrowed_at=self.now())
        return [("PaymentEscrowed", job_id, {"amount": int(value)})]

    def _apply_for_job(self, sender, value, job_id):
        row = self._existing(job_id)
        if row["status"] != JobStatus.OPEN:
            raise SimRevert("JobBoard: Job is not open")
        if int(row["escrow"]) != int(row["budget"]):
            raise SimRevert("JobBoard: Funds not escrowed")
        if same_address(sender, row["employer"]):
            raise SimRevert("JobBoard: Employer cannot apply")
        if row["freelancer"]:
            raise SimRevert("JobBoard: Job already assigned")
        self._update(job_id, freelancer=sender, status=int(JobStatus.ASSIGNED))
        return [("JobApplied", job_id, {"freelancer": sender})]

    def _mark_work_done(self, sender, value, job_id):
        row = self._existing(job_id)
        if not same_address(sender, row["freelancer"]):
            raise SimRevert("JobBoard: Only assigned freelancer can mark work done")
        if row["status"] != JobStatus.ASSIGNED:
            raise SimRevert("JobBoard: Job is not assigned")
        self._update(job_id, status=int(JobStatus.AWAITING_APPROVAL))
        return [("WorkSubmitted", job_id, {"freelancer": sender})]

    def _release_payment(self, sender, value, job_id):
        row = self._existing(job_id)
        if not same_address(sender, row["employer"]):
            raise SimRevert("JobBoard: Only employer can release payment")
        if row["status"] != JobStatus.AWAITING_APPROVAL:
            raise SimRevert("JobBoard: Job is not awaiting approval")
        amount = int(row["escrow"])
        freelancer = row["freelancer"]
        self._set_balance(freelancer, self._balance(freelancer) + amount)
        self._update(job_id, escrow="0", status=int(JobStatus.COMPLETED))
        return [("PaymentReleased", job_id, {"freelancer": freelancer, "amount": amount})]

    def _refund_employer(self, sender, value, job_id):
        row = self._existing(job_id)
        if not same_address(sender, row["employer"]):
            raise SimRevert("JobBoard: Only employer can request refund")
        if row["status"] != JobStatus.OPEN:
            raise SimRevert("JobBoard: Job is not open")
        amount = int(row["escrow"])
        if amount == 0:
            raise SimRevert("JobBoard: No funds escrowed")
        if self.now() < row["escrowed_at"] + self.cooldown:
            raise SimRevert("JobBoard: Refund not yet available")
        self._set_balance(sender, self._balance(sender) + amount)
        self._update(job_id, escrow="0", status=int(JobStatus.REFUNDED))
        return [("EmployerRefunded", job_id, {"amount": amount})]

    def _raise_dispute(self, sender, value, job_id):
        row = self._existing(job_id)
        if not (same_address(sender, row["employer"]) or same_address(sender, row["freelancer"])):
            raise SimRevert("JobBoard: Only employer or freelancer can raise dispute")
        if row["status"] not in (JobStatus.ASSIGNED, JobStatus.AWAITING_APPROVAL):
            raise SimRevert("JobBoard: Job cannot be disputed in current state")
        self._update(job_id, status=int(JobStatus.DISPUTED))
        return [("DisputeRaised", job_id, {"raisedBy": sender})]

    _METHODS = {
        "postJob": _post_job,
        "escrowFunds": _escrow_funds,
        "applyForJob": _apply_for_job,
        "markWorkDone": _mark_work_done,
        "releasePayment": _release_payment,
        "refundEmployer": _refund_employer,
        "raiseDispute": _raise_dispute,
    }

    def _run(self, sender: str, method: str, args: tuple, value: int):
        handler = self._METHODS.get(method)
        if handler is None:
            raise SimRevert(f"unknown method {method}")
        if int(value) and method != "escrowFunds":
            raise SimRevert(f"{method} is not payable")
        return handler(self, sender, int(value), *args)

    def preflight(self, sender: str, method: str, args: tuple, value: int = 0):
        """Dry run (eth_estimateGas): raise SimRevert on failure, change nothing."""
        self._check_online()
        try:
            self._run(sender, method, args, value)
        finally:
            self.db.rollback()

    def next_hash(self) -> str:
        self._tx_counter += 1
        return "0x" + hashlib.sha256(f"simtx:{self._tx_counter}".encode()).hexdigest()

    def mine(self, tx_hash: str, sender: str, method: str, args: tuple, value: int = 0) -> TransactionReceipt:
        """Execute a transaction in a new block; publish its events on success."""
        self.block_number += 1
        try:
            raw_events = self._run(sender, method, args, value)
        except SimRevert as e:
            self.db.rollback()
            self._record_tx(tx_hash, sender, method, value, 0, str(e))
            self.db.commit()
            logger.info("Sim tx %s %s reverted: %s", method, tx_hash[:10], e)
            raise TransactionRevertedError(clean_revert_reason(str(e)), tx_hash=tx_hash)
        self._record_tx(tx_hash, sender, method, value, 1, "")
        self.db.commit()
        events = [
            JobEvent(name, int(job_id), {"jobId": int(job_id), **args}, self.block_number, tx_hash)
            for name, job_id, args in raw_events
        ]
        self._publish(events)
        return TransactionReceipt(tx_hash, self.block_number, events)

    def _record_tx(self, tx_hash, sender, method, value, status, reason):
        self.db.execute(
            "INSERT INTO transactions (hash, sender, method, value, status, block, reason) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, sender, method, str(int(value)), status, self.block_number, reason),
        )

    def transactions(self) -> list[dict]:
        rows = self.db.execute("SELECT * FROM transactions ORDER BY block").fetchall()
        return [dict(r) for r in rows]

    # --- Events ---

    def _publish(self, events: list[JobEvent]):
        for q in list(self._subscribers):
            for event in events:
                q.put_nowait(event)

    def add_subscriber(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def remove_subscriber(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self):
        self.db.close()


class SimGateway(ContractGateway):
    """ContractGateway bound to one account on a SimChain."""

    def __init__(self, chain: SimChain, account: str | None = None,
                 approve: Callable[[str], bool] | None = None):
        super().__init__(account=account, approve=approve)
        self.chain = chain

    async def get_job_count(self) -> int:
        return self.chain.job_count()

    async def get_job(self, job_id: int) -> JobRecord:
        if int(job_id) <= 0:
            raise NotFoundError(f"Job {job_id} not found")
        return self.chain.job(job_id)

    async def get_escrow_amount(self, job_id: int) -> int:
        return self.chain.escrow_amount(job_id)

    async def _transact(self, method: str, args: tuple, value: int = 0) -> PendingTransaction:
        self._confirm(f"{method}{args}" + (f" value={value} wei" if value else ""))
        try:
            self.chain.preflight(self.account, method, args, value)
        except SimRevert as e:
            raise TransactionRevertedError(clean_revert_reason(str(e)))
        tx_hash = self.chain.next_hash()
        sender = self.account

        async def finalize() -> TransactionReceipt:
            # Yield once so other tasks can run between send and inclusion
            await asyncio.sleep(0)
            return self.chain.mine(tx_hash, sender, method, args, value)

        return PendingTransaction(tx_hash, finalize, description=method)

    async def subscribe(self) -> AsyncIterator[JobEvent]:
        q = self.chain.add_subscriber()
        try:
            while True:
                yield await q.get()
        finally:
            self.chain.remove_subscriber(q)
