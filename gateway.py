"""Contract gateway for the JobBoard contract.

Single point of truth for reading and mutating on-chain job state.
Every mutating call returns a PendingTransaction; nothing counts as done
until its wait() returns a receipt.

Backends:
- Web3Gateway: web3.py AsyncWeb3 against a JSON-RPC node
- SimGateway (simchain.py): in-process simulated contract for dev and tests
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from eth_utils import event_abi_to_log_topic
from web3 import AsyncWeb3
from web3.exceptions import (
    BadFunctionCallOutput, ContractLogicError, LogTopicError, MismatchedABI, TransactionNotFound,
    Web3RPCError,
)

from abi import EVENT_ABIS, JOB_BOARD_ABI
from protocol import (
    DEFAULT_CONTRACT_ADDRESS, DEFAULT_RPC_URL, EVENT_POLL_INTERVAL, RECEIPT_POLL_INTERVAL,
    ZERO_ADDRESS, JobBoardError, JobStatus, NetworkUnavailableError, NotFoundError,
    GuardViolationError, TransactionRejectedError, TransactionRevertedError,
    clean_revert_reason, decode_status,
)

logger = logging.getLogger(__name__)

# JSON-RPC code wallets use for "user rejected the request"
RPC_USER_REJECTED = 4001

_NETWORK_ERRORS = (OSError, asyncio.TimeoutError)


@dataclass
class JobRecord:
    """A job as the contract stores it. No derived fields."""
    id: int
    employer: str
    freelancer: str
    title: str
    description_ref: str
    budget: int
    status: JobStatus
    escrowed_at: int = 0

    @property
    def exists(self) -> bool:
        return bool(self.employer) and self.employer != ZERO_ADDRESS


@dataclass
class JobEvent:
    """One decoded lifecycle event."""
    name: str
    job_id: int
    args: dict = field(default_factory=dict)
    block_number: int = 0
    tx_hash: str = ""


@dataclass
class TransactionReceipt:
    tx_hash: str
    block_number: int
    events: list[JobEvent] = field(default_factory=list)

    def job_id_for(self, event_name: str) -> int | None:
        """Job id carried by the first event with this name, if any."""
        for event in self.events:
            if event.name == event_name:
                return event.job_id
        return None


class PendingTransaction:
    """Handle for a sent transaction. wait() resolves on finalization.

    There is no client-side timeout: wait() returns once the chain has a
    receipt, or raises TransactionRevertedError if the receipt says it failed.
    """

    def __init__(self, tx_hash: str, finalize: Callable[[], Awaitable[TransactionReceipt]],
                 description: str = ""):
        self.tx_hash = tx_hash
        self.description = description
        self._finalize = finalize
        self._receipt: TransactionReceipt | None = None

    async def wait(self) -> TransactionReceipt:
        if self._receipt is None:
            self._receipt = await self._finalize()
        return self._receipt

    def __repr__(self):
        return f"PendingTransaction({self.description or '?'} {self.tx_hash})"


def record_from_struct(raw) -> JobRecord:
    """Decode the positional job struct returned by getJob."""
    job_id, employer, freelancer, title, description_ref, budget, status, escrowed_at = raw
    return JobRecord(
        id=int(job_id),
        employer=employer,
        freelancer=freelancer,
        title=title,
        description_ref=description_ref,
        budget=int(budget),
        status=decode_status(status),
        escrowed_at=int(escrowed_at),
    )


class ContractGateway(ABC):
    """Abstract JobBoard access. Subclasses provide reads, sending and events.

    `approve` stands in for the wallet prompt: called with a short
    description before anything is signed; returning False rejects.
    """

    def __init__(self, account: str | None = None,
                 approve: Callable[[str], bool] | None = None):
        self.account = account
        self.approve = approve

    # --- Reads ---

    @abstractmethod
    async def get_job_count(self) -> int:
        ...

    @abstractmethod
    async def get_job(self, job_id: int) -> JobRecord:
        ...

    @abstractmethod
    async def get_escrow_amount(self, job_id: int) -> int:
        ...

    # --- Events ---

    @abstractmethod
    def subscribe(self) -> AsyncIterator[JobEvent]:
        """Async iterator of lifecycle events. At-least-once while iterating."""
        ...

    # --- Writes ---

    @abstractmethod
    async def _transact(self, method: str, args: tuple, value: int = 0) -> PendingTransaction:
        ...

    def _confirm(self, description: str):
        if not self.account:
            raise GuardViolationError("Wallet is not connected")
        if self.approve is not None and not self.approve(description):
            raise TransactionRejectedError(f"Rejected by signer: {description}")

    async def post_job(self, title: str, description_ref: str, budget: int) -> PendingTransaction:
        return await self._transact("postJob", (title, description_ref, int(budget)))

    async def escrow_funds(self, job_id: int, amount: int) -> PendingTransaction:
        return await self._transact("escrowFunds", (int(job_id),), value=int(amount))

    async def apply_for_job(self, job_id: int) -> PendingTransaction:
        return await self._transact("applyForJob", (int(job_id),))

    async def mark_work_done(self, job_id: int) -> PendingTransaction:
        return await self._transact("markWorkDone", (int(job_id),))

    async def release_payment(self, job_id: int) -> PendingTransaction:
        return await self._transact("releasePayment", (int(job_id),))

    async def refund_employer(self, job_id: int) -> PendingTransaction:
        return await self._transact("refundEmployer", (int(job_id),))

    async def raise_dispute(self, job_id: int) -> PendingTransaction:
        return await self._transact("raiseDispute", (int(job_id),))

    async def close(self):
        """Release backend resources. Default: nothing to release."""


def _rpc_error_code(exc: Exception) -> int | None:
    response = getattr(exc, "rpc_response", None) or {}
    error = response.get("error") if isinstance(response, dict) else None
    if isinstance(error, dict):
        return error.get("code")
    return None


def _logic_error_message(exc: ContractLogicError) -> str:
    return getattr(exc, "message", None) or str(exc)


class Web3Gateway(ContractGateway):
    """JobBoard over JSON-RPC with web3.py.

    With a private key, transactions are built and signed locally.
    Without one, `account` must be unlocked on the node (Ganache) and
    eth_sendTransaction is used.
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        account: str | None = None,
        private_key: str | None = None,
        approve: Callable[[str], bool] | None = None,
        w3: AsyncWeb3 | None = None,
        receipt_poll: float = RECEIPT_POLL_INTERVAL,
        event_poll: float = EVENT_POLL_INTERVAL,
    ):
        if not contract_address:
            raise ValueError("JobBoard contract address required: set JOBBOARD_CONTRACT or pass contract_address=")
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=JOB_BOARD_ABI)
        self._private_key = private_key
        if private_key:
            account = self.w3.eth.account.from_key(private_key).address
        super().__init__(
            account=AsyncWeb3.to_checksum_address(account) if account else None,
            approve=approve,
        )
        self.receipt_poll = receipt_poll
        self.event_poll = event_poll
        self._topics = {
            bytes(event_abi_to_log_topic(event_abi)): name
            for name, event_abi in EVENT_ABIS.items()
        }

    # --- Reads ---

    async def _read(self, fn_name: str, *args):
        fn = getattr(self.contract.functions, fn_name)(*args)
        try:
            return await fn.call()
        except ContractLogicError as e:
            raise TransactionRevertedError(clean_revert_reason(_logic_error_message(e))) from e
        except (Web3RPCError, BadFunctionCallOutput) as e:
            raise JobBoardError(f"{fn_name} failed: {clean_revert_reason(str(e))}") from e
        except _NETWORK_ERRORS as e:
            raise NetworkUnavailableError(f"RPC unreachable at {self.rpc_url}: {e}") from e

    async def get_job_count(self) -> int:
        try:
            connected = await self.w3.is_connected()
        except _NETWORK_ERRORS:
            connected = False
        if not connected:
            raise NetworkUnavailableError(f"No connection to {self.rpc_url}")
        return int(await self._read("getJobCount"))

    async def get_job(self, job_id: int) -> JobRecord:
        if int(job_id) <= 0:
            raise NotFoundError(f"Job {job_id} not found")
        try:
            raw = await self._read("getJob", int(job_id))
        except TransactionRevertedError as e:
            raise NotFoundError(f"Job {job_id} not found: {e.reason}") from e
        record = record_from_struct(raw)
        if not record.exists or record.id == 0:
            raise NotFoundError(f"Job {job_id} not found")
        return record

    async def get_escrow_amount(self, job_id: int) -> int:
        return int(await self._read("getEscrowAmount", int(job_id)))

    # --- Writes ---

    async def _transact(self, method: str, args: tuple, value: int = 0) -> PendingTransaction:
        self._confirm(f"{method}{args}" + (f" value={value} wei" if value else ""))
        fn = getattr(self.contract.functions, method)(*args)
        params = {"from": self.account, "value": int(value)}
        try:
            # Preflight: a revert here costs nothing and carries the reason text
            await fn.estimate_gas(params)
            if self._private_key:
                params["nonce"] = await self.w3.eth.get_transaction_count(self.account, "pending")
                tx = await fn.build_transaction(params)
                signed = self.w3.eth.account.sign_transaction(tx, self._private_key)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = await fn.transact(params)
        except ContractLogicError as e:
            raise TransactionRevertedError(clean_revert_reason(_logic_error_message(e))) from e
        except Web3RPCError as e:
            if _rpc_error_code(e) == RPC_USER_REJECTED:
                raise TransactionRejectedError(f"Rejected by signer: {method}") from e
            raise JobBoardError(f"{method} failed: {clean_revert_reason(str(e))}") from e
        except _NETWORK_ERRORS as e:
            raise NetworkUnavailableError(f"RPC unreachable at {self.rpc_url}: {e}") from e

        hex_hash = AsyncWeb3.to_hex(tx_hash)
        logger.info("Sent %s %s", method, hex_hash)

        async def finalize() -> TransactionReceipt:
            return await self._wait_for_receipt(hex_hash, fn, params)

        return PendingTransaction(hex_hash, finalize, description=method)

    async def _wait_for_receipt(self, tx_hash: str, fn, params: dict) -> TransactionReceipt:
        while True:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
                break
            except TransactionNotFound:
                pass
            except _NETWORK_ERRORS as e:
                logger.warning("Receipt poll for %s failed (%s), still waiting", tx_hash, e)
            await asyncio.sleep(self.receipt_poll)

        if receipt["status"] == 0:
            reason = await self._replay_reason(fn, params, receipt["blockNumber"])
            raise TransactionRevertedError(reason, tx_hash=tx_hash)

        events = [e for e in (self._decode_log(log) for log in receipt["logs"]) if e is not None]
        return TransactionReceipt(tx_hash, int(receipt["blockNumber"]), events)

    async def _replay_reason(self, fn, params: dict, block_number: int) -> str:
        """Re-run a failed call at its block to recover the revert reason."""
        call_params = {k: v for k, v in params.items() if k in ("from", "value")}
        try:
            await fn.call(call_params, block_identifier=block_number)
        except ContractLogicError as e:
            return clean_revert_reason(_logic_error_message(e))
        except _NETWORK_ERRORS:
            pass
        return "transaction reverted"

    # --- Events ---

    def _decode_log(self, log) -> JobEvent | None:
        topics = log.get("topics") or []
        if not topics:
            return None
        if str(log.get("address", "")).lower() != self.address.lower():
            return None
        name = self._topics.get(bytes(topics[0]))
        if name is None:
            return None
        data = getattr(self.contract.events, name)().process_log(log)
        args = dict(data["args"])
        return JobEvent(
            name=name,
            job_id=int(args.get("jobId", 0)),
            args=args,
            block_number=int(data["blockNumber"]),
            tx_hash=AsyncWeb3.to_hex(data["transactionHash"]),
        )

    async def subscribe(self) -> AsyncIterator[JobEvent]:
        """Poll eth_getLogs from the block after subscription start."""
        next_block = None
        while True:
            try:
                latest = await self.w3.eth.block_number
                if next_block is None:
                    next_block = latest + 1
                if latest >= next_block:
                    logs = await self.w3.eth.get_logs({
                        "address": self.address,
                        "fromBlock": next_block,
                        "toBlock": latest,
                    })
                    for log in logs:
                        try:
                            event = self._decode_log(log)
                        except (LogTopicError, MismatchedABI, KeyError, ValueError) as e:
                            logger.warning("Skipping undecodable log: %s", e)
                            continue
                        if event is not None:
                            yield event
                    next_block = latest + 1
            except (Web3RPCError, *_NETWORK_ERRORS) as e:
                logger.warning("Event poll failed (%s), retrying", e)
            await asyncio.sleep(self.event_poll)

    async def close(self):
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
