"""Shared constants and interfaces for the jobboard client and relay.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum, IntEnum

# --- Protocol Constants ---

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
WEI_PER_ETHER = 10**18

# Contract enforces this; the client only pre-checks it when the job
# struct reports an escrow timestamp.
REFUND_COOLDOWN_SECONDS = 7 * 24 * 3600

# Projector: fallback poll when no event arrives
DEFAULT_POLL_INTERVAL = 30.0

# Action records: success/error messages auto-expire after this many seconds
ACTION_STATE_TTL = 5.0

# Relay client: bounded connection attempts before the channel is declared unusable
CHAT_RECONNECT_ATTEMPTS = 3
CHAT_RETRY_DELAY = 1.0

# Receipt polling while waiting for a transaction to be mined (no overall timeout)
RECEIPT_POLL_INTERVAL = 1.0

# Event log polling for Web3Gateway.subscribe()
EVENT_POLL_INTERVAL = 2.0

REVERT_REASON_MAX = 150

SYSTEM_SENDER = "System"

# --- Environment defaults ---

DEFAULT_RPC_URL = os.environ.get("JOBBOARD_RPC_URL", "http://127.0.0.1:7545")
DEFAULT_CONTRACT_ADDRESS = os.environ.get("JOBBOARD_CONTRACT", "")
DEFAULT_RELAY_URL = os.environ.get("JOBBOARD_RELAY_URL", "ws://localhost:3001/ws")
DEFAULT_IPFS_GATEWAY = os.environ.get("JOBBOARD_IPFS_GATEWAY", "https://ipfs.io/ipfs/")
PINATA_PIN_URL = "https://api.pinata.cloud/pinning/pinJSONToIPFS"


def to_wei(amount: str | Decimal) -> int:
    """Convert an ether amount to wei (integer)."""
    result = Decimal(amount) * WEI_PER_ETHER
    return int(result.to_integral_value())


def from_wei(wei: int | str) -> Decimal:
    """Convert wei to ether."""
    return Decimal(str(wei)) / WEI_PER_ETHER


def shorten_address(address: str | None) -> str:
    """0x1234...abcd form used in chat display names and CLI tables."""
    if not address or address == ZERO_ADDRESS:
        return "None"
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def same_address(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


# --- State Machine ---

class JobStatus(IntEnum):
    """On-chain job status. The integer values are the contract's encoding."""
    OPEN = 0
    ASSIGNED = 1
    AWAITING_APPROVAL = 2
    COMPLETED = 3
    REFUNDED = 4
    DISPUTED = 5


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.REFUNDED}

# Resolution happens out of band; nothing in this client moves a job out of DISPUTED
SINK_STATUSES = {JobStatus.DISPUTED}

# Valid status transitions: current -> set of valid next statuses
STATUS_TRANSITIONS = {
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.REFUNDED},
    JobStatus.ASSIGNED: {JobStatus.AWAITING_APPROVAL, JobStatus.DISPUTED},
    JobStatus.AWAITING_APPROVAL: {JobStatus.COMPLETED, JobStatus.DISPUTED},
    JobStatus.COMPLETED: set(),
    JobStatus.REFUNDED: set(),
    JobStatus.DISPUTED: set(),
}


def decode_status(code: int) -> JobStatus:
    """Decode the contract's status integer.

    Anything outside the six canonical codes is a decode error, never
    mapped to a guess.
    """
    try:
        return JobStatus(int(code))
    except ValueError:
        raise ValueError(f"Unknown job status code: {code}")


class Role(Enum):
    """Viewer's relation to a job."""
    EMPLOYER = "employer"
    FREELANCER = "freelancer"
    OTHER = "other"


# Chat is only live while both parties still have something to talk about
CHAT_STATUSES = {JobStatus.ASSIGNED, JobStatus.AWAITING_APPROVAL, JobStatus.DISPUTED}
CHAT_ROLES = {Role.EMPLOYER, Role.FREELANCER}


# --- Contract events ---

JOB_EVENTS = (
    "JobPosted",
    "JobApplied",
    "PaymentEscrowed",
    "PaymentReleased",
    "EmployerRefunded",
    "DisputeRaised",
    "DisputeResolved",
    "WorkSubmitted",
)


# --- Relay wire protocol ---

EVENT_SEND_MESSAGE = "sendMessage"
EVENT_RECEIVE_MESSAGE = "receiveMessage"
EVENT_LEAVE_ROOM = "leaveRoom"

# Fields a chat message must carry to be broadcast
REQUIRED_MESSAGE_FIELDS = ("jobId", "text", "senderDisplay")


def room_name(job_id) -> str:
    """Relay room for a job. Deterministic from the job id alone."""
    return f"job-{job_id}"


# --- Errors ---

class JobBoardError(Exception):
    """Base class for every error this package raises on purpose."""


class NotFoundError(JobBoardError):
    """Job id invalid or never created. Not retried."""


class GuardViolationError(JobBoardError):
    """Client-side precondition failed; no transaction was sent."""


class TransactionRejectedError(JobBoardError):
    """Signer declined the transaction. Benign cancellation."""


class TransactionRevertedError(JobBoardError):
    """On-chain precondition failed despite the client guard passing."""

    def __init__(self, reason: str = "", tx_hash: str = ""):
        self.reason = reason or "transaction reverted"
        self.tx_hash = tx_hash
        super().__init__(self.reason)


class NetworkUnavailableError(JobBoardError):
    """Gateway unreachable. Retried by the next scheduled poll."""


UnavailableError = NetworkUnavailableError


class ChatUnavailableError(JobBoardError):
    """Chat gate closed or socket disconnected; sending is disabled."""


def clean_revert_reason(message: str) -> str:
    """Strip node/contract prefixes from a revert message and truncate it."""
    text = str(message or "").strip()
    for prefix in ("execution reverted:", "VM Exception while processing transaction: revert",
                   "revert", "JobBoard:"):
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
    if not text:
        text = "transaction reverted"
    return text[:REVERT_REASON_MAX]
