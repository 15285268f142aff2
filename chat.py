"""Job chat: gate rule and relay client.

Chat exists only while a job is ASSIGNED, AWAITING_APPROVAL or DISPUTED,
and only for its employer and freelancer. The gate owns at most one relay
connection and tears it down the moment the rule stops holding.

Messages are live only: nothing is stored, and a message is displayed when
the relay echoes it back, never when it is sent.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from projector import Job, role_of
from protocol import (
    CHAT_RECONNECT_ATTEMPTS, CHAT_RETRY_DELAY, CHAT_ROLES, CHAT_STATUSES, DEFAULT_RELAY_URL,
    EVENT_LEAVE_ROOM, EVENT_RECEIVE_MESSAGE, EVENT_SEND_MESSAGE, REQUIRED_MESSAGE_FIELDS,
    SYSTEM_SENDER, ChatUnavailableError, GuardViolationError, JobStatus, Role, shorten_address,
)

logger = logging.getLogger(__name__)

_TRANSIENT = (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError)


def chat_permitted(status: JobStatus, role: Role) -> bool:
    return status in CHAT_STATUSES and role in CHAT_ROLES


def sender_display(address: str, role: Role) -> str:
    short = shorten_address(address)
    if role is Role.EMPLOYER:
        return f"{short} (Employer)"
    if role is Role.FREELANCER:
        return f"{short} (Freelancer)"
    return short


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ChatMessage:
    job_id: int
    sender: str
    sender_display: str
    text: str
    timestamp: str = field(default_factory=_utc_now)

    @property
    def is_system(self) -> bool:
        return self.sender == SYSTEM_SENDER

    def to_wire(self) -> dict:
        return {
            "jobId": self.job_id,
            "sender": self.sender,
            "senderDisplay": self.sender_display,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_wire(cls, data) -> "ChatMessage":
        """Parse a relayed message. ValueError if the shape is wrong."""
        if not isinstance(data, dict):
            raise ValueError("message is not an object")
        for key in REQUIRED_MESSAGE_FIELDS:
            if not data.get(key):
                raise ValueError(f"message missing {key}")
        try:
            job_id = int(data["jobId"])
        except (TypeError, ValueError):
            raise ValueError(f"bad jobId {data['jobId']!r}")
        return cls(
            job_id=job_id,
            sender=str(data.get("sender") or ""),
            sender_display=str(data["senderDisplay"]),
            text=str(data["text"]),
            timestamp=str(data.get("timestamp") or _utc_now()),
        )


def encode_frame(event: str, data) -> str:
    return json.dumps({"event": event, "data": data})


class Connection(Protocol):
    async def send(self, message: str) -> None: ...
    async def recv(self) -> str: ...
    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Connection]]


async def websocket_connector(url: str) -> Connection:
    return await websockets.connect(url)


class ChatGate:
    """Opens, keeps and closes the chat channel for one viewer's current job."""

    def __init__(self, relay_url: str = DEFAULT_RELAY_URL, viewer: str | None = None,
                 connector: Connector | None = None,
                 max_attempts: int = CHAT_RECONNECT_ATTEMPTS,
                 retry_delay: float = CHAT_RETRY_DELAY):
        self.relay_url = relay_url
        self.viewer = viewer
        self.connector = connector or websocket_connector
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self.job: Job | None = None
        self.messages: list[ChatMessage] = []
        self.error: ChatUnavailableError | None = None
        self._active_job_id: int | None = None
        self._conn: Connection | None = None
        self._reader: asyncio.Task | None = None
        self._drops = 0  # consecutive drops with nothing received
        self._listeners: list[Callable[[ChatMessage], None]] = []

    # --- State ---

    @property
    def open(self) -> bool:
        """The gate rule holds for the current job."""
        return self._active_job_id is not None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def role(self) -> Role:
        if self.job is None:
            return Role.OTHER
        return role_of(self.job.employer, self.job.freelancer, self.viewer)

    def add_listener(self, fn: Callable[[ChatMessage], None]):
        self._listeners.append(fn)

    def url_for(self, job_id: int) -> str:
        return f"{self.relay_url}?{urlencode({'userId': self.viewer or '', 'jobId': job_id})}"

    # --- Gate ---

    async def update(self, job: Job | None):
        """Re-evaluate the gate rule against a freshly projected job."""
        permitted = (
            job is not None and bool(self.viewer)
            and chat_permitted(job.status, role_of(job.employer, job.freelancer, self.viewer))
        )
        if not permitted:
            if self.open:
                logger.info("Chat conditions no longer met for job %s, closing", self._active_job_id)
                await self.close()
            self.job = job
            return

        self.job = job
        if self._active_job_id == job.id:
            return
        if self.open:
            await self._close_channel()
            self.messages.clear()
        self._active_job_id = job.id
        self.error = None
        self._drops = 0
        await self._connect()

    async def reconnect(self) -> bool:
        if not self.open:
            raise ChatUnavailableError("Chat is not available for this job")
        await self._close_channel()
        self._drops = 0
        return await self._connect()

    async def close(self):
        await self._close_channel()
        self._active_job_id = None
        self.messages.clear()
        self.error = None

    # --- Connection ---

    async def _connect(self, attempts: int | None = None) -> bool:
        job_id = self._active_job_id
        url = self.url_for(job_id)
        attempts = attempts or self.max_attempts
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                conn = await self.connector(url)
                break
            except _TRANSIENT as e:
                last_error = e
                logger.warning("Chat connect attempt %d/%d for job %s failed: %s",
                               attempt, attempts, job_id, e)
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay)
        else:
            self.error = ChatUnavailableError(
                f"Chat relay unreachable after {attempts} attempts: {last_error}"
            )
            return False

        if self._active_job_id != job_id:
            # Gate closed while we were connecting
            await conn.close()
            return False
        self._conn = conn
        self.error = None
        self._reader = asyncio.create_task(self._read_loop(conn, job_id))
        logger.info("Chat connected for job %s", job_id)
        return True

    async def _read_loop(self, conn: Connection, job_id: int):
        try:
            while True:
                raw = await conn.recv()
                self._drops = 0
                self._handle_frame(raw, job_id)
        except _TRANSIENT as e:
            logger.warning("Chat connection for job %s lost: %s", job_id, e)
        if self._conn is not conn:
            return
        self._conn = None
        self._reader = None
        if self._active_job_id != job_id:
            return
        self._drops += 1
        if self._drops >= self.max_attempts:
            self.error = ChatUnavailableError(
                f"Chat relay dropped the connection {self._drops} times in a row"
            )
            logger.warning("Giving up on chat for job %s: %s", job_id, self.error)
            return
        await self._connect(self.max_attempts - self._drops)

    def _handle_frame(self, raw, job_id: int):
        try:
            frame = json.loads(raw)
            if not isinstance(frame, dict) or frame.get("event") != EVENT_RECEIVE_MESSAGE:
                raise ValueError(f"unexpected frame {str(raw)[:80]}")
            message = ChatMessage.from_wire(frame.get("data"))
        except ValueError as e:
            logger.warning("Dropping chat frame: %s", e)
            return
        if message.job_id != job_id:
            logger.warning("Dropping message for job %s on job %s channel", message.job_id, job_id)
            return
        self.messages.append(message)
        for fn in list(self._listeners):
            try:
                fn(message)
            except Exception:
                logger.exception("Chat listener failed")

    async def _close_channel(self):
        conn, reader = self._conn, self._reader
        self._conn = None
        self._reader = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if conn is not None:
            try:
                await conn.send(encode_frame(EVENT_LEAVE_ROOM, self._active_job_id))
            except _TRANSIENT:
                pass
            await conn.close()
            logger.info("Chat disconnected for job %s", self._active_job_id)

    # --- Sending ---

    async def _send_message(self, message: ChatMessage):
        if not self.connected:
            raise ChatUnavailableError(
                str(self.error) if self.error else "Chat is not connected"
            )
        try:
            await self._conn.send(encode_frame(EVENT_SEND_MESSAGE, message.to_wire()))
        except _TRANSIENT as e:
            raise ChatUnavailableError(f"Chat send failed: {e}") from e

    async def send(self, text: str):
        text = (text or "").strip()
        if not text:
            raise GuardViolationError("Message cannot be empty")
        if not self.viewer:
            raise GuardViolationError("Connect wallet to send messages")
        if not self.open:
            raise ChatUnavailableError("Chat is not available for this job")
        await self._send_message(ChatMessage(
            job_id=self._active_job_id,
            sender=self.viewer,
            sender_display=sender_display(self.viewer, self.role),
            text=text,
        ))

    async def post_system_notice(self, text: str):
        if not self.open:
            raise ChatUnavailableError("Chat is not available for this job")
        await self._send_message(ChatMessage(
            job_id=self._active_job_id,
            sender=SYSTEM_SENDER,
            sender_display=SYSTEM_SENDER,
            text=text,
        ))
