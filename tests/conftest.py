import sys
import os
import asyncio
import json

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from protocol import (
    REFUND_COOLDOWN_SECONDS, EVENT_LEAVE_ROOM, EVENT_RECEIVE_MESSAGE, EVENT_SEND_MESSAGE,
    REQUIRED_MESSAGE_FIELDS, JobStatus, room_name, to_wei,
)
from simchain import SimChain, SimGateway


EMPLOYER = "0x1111111111111111111111111111111111111111"
FREELANCER = "0x2222222222222222222222222222222222222222"
OTHER = "0x3333333333333333333333333333333333333333"

SAMPLE_CID = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


@pytest.fixture
def chain():
    """Fresh in-memory chain with funded employer, freelancer and bystander."""
    c = SimChain()
    c.fund(EMPLOYER, "100")
    c.fund(FREELANCER, "10")
    c.fund(OTHER, "10")
    yield c
    c.close()


@pytest.fixture
def employer_gw(chain):
    return SimGateway(chain, account=EMPLOYER)


@pytest.fixture
def freelancer_gw(chain):
    return SimGateway(chain, account=FREELANCER)


@pytest.fixture
def other_gw(chain):
    return SimGateway(chain, account=OTHER)


async def confirm(pending):
    return await (await pending).wait()


async def make_job(chain, status=JobStatus.OPEN, budget="1", escrow=True, title="Logo design"):
    """Drive a new job to `status` through the real contract calls. Returns its id."""
    emp = SimGateway(chain, account=EMPLOYER)
    fl = SimGateway(chain, account=FREELANCER)
    receipt = await confirm(emp.post_job(title, SAMPLE_CID, to_wei(budget)))
    job_id = receipt.job_id_for("JobPosted")
    if status == JobStatus.OPEN and not escrow:
        return job_id
    await confirm(emp.escrow_funds(job_id, to_wei(budget)))
    if status == JobStatus.OPEN:
        return job_id
    if status == JobStatus.REFUNDED:
        chain.advance(REFUND_COOLDOWN_SECONDS + 1)
        await confirm(emp.refund_employer(job_id))
        return job_id
    await confirm(fl.apply_for_job(job_id))
    if status == JobStatus.ASSIGNED:
        return job_id
    if status == JobStatus.DISPUTED:
        await confirm(emp.raise_dispute(job_id))
        return job_id
    await confirm(fl.mark_work_done(job_id))
    if status == JobStatus.AWAITING_APPROVAL:
        return job_id
    await confirm(emp.release_payment(job_id))
    return job_id


async def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# --- In-process relay for chat client tests ---

class FakeConnection:
    def __init__(self, hub, url):
        self.hub = hub
        self.url = url
        self.sent = []
        self.closed = False
        self.rooms = set()
        self.inbox = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(json.loads(message))
        self.hub.handle(self, message)

    async def recv(self):
        item = await self.inbox.get()
        if item is None:
            raise ConnectionResetError("connection dropped")
        return item

    async def close(self):
        self.closed = True
        self.hub.remove(self)

    def sent_events(self):
        return [f["event"] for f in self.sent]


class FakeRelay:
    """Same room semantics as relay/app.py, without sockets.

    Use `relay.connect` as a ChatGate connector.
    """

    def __init__(self):
        self.connections = []
        self.rooms = {}
        self.fail_next = 0
        self.connect_attempts = 0
        self.echo = True

    async def connect(self, url):
        self.connect_attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionRefusedError("relay down")
        conn = FakeConnection(self, url)
        query = dict(p.split("=", 1) for p in url.split("?", 1)[1].split("&"))
        if query.get("jobId"):
            room = room_name(query["jobId"])
            self.rooms.setdefault(room, []).append(conn)
            conn.rooms.add(room)
        self.connections.append(conn)
        return conn

    def handle(self, conn, raw):
        frame = json.loads(raw)
        data = frame.get("data")
        if frame["event"] == EVENT_LEAVE_ROOM:
            room = room_name(data)
            conn.rooms.discard(room)
            if conn in self.rooms.get(room, []):
                self.rooms[room].remove(conn)
            return
        if frame["event"] != EVENT_SEND_MESSAGE or not self.echo:
            return
        if not isinstance(data, dict) or not all(data.get(k) for k in REQUIRED_MESSAGE_FIELDS):
            return
        room = room_name(data["jobId"])
        if room not in conn.rooms:
            return
        self.broadcast(room, {"event": EVENT_RECEIVE_MESSAGE, "data": data})

    def broadcast(self, room, frame):
        for member in list(self.rooms.get(room, [])):
            member.inbox.put_nowait(json.dumps(frame))

    def inject(self, room, raw):
        """Deliver a raw frame to everyone in a room (bypasses validation)."""
        for member in list(self.rooms.get(room, [])):
            member.inbox.put_nowait(raw)

    def drop(self, conn):
        """Simulate the server dropping a connection."""
        self.remove(conn)
        conn.inbox.put_nowait(None)

    def remove(self, conn):
        for members in self.rooms.values():
            if conn in members:
                members.remove(conn)
        conn.rooms.clear()
        if conn in self.connections:
            self.connections.remove(conn)

    @property
    def open_connections(self):
        return [c for c in self.connections if not c.closed]


@pytest.fixture
def relay():
    return FakeRelay()
