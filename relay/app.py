# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Chat relay for JobBoard (FastAPI WebSocket).

Room-based broadcaster for live job chat between an employer and a
freelancer. Nothing is persisted: late joiners see only what is sent
after they join.

Wire protocol (JSON text frames, {"event": ..., "data": ...}):
- connect:      WS /ws?userId=<address>&jobId=<id>  joins room job-<id>
- sendMessage:  data {jobId, text, senderDisplay, sender?, timestamp?}
                broadcast verbatim as receiveMessage to the whole room,
                sender included
- leaveRoom:    data <jobId>
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import logging
from typing import Any

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relay.rooms import Member, RoomRegistry
from protocol import EVENT_LEAVE_ROOM, EVENT_RECEIVE_MESSAGE, EVENT_SEND_MESSAGE, room_name, shorten_address

logger = logging.getLogger(__name__)


# --- Frame models ---

class Frame(BaseModel):
    event: str
    data: Any = None


class RelayMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    jobId: int | str
    text: str = Field(min_length=1)
    senderDisplay: str = Field(min_length=1)

    @field_validator("jobId")
    @classmethod
    def job_id_present(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("jobId required")
        if isinstance(v, int) and v <= 0:
            raise ValueError("jobId must be positive")
        return v


def _allowed_origins() -> list[str]:
    raw = os.environ.get("JOBBOARD_RELAY_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()] or ["*"]


# --- App factory ---

def create_app(
    registry: RoomRegistry | None = None,
    allowed_origins: list[str] | None = None,
) -> FastAPI:
    """Create the relay app. Origins default to JOBBOARD_RELAY_ORIGINS (or *)."""

    app = FastAPI(title="JobBoard Chat Relay", version="1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or _allowed_origins(),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    _registry = registry or RoomRegistry()

    # Expose for testing
    app.state.registry = _registry

    # --- Frame handling ---

    async def _handle_send(member: Member, data):
        try:
            msg = RelayMessage.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid message from %s: %s", member, e.errors()[0].get("msg", e))
            return
        room = room_name(msg.jobId)
        if not _registry.is_member(member, room):
            logger.warning("%s tried to send to %s without joining it", member, room)
            return
        logger.info("[%s] %s: %s", room, msg.senderDisplay, msg.text[:80])
        await _registry.broadcast(room, {"event": EVENT_RECEIVE_MESSAGE, "data": data})

    async def _handle_frame(member: Member, raw: str):
        try:
            frame = Frame.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Malformed frame from %s: %.80s", member, raw)
            return

        if frame.event == EVENT_SEND_MESSAGE:
            await _handle_send(member, frame.data)
        elif frame.event == EVENT_LEAVE_ROOM:
            if frame.data in (None, ""):
                return
            room = room_name(frame.data)
            _registry.leave(member, room)
            logger.info("%s left %s", member, room)
        else:
            logger.warning("Unknown event %r from %s", frame.event, member)

    # --- Routes ---

    @app.get("/")
    async def health():
        return {
            "status": "ok",
            "service": "jobboard-relay",
            "rooms": len(_registry.rooms),
            "connections": _registry.connection_count,
        }

    @app.get("/stats")
    async def stats():
        return {"rooms": _registry.stats(), "connections": _registry.connection_count}

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket, userId: str = "", jobId: str = ""):
        await websocket.accept()
        member = Member(websocket, user_id=userId)
        _registry.connect(member)
        who = shorten_address(userId) if userId else "Anon"
        if jobId:
            room = room_name(jobId)
            _registry.join(member, room)
            logger.info("%s (%s) joined %s", who, member.conn_id, room)
        else:
            logger.warning("%s (%s) connected without a jobId", who, member.conn_id)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    logger.warning("Binary frame from %s dropped", member)
                    continue
                await _handle_frame(member, raw)
        finally:
            _registry.remove(member)
            logger.info("%s (%s) disconnected", who, member.conn_id)

    return app
