"""External text store for long-form job descriptions.

put(obj) -> content id, get(cid) -> obj. Pluggable like any other transport:
- PinataStore: pins JSON through Pinata, reads back through an IPFS gateway
- MemoryTextStore: dict-backed, for tests
- LocalTextStore: JSON files on disk, for the simulated chain
"""

import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod

import httpx

from protocol import DEFAULT_IPFS_GATEWAY, PINATA_PIN_URL, JobBoardError

logger = logging.getLogger(__name__)

NO_DESCRIPTION = "[No description]"
FETCH_ERROR = "[Error fetching description]"
DESCRIPTION_MISSING = "[Description not found in IPFS data]"

# Anything shorter cannot be a real content id
MIN_CID_LENGTH = 10


class TextStoreError(JobBoardError):
    """Upload or fetch against the text store failed."""


class TextStore(ABC):

    @abstractmethod
    async def put(self, obj: dict, name: str = "") -> str:
        ...

    @abstractmethod
    async def get(self, cid: str) -> dict:
        ...


class PinataStore(TextStore):
    """Pin JSON via Pinata's pinJSONToIPFS, fetch via a public gateway."""

    def __init__(self, jwt: str = "", gateway: str = DEFAULT_IPFS_GATEWAY,
                 pin_url: str = PINATA_PIN_URL, transport: httpx.AsyncBaseTransport | None = None,
                 timeout: float = 30.0):
        self.jwt = jwt
        self.gateway = gateway if gateway.endswith("/") else gateway + "/"
        self.pin_url = pin_url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    async def put(self, obj: dict, name: str = "") -> str:
        if not self.jwt:
            raise TextStoreError("Pinata JWT not configured (set JOBBOARD_PINATA_JWT or pinata_jwt)")
        body = {
            "pinataMetadata": {"name": name or "jobboard"},
            "pinataContent": obj,
        }
        headers = {"Authorization": f"Bearer {self.jwt}"}
        try:
            async with self._client() as client:
                resp = await client.post(self.pin_url, json=body, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TextStoreError(f"Pinata rejected upload: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TextStoreError(f"Pinata unreachable: {e}") from e
        cid = data.get("IpfsHash")
        if not cid:
            raise TextStoreError(f"Pinata response missing IpfsHash: {data}")
        logger.info("Pinned %s as %s", name or "object", cid)
        return cid

    async def get(self, cid: str) -> dict:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.gateway}{cid}")
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TextStoreError(f"Fetch {cid} failed: {e}") from e


class MemoryTextStore(TextStore):
    """Content-addressed dict. Same cid for the same JSON."""

    def __init__(self):
        self.objects: dict[str, dict] = {}

    async def put(self, obj: dict, name: str = "") -> str:
        digest = hashlib.sha256(json.dumps(obj, sort_keys=True).encode()).hexdigest()
        cid = "bafy" + digest[:52]
        self.objects[cid] = obj
        return cid

    async def get(self, cid: str) -> dict:
        if cid not in self.objects:
            raise TextStoreError(f"Content {cid} not found")
        return self.objects[cid]


class LocalTextStore(MemoryTextStore):
    """MemoryTextStore persisted as one JSON file per cid (for --sim runs)."""

    def __init__(self, directory: str):
        super().__init__()
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, cid: str) -> str:
        return os.path.join(self.directory, f"{os.path.basename(cid)}.json")

    async def put(self, obj: dict, name: str = "") -> str:
        cid = await super().put(obj, name)
        with open(self._path(cid), "w") as f:
            json.dump(obj, f)
        return cid

    async def get(self, cid: str) -> dict:
        try:
            with open(self._path(cid)) as f:
                return json.load(f)
        except FileNotFoundError:
            raise TextStoreError(f"Content {cid} not found")
        except ValueError as e:
            raise TextStoreError(f"Content {cid} unreadable: {e}") from e


async def fetch_description(store: TextStore, cid: str | None) -> str:
    """Resolve a description ref to display text. Never raises."""
    if not cid or len(cid) < MIN_CID_LENGTH:
        return NO_DESCRIPTION
    try:
        obj = await store.get(cid)
    except TextStoreError as e:
        logger.warning("Description %s unavailable: %s", cid, e)
        return FETCH_ERROR
    if not isinstance(obj, dict) or "description" not in obj:
        return DESCRIPTION_MISSING
    return str(obj["description"])
