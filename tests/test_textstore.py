"""Tests for textstore.py -- Pinata upload, gateway fetch and display fallbacks."""

import sys, os, json
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import httpx
import pytest

from textstore import (
    DESCRIPTION_MISSING, FETCH_ERROR, NO_DESCRIPTION, LocalTextStore, MemoryTextStore,
    PinataStore, TextStoreError, fetch_description,
)

CID = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


def pinata(handler, jwt="test-jwt"):
    return PinataStore(jwt=jwt, gateway="https://gw.test/ipfs", pin_url="https://pin.test/pin",
                       transport=httpx.MockTransport(handler))


class TestPinataStore:
    @pytest.mark.asyncio
    async def test_put_sends_metadata_and_content(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"IpfsHash": CID, "PinSize": 42})

        cid = await pinata(handler).put({"description": "A logo"}, name="JobDesc_Logo_1")
        assert cid == CID
        assert seen["url"] == "https://pin.test/pin"
        assert seen["auth"] == "Bearer test-jwt"
        assert seen["body"] == {
            "pinataMetadata": {"name": "JobDesc_Logo_1"},
            "pinataContent": {"description": "A logo"},
        }

    @pytest.mark.asyncio
    async def test_put_without_jwt(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(TextStoreError, match="JWT not configured"):
            await pinata(handler, jwt="").put({"description": "x"})

    @pytest.mark.asyncio
    async def test_put_rejected(self):
        store = pinata(lambda request: httpx.Response(401, json={"error": "bad key"}))
        with pytest.raises(TextStoreError, match="401"):
            await store.put({"description": "x"})

    @pytest.mark.asyncio
    async def test_put_missing_hash(self):
        store = pinata(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(TextStoreError, match="missing IpfsHash"):
            await store.put({"description": "x"})

    @pytest.mark.asyncio
    async def test_put_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TextStoreError, match="unreachable"):
            await pinata(handler).put({"description": "x"})

    @pytest.mark.asyncio
    async def test_get_reads_through_gateway(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"description": "A logo"})

        assert await pinata(handler).get(CID) == {"description": "A logo"}
        assert seen == [f"https://gw.test/ipfs/{CID}"]

    @pytest.mark.asyncio
    async def test_get_failures(self):
        with pytest.raises(TextStoreError):
            await pinata(lambda request: httpx.Response(404)).get(CID)
        with pytest.raises(TextStoreError):
            await pinata(lambda request: httpx.Response(200, text="<html>")).get(CID)


class TestLocalStores:
    @pytest.mark.asyncio
    async def test_memory_store_is_content_addressed(self):
        store = MemoryTextStore()
        a = await store.put({"description": "same"})
        b = await store.put({"description": "same"})
        c = await store.put({"description": "different"})
        assert a == b != c
        assert await store.get(a) == {"description": "same"}
        with pytest.raises(TextStoreError):
            await store.get("bafymissing")

    @pytest.mark.asyncio
    async def test_local_store_survives_restart(self, tmp_path):
        cid = await LocalTextStore(str(tmp_path)).put({"description": "kept"})
        assert await LocalTextStore(str(tmp_path)).get(cid) == {"description": "kept"}

    @pytest.mark.asyncio
    async def test_local_store_missing(self, tmp_path):
        with pytest.raises(TextStoreError):
            await LocalTextStore(str(tmp_path)).get(CID)


class TestFetchDescription:
    @pytest.mark.asyncio
    async def test_found(self):
        store = MemoryTextStore()
        cid = await store.put({"description": "Design a logo"})
        assert await fetch_description(store, cid) == "Design a logo"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cid", [None, "", "short"])
    async def test_no_ref(self, cid):
        assert await fetch_description(MemoryTextStore(), cid) == NO_DESCRIPTION

    @pytest.mark.asyncio
    async def test_fetch_error(self):
        assert await fetch_description(MemoryTextStore(), CID) == FETCH_ERROR

    @pytest.mark.asyncio
    async def test_missing_field(self):
        store = MemoryTextStore()
        cid = await store.put({"title": "no description here"})
        assert await fetch_description(store, cid) == DESCRIPTION_MISSING

    @pytest.mark.asyncio
    async def test_gateway_outage(self):
        store = pinata(lambda request: httpx.Response(502))
        assert await fetch_description(store, CID) == FETCH_ERROR
