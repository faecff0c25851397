import json
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from pytest_httpx import HTTPXMock

from qci_cli import ipfs as ipfs_module
from qci_cli.api_client import APIError
from qci_cli.config import Settings
from qci_cli.content import calculate_content_hash
from qci_cli.ipfs import (
    EMPTY_DIR_CID,
    IPFSService,
    LocalIPFSProvider,
    PinataProvider,
    extract_cid,
    make_ipfs_service,
)
from qci_cli.models import QCIContent
from qci_cli.persistence import DictStore

KUBO = "http://localhost:5001"
PINATA = "https://api.pinata.cloud"


@pytest.fixture
def cache(tmp_path):
    return DictStore(str(tmp_path / "cache.json"))


@pytest_asyncio.fixture
async def local_service(cache):
    service = IPFSService(LocalIPFSProvider(), cache=cache)
    yield service
    await service.close()


@pytest_asyncio.fixture
async def pinata_service():
    service = IPFSService(PinataProvider("jwt-token", "https://gw.example"))
    yield service
    await service.close()


def test_extract_cid():
    assert extract_cid("ipfs://bafy123") == "bafy123"
    assert extract_cid("bafy123") == "bafy123"


class TestLocalProvider:
    """Kubo HTTP RPC: /api/v0/add and /api/v0/cat."""

    @pytest.mark.asyncio
    async def test_upload_raw_content(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url=f"{KUBO}/api/v0/add?pin=true&cid-version=1",
            json={"Name": "qci.md", "Hash": "bafyadd", "Size": "12"},
        )
        result = await local_service.upload_raw_content("# Document")
        assert result == {
            "cid": "bafyadd",
            "ipfs_url": "ipfs://bafyadd",
            "content_hash": calculate_content_hash("# Document"),
        }
        assert b"# Document" in httpx_mock.get_request().content

    @pytest.mark.asyncio
    async def test_fetch_is_cached(self, local_service, cache, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/cat?arg=bafydoc", text="---\nqci: 1\n---\nBody")

        first = await local_service.fetch_qci("ipfs://bafydoc")
        second = await local_service.fetch_qci("bafydoc")

        assert first == second == "---\nqci: 1\n---\nBody"
        assert len(httpx_mock.get_requests()) == 1
        assert cache.get("ipfs:bafydoc") == first

    @pytest.mark.asyncio
    async def test_fetch_many_tolerates_failures(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/cat?arg=bafyok", text="ok")
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/cat?arg=bafybad", status_code=500, text="not found")

        assert await local_service.fetch_many(["ipfs://bafyok", "ipfs://bafybad"]) == ["ok", None]

    @pytest.mark.asyncio
    async def test_error_status(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/add?pin=true&cid-version=1", status_code=500)
        with pytest.raises(APIError):
            await local_service.upload_raw_content("x")

    def test_gateway_url(self):
        assert IPFSService(LocalIPFSProvider()).gateway_url("ipfs://bafy1") == "http://localhost:8080/ipfs/bafy1"


class TestPinataProvider:
    def test_requires_jwt(self):
        with pytest.raises(ValueError):
            PinataProvider("")

    @pytest.mark.asyncio
    async def test_markdown_is_pinned_as_file(self, pinata_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{PINATA}/pinning/pinFileToIPFS", json={"IpfsHash": "bafyfile"})
        content = QCIContent(qci=0, title="T", chain="Base", content="Body", author="A", created="2024-01-01")

        result = await pinata_service.upload_qci_from_content(content)

        assert result["cid"] == "bafyfile"
        assert result["ipfs_url"] == "ipfs://bafyfile"
        assert result["content_hash"].startswith("0x") and len(result["content_hash"]) == 66
        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer jwt-token"

    @pytest.mark.asyncio
    async def test_json_is_pinned_as_json(self, pinata_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{PINATA}/pinning/pinJSONToIPFS", json={"IpfsHash": "bafyjson"})

        assert await pinata_service.upload_json({"qci": 1}) == "bafyjson"
        body = json.loads(httpx_mock.get_request().content)
        assert body["pinataContent"] == {"qci": 1}

    @pytest.mark.asyncio
    async def test_fetch_through_gateway(self, pinata_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="GET", url="https://gw.example/ipfs/bafyjson", text='{"qci": 1}')
        assert await pinata_service.fetch_json("ipfs://bafyjson") == {"qci": 1}


class TestMakeService:
    def test_local(self):
        service = make_ipfs_service(Settings(use_local_ipfs=True, local_ipfs_api="http://ipfs:5001"))
        assert isinstance(service.provider, LocalIPFSProvider)
        assert service.provider.api_url == "http://ipfs:5001"

    def test_pinata(self):
        assert isinstance(make_ipfs_service(Settings(pinata_jwt="jwt")).provider, PinataProvider)

    def test_unconfigured(self):
        with pytest.raises(ValueError):
            make_ipfs_service(Settings())


class TestHealth:
    """API and gateway availability, plus an upload/read-back check."""

    @pytest.mark.asyncio
    async def test_local_node_healthy(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/version", json={"Version": "0.29.0"})
        httpx_mock.add_response(method="GET", url=f"http://localhost:8080/ipfs/{EMPTY_DIR_CID}", text="")

        assert await local_service.check_health() == {
            "provider": "local",
            "api_available": True,
            "gateway_available": True,
            "version": "0.29.0",
        }

    @pytest.mark.asyncio
    async def test_local_node_down(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{KUBO}/api/v0/version")
        httpx_mock.add_response(method="GET", url=f"http://localhost:8080/ipfs/{EMPTY_DIR_CID}", status_code=502)

        health = await local_service.check_health()

        assert health["api_available"] is False
        assert health["gateway_available"] is False
        assert health["version"] is None

    @pytest.mark.asyncio
    async def test_pinata_authentication(self, pinata_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="GET", url=f"{PINATA}/data/testAuthentication", status_code=401)
        httpx_mock.add_response(method="GET", url=f"https://gw.example/ipfs/{EMPTY_DIR_CID}", text="")

        health = await pinata_service.check_health()

        assert health["provider"] == "pinata"
        assert health["api_available"] is False
        assert health["gateway_available"] is True

    @pytest.mark.asyncio
    async def test_round_trip(self, local_service, monkeypatch, httpx_mock: HTTPXMock):
        monkeypatch.setattr(ipfs_module, "time", SimpleNamespace(time=lambda: 1700000000.0))
        httpx_mock.add_response(
            method="POST", url=f"{KUBO}/api/v0/add?pin=true&cid-version=1", json={"Hash": "bafytest"}
        )
        httpx_mock.add_response(
            method="GET", url="http://localhost:8080/ipfs/bafytest", text="IPFS test content - 1700000000000"
        )

        assert await local_service.check_round_trip() == {"success": True, "cid": "bafytest"}

    @pytest.mark.asyncio
    async def test_round_trip_mismatch(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST", url=f"{KUBO}/api/v0/add?pin=true&cid-version=1", json={"Hash": "bafytest"}
        )
        httpx_mock.add_response(method="GET", url="http://localhost:8080/ipfs/bafytest", text="something else")

        result = await local_service.check_round_trip()

        assert result == {"success": False, "cid": "bafytest", "error": "Content mismatch"}

    @pytest.mark.asyncio
    async def test_round_trip_upload_failure(self, local_service, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=f"{KUBO}/api/v0/add?pin=true&cid-version=1", status_code=500)

        result = await local_service.check_round_trip()

        assert result["success"] is False
        assert result["error"].startswith("Upload failed")
