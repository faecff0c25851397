"""
IPFS storage for QCI documents.

Two providers are supported: a local Kubo node (HTTP RPC on :5001) and Pinata.
IPFSService sits on top of either one and caches fetched documents in the
persistent DictStore, since content addressed by CID never changes.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from qci_cli.api_client import APIError
from qci_cli.config import Settings
from qci_cli.content import calculate_content_hash, format_qci_content
from qci_cli.models import QCIContent
from qci_cli.persistence import DictStore

log = logging.getLogger(__name__)

IPFS_PREFIX = "ipfs://"
DEFAULT_GATEWAY = "https://ipfs.io"
PINATA_API_URL = "https://api.pinata.cloud"
CACHE_KEY_PREFIX = "ipfs:"
# CID of the empty directory, served by every gateway
EMPTY_DIR_CID = "QmUNLLsPACCz1vLxQVkXqqLX5R1X345qqfHbsf67hvA3Nn"
HEALTH_TIMEOUT = 5.0
ROUND_TRIP_TIMEOUT = 10.0


def extract_cid(cid_or_url: str) -> str:
    return cid_or_url[len(IPFS_PREFIX) :] if cid_or_url.startswith(IPFS_PREFIX) else cid_or_url


def _check(response: httpx.Response, action: str) -> httpx.Response:
    if response.is_error:
        error_msg = f"IPFS {action} failed - Status: {response.status_code}, Content: {response.text[:200]}"
        log.error(error_msg)
        raise APIError(error_msg, response)
    return response


async def _gateway_available(client: httpx.AsyncClient, gateway_url: str) -> bool:
    try:
        response = await client.get(f"{gateway_url}/ipfs/{EMPTY_DIR_CID}", timeout=HEALTH_TIMEOUT)
    except httpx.HTTPError as e:
        log.debug("Gateway %s unreachable: %s", gateway_url, e)
        return False
    return response.is_success


class LocalIPFSProvider:
    """Kubo node reached through its HTTP RPC API."""

    def __init__(self, api_url: str = "http://localhost:5001", gateway_url: str = "http://localhost:8080", client=None):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self.client = client if client is not None else httpx.AsyncClient(timeout=60)

    async def upload(self, content: str) -> str:
        try:
            response = await self.client.post(
                f"{self.api_url}/api/v0/add",
                params={"pin": "true", "cid-version": "1"},
                files={"file": ("qci.md", content.encode("utf-8"))},
            )
        except httpx.RequestError as e:
            log.exception(f"Network error uploading to local IPFS: {e}")
            raise APIError(f"Network error uploading to local IPFS: {e}")
        return _check(response, "add").json()["Hash"]

    async def fetch(self, cid: str) -> str:
        try:
            response = await self.client.post(f"{self.api_url}/api/v0/cat", params={"arg": cid})
        except httpx.RequestError as e:
            log.exception(f"Network error fetching {cid} from local IPFS: {e}")
            raise APIError(f"Network error fetching {cid} from local IPFS: {e}")
        return _check(response, "cat").text

    async def health(self) -> Dict[str, Any]:
        api_available = False
        version = None
        try:
            response = await self.client.post(f"{self.api_url}/api/v0/version", timeout=HEALTH_TIMEOUT)
            api_available = response.is_success
            if api_available:
                version = response.json().get("Version")
        except (httpx.HTTPError, ValueError) as e:
            log.debug("IPFS API %s unreachable: %s", self.api_url, e)
        return {
            "provider": "local",
            "api_available": api_available,
            "gateway_available": await _gateway_available(self.client, self.gateway_url),
            "version": version,
        }

    def gateway(self, cid: str) -> str:
        return f"{self.gateway_url}/ipfs/{cid}"


class PinataProvider:
    """Pinata pinning service. JSON documents are pinned as JSON, everything else as a file."""

    def __init__(self, jwt: str, gateway_url: str = "https://gateway.pinata.cloud", client=None):
        if not jwt:
            raise ValueError("Pinata JWT is required")
        self.gateway_url = gateway_url.rstrip("/")
        self.client = client if client is not None else httpx.AsyncClient(timeout=60)
        self.headers = {"Authorization": f"Bearer {jwt}"}

    async def upload(self, content: str) -> str:
        try:
            try:
                payload = json.loads(content)
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, (dict, list)):
                response = await self.client.post(
                    f"{PINATA_API_URL}/pinning/pinJSONToIPFS",
                    headers=self.headers,
                    json={
                        "pinataContent": payload,
                        "pinataOptions": {"cidVersion": 1},
                        "pinataMetadata": {"name": f"qci-{int(time.time())}.json"},
                    },
                )
            else:
                response = await self.client.post(
                    f"{PINATA_API_URL}/pinning/pinFileToIPFS",
                    headers=self.headers,
                    files={"file": ("qci.md", content.encode("utf-8"), "text/markdown")},
                    data={"pinataOptions": json.dumps({"cidVersion": 1})},
                )
        except httpx.RequestError as e:
            log.exception(f"Network error uploading to Pinata: {e}")
            raise APIError(f"Network error uploading to Pinata: {e}")
        return _check(response, "pin").json()["IpfsHash"]

    async def fetch(self, cid: str) -> str:
        try:
            response = await self.client.get(self.gateway(cid))
        except httpx.RequestError as e:
            log.exception(f"Network error fetching {cid} from Pinata gateway: {e}")
            raise APIError(f"Network error fetching {cid} from Pinata gateway: {e}")
        return _check(response, "gateway fetch").text

    async def health(self) -> Dict[str, Any]:
        try:
            response = await self.client.get(
                f"{PINATA_API_URL}/data/testAuthentication", headers=self.headers, timeout=HEALTH_TIMEOUT
            )
            api_available = response.is_success
        except httpx.HTTPError as e:
            log.debug("Pinata API unreachable: %s", e)
            api_available = False
        return {
            "provider": "pinata",
            "api_available": api_available,
            "gateway_available": await _gateway_available(self.client, self.gateway_url),
            "version": None,
        }

    def gateway(self, cid: str) -> str:
        return f"{self.gateway_url}/ipfs/{cid}"


class IPFSService:
    def __init__(self, provider, cache: Optional[DictStore] = None, max_concurrency: int = 5):
        self.provider = provider
        self.cache = cache
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def upload_qci_from_content(self, qci: QCIContent) -> Dict[str, str]:
        """Format and upload a document.

        The returned content hash covers title, author, body, created date and
        the upload time, so re-uploading identical text yields a fresh hash.
        """
        full_content = format_qci_content(qci)
        unique = json.dumps(
            {
                "title": qci.title,
                "author": qci.author,
                "content": qci.content,
                "created": qci.created,
                "timestamp": int(time.time() * 1000),
            },
            separators=(",", ":"),
        )
        cid = await self.provider.upload(full_content)
        log.info("Uploaded QCI document %s", cid)
        return {"cid": cid, "ipfs_url": f"{IPFS_PREFIX}{cid}", "content_hash": calculate_content_hash(unique)}

    async def upload_raw_content(self, content: str) -> Dict[str, str]:
        cid = await self.provider.upload(content)
        log.info("Uploaded raw content %s", cid)
        return {"cid": cid, "ipfs_url": f"{IPFS_PREFIX}{cid}", "content_hash": calculate_content_hash(content)}

    async def fetch_qci(self, cid_or_url: str) -> str:
        cid = extract_cid(cid_or_url)
        key = CACHE_KEY_PREFIX + cid
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                log.debug("IPFS cache hit for %s", cid)
                return cached
        async with self._semaphore:
            content = await self.provider.fetch(cid)
        if self.cache is not None:
            self.cache.set(key, content)
        return content

    async def fetch_many(self, cids: Sequence[str]) -> List[Optional[str]]:
        """Fetch several documents concurrently; failed fetches come back as None."""

        async def _one(cid):
            try:
                return await self.fetch_qci(cid)
            except APIError as e:
                log.warning("Could not fetch %s: %s", cid, e)
                return None

        return list(await asyncio.gather(*[_one(c) for c in cids]))

    async def upload_json(self, data: Any) -> str:
        return await self.provider.upload(json.dumps(data, indent=2))

    async def fetch_json(self, cid_or_url: str) -> Any:
        return json.loads(await self.fetch_qci(cid_or_url))

    async def check_health(self) -> Dict[str, Any]:
        """Whether the provider API and its gateway answer."""
        return await self.provider.health()

    async def check_round_trip(self) -> Dict[str, Any]:
        """Upload a throwaway document and read it back through the gateway, bypassing the cache."""
        content = f"IPFS test content - {int(time.time() * 1000)}"
        try:
            cid = await self.provider.upload(content)
        except APIError as e:
            return {"success": False, "error": f"Upload failed: {e}"}
        try:
            response = await self.provider.client.get(self.gateway_url(cid), timeout=ROUND_TRIP_TIMEOUT)
        except httpx.HTTPError as e:
            return {"success": False, "cid": cid, "error": f"Retrieval failed: {e}"}
        if response.is_error:
            return {"success": False, "cid": cid, "error": f"Retrieval failed: {response.status_code}"}
        if response.text != content:
            return {"success": False, "cid": cid, "error": "Content mismatch"}
        return {"success": True, "cid": cid}

    def gateway_url(self, cid_or_url: str) -> str:
        cid = extract_cid(cid_or_url)
        gateway = getattr(self.provider, "gateway", None)
        if gateway is None:
            return f"{DEFAULT_GATEWAY}/ipfs/{cid}"
        return gateway(cid)

    async def close(self):
        await self.provider.client.aclose()


def make_ipfs_service(settings: Settings, cache: Optional[DictStore] = None) -> IPFSService:
    """Local node when QCI_USE_LOCAL_IPFS is set, otherwise Pinata."""
    if settings.use_local_ipfs:
        provider = LocalIPFSProvider(settings.local_ipfs_api, settings.local_ipfs_gateway)
    elif settings.pinata_jwt:
        provider = PinataProvider(settings.pinata_jwt, settings.pinata_gateway)
    else:
        raise ValueError("No IPFS provider configured; set QCI_PINATA_JWT or QCI_USE_LOCAL_IPFS=1")
    return IPFSService(provider, cache=cache)
