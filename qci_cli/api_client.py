import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from httpx import AsyncClient

from qci_cli.models import QCIData
from qci_cli.status import QCIStatus, resolve_status, status_by_name, status_display_name

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.mai.finance"
DEFAULT_TIMEOUT = 30
# First record number in the registry; anything lower is a data problem upstream.
FIRST_QCI_NUMBER = 209
TEAM_ADDRESS = "0x0000000000000000000000000000000000000001"
PLACEHOLDER_PROPOSALS = ("", "None", "N/A", "TBU", "tbu")
PROPOSAL_ID_RE = re.compile(r"proposal/(0x[a-fA-F0-9]+)")


class APIError(Exception):
    """Custom exception for API-related errors."""

    def __init__(self, message: str, response: Optional[httpx.Response] = None):
        super().__init__(message)
        self.response = response


@dataclass
class APIResponse:
    qcis: List[Dict[str, Any]]
    total_count: int
    last_updated: int
    chain_id: Optional[int] = None
    contract_address: Optional[str] = None
    cached: bool = False
    cache_timestamp: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "APIResponse":
        qcis = data.get("qcis")
        if qcis is None:
            qcis = data.get("qips", [])
        return cls(
            qcis=qcis,
            total_count=data.get("totalCount", len(qcis)),
            last_updated=data.get("lastUpdated", 0),
            chain_id=data.get("chainId"),
            contract_address=data.get("contractAddress"),
            cached=bool(data.get("cached", False)),
            cache_timestamp=data.get("cacheTimestamp"),
            raw=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qcis": self.qcis,
            "total_count": self.total_count,
            "last_updated": self.last_updated,
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "cached": self.cached,
            "cache_timestamp": self.cache_timestamp,
        }


def _number(api_qci: Dict[str, Any]) -> int:
    return int(api_qci.get("qciNumber", api_qci.get("qipNumber", 0)))


def _date(timestamp: Optional[int]) -> str:
    if not timestamp or timestamp <= 0:
        return "None"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def _proposal_id(value: Optional[str]) -> str:
    if value is None or value in PLACEHOLDER_PROPOSALS:
        return "None"
    match = PROPOSAL_ID_RE.search(value)
    return match.group(1) if match else value


def _author_display(author: Optional[str]) -> str:
    if author and author.startswith("0x"):
        if author.lower() == TEAM_ADDRESS:
            return "QiDao Team"
        return f"{author[:6]}...{author[-4:]}"
    return author or ""


class RegistryAPIClient:
    """Client for the caching REST API that mirrors the registry.

    The API serves every record in one response (optionally with IPFS content),
    which is much faster than reading the chain record by record.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        client: Optional[AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client if client is not None else httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a standardized API request with error handling.

        Raises:
            APIError: If the request fails or a network error occurs.
        """
        try:
            log.info(f"Making request to {method} {endpoint} with params {params}")
            if method.upper() != "GET":
                raise ValueError(f"Unsupported HTTP method: {method}")
            response = await self.client.get(endpoint, params=params, headers={"Accept": "application/json"})

            if response.is_error:
                error_msg = f"API request failed: {method} {endpoint} - Status: {response.status_code}"
                try:
                    detail = response.json().get("detail")
                    if detail:
                        error_msg += f" - {detail}"
                except (ValueError, AttributeError):
                    error_msg += f", Content: {response.text[:200]}"
                log.error(error_msg)
                raise APIError(error_msg, response)

            return response.json()

        except httpx.RequestError as e:
            error_msg = f"Network error during {method} {endpoint}: {e}"
            log.exception(error_msg)
            raise APIError(error_msg)
        except ValueError as e:
            error_msg = f"Invalid response during {method} {endpoint}: {e}"
            log.exception(error_msg)
            raise APIError(error_msg)

    async def fetch_qcis(
        self,
        include_content: bool = False,
        content_for: Optional[Sequence[int]] = None,
        force_refresh: bool = False,
        mock_mode: bool = False,
    ) -> APIResponse:
        """Fetch every record from `/v2/qcis`.

        Args:
            include_content: Include IPFS content for all records (slow).
            content_for: Include IPFS content only for these numbers.
            force_refresh: Bypass the API cache.
            mock_mode: Ask the API for mock data (development only).
        """
        params = {}
        if include_content:
            params["includeContent"] = "true"
        if content_for:
            params["contentFor"] = ",".join(str(n) for n in content_for)
        if force_refresh:
            params["forceRefresh"] = "true"
        if mock_mode:
            params["mockMode"] = "true"

        data = await self._make_api_request("GET", "/v2/qcis", params=params or None)
        result = APIResponse.from_json(data)
        log.info("Received %d QCIs (cached: %s)", len(result.qcis), result.cached)
        if result.qcis:
            lowest = min(_number(q) for q in result.qcis)
            if lowest < FIRST_QCI_NUMBER:
                log.warning("Found QCI %s which is below expected minimum of %s", lowest, FIRST_QCI_NUMBER)
        return result

    async def fetch_qci(self, qci_number: int) -> Optional[Dict[str, Any]]:
        """A single record, with its content."""
        response = await self.fetch_qcis(content_for=[qci_number])
        for qci in response.qcis:
            if _number(qci) == qci_number:
                return qci
        return None

    async def get_qcis_by_status(self, status: QCIStatus) -> List[Dict[str, Any]]:
        response = await self.fetch_qcis()
        return [q for q in response.qcis if resolve_status(q.get("statusCode", q.get("status"))) == status]

    @staticmethod
    def status_string_to_enum(status: str) -> QCIStatus:
        found = status_by_name(status)
        return found if found is not None else QCIStatus.DRAFT

    @staticmethod
    def status_enum_to_display(status: Any) -> str:
        return status_display_name(status)

    @staticmethod
    def to_qci_data(api_qci: Dict[str, Any]) -> QCIData:
        """Convert an API record into the display record used across the CLI."""
        number = _number(api_qci)
        if "statusCode" in api_qci:
            status = resolve_status(api_qci["statusCode"], number)
        else:
            status = RegistryAPIClient.status_string_to_enum(api_qci.get("status", ""))
        return QCIData(
            qci_number=number,
            title=api_qci.get("title", ""),
            chain=api_qci.get("chain") or api_qci.get("network", ""),
            status=status_display_name(status),
            status_code=int(status),
            author=_author_display(api_qci.get("author")),
            author_address=api_qci.get("author"),
            implementor=api_qci.get("implementor") or "None",
            implementation_date=_date(api_qci.get("implementationDate")),
            proposal=_proposal_id(api_qci.get("snapshotProposalId")),
            created=_date(api_qci.get("createdAt")),
            content=api_qci.get("content") or "",
            ipfs_url=api_qci.get("ipfsUrl", ""),
            content_hash=api_qci.get("contentHash", ""),
            version=int(api_qci.get("version") or 1),
            source="api",
            last_updated=int(api_qci.get("lastUpdated") or 0) * 1000,
            snapshot_proposal_url=api_qci.get("snapshotProposalId"),
        )

    async def close(self):
        """Close the HTTP client with proper logging."""
        await self.client.aclose()
        log.info("HTTP client closed")


_clients: Dict[str, RegistryAPIClient] = {}


def get_api_client(base_url: Optional[str] = None) -> RegistryAPIClient:
    """Shared client per base URL."""
    base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
    client = _clients.get(base_url)
    if client is None:
        client = _clients[base_url] = RegistryAPIClient(base_url)
    return client
