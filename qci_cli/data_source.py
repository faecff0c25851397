import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from qci_cli.api_client import APIError, RegistryAPIClient
from qci_cli.client import QCIRegistryClient, RegistryError
from qci_cli.content import ContentFormatError, parse_qci_markdown
from qci_cli.ipfs import IPFSService
from qci_cli.models import QCI, Page, QCIData
from qci_cli.status import ACTIVE_STATUSES, status_display_name

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10


def _date(timestamp: int) -> str:
    if not timestamp:
        return "None"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def qci_to_data(qci: QCI, document: Optional[str] = None) -> QCIData:
    """Display record for an on-chain QCI, enriched from its IPFS document when given."""
    frontmatter: Dict[str, str] = {}
    body = ""
    if document:
        try:
            frontmatter, body = parse_qci_markdown(document)
        except ContentFormatError:
            log.debug("QCI %s document has no frontmatter, using it as the body", qci.qci_number)
            body = document
    return QCIData(
        qci_number=qci.qci_number,
        title=qci.title,
        chain=qci.chain,
        status=status_display_name(qci.status),
        status_code=int(qci.status),
        author=frontmatter.get("author") or qci.author,
        author_address=qci.author,
        implementor=qci.implementor or "None",
        implementation_date=_date(qci.implementation_date),
        proposal=qci.snapshot_proposal_id or "None",
        created=frontmatter.get("created") or _date(qci.created_at),
        content=body,
        ipfs_url=qci.ipfs_url,
        content_hash=qci.content_hash,
        version=qci.version,
        source="blockchain",
        last_updated=qci.last_updated * 1000,
    )


class QCIDataSource:
    """Reads QCIs from the REST API when it is reachable, otherwise from the chain.

    The API answers with every record in one request. The chain path collects
    numbers per status, reads records through the registry's multicall batches,
    and pulls documents from IPFS when an IPFSService is configured.
    """

    def __init__(
        self,
        registry: QCIRegistryClient,
        api: Optional[RegistryAPIClient] = None,
        ipfs: Optional[IPFSService] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.registry = registry
        self.api = api
        self.ipfs = ipfs
        self.page_size = page_size
        self._memo: Dict[int, QCIData] = {}

    async def _documents(self, qcis: Sequence[QCI]) -> List[Optional[str]]:
        if self.ipfs is None:
            return [None] * len(qcis)
        return await self.ipfs.fetch_many([q.ipfs_url for q in qcis])

    async def _from_chain(self, qcis: Sequence[QCI], include_content: bool) -> List[QCIData]:
        documents = await self._documents(qcis) if include_content else [None] * len(qcis)
        return [qci_to_data(q, d) for q, d in zip(qcis, documents)]

    async def fetch_all(self, include_content: bool = False, force_refresh: bool = False) -> List[QCIData]:
        """Every QCI, newest first."""
        if self.api is not None:
            try:
                response = await self.api.fetch_qcis(include_content=include_content, force_refresh=force_refresh)
                records = [RegistryAPIClient.to_qci_data(q) for q in response.qcis]
                return sorted(records, key=lambda r: r.qci_number, reverse=True)
            except APIError as e:
                log.warning("API unavailable (%s), reading QCIs from chain", e)
        numbers = await self.registry.get_all_qci_numbers()
        qcis = await self.registry.get_qcis_batch(numbers)
        records = await self._from_chain(qcis, include_content)
        return sorted(records, key=lambda r: r.qci_number, reverse=True)

    async def fetch_qci(self, qci_number: int, refresh: bool = False) -> Optional[QCIData]:
        """One QCI with its document. Results are memoized per instance."""
        if not refresh and qci_number in self._memo:
            return self._memo[qci_number]
        record = None
        if self.api is not None:
            try:
                api_qci = await self.api.fetch_qci(qci_number)
                if api_qci is not None:
                    record = RegistryAPIClient.to_qci_data(api_qci)
            except APIError as e:
                log.warning("API unavailable (%s), reading QCI %s from chain", e, qci_number)
        if record is None:
            try:
                qci = await self.registry.get_qci(qci_number)
            except RegistryError as e:
                if e.error_name == "QCIDoesNotExist":
                    return None
                raise
            (record,) = await self._from_chain([qci], include_content=True)
        self._memo[qci_number] = record
        return record

    async def fetch_page(self, page: int = 1, page_size: Optional[int] = None, include_content: bool = False) -> Page:
        """A page of QCIs (1-based), newest first, read from the chain."""
        page_size = page_size or self.page_size
        if page < 1:
            raise ValueError("page must be >= 1")
        numbers = await self.registry.get_all_qci_numbers()
        total = len(numbers)
        total_pages = math.ceil(total / page_size) if total else 0
        start = (page - 1) * page_size
        selected = numbers[start : start + page_size]
        qcis = await self.registry.get_qcis_batch(selected) if selected else []
        items = await self._from_chain(qcis, include_content)
        items.sort(key=lambda r: r.qci_number, reverse=True)
        return Page(
            items=items,
            total_count=total,
            current_page=page,
            total_pages=total_pages,
            has_more=start + page_size < total,
        )

    async def status_counts(self) -> Dict[str, int]:
        by_status = await self.registry.get_all_qcis_by_status_batch()
        return {status_display_name(s): len(by_status.get(s, [])) for s in ACTIVE_STATUSES}
