"""Typed records passed between the registry client, the REST API client and the CLI."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from web3 import Web3

from qci_cli.status import QCIStatus, resolve_status, status_name


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value or ""


@dataclass
class QCI:
    """A registry record as stored on chain."""

    qci_number: int
    author: str
    title: str
    chain: str
    content_hash: str
    ipfs_url: str
    created_at: int
    last_updated: int
    status: QCIStatus
    implementor: str
    implementation_date: int
    snapshot_proposal_id: str
    version: int

    @classmethod
    def from_contract(cls, raw) -> "QCI":
        """Build from the 13-field tuple returned by `qcis(uint256)`."""
        qci_number = int(raw[0])
        return cls(
            qci_number=qci_number,
            author=raw[1],
            title=raw[2],
            chain=raw[3],
            content_hash=_hex(raw[4]),
            ipfs_url=raw[5],
            created_at=int(raw[6]),
            last_updated=int(raw[7]),
            status=resolve_status(raw[8], qci_number),
            implementor=raw[9],
            implementation_date=int(raw[10]),
            snapshot_proposal_id=raw[11],
            version=int(raw[12]),
        )

    @property
    def status_name(self) -> str:
        return status_name(self.status)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status_name
        data["status_code"] = int(self.status)
        return data


@dataclass
class QCIVersion:
    content_hash: str
    ipfs_url: str
    timestamp: int
    change_note: str

    @classmethod
    def from_contract(cls, raw) -> "QCIVersion":
        return cls(_hex(raw[0]), raw[1], int(raw[2]), raw[3])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QCIExportData:
    """Result of `exportQCI`: the record with a resolved status name and its full history."""

    qci_number: int
    author: str
    title: str
    chain: str
    content_hash: str
    ipfs_url: str
    created_at: int
    last_updated: int
    status_name: str
    implementor: str
    implementation_date: int
    snapshot_proposal_id: str
    version: int
    versions: List[QCIVersion] = field(default_factory=list)
    total_versions: int = 0

    @classmethod
    def from_contract(cls, raw) -> "QCIExportData":
        return cls(
            qci_number=int(raw[0]),
            author=raw[1],
            title=raw[2],
            chain=raw[3],
            content_hash=_hex(raw[4]),
            ipfs_url=raw[5],
            created_at=int(raw[6]),
            last_updated=int(raw[7]),
            status_name=raw[8],
            implementor=raw[9],
            implementation_date=int(raw[10]),
            snapshot_proposal_id=raw[11],
            version=int(raw[12]),
            versions=[QCIVersion.from_contract(v) for v in raw[13]],
            total_versions=int(raw[14]),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["versions"] = [v.to_dict() for v in self.versions]
        return data


@dataclass
class QCIContent:
    """Editable document fields, rendered as markdown frontmatter plus body."""

    qci: int
    title: str
    chain: str
    content: str
    status: str = "Draft"
    author: str = ""
    implementor: str = "None"
    implementation_date: str = "None"
    proposal: str = "None"
    created: str = ""
    transactions: Optional[List[Any]] = None


@dataclass
class QCIData:
    """Display record shared by the API and on-chain read paths."""

    qci_number: int
    title: str
    chain: str
    status: str
    status_code: int
    author: str
    implementor: str = "None"
    implementation_date: str = "None"
    proposal: str = "None"
    created: str = "None"
    content: str = ""
    ipfs_url: str = ""
    content_hash: str = ""
    version: int = 1
    source: str = "blockchain"
    last_updated: int = 0
    author_address: Optional[str] = None
    snapshot_proposal_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TxResult:
    tx_hash: str
    qci_number: Optional[int] = None
    block_number: Optional[int] = None
    status: str = "submitted"
    version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Page:
    items: List[Any]
    total_count: int
    current_page: int
    total_pages: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() if hasattr(i, "to_dict") else i for i in self.items],
            "total_count": self.total_count,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }
