"""
QCI document formatting.

A QCI document is markdown with a small `key: value` frontmatter block and an
optional `## Transactions` JSON block. The registry stores keccak256 of the
body alone; format_qci_content() output is what gets pinned to IPFS and must
stay byte-for-byte stable.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import keccak
from web3 import Web3

from qci_cli.models import QCIContent, QCIData, QCIExportData
from qci_cli.status import ACTIVE_STATUSES, status_name

log = logging.getLogger(__name__)

FRONTMATTER_RE = re.compile(r"^---\n([\s\S]+?)\n---\n([\s\S]*)$")
TRANSACTIONS_RE = re.compile(r"(?:^|\n\n)## Transactions\n\n```json\n([\s\S]*?)\n```$")

VALID_CHAINS = [
    "Ethereum",
    "Base",
    "Polygon PoS",
    "Linea",
    "BNB",
    "Metis",
    "Optimism",
    "Arbitrum",
    "Avalanche",
    "Polygon zkEVM",
    "Gnosis",
    "Kava",
]

EXPORT_VERSION = "1.0"


class ContentFormatError(ValueError):
    """Raised for documents without a frontmatter block."""


def calculate_content_hash(content: str) -> str:
    """keccak256 of the UTF-8 encoded content, as 0x-prefixed hex."""
    return Web3.to_hex(keccak(text=content))


def verify_content_hash(content: str, expected_hash: str) -> bool:
    return calculate_content_hash(content).lower() == (expected_hash or "").lower()


def _json_transactions(transactions: List[Any]) -> List[Any]:
    parsed = []
    for tx in transactions:
        if isinstance(tx, str):
            try:
                parsed.append(json.loads(tx))
            except json.JSONDecodeError:
                log.debug("Dropping non-JSON transaction entry: %r", tx[:80])
        elif isinstance(tx, (dict, list)):
            parsed.append(tx)
    return parsed


def format_qci_content(qci: QCIContent) -> str:
    """Render a QCI as frontmatter + body, with an optional `## Transactions` JSON block."""
    text = (
        "---\n"
        f"qci: {qci.qci}\n"
        f"title: {qci.title}\n"
        f"chain: {qci.chain}\n"
        f"status: {qci.status}\n"
        f"author: {qci.author}\n"
        f"implementor: {qci.implementor}\n"
        f"implementation-date: {qci.implementation_date}\n"
        f"proposal: {qci.proposal}\n"
        f"created: {qci.created}\n"
        "---\n"
        "\n"
        f"{qci.content}"
    )
    if qci.transactions:
        text += "\n\n## Transactions\n\n```json\n"
        text += json.dumps(_json_transactions(qci.transactions), indent=2, ensure_ascii=False)
        text += "\n```\n"
    return text


def generate_markdown(frontmatter: Dict[str, Any], content: str) -> str:
    lines = "\n".join(f"{key}: {value}" for key, value in frontmatter.items())
    return f"---\n{lines}\n---\n\n{content}"


def parse_qci_markdown(markdown: str) -> Tuple[Dict[str, str], str]:
    """Split a document into (frontmatter, body).

    Raises:
        ContentFormatError: If the document has no frontmatter block.
    """
    match = FRONTMATTER_RE.match(markdown)
    if not match:
        raise ContentFormatError("Invalid QCI format: missing frontmatter")
    frontmatter = {}
    for line in match.group(1).split("\n"):
        key, sep, value = line.partition(":")
        if sep and key.strip():
            frontmatter[key.strip()] = value.strip()
    return frontmatter, match.group(2).strip()


def split_transactions(body: str) -> Tuple[str, List[Any]]:
    """Separate a trailing `## Transactions` JSON block from the body.

    A block whose JSON does not parse to a list is left in the body.
    """
    match = TRANSACTIONS_RE.search(body)
    if not match:
        return body, []
    try:
        transactions = json.loads(match.group(1))
    except json.JSONDecodeError:
        log.debug("Transactions block is not valid JSON, keeping it in the body")
        return body, []
    if not isinstance(transactions, list):
        return body, []
    return body[: match.start()].rstrip(), transactions


def content_from_markdown(markdown: str) -> QCIContent:
    """Parse a document back into QCIContent, with the transactions block split out of the body."""
    fm, body = parse_qci_markdown(markdown)
    body, transactions = split_transactions(body)
    qci = fm.get("qci", "0")
    return QCIContent(
        qci=int(qci) if qci.isdigit() else 0,
        title=fm.get("title", ""),
        chain=fm.get("chain") or fm.get("network", ""),
        content=body,
        status=fm.get("status", "Draft"),
        author=fm.get("author", ""),
        implementor=fm.get("implementor", "None"),
        implementation_date=fm.get("implementation-date", "None"),
        proposal=fm.get("proposal", "None"),
        created=fm.get("created", ""),
        transactions=transactions or None,
    )


def _utc_iso(timestamp_ms: Optional[float] = None) -> str:
    if timestamp_ms is None:
        dt = datetime.now(timezone.utc)
    else:
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_qci_as_markdown(qci: QCIData, include_metadata: bool = True) -> str:
    """Markdown export of a display record, optionally with version/ipfs keys and export comments."""
    lines = [
        "---",
        f"qci: {qci.qci_number}",
        f"title: {qci.title}",
        f"chain: {qci.chain}",
        f"status: {qci.status}",
        f"author: {qci.author}",
        f"implementor: {qci.implementor or 'None'}",
        f"implementation-date: {qci.implementation_date or 'None'}",
        f"proposal: {qci.proposal or 'None'}",
        f"created: {qci.created}",
    ]
    if include_metadata:
        lines += [f"version: {qci.version or 1}", f"ipfs: {qci.ipfs_url or ''}"]
    lines += ["---", ""]
    markdown = "\n".join(lines) + (qci.content or "")
    if include_metadata:
        markdown += "\n\n<!-- Export Metadata -->\n"
        markdown += f"<!-- Exported from QCI Registry at {_utc_iso()} -->\n"
        if qci.version and qci.version > 1:
            markdown += f"<!-- Version {qci.version} -->\n"
    return markdown


def format_qci_as_json(
    qci: QCIData,
    export_data: Optional[QCIExportData] = None,
    contract_address: Optional[str] = None,
) -> Dict[str, Any]:
    data = {
        "metadata": {
            "exportedAt": _utc_iso(),
            "contractAddress": contract_address or "",
            "chain": "Base",
            "exportVersion": EXPORT_VERSION,
        },
        "qci": {
            "qciNumber": qci.qci_number,
            "title": qci.title,
            "chain": qci.chain,
            "status": qci.status,
            "author": qci.author,
            "implementor": qci.implementor or "None",
            "implementationDate": qci.implementation_date or "None",
            "snapshotProposalId": qci.proposal or "None",
            "created": qci.created,
            "lastUpdated": _utc_iso(qci.last_updated or None),
            "version": qci.version or 1,
            "ipfsUrl": qci.ipfs_url or "",
            "contentHash": qci.content_hash or "",
            "content": qci.content or "",
        },
    }
    if export_data and export_data.versions:
        data["versions"] = [
            {
                "version": i + 1,
                "contentHash": v.content_hash,
                "ipfsUrl": v.ipfs_url,
                "timestamp": _utc_iso(v.timestamp * 1000),
                "changeNote": v.change_note,
            }
            for i, v in enumerate(export_data.versions)
        ]
    return data


def validate_import_data(data: Any) -> Tuple[bool, List[str]]:
    """Check an exported JSON document before importing it. Returns (valid, errors)."""
    if not isinstance(data, dict):
        return False, ["Invalid data format: expected JSON object"]
    qci = data.get("qci")
    if not qci:
        return False, ["Missing required field: qci"]

    errors = []
    for name in ("title", "chain", "content"):
        if not qci.get(name):
            errors.append(f"Missing required QCI field: {name}")
    chain = qci.get("chain")
    if chain and chain not in VALID_CHAINS:
        errors.append(f"Invalid chain: {chain}. Must be one of: {', '.join(VALID_CHAINS)}")
    status = qci.get("status")
    valid_statuses = [status_name(s) for s in ACTIVE_STATUSES]
    if status and status not in valid_statuses:
        errors.append(f"Invalid status: {status}. Must be one of: {', '.join(valid_statuses)}")
    return not errors, errors


def convert_import_to_editor_format(data: Dict[str, Any]) -> Dict[str, Any]:
    qci = data["qci"]
    implementor = qci.get("implementor", "")
    return {
        "title": qci["title"],
        "chain": qci["chain"],
        "content": qci["content"],
        "implementor": "" if implementor == "None" else implementor,
        "qci_number": qci.get("qciNumber"),
    }


def generate_export_filename(qci_number: int, fmt: str, version: Optional[int] = None) -> str:
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    version_str = f"-v{version}" if version and version > 1 else ""
    if fmt == "md":
        return f"QCI-{qci_number}{version_str}-{date}.md"
    if fmt == "json":
        return f"QCI-{qci_number}{version_str}-export-{date}.json"
    if fmt == "archive":
        return f"QCI-{qci_number}-archive-{date}.zip"
    return f"QCI-{qci_number}-{date}.txt"
