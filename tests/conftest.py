import pytest
from hexbytes import HexBytes

from qci_cli.models import QCI
from qci_cli.status import STATUS_CONFIG, QCIStatus

REGISTRY = "0xf5d5eeb5e7f6a3d5f0d9a4e6b9c3a2d1e0f9b233"
AUTHOR = "0x1111111111111111111111111111111111111111"
CONTENT_HASH = "0x" + "ab" * 32


@pytest.fixture
def make_qci():
    """Factory for on-chain records."""

    def _make(number: int, status: QCIStatus = QCIStatus.DRAFT, **overrides) -> QCI:
        values = dict(
            qci_number=number,
            author=AUTHOR,
            title=f"QCI {number}",
            chain="Base",
            content_hash=CONTENT_HASH,
            ipfs_url=f"ipfs://bafy{number}",
            created_at=1700000000,
            last_updated=1700000100,
            status=status,
            implementor="",
            implementation_date=0,
            snapshot_proposal_id="",
            version=1,
        )
        values.update(overrides)
        return QCI(**values)

    return _make


@pytest.fixture
def raw_qci():
    """Factory for the tuple `qcis(uint256)` returns."""

    def _raw(number: int, status: QCIStatus = QCIStatus.DRAFT, version: int = 1):
        return (
            number,
            AUTHOR,
            f"QCI {number}",
            "Base",
            HexBytes(CONTENT_HASH),
            f"ipfs://bafy{number}",
            1700000000,
            1700000100,
            HexBytes(STATUS_CONFIG[status].hash),
            "",
            0,
            "",
            version,
        )

    return _raw
