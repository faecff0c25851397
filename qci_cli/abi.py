"""ABI fragments for the QCI registry and Multicall3."""

from eth_utils import function_signature_to_4byte_selector

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [o if isinstance(o, dict) else {"name": o[0], "type": o[1]} for o in outputs],
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


_QCI_FIELDS = [
    ("qciNumber", "uint256"),
    ("author", "address"),
    ("title", "string"),
    ("chain", "string"),
    ("contentHash", "bytes32"),
    ("ipfsUrl", "string"),
    ("createdAt", "uint256"),
    ("lastUpdated", "uint256"),
    ("status", "bytes32"),
    ("implementor", "string"),
    ("implementationDate", "uint256"),
    ("snapshotProposalId", "string"),
    ("version", "uint256"),
]

_VERSION_FIELDS = [
    ("contentHash", "bytes32"),
    ("ipfsUrl", "string"),
    ("timestamp", "uint256"),
    ("changeNote", "string"),
]


def _tuple(name, fields, array=False):
    return {
        "name": name,
        "type": "tuple[]" if array else "tuple",
        "components": [f if isinstance(f, dict) else {"name": f[0], "type": f[1]} for f in fields],
    }


_EXPORT_FIELDS = _QCI_FIELDS[:8] + [("statusName", "string")] + _QCI_FIELDS[9:]

REGISTRY_ABI = [
    _fn("qcis", [("", "uint256")], _QCI_FIELDS),
    _fn(
        "createQCI",
        [("_title", "string"), ("_chain", "string"), ("_contentHash", "bytes32"), ("_ipfsUrl", "string")],
        [("", "uint256")],
        "nonpayable",
    ),
    _fn(
        "updateQCI",
        [
            ("_qciNumber", "uint256"),
            ("_title", "string"),
            ("_chain", "string"),
            ("_implementor", "string"),
            ("_newContentHash", "bytes32"),
            ("_newIpfsUrl", "string"),
            ("_changeNote", "string"),
        ],
        mutability="nonpayable",
    ),
    _fn(
        "linkSnapshotProposal",
        [("_qciNumber", "uint256"), ("_snapshotProposalId", "string")],
        mutability="nonpayable",
    ),
    _fn(
        "updateSnapshotProposal",
        [("_qciNumber", "uint256"), ("_newSnapshotProposalId", "string"), ("_reason", "string")],
        mutability="nonpayable",
    ),
    _fn("updateStatus", [("_qciNumber", "uint256"), ("_newStatus", "string")], mutability="nonpayable"),
    _fn(
        "setImplementation",
        [("_qciNumber", "uint256"), ("_implementor", "string"), ("_implementationDate", "uint256")],
        mutability="nonpayable",
    ),
    _fn("verifyContent", [("_qciNumber", "uint256"), ("_content", "string")], [("", "bool")]),
    _fn("nextQCINumber", [], [("", "uint256")]),
    _fn("getQCIsByStatus", [("_status", "string")], [("", "uint256[]")]),
    _fn("getQCIsByAuthor", [("_author", "address")], [("", "uint256[]")]),
    _fn("statusCount", [], [("", "uint256")]),
    _fn("statusAt", [("index", "uint256")], [("", "bytes32")]),
    _fn("getStatusName", [("statusId", "bytes32")], [("", "string")], "pure"),
    _fn("statusExists", [("name", "string")], [("", "bool")]),
    _fn("statusIndexOf", [("name", "string")], [("", "uint256")]),
    _fn("qciVersionCount", [("", "uint256")], [("", "uint256")]),
    _fn("qciVersions", [("", "uint256"), ("", "uint256")], _VERSION_FIELDS),
    _fn(
        "getQCIWithVersions",
        [("_qciNumber", "uint256")],
        [_tuple("qci", _QCI_FIELDS), _tuple("versions", _VERSION_FIELDS, array=True)],
    ),
    _fn(
        "exportQCI",
        [("_qciNumber", "uint256")],
        [
            _tuple(
                "",
                _EXPORT_FIELDS
                + [_tuple("versions", _VERSION_FIELDS, array=True), ("totalVersions", "uint256")],
            )
        ],
    ),
    _fn("paused", [], [("", "bool")]),
    _fn("migrationMode", [], [("", "bool")]),
    _fn("contentHashToQCI", [("", "bytes32")], [("", "uint256")]),
    _event(
        "QCICreated",
        [
            ("qciNumber", "uint256", True),
            ("author", "address", True),
            ("title", "string", False),
            ("network", "string", False),
            ("contentHash", "bytes32", False),
            ("ipfsUrl", "string", False),
        ],
    ),
    _event(
        "QCIUpdated",
        [
            ("qciNumber", "uint256", True),
            ("version", "uint256", False),
            ("newContentHash", "bytes32", False),
            ("newIpfsUrl", "string", False),
            ("changeNote", "string", False),
        ],
    ),
    _event(
        "QCIStatusChanged",
        [("qciNumber", "uint256", True), ("oldStatus", "bytes32", False), ("newStatus", "bytes32", False)],
    ),
    _event(
        "SnapshotProposalLinked",
        [("qciNumber", "uint256", True), ("snapshotProposalId", "string", False)],
    ),
    _event(
        "SnapshotProposalUpdated",
        [
            ("qciNumber", "uint256", True),
            ("oldProposalId", "string", False),
            ("newProposalId", "string", False),
            ("reason", "string", False),
        ],
    ),
]

# Custom errors the registry reverts with, by signature
REGISTRY_ERRORS = [
    "AccessControlBadConfirmation()",
    "AccessControlUnauthorizedAccount(address,bytes32)",
    "AlreadySubmittedToSnapshot()",
    "ChainRequired()",
    "ContentAlreadyExists()",
    "EnforcedPause()",
    "ExpectedPause()",
    "IPFSURLRequired()",
    "InvalidAddress()",
    "InvalidContentHash()",
    "InvalidSnapshotID()",
    "InvalidStatus()",
    "OnlyAuthorOrEditor()",
    "QCIAlreadyExists()",
    "QCIDoesNotExist()",
    "QCIMustBeReadyForSnapshot()",
    "SnapshotAlreadyLinked()",
    "TitleRequired()",
]

ERROR_SELECTORS = {
    "0x" + function_signature_to_4byte_selector(sig).hex(): sig.split("(")[0] for sig in REGISTRY_ERRORS
}

MULTICALL3_ABI = [
    {
        "type": "function",
        "name": "aggregate3",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
            }
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    }
]
