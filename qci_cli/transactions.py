"""
Proposal transactions attached to a QCI document.

Each entry describes one contract call the proposal asks to execute. Entries
are stored in the document's `## Transactions` block as JSON objects:

    {"chainId": 8453, "to": "0x...", "function": "setFee", "args": [30], "value": "0"}

The older `chain:address:function:[arg1,arg2]` form is still accepted on input.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eth_utils import is_hex_address

log = logging.getLogger(__name__)

CHAIN_IDS = {
    "Ethereum": 1,
    "Polygon": 137,
    "Base": 8453,
    "Arbitrum": 42161,
    "Optimism": 10,
    "BSC": 56,
    "Binance": 56,
    "Avalanche": 43114,
    "Metis": 1088,
}

CHAIN_NAMES = {
    1: "Ethereum",
    137: "Polygon",
    8453: "Base",
    42161: "Arbitrum",
    10: "Optimism",
    56: "BSC",
    43114: "Avalanche",
    1088: "Metis",
}

LEGACY_RE = re.compile(r"^([^:]+):([^:]+):([^:]+):\[(.*)\]$", re.DOTALL)
SIGNATURE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")
FIXED_ARRAY_RE = re.compile(r"\[(\d+)\]$")


class TransactionFormatError(ValueError):
    """An entry that is neither a transaction object nor a legacy transaction string."""


@dataclass
class ProposalTransaction:
    chain: str
    contract_address: str
    function_name: str
    args: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": CHAIN_IDS.get(self.chain, self.chain),
            "to": self.contract_address,
            "function": self.function_name,
            "args": self.args,
            "value": "0",
        }


def format_transaction(tx: ProposalTransaction) -> str:
    """JSON text of a transaction, as stored in the document."""
    return json.dumps(tx.to_dict(), indent=2, ensure_ascii=False)


def _split_args(text: str) -> List[str]:
    parts = []
    current = ""
    depth = 0
    for char in text:
        if char in "{[(":
            depth += 1
        elif char in "}])":
            depth -= 1
        if char == "," and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += char
    if current:
        parts.append(current.strip())
    return parts


def _parse_arg(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _from_object(data: Dict[str, Any]) -> Optional[ProposalTransaction]:
    chain = data.get("chain")
    chain_id = data.get("chainId")
    address = data.get("to") or data.get("address") or data.get("contractAddress")
    function_name = data.get("function") or data.get("functionName")
    if not (chain or chain_id) or not address or not function_name:
        return None
    if isinstance(chain_id, int) and not isinstance(chain_id, bool):
        chain = CHAIN_NAMES.get(chain_id, f"Chain {chain_id}")
    elif not chain:
        chain = str(chain_id)
    return ProposalTransaction(chain, address, function_name, list(data.get("args") or []))


def parse_transaction(entry: Any) -> ProposalTransaction:
    """Read a transaction from a dict, its JSON text, or the legacy colon form.

    Raises:
        TransactionFormatError: If the entry matches none of these forms.
    """
    if isinstance(entry, ProposalTransaction):
        return entry
    if isinstance(entry, dict):
        tx = _from_object(entry)
        if tx is None:
            raise TransactionFormatError(f"Transaction needs chain, to and function: {entry}")
        return tx
    if not isinstance(entry, str):
        raise TransactionFormatError(f"Invalid transaction format: {entry!r}")

    text = entry.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        tx = _from_object(data)
        if tx is not None:
            return tx

    match = LEGACY_RE.match(text)
    if not match:
        raise TransactionFormatError(f"Invalid transaction format: {text[:80]}")
    chain, address, function_name, args_text = match.groups()
    args = [_parse_arg(part) for part in _split_args(args_text)] if args_text else []
    return ProposalTransaction(chain, address, function_name, args)


def validate_input(value: Any, abi_type: str) -> Any:
    """Check one argument against a Solidity type and return it in JSON form.

    Raises:
        ValueError: With a message describing what the type expects.
    """
    if abi_type.endswith("]"):
        base_type = abi_type[: abi_type.rindex("[")]
        items = value
        if isinstance(value, str):
            try:
                items = json.loads(value)
            except json.JSONDecodeError:
                raise ValueError('Invalid array format. Use JSON array syntax: ["item1", "item2"]')
        if not isinstance(items, list):
            raise ValueError("Value must be an array")
        fixed = FIXED_ARRAY_RE.search(abi_type)
        if fixed and len(items) != int(fixed.group(1)):
            raise ValueError(f"Array must have exactly {fixed.group(1)} elements")
        parsed = []
        for item in items:
            try:
                parsed.append(validate_input(item, base_type))
            except ValueError as e:
                raise ValueError(f"Array element invalid: {e}")
        return parsed

    if abi_type.startswith("tuple") or abi_type.startswith("("):
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, json.JSONDecodeError):
            raise ValueError("Invalid tuple format. Use JSON object syntax")

    if abi_type == "address":
        if not isinstance(value, str) or not is_hex_address(value):
            raise ValueError("Invalid address format (must be 0x followed by 40 hex characters)")
        return value

    if abi_type == "bool":
        if isinstance(value, bool):
            return value
        if value not in ("true", "false"):
            raise ValueError('Value must be "true" or "false"')
        return value == "true"

    if abi_type == "string":
        if not isinstance(value, str):
            raise ValueError("Value must be a string")
        return value

    if abi_type == "bytes":
        if not isinstance(value, str) or not re.fullmatch(r"0x[0-9a-fA-F]*", value):
            raise ValueError("Bytes must start with 0x followed by hex characters")
        return value

    if abi_type.startswith("bytes"):
        size = int(abi_type[5:]) if abi_type[5:].isdigit() else 0
        if 1 <= size <= 32:
            if not isinstance(value, str) or not re.fullmatch(r"0x[0-9a-fA-F]+", value):
                raise ValueError(f"{abi_type} must start with 0x followed by hex characters")
            if len(value) != 2 + size * 2:
                raise ValueError(f"{abi_type} must be exactly {2 + size * 2} characters (0x + {size * 2} hex chars)")
            return value

    if abi_type.startswith("uint") or abi_type.startswith("int"):
        unsigned = abi_type.startswith("uint")
        bits_text = abi_type[4:] if unsigned else abi_type[3:]
        bits = int(bits_text) if bits_text.isdigit() else 256
        if isinstance(value, bool):
            raise ValueError("Invalid number format")
        text = str(value).strip()
        try:
            number = int(text, 16) if text.lower().startswith(("0x", "-0x")) else int(text)
        except ValueError:
            raise ValueError("Invalid number format")
        if unsigned and number < 0:
            raise ValueError("Unsigned integer cannot be negative")
        low, high = (0, 2**bits - 1) if unsigned else (-(2 ** (bits - 1)), 2 ** (bits - 1) - 1)
        if not low <= number <= high:
            raise ValueError(f"Value out of range for {abi_type}")
        return value

    raise ValueError(f"Unsupported type: {abi_type}")


def _split_types(text: str) -> List[str]:
    return _split_args(text.replace(" ", "")) if text.strip() else []


def validate_transaction(tx: ProposalTransaction) -> ProposalTransaction:
    """Check the target address and, when the function is given as a full signature, each argument.

    `function` may be a bare name (`setFee`) or a signature (`setFee(uint256)`);
    with a signature the argument count and types are checked.

    Raises:
        TransactionFormatError: Describing the first problem found.
    """
    if not is_hex_address(tx.contract_address):
        raise TransactionFormatError(f"Invalid contract address: {tx.contract_address}")
    match = SIGNATURE_RE.match(tx.function_name)
    if match is None:
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", tx.function_name):
            raise TransactionFormatError(f"Invalid function name: {tx.function_name}")
        return tx
    types = _split_types(match.group(2))
    if len(types) != len(tx.args):
        raise TransactionFormatError(f"{tx.function_name} takes {len(types)} argument(s), got {len(tx.args)}")
    args = []
    for i, (value, abi_type) in enumerate(zip(tx.args, types)):
        try:
            args.append(validate_input(value, abi_type))
        except ValueError as e:
            raise TransactionFormatError(f"{tx.function_name} argument {i} ({abi_type}): {e}")
    return ProposalTransaction(tx.chain, tx.contract_address, tx.function_name, args)


def load_transactions(text: str) -> List[str]:
    """Parse and validate a transactions file; returns the entries as document JSON text.

    The file is a JSON array of transaction objects (or a single object), or
    one legacy `chain:address:function:[args]` entry per line.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        entries = [data]
    elif isinstance(data, list):
        entries = data
    else:
        entries = [line for line in text.splitlines() if line.strip() and not line.lstrip().startswith("#")]
    formatted = [format_transaction(validate_transaction(parse_transaction(entry))) for entry in entries]
    log.debug("Loaded %d proposal transaction(s)", len(formatted))
    return formatted
