"""
Settings for the QCI tools.

Values are layered: built-in defaults, then an optional TOML file
(~/.qci/config.toml, or the path in QCI_CONFIG), then QCI_* environment
variables, then explicit keyword overrides (typically parsed CLI options).
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from qci_cli.persistence import QCI_DIR

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = os.path.join(QCI_DIR, "config.toml")
DEFAULT_API_URL = "https://api.mai.finance"
LOCAL_RPC_URL = "http://localhost:8545"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

BASE_CHAIN_ID = 8453
BASE_SEPOLIA_CHAIN_ID = 84532

CONTRACT_ADDRESSES = {
    BASE_CHAIN_ID: "0xf5D5CdccEe171F02293337b7F3eda4D45B85B233",
    BASE_SEPOLIA_CHAIN_ID: ZERO_ADDRESS,
}

BASE_RPC_ENDPOINTS = [
    "https://mainnet.base.org",
    "https://base.llamarpc.com",
    "https://base-mainnet.public.blastapi.io",
    "https://base.blockpi.network/v1/rpc/public",
    "https://base.meowrpc.com",
    "https://base.publicnode.com",
    "https://1rpc.io/base",
]

LOCAL_HOSTS = ("localhost", "127.0.0.1")

# Environment variable -> Settings field
ENV_VARS = {
    "QCI_REGISTRY_ADDRESS": "registry_address",
    "QCI_CHAIN_ID": "chain_id",
    "QCI_RPC_URL": "rpc_url",
    "QCI_RPC_URLS": "rpc_urls",
    "QCI_LOCAL_MODE": "local_mode",
    "QCI_TESTNET": "testnet",
    "QCI_API_URL": "api_url",
    "PRIVATE_KEY": "private_key",
    "QCI_PRIVATE_KEY": "private_key",
    "QCI_USE_LOCAL_IPFS": "use_local_ipfs",
    "QCI_LOCAL_IPFS_API": "local_ipfs_api",
    "QCI_LOCAL_IPFS_GATEWAY": "local_ipfs_gateway",
    "QCI_PINATA_JWT": "pinata_jwt",
    "QCI_PINATA_GATEWAY": "pinata_gateway",
    "QCI_CACHE_PATH": "cache_path",
    "QCI_RECEIPT_TIMEOUT": "receipt_timeout",
    "QCI_RPC_RETRIES": "rpc_retries",
    "QCI_BATCH_SIZE": "batch_size",
    "NO_WAIT_TX": "no_wait",
}


class ConfigError(Exception):
    """Raised for settings that cannot be used (unknown chain, unreadable config file)."""


@dataclass
class Settings:
    registry_address: Optional[str] = None
    chain_id: int = BASE_CHAIN_ID
    rpc_url: Optional[str] = None
    rpc_urls: List[str] = field(default_factory=list)
    local_mode: bool = False
    testnet: bool = False
    api_url: str = DEFAULT_API_URL
    private_key: Optional[str] = None
    use_local_ipfs: bool = False
    local_ipfs_api: str = "http://localhost:5001"
    local_ipfs_gateway: str = "http://localhost:8080"
    pinata_jwt: Optional[str] = None
    pinata_gateway: str = "https://gateway.pinata.cloud"
    cache_path: Optional[str] = None
    receipt_timeout: float = 20.0
    rpc_retries: int = 3
    batch_size: int = 3
    no_wait: bool = False


_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    if kind in (bool, "bool"):
        return _parse_bool(value)
    if kind in (int, "int"):
        return int(value)
    if kind in (float, "float"):
        return float(value)
    if name == "rpc_urls":
        if isinstance(value, str):
            return [u.strip() for u in value.split(",") if u.strip()]
        return list(value)
    return value


def _read_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    # Accept either top-level keys or a [qci] table
    data = data.get("qci", data)
    known = {k: v for k, v in data.items() if k in _FIELD_TYPES}
    unknown = sorted(set(data) - set(known))
    if unknown:
        log.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
    return known


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None, **overrides) -> Settings:
    """Build Settings from defaults, config file, environment and overrides.

    Overrides whose value is None are ignored so argparse namespaces can be
    passed through without clobbering lower layers.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get("QCI_CONFIG") or DEFAULT_CONFIG_FILE

    values: Dict[str, Any] = {}
    for key, value in _read_config_file(path).items():
        values[key] = _coerce(key, value)
    for env_name, key in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw not in (None, ""):
            values[key] = _coerce(key, raw)
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown setting: {key}")
        values[key] = _coerce(key, value)

    settings = replace(Settings(), **values)
    if settings.testnet and "chain_id" not in values:
        settings.chain_id = BASE_SEPOLIA_CHAIN_ID
    log.debug("Loaded settings from %s (chain_id=%s)", path, settings.chain_id)
    return settings


def is_local_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return urlparse(url).hostname in LOCAL_HOSTS


def get_rpc_endpoints(settings: Settings) -> List[str]:
    """Resolve the ordered list of RPC endpoints to rotate through.

    A local node is always used on its own. An explicit list wins over the
    public defaults; a single remote URL is tried before them.
    """
    if settings.local_mode:
        return [settings.rpc_url or LOCAL_RPC_URL]
    if is_local_url(settings.rpc_url):
        return [settings.rpc_url]
    if settings.rpc_urls:
        return list(settings.rpc_urls)
    if settings.rpc_url:
        return [settings.rpc_url] + [u for u in BASE_RPC_ENDPOINTS if u != settings.rpc_url]
    return list(BASE_RPC_ENDPOINTS)


def get_contract_address(settings: Settings) -> str:
    address = settings.registry_address or CONTRACT_ADDRESSES.get(settings.chain_id)
    if address is None:
        raise ConfigError(f"No registry deployment known for chain {settings.chain_id}")
    if address.lower() == ZERO_ADDRESS:
        raise ConfigError(
            f"Registry is not deployed on chain {settings.chain_id}; set QCI_REGISTRY_ADDRESS or --registry"
        )
    return address


def validate_settings(settings: Settings, need_ipfs: bool = False, need_signer: bool = False) -> List[str]:
    """Return human readable problems with the settings; empty means usable."""
    problems = []
    try:
        get_contract_address(settings)
    except ConfigError as e:
        problems.append(str(e))
    if need_signer and not settings.private_key:
        problems.append("No private key configured; set PRIVATE_KEY or use --private-key")
    if need_ipfs and not settings.use_local_ipfs and not settings.pinata_jwt:
        problems.append("No IPFS provider configured; set QCI_PINATA_JWT or QCI_USE_LOCAL_IPFS=1")
    return problems
