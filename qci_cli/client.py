import asyncio
import logging
import sys
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from eth_account import Account
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, TransactionNotFound, Web3Exception

from qci_cli.abi import ERROR_SELECTORS, MULTICALL3_ADDRESS, REGISTRY_ABI
from qci_cli.config import Settings, get_contract_address, get_rpc_endpoints
from qci_cli.content import calculate_content_hash
from qci_cli.models import QCI, QCIContent, QCIExportData, QCIVersion, TxResult
from qci_cli.multicall import Call, Multicall
from qci_cli.rpc import RpcError, RpcPool
from qci_cli.status import (
    ACTIVE_STATUSES,
    STATUS_CONFIG,
    QCIStatus,
    status_by_hash,
    status_by_name,
    status_name,
)

log = logging.getLogger(__name__)

GAS_BUFFER_PERCENT = 120
LOCAL_MINE_TIMEOUT = 5.0
DEFAULT_CHANGE_NOTE = "Updated via QCI Editor"

_OUTPUT_TYPES = {
    item["name"]: [collapse_if_tuple(o) for o in item["outputs"]] for item in REGISTRY_ABI if item["type"] == "function"
}


def setup_console_logging():
    """Setup console-friendly logging for CLI usage.

    Safe to call more than once. An existing configuration (e.g. the one the
    CLI installs for --verbose) is left alone apart from quieting the HTTP and
    web3 loggers.
    """
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt="%(levelname)s: %(message)s"))
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logging.getLogger("qci_cli").setLevel(logging.INFO)
    else:
        logging.getLogger("qci_cli").setLevel(root_logger.level or logging.INFO)

    for noisy in ("httpx", "web3", "aiohttp", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RegistryError(Exception):
    """A registry call reverted or the chain could not be reached.

    `error_name` carries the decoded custom error (e.g. "QCIDoesNotExist") when
    the revert data matched a known selector.
    """

    def __init__(self, message: str, error_name: Optional[str] = None):
        super().__init__(message)
        self.error_name = error_name


class TransactionError(RegistryError):
    """A submitted transaction reverted on chain or never produced a receipt."""

    def __init__(self, message: str, tx_hash: Optional[str] = None, receipt: Optional[dict] = None):
        super().__init__(message, "TransactionFailed")
        self.tx_hash = tx_hash
        self.receipt = receipt


class ReceiptTimeout(TransactionError):
    pass


def _revert_data(exc: Exception) -> Optional[str]:
    data = getattr(exc, "data", None)
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, (bytes, bytearray)):
        data = Web3.to_hex(data)
    if isinstance(data, str) and data.startswith("0x"):
        return data
    return None


def decode_registry_error(exc: Exception) -> RegistryError:
    """Translate a web3 exception into RegistryError, naming the custom error when known."""
    data = _revert_data(exc)
    if data and len(data) >= 10:
        name = ERROR_SELECTORS.get(data[:10].lower())
        if name:
            return RegistryError(f"Registry reverted with {name}", error_name=name)
    if isinstance(exc, BadFunctionCallOutput):
        return RegistryError(f"Registry returned no data: {exc}", error_name="NoData")
    message = getattr(exc, "message", None) or str(exc)
    return RegistryError(message, error_name=exc.__class__.__name__)


def _to_bytes32(value: Union[str, bytes]) -> HexBytes:
    raw = HexBytes(value)
    if len(raw) != 32:
        raise ValueError(f"Expected a 32 byte hash, got {len(raw)} bytes")
    return raw


def _chunks(items: Sequence[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


class QCIRegistryClient:
    """Asynchronous client for the QCI registry contract.

    Reads go through a round-robin RPC pool (with retry on transient errors)
    and, for lists of records, through Multicall3 in small batches. Writes are
    gas-estimated with a 20% buffer, simulated, signed locally with the
    configured key, and submitted; by default the client then waits for the
    receipt and reports progress events while it does.

    Notes:
    - Reads work without a private key; writes raise RegistryError without one.
    - Set "progress_handler" to a callable (sync or async) to receive progress
      events ("submitted", "poll", "confirmed", "failed", "skipped", "new_qci").
    - On a local dev node a receipt timeout triggers one evm_mine and a short
      second wait, for nodes that do not automine.
    """

    def __init__(
        self,
        registry_address: str,
        rpc_urls: Optional[Sequence[str]] = None,
        private_key: Optional[str] = None,
        pool: Optional[RpcPool] = None,
        batch_size: int = 3,
        batch_delay: float = 0.1,
        receipt_timeout: float = 20.0,
        poll_interval: float = 1.0,
        no_wait_for_tx: bool = False,
        rpc_retries: int = 3,
        multicall_address: str = MULTICALL3_ADDRESS,
    ):
        setup_console_logging()

        if pool is None:
            if not rpc_urls:
                raise ValueError("Either rpc_urls or pool must be provided")
            pool = RpcPool(rpc_urls, retries=rpc_retries)
        self.pool = pool
        self.address = Web3.to_checksum_address(registry_address)
        self.multicall_address = multicall_address
        if private_key:
            self.account = Account.from_key(private_key)
            log.info("Using signer %s", self.account.address)
        else:
            self.account = None
            log.info("No private key configured, write operations are disabled")
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.no_wait_for_confirmation = no_wait_for_tx
        self.progress_handler = None
        self._contracts: Dict[int, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "QCIRegistryClient":
        options = dict(
            registry_address=get_contract_address(settings),
            rpc_urls=get_rpc_endpoints(settings),
            private_key=settings.private_key,
            batch_size=settings.batch_size,
            receipt_timeout=settings.receipt_timeout,
            no_wait_for_tx=settings.no_wait,
            rpc_retries=settings.rpc_retries,
        )
        options.update(kwargs)
        return cls(**options)

    async def _emit_progress(self, event: Dict[str, Any]):
        """Emit a progress event to the configured handler if set."""
        handler = self.progress_handler
        if handler is None:
            return
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(event)
            else:
                handler(event)
        except Exception as e:
            log.debug(f"Progress handler raised exception: {e}")

    def _contract(self, w3):
        contract = self._contracts.get(id(w3))
        if contract is None:
            contract = w3.eth.contract(address=self.address, abi=REGISTRY_ABI)
            self._contracts[id(w3)] = contract
        return contract

    ### LOW LEVEL ###
    async def _run(self, op, description: str, retry: bool = True) -> Any:
        """Run `op` on the pool, turning node and web3 failures into RegistryError."""
        try:
            return await self.pool.run(op, description, retry=retry)
        except Web3Exception as e:
            raise decode_registry_error(e) from e
        except RpcError as e:
            raise RegistryError(str(e), "RpcError") from e

    async def _call(self, fn_name: str, *args) -> Any:
        """Call a view function on the registry."""

        async def op(w3):
            return await getattr(self._contract(w3).functions, fn_name)(*args).call()

        return await self._run(op, f"{fn_name}{args}")

    async def _multicall(self, requests: Sequence[Tuple[str, tuple]]) -> List[Any]:
        """Batch view calls through Multicall3; failed slots come back as None."""

        async def op(w3):
            contract = self._contract(w3)
            calls = [
                Call(self.address, HexBytes(contract.encode_abi(fn_name, args=list(args))), _OUTPUT_TYPES[fn_name])
                for fn_name, args in requests
            ]
            return await Multicall(w3, self.multicall_address).aggregate(calls)

        return await self._run(op, f"multicall x{len(requests)}")

    async def _send_transaction(self, fn_name: str, *args) -> str:
        """Estimate, simulate, sign and submit a registry transaction. Returns the tx hash."""
        if self.account is None:
            raise RegistryError(
                "A private key is required for write operations. Set PRIVATE_KEY or use --private-key",
                "NoSigner",
            )
        sender = self.account.address

        async def op(w3):
            fn = getattr(self._contract(w3).functions, fn_name)(*args)
            gas = await fn.estimate_gas({"from": sender})
            gas_limit = gas * GAS_BUFFER_PERCENT // 100
            log.debug("%s gas estimate %d, limit %d", fn_name, gas, gas_limit)
            await fn.call({"from": sender})
            tx = await fn.build_transaction(
                {
                    "from": sender,
                    "gas": gas_limit,
                    "nonce": await w3.eth.get_transaction_count(sender, "pending"),
                    "chainId": await w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        tx_hash = await self._run(op, f"send {fn_name}", retry=False)
        log.info("Submitted %s transaction %s", fn_name, tx_hash)
        await self._emit_progress({"event": "submitted", "tx_id": tx_hash, "method": fn_name})
        return tx_hash

    async def _poll_receipt(self, tx_hash: str, timeout: float) -> dict:
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                receipt = await self.pool.run(
                    lambda w3: w3.eth.get_transaction_receipt(tx_hash), "get_transaction_receipt"
                )
            except TransactionNotFound:
                receipt = None
            except (Web3Exception, RpcError) as e:
                raise TransactionError(f"Could not fetch receipt for {tx_hash}: {e}", tx_hash=tx_hash) from e
            if receipt is not None:
                return receipt
            await self._emit_progress({"event": "poll", "attempt": attempt, "status": "pending", "tx_id": tx_hash})
            if time.monotonic() >= deadline:
                raise ReceiptTimeout(f"No receipt for {tx_hash} after {timeout}s", tx_hash=tx_hash)
            await asyncio.sleep(self.poll_interval)

    async def _receipt_or_mine(self, tx_hash: str, timeout: float) -> dict:
        """Poll for the receipt; on a local node, mine a block once and poll again."""
        try:
            return await self._poll_receipt(tx_hash, timeout)
        except ReceiptTimeout:
            if not self.pool.is_local:
                raise
        log.warning("No receipt for %s after %ss on local node, mining a block", tx_hash, timeout)
        try:
            await self.pool.mine_block()
        except (Web3Exception, RpcError) as e:
            raise TransactionError(f"evm_mine failed for {tx_hash}: {e}", tx_hash=tx_hash) from e
        return await self._poll_receipt(tx_hash, LOCAL_MINE_TIMEOUT)

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Wait until a transaction is mined.

        Returns:
            The receipt, or None when waiting is disabled (no_wait_for_tx).

        Raises:
            TransactionError: If the transaction reverted or no receipt arrived in time.
        """
        if self.no_wait_for_confirmation:
            await self._emit_progress(
                {"event": "skipped", "reason": "no_wait_for_confirmation", "tx_id": tx_hash, "done": True}
            )
            return None
        timeout = self.receipt_timeout if timeout is None else timeout
        try:
            receipt = await self._receipt_or_mine(tx_hash, timeout)
        except ReceiptTimeout:
            await self._emit_progress({"event": "failed", "reason": "timeout", "tx_id": tx_hash, "done": True})
            raise
        except TransactionError as e:
            await self._emit_progress({"event": "failed", "reason": str(e), "tx_id": tx_hash, "done": True})
            raise

        if receipt["status"] != 1:
            await self._emit_progress({"event": "failed", "tx_id": tx_hash, "done": True})
            raise TransactionError(f"Transaction reverted: {tx_hash}", tx_hash=tx_hash, receipt=receipt)
        log.info("Transaction confirmed. ID %s", tx_hash)
        await self._emit_progress(
            {"event": "confirmed", "tx_id": tx_hash, "block_number": receipt.get("blockNumber"), "done": True}
        )
        return receipt

    def _qci_number_from_receipt(self, receipt: Optional[dict]) -> int:
        """QCI number from the first registry log (topics[1] of QCICreated); 0 if unavailable."""
        if not receipt:
            return 0
        for entry in receipt.get("logs", []):
            if str(entry.get("address", "")).lower() != self.address.lower():
                continue
            topics = entry.get("topics") or []
            if len(topics) > 1:
                return int.from_bytes(HexBytes(topics[1]), "big")
        log.warning("No registry log in receipt %s", receipt.get("transactionHash"))
        return 0

    async def _write(self, fn_name: str, *args) -> Tuple[TxResult, Optional[dict]]:
        tx_hash = await self._send_transaction(fn_name, *args)
        receipt = await self.wait_for_receipt(tx_hash)
        result = TxResult(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber") if receipt else None,
            status="confirmed" if receipt else "submitted",
        )
        return result, receipt

    ### WRITES ###
    async def create_qci(self, title: str, chain: str, content_hash: Union[str, bytes], ipfs_url: str) -> TxResult:
        """Register a new QCI. The assigned number is read from the QCICreated log."""
        result, receipt = await self._write("createQCI", title, chain, _to_bytes32(content_hash), ipfs_url)
        result.qci_number = self._qci_number_from_receipt(receipt)
        log.info("Created QCI %s in %s", result.qci_number, result.tx_hash)
        return result

    async def update_qci(
        self,
        qci_number: int,
        title: str,
        chain: str,
        implementor: str,
        new_content_hash: Union[str, bytes],
        new_ipfs_url: str,
        change_note: str,
    ) -> TxResult:
        result, _ = await self._write(
            "updateQCI",
            qci_number,
            title,
            chain,
            implementor,
            _to_bytes32(new_content_hash),
            new_ipfs_url,
            change_note,
        )
        result.qci_number = qci_number
        return result

    async def link_snapshot_proposal(self, qci_number: int, snapshot_proposal_id: str) -> TxResult:
        result, _ = await self._write("linkSnapshotProposal", qci_number, snapshot_proposal_id)
        result.qci_number = qci_number
        return result

    async def update_snapshot_proposal(self, qci_number: int, new_snapshot_proposal_id: str, reason: str) -> TxResult:
        result, _ = await self._write("updateSnapshotProposal", qci_number, new_snapshot_proposal_id, reason)
        result.qci_number = qci_number
        return result

    async def update_status(self, qci_number: int, new_status: Union[QCIStatus, str]) -> TxResult:
        """Move a QCI to another status. The contract takes the status name, not the enum."""
        if isinstance(new_status, QCIStatus):
            name = status_name(new_status)
        else:
            status = status_by_name(new_status)
            if status is None:
                raise ValueError(f"Unknown status: {new_status}")
            name = status_name(status)
        result, _ = await self._write("updateStatus", qci_number, name)
        result.qci_number = qci_number
        return result

    async def set_implementation(self, qci_number: int, implementor: str, implementation_date: int) -> TxResult:
        result, _ = await self._write("setImplementation", qci_number, implementor, int(implementation_date))
        result.qci_number = qci_number
        return result

    async def create_qci_from_content(self, content: QCIContent, ipfs_url: str) -> TxResult:
        content_hash = calculate_content_hash(content.content)
        return await self.create_qci(content.title, content.chain, content_hash, ipfs_url)

    async def update_qci_from_content(
        self,
        qci_number: int,
        content: QCIContent,
        ipfs_url: str,
        change_note: str = DEFAULT_CHANGE_NOTE,
    ) -> TxResult:
        content_hash = calculate_content_hash(content.content)
        result = await self.update_qci(
            qci_number,
            content.title,
            content.chain,
            content.implementor,
            content_hash,
            ipfs_url,
            change_note,
        )
        if result.status == "confirmed":
            result.version = (await self.get_qci(qci_number)).version
        return result

    ### READS ###
    async def get_qci(self, qci_number: int) -> QCI:
        raw = await self._call("qcis", qci_number)
        qci = QCI.from_contract(raw)
        if qci.qci_number == 0:
            raise RegistryError(f"QCI {qci_number} does not exist", "QCIDoesNotExist")
        return qci

    async def get_next_qci_number(self) -> int:
        return int(await self._call("nextQCINumber"))

    async def verify_content(self, qci_number: int, content: str) -> bool:
        return bool(await self._call("verifyContent", qci_number, content))

    async def get_registry_info(self) -> Dict[str, Any]:
        next_number, paused, migration_mode = await self._multicall(
            [("nextQCINumber", ()), ("paused", ()), ("migrationMode", ())]
        )
        return {
            "address": self.address,
            "next_qci_number": next_number,
            "paused": paused,
            "migration_mode": migration_mode,
        }

    async def get_qcis_batch(self, qci_numbers: Sequence[int]) -> List[QCI]:
        """Fetch several records, `batch_size` per multicall.

        Missing records (number 0) are skipped. When a multicall fails outright
        the batch is retried one record at a time and unreadable records are
        skipped.
        """
        numbers = list(qci_numbers)
        qcis: List[QCI] = []
        for i, chunk in enumerate(_chunks(numbers, self.batch_size)):
            if i and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            try:
                results = await self._multicall([("qcis", (n,)) for n in chunk])
            except RegistryError as e:
                log.warning("Multicall failed for QCIs %s (%s), falling back to individual calls", chunk, e)
                for n in chunk:
                    try:
                        qcis.append(await self.get_qci(n))
                    except RegistryError as inner:
                        log.debug("Skipping QCI %s: %s", n, inner)
                continue
            for raw in results:
                if raw is None:
                    continue
                qci = QCI.from_contract(raw)
                if qci.qci_number > 0:
                    qcis.append(qci)
        return qcis

    async def get_qcis_by_status(self, status: Union[QCIStatus, str]) -> List[int]:
        name = status_name(status) if isinstance(status, QCIStatus) else status
        try:
            numbers = await self._call("getQCIsByStatus", name)
        except RegistryError as e:
            if e.error_name == "NoData":
                return []
            raise
        return [int(n) for n in numbers]

    async def get_all_qcis_by_status_batch(self) -> Dict[QCIStatus, List[int]]:
        """Numbers for each active status in one multicall."""
        try:
            results = await self._multicall([("getQCIsByStatus", (status_name(s),)) for s in ACTIVE_STATUSES])
        except RegistryError as e:
            log.warning("Status multicall failed (%s), querying statuses one by one", e)
            results = []
            for s in ACTIVE_STATUSES:
                try:
                    results.append(await self.get_qcis_by_status(s))
                except RegistryError as inner:
                    log.warning("Could not list %s QCIs: %s", status_name(s), inner)
                    results.append(None)
        return {s: [int(n) for n in (r or [])] for s, r in zip(ACTIVE_STATUSES, results)}

    async def get_all_qci_numbers(self) -> List[int]:
        by_status = await self.get_all_qcis_by_status_batch()
        return sorted({n for numbers in by_status.values() for n in numbers}, reverse=True)

    async def get_qcis_by_author(self, author: str) -> List[int]:
        numbers = await self._call("getQCIsByAuthor", Web3.to_checksum_address(author))
        return [int(n) for n in numbers]

    async def get_qci_with_versions(self, qci_number: int) -> Tuple[QCI, List[QCIVersion]]:
        raw_qci, raw_versions = await self._call("getQCIWithVersions", qci_number)
        return QCI.from_contract(raw_qci), [QCIVersion.from_contract(v) for v in raw_versions]

    async def get_version_history(self, qci_number: int) -> List[QCIVersion]:
        _, versions = await self.get_qci_with_versions(qci_number)
        return versions

    async def export_qci(self, qci_number: int) -> QCIExportData:
        return QCIExportData.from_contract(await self._call("exportQCI", qci_number))

    async def fetch_all_statuses(self) -> Tuple[List[str], List[str]]:
        """Status ids and names registered in the contract.

        Falls back to the built-in status table if the registry cannot be read.
        """
        try:
            count = int(await self._call("statusCount"))
            ids = await self._multicall([("statusAt", (i,)) for i in range(count)])
            hashes = [Web3.to_hex(h) for h in ids if h is not None]
            names = await self._multicall([("getStatusName", (HexBytes(h),)) for h in hashes])
        except RegistryError as e:
            log.warning("Could not read statuses from registry (%s), using defaults", e)
            return [info.hash for info in STATUS_CONFIG.values()], [info.name for info in STATUS_CONFIG.values()]
        resolved = []
        for h, name in zip(hashes, names):
            if not name:
                known = status_by_hash(h)
                name = status_name(known) if known is not None else "Unknown"
            resolved.append(name)
        return hashes, resolved

    async def get_status_name(self, status_id: Union[str, bytes]) -> str:
        try:
            return await self._call("getStatusName", _to_bytes32(status_id))
        except (RegistryError, ValueError) as e:
            log.debug("getStatusName failed for %s: %s", status_id, e)
            return "Unknown"

    ### EVENTS ###
    async def _block_number(self) -> int:
        return await self._run(lambda w3: w3.eth.block_number, "block_number")

    async def _created_events(self, from_block: int, to_block: int) -> List[Any]:
        return await self._run(
            lambda w3: self._contract(w3).events.QCICreated().get_logs(from_block=from_block, to_block=to_block),
            "QCICreated logs",
        )

    async def watch_qcis(
        self,
        from_block: Optional[int] = None,
        poll_interval: float = 5.0,
        max_polls: Optional[int] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield newly created QCIs by polling QCICreated logs.

        Args:
            from_block: First block to scan; defaults to the current head.
            poll_interval: Seconds between polls.
            max_polls: Stop after this many polls (None polls forever).
        """
        if from_block is None:
            from_block = await self._block_number()
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            latest = await self._block_number()
            if latest >= from_block:
                for ev in await self._created_events(from_block, latest):
                    args = ev["args"]
                    item = {
                        "qci_number": int(args["qciNumber"]),
                        "author": args["author"],
                        "title": args["title"],
                        "chain": args["network"],
                        "content_hash": Web3.to_hex(args["contentHash"]),
                        "ipfs_url": args["ipfsUrl"],
                        "block_number": ev.get("blockNumber"),
                    }
                    await self._emit_progress({"event": "new_qci", **item})
                    yield item
                from_block = latest + 1
            if max_polls is None or polls < max_polls:
                await asyncio.sleep(poll_interval)

    async def close(self):
        """Close RPC sessions with proper logging."""
        await self.pool.close()
        log.info("RPC sessions closed")
