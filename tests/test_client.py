import asyncio

import aiohttp
import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput

from qci_cli.abi import ERROR_SELECTORS
from qci_cli.client import (
    QCIRegistryClient,
    ReceiptTimeout,
    RegistryError,
    TransactionError,
    decode_registry_error,
)
from qci_cli.content import calculate_content_hash, format_qci_content
from qci_cli.models import QCIContent
from qci_cli.rpc import RpcPool
from qci_cli.status import STATUS_CONFIG, QCIStatus

REGISTRY = "0xf5d5eeb5e7f6a3d5f0d9a4e6b9c3a2d1e0f9b233"
CONTENT_HASH = "0x" + "ab" * 32
PRIVATE_KEY = "0x" + "11" * 32
TX_HASH = "0x" + "cd" * 32


class FakeProvider:
    def __init__(self):
        self.requests = []

    async def make_request(self, method, params):
        self.requests.append(method)


class FakeNode:
    def __init__(self):
        self.provider = FakeProvider()


class DeadNode:
    provider = FakeProvider()

    @property
    def eth(self):
        raise aiohttp.ClientConnectionError("node down")


def make_client(endpoint="http://localhost:8545", private_key=PRIVATE_KEY, **kwargs):
    pool = RpcPool([endpoint], backoff=0, nodes=[FakeNode()])
    return QCIRegistryClient(REGISTRY, private_key=private_key, pool=pool, batch_delay=0, poll_interval=0, **kwargs)


def receipt(status=1, block_number=100, logs=None):
    return {"status": status, "blockNumber": block_number, "transactionHash": TX_HASH, "logs": logs or []}


def created_log(client, qci_number):
    return {
        "address": client.address,
        "topics": [HexBytes(b"\x00" * 32), HexBytes(qci_number.to_bytes(32, "big"))],
    }


@pytest.fixture
def events():
    return []


@pytest.fixture
def client(events):
    c = make_client()
    c.progress_handler = events.append
    return c


def stub_send(monkeypatch, client):
    sent = []

    async def fake_send(fn_name, *args):
        sent.append((fn_name, args))
        await client._emit_progress({"event": "submitted", "tx_id": TX_HASH})
        return TX_HASH

    monkeypatch.setattr(client, "_send_transaction", fake_send)
    return sent


def stub_receipts(monkeypatch, client, *outcomes):
    """Each poll returns (or raises) the next outcome."""
    queue = list(outcomes)

    async def fake_poll(tx_hash, timeout):
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(client, "_poll_receipt", fake_poll)


def stub_calls(monkeypatch, client, handler):
    calls = []

    async def fake_call(fn_name, *args):
        calls.append((fn_name, args))
        return handler(fn_name, *args)

    monkeypatch.setattr(client, "_call", fake_call)
    return calls


class RevertWithData(Exception):
    def __init__(self, data):
        super().__init__("execution reverted")
        self.data = data


class TestDecodeRegistryError:
    def test_known_selector(self):
        selector = next(k for k, v in ERROR_SELECTORS.items() if v == "QCIDoesNotExist")
        error = decode_registry_error(RevertWithData(selector + "00" * 4))
        assert error.error_name == "QCIDoesNotExist"

    def test_selector_inside_dict(self):
        selector = next(k for k, v in ERROR_SELECTORS.items() if v == "EnforcedPause")
        assert decode_registry_error(RevertWithData({"data": selector})).error_name == "EnforcedPause"

    def test_no_data_and_unknown(self):
        assert decode_registry_error(BadFunctionCallOutput("empty")).error_name == "NoData"
        assert decode_registry_error(RevertWithData("0xdeadbeef")).error_name == "RevertWithData"


class TestConstruction:
    def test_requires_pool_or_urls(self):
        with pytest.raises(ValueError):
            QCIRegistryClient(REGISTRY)

    def test_read_only_without_key(self):
        client = make_client(private_key=None)
        assert client.account is None
        assert client.address == Web3.to_checksum_address(REGISTRY)

    @pytest.mark.asyncio
    async def test_write_without_key_raises(self):
        client = make_client(private_key=None)
        with pytest.raises(RegistryError) as exc_info:
            await client.create_qci("T", "Base", CONTENT_HASH, "ipfs://x")
        assert exc_info.value.error_name == "NoSigner"


class TestWrites:
    """Writes submit, wait for the receipt and report progress."""

    @pytest.mark.asyncio
    async def test_create_qci_reads_number_from_log(self, monkeypatch, client, events):
        sent = stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt(logs=[created_log(client, 231)]))

        result = await client.create_qci("Title", "Base", CONTENT_HASH, "ipfs://bafy")

        assert result.qci_number == 231
        assert result.status == "confirmed"
        assert result.block_number == 100
        fn_name, args = sent[0]
        assert fn_name == "createQCI"
        assert args[2] == HexBytes(CONTENT_HASH)
        assert [e["event"] for e in events] == ["submitted", "confirmed"]

    @pytest.mark.asyncio
    async def test_create_qci_rejects_bad_hash(self, monkeypatch, client):
        stub_send(monkeypatch, client)
        with pytest.raises(ValueError):
            await client.create_qci("Title", "Base", "0x1234", "ipfs://bafy")

    @pytest.mark.asyncio
    async def test_create_from_content_hashes_body(self, monkeypatch, client):
        sent = stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt(logs=[created_log(client, 232)]))
        content = QCIContent(qci=0, title="T", chain="Base", content="Body text", author="A", created="2024-01-01")

        await client.create_qci_from_content(content, "ipfs://bafy")

        assert sent[0][1][2] == HexBytes(Web3.keccak(text="Body text"))
        assert sent[0][1][2] != HexBytes(calculate_content_hash(format_qci_content(content)))

    @pytest.mark.asyncio
    async def test_update_status_sends_name(self, monkeypatch, client):
        sent = stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt(), receipt())

        await client.update_status(210, QCIStatus.READY_FOR_SNAPSHOT)
        await client.update_status(210, "POSTED_TO_SNAPSHOT")

        assert sent == [
            ("updateStatus", (210, "Ready for Snapshot")),
            ("updateStatus", (210, "Posted to Snapshot")),
        ]

    @pytest.mark.asyncio
    async def test_update_status_unknown(self, monkeypatch, client):
        stub_send(monkeypatch, client)
        with pytest.raises(ValueError):
            await client.update_status(210, "Rejected")

    @pytest.mark.asyncio
    async def test_update_from_content_rereads_version(self, monkeypatch, client, raw_qci):
        sent = stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt())
        stub_calls(monkeypatch, client, lambda fn, *args: raw_qci(210, version=3))
        content = QCIContent(qci=210, title="T", chain="Base", content="Body")

        result = await client.update_qci_from_content(210, content, "ipfs://new")

        assert result.version == 3
        assert sent[0][0] == "updateQCI"
        assert sent[0][1][4] == HexBytes(Web3.keccak(text="Body"))
        assert sent[0][1][-1] == "Updated via QCI Editor"

    @pytest.mark.asyncio
    async def test_no_wait_returns_submitted(self, monkeypatch, events):
        client = make_client(no_wait_for_tx=True)
        client.progress_handler = events.append
        stub_send(monkeypatch, client)

        result = await client.link_snapshot_proposal(210, "0xabc")

        assert result.status == "submitted"
        assert result.block_number is None
        assert result.to_dict() == {"tx_hash": TX_HASH, "qci_number": 210, "status": "submitted"}
        assert events[-1]["event"] == "skipped"

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, monkeypatch, client, events):
        stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt(status=0))
        with pytest.raises(TransactionError) as exc_info:
            await client.set_implementation(210, "Team", 1700000000)
        assert exc_info.value.tx_hash == TX_HASH
        assert events[-1]["event"] == "failed"

    @pytest.mark.asyncio
    async def test_local_timeout_mines_a_block(self, monkeypatch, client):
        stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, ReceiptTimeout("slow", tx_hash=TX_HASH), receipt(block_number=7))

        result = await client.update_snapshot_proposal(210, "0xdef", "wrong proposal")

        assert result.block_number == 7
        assert client.pool.nodes[0].provider.requests == ["evm_mine"]

    @pytest.mark.asyncio
    async def test_local_timeout_after_mining_fails(self, monkeypatch, client, events):
        stub_send(monkeypatch, client)
        stub_receipts(
            monkeypatch,
            client,
            ReceiptTimeout("slow", tx_hash=TX_HASH),
            ReceiptTimeout("still slow", tx_hash=TX_HASH),
        )

        with pytest.raises(ReceiptTimeout):
            await client.link_snapshot_proposal(210, "0xabc")
        assert client.pool.nodes[0].provider.requests == ["evm_mine"]
        assert events[-1] == {"event": "failed", "reason": "timeout", "tx_id": TX_HASH, "done": True}

    @pytest.mark.asyncio
    async def test_receipt_lookup_failure(self, events):
        client = make_client(endpoint="https://mainnet.base.org")
        client.pool.nodes = [DeadNode()]
        client.pool.retries = 1
        client.progress_handler = events.append

        with pytest.raises(TransactionError) as exc_info:
            await client.wait_for_receipt(TX_HASH)
        assert exc_info.value.tx_hash == TX_HASH
        assert events[-1]["event"] == "failed"
        assert events[-1]["done"] is True

    @pytest.mark.asyncio
    async def test_remote_timeout_fails(self, monkeypatch, events):
        client = make_client(endpoint="https://mainnet.base.org")
        client.progress_handler = events.append
        stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, ReceiptTimeout("slow", tx_hash=TX_HASH))

        with pytest.raises(ReceiptTimeout):
            await client.link_snapshot_proposal(210, "0xabc")
        assert events[-1] == {"event": "failed", "reason": "timeout", "tx_id": TX_HASH, "done": True}

    @pytest.mark.asyncio
    async def test_async_progress_handler(self, monkeypatch):
        client = make_client()
        seen = []

        async def handler(event):
            seen.append(event["event"])

        client.progress_handler = handler
        stub_send(monkeypatch, client)
        stub_receipts(monkeypatch, client, receipt())
        await client.link_snapshot_proposal(210, "0xabc")
        assert seen == ["submitted", "confirmed"]


class TestReads:
    @pytest.mark.asyncio
    async def test_get_qci(self, monkeypatch, client, raw_qci):
        stub_calls(monkeypatch, client, lambda fn, n: raw_qci(n, QCIStatus.POSTED_TO_SNAPSHOT))
        qci = await client.get_qci(215)
        assert qci.qci_number == 215
        assert qci.status == QCIStatus.POSTED_TO_SNAPSHOT
        assert qci.content_hash == CONTENT_HASH
        assert qci.to_dict()["status"] == "Posted to Snapshot"

    @pytest.mark.asyncio
    async def test_get_missing_qci(self, monkeypatch, client, raw_qci):
        stub_calls(monkeypatch, client, lambda fn, n: raw_qci(0))
        with pytest.raises(RegistryError) as exc_info:
            await client.get_qci(999)
        assert exc_info.value.error_name == "QCIDoesNotExist"

    @pytest.mark.asyncio
    async def test_batch_skips_failed_and_missing(self, monkeypatch, raw_qci):
        client = make_client(batch_size=2)
        batches = []

        replies = {210: raw_qci(210), 211: raw_qci(211), 212: None, 213: raw_qci(0), 214: raw_qci(214)}

        async def fake_multicall(requests):
            numbers = [args[0] for _, args in requests]
            batches.append(numbers)
            return [replies[n] for n in numbers]

        monkeypatch.setattr(client, "_multicall", fake_multicall)
        qcis = await client.get_qcis_batch([210, 211, 212, 213, 214])

        assert batches == [[210, 211], [212, 213], [214]]
        assert [q.qci_number for q in qcis] == [210, 211, 214]

    @pytest.mark.asyncio
    async def test_batch_falls_back_to_single_calls(self, monkeypatch, client, raw_qci):
        async def failing_multicall(requests):
            raise RegistryError("multicall reverted", "RpcError")

        def single(fn, n):
            if n == 211:
                raise RegistryError("nope", "QCIDoesNotExist")
            return raw_qci(n)

        monkeypatch.setattr(client, "_multicall", failing_multicall)

        async def fake_call(fn_name, *args):
            return single(fn_name, *args)

        monkeypatch.setattr(client, "_call", fake_call)
        qcis = await client.get_qcis_batch([210, 211, 212])
        assert [q.qci_number for q in qcis] == [210, 212]

    @pytest.mark.asyncio
    async def test_numbers_by_status(self, monkeypatch, client):
        async def fake_multicall(requests):
            assert [args[0] for _, args in requests] == ["Draft", "Ready for Snapshot", "Posted to Snapshot"]
            return [[230, 231], None, [210]]

        monkeypatch.setattr(client, "_multicall", fake_multicall)
        by_status = await client.get_all_qcis_by_status_batch()
        assert by_status[QCIStatus.READY_FOR_SNAPSHOT] == []
        assert await client.get_all_qci_numbers() == [231, 230, 210]

    @pytest.mark.asyncio
    async def test_status_query_without_data(self, monkeypatch, client):
        def handler(fn, name):
            raise RegistryError("no data", "NoData")

        stub_calls(monkeypatch, client, handler)
        assert await client.get_qcis_by_status(QCIStatus.DRAFT) == []

    @pytest.mark.asyncio
    async def test_fetch_all_statuses_fallback(self, monkeypatch, client):
        def handler(fn):
            raise RegistryError("down", "RpcError")

        stub_calls(monkeypatch, client, handler)
        hashes, names = await client.fetch_all_statuses()
        assert names == ["Draft", "Ready for Snapshot", "Posted to Snapshot", "Archived"]
        assert hashes[0] == STATUS_CONFIG[QCIStatus.DRAFT].hash

    @pytest.mark.asyncio
    async def test_fetch_all_statuses_from_registry(self, monkeypatch, client):
        draft = STATUS_CONFIG[QCIStatus.DRAFT].hash
        stub_calls(monkeypatch, client, lambda fn: 2)
        replies = [[HexBytes(draft), HexBytes("0x" + "01" * 32)], ["", "Rejected"]]

        async def fake_multicall(requests):
            return replies.pop(0)

        monkeypatch.setattr(client, "_multicall", fake_multicall)
        hashes, names = await client.fetch_all_statuses()
        assert hashes == [draft, "0x" + "01" * 32]
        assert names == ["Draft", "Rejected"]

    @pytest.mark.asyncio
    async def test_get_status_name_unknown(self, monkeypatch, client):
        def handler(fn, status_id):
            raise RegistryError("reverted", "InvalidStatus")

        stub_calls(monkeypatch, client, handler)
        assert await client.get_status_name("0x" + "01" * 32) == "Unknown"
        assert await client.get_status_name("0x01") == "Unknown"

    @pytest.mark.asyncio
    async def test_version_history(self, monkeypatch, client, raw_qci):
        versions = [
            (HexBytes(CONTENT_HASH), "ipfs://a", 1700000000, "Initial version"),
            (HexBytes(CONTENT_HASH), "ipfs://b", 1700000600, "Typo"),
        ]
        stub_calls(monkeypatch, client, lambda fn, n: (raw_qci(n, version=2), versions))
        history = await client.get_version_history(210)
        assert [v.change_note for v in history] == ["Initial version", "Typo"]
        assert history[0].content_hash == CONTENT_HASH

    @pytest.mark.asyncio
    async def test_registry_info(self, monkeypatch, client):
        async def fake_multicall(requests):
            return [240, False, True]

        monkeypatch.setattr(client, "_multicall", fake_multicall)
        info = await client.get_registry_info()
        assert info == {
            "address": client.address,
            "next_qci_number": 240,
            "paused": False,
            "migration_mode": True,
        }


class TestWatch:
    @pytest.mark.asyncio
    async def test_yields_created_qcis(self, monkeypatch, client, events):
        heads = [10, 10, 12]
        ranges = []

        async def fake_block_number():
            return heads.pop(0)

        async def fake_events(from_block, to_block):
            ranges.append((from_block, to_block))
            if from_block == 11:
                return [
                    {
                        "args": {
                            "qciNumber": 240,
                            "author": "0x1111111111111111111111111111111111111111",
                            "title": "New vault",
                            "network": "Linea",
                            "contentHash": HexBytes(CONTENT_HASH),
                            "ipfsUrl": "ipfs://bafy240",
                        },
                        "blockNumber": 12,
                    }
                ]
            return []

        monkeypatch.setattr(client, "_block_number", fake_block_number)
        monkeypatch.setattr(client, "_created_events", fake_events)

        items = [item async for item in client.watch_qcis(poll_interval=0, max_polls=2)]

        assert ranges == [(10, 10), (11, 12)]
        assert items == [
            {
                "qci_number": 240,
                "author": "0x1111111111111111111111111111111111111111",
                "title": "New vault",
                "chain": "Linea",
                "content_hash": CONTENT_HASH,
                "ipfs_url": "ipfs://bafy240",
                "block_number": 12,
            }
        ]
        assert events[-1]["event"] == "new_qci"

    @pytest.mark.asyncio
    async def test_unreachable_node_raises_registry_error(self, events):
        client = make_client()
        client.pool.nodes = [DeadNode()]
        client.pool.retries = 1

        with pytest.raises(RegistryError) as exc_info:
            async for _ in client.watch_qcis(poll_interval=0, max_polls=1):
                pass
        assert exc_info.value.error_name == "RpcError"
        assert "node down" in str(exc_info.value)


class TestBatchPacing:
    """Multicall chunks of three, 100 ms apart."""

    def test_defaults(self):
        pool = RpcPool(["http://localhost:8545"], backoff=0, nodes=[FakeNode()])
        client = QCIRegistryClient(REGISTRY, pool=pool)
        assert client.batch_size == 3
        assert client.batch_delay == 0.1

    @pytest.mark.asyncio
    async def test_pause_between_chunks(self, monkeypatch, raw_qci):
        pool = RpcPool(["http://localhost:8545"], backoff=0, nodes=[FakeNode()])
        client = QCIRegistryClient(REGISTRY, pool=pool)
        timeline = []

        async def fake_sleep(delay):
            timeline.append(("sleep", delay))

        async def fake_multicall(requests):
            numbers = [args[0] for _, args in requests]
            timeline.append(("multicall", numbers))
            return [raw_qci(n) for n in numbers]

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        monkeypatch.setattr(client, "_multicall", fake_multicall)

        qcis = await client.get_qcis_batch([210, 211, 212, 213, 214, 215, 216])

        assert [q.qci_number for q in qcis] == [210, 211, 212, 213, 214, 215, 216]
        assert timeline == [
            ("multicall", [210, 211, 212]),
            ("sleep", 0.1),
            ("multicall", [213, 214, 215]),
            ("sleep", 0.1),
            ("multicall", [216]),
        ]
