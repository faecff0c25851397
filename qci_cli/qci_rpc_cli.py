import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from qci_cli.api_client import APIError, RegistryAPIClient
from qci_cli.client import QCIRegistryClient, RegistryError
from qci_cli.config import ConfigError, Settings, get_contract_address, load_settings
from qci_cli.content import (
    ContentFormatError,
    calculate_content_hash,
    content_from_markdown,
    convert_import_to_editor_format,
    format_qci_as_json,
    format_qci_as_markdown,
    format_qci_content,
    generate_export_filename,
    validate_import_data,
)
from qci_cli.data_source import QCIDataSource
from qci_cli.ipfs import make_ipfs_service
from qci_cli.models import QCIContent
from qci_cli.persistence import DictStore
from qci_cli.status import STATUS_CONFIG, QCIStatus, status_by_name, status_display_name
from qci_cli.transactions import load_transactions

log = logging.getLogger(__name__)


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _read_file(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _load_transactions(path: Optional[str]) -> Optional[List[str]]:
    if not path:
        return None
    return load_transactions(_read_file(path)) or None


def date_type(value: str) -> int:
    """Argparse type: YYYY-MM-DD or a unix timestamp, returned as a timestamp."""
    if value.isdigit():
        return int(value)
    try:
        return int(datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc).timestamp())
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a date (YYYY-MM-DD) or unix timestamp")


def status_type(value) -> QCIStatus:
    """Argparse type: a status name (Ready for Snapshot, READY_FOR_SNAPSHOT, ReadyForSnapshot) or 0-3."""
    if isinstance(value, QCIStatus):
        return value
    text = str(value).strip()
    if text.isdigit() and int(text) <= QCIStatus.ARCHIVED:
        return QCIStatus(int(text))
    status = status_by_name(text)
    if status is None:
        valid = ", ".join(info.name for info in STATUS_CONFIG.values())
        raise argparse.ArgumentTypeError(f"Unknown status '{value}', expected one of: {valid}")
    return status


class QCICommands:
    """CLI commands, dispatched as `{command}_{action}`.

    Clients are created on first use, so commands that only talk to the REST
    API or IPFS do not need an RPC endpoint or registry address.
    """

    def __init__(self, settings: Settings, progress_handler=None):
        self.settings = settings
        self.progress_handler = progress_handler
        self._registry: Optional[QCIRegistryClient] = None
        self._api: Optional[RegistryAPIClient] = None
        self._ipfs = None

    @property
    def registry(self) -> QCIRegistryClient:
        if self._registry is None:
            self._registry = QCIRegistryClient.from_settings(self.settings)
            self._registry.progress_handler = self.progress_handler
        return self._registry

    @property
    def api(self) -> RegistryAPIClient:
        if self._api is None:
            self._api = RegistryAPIClient(self.settings.api_url)
        return self._api

    @property
    def ipfs(self):
        if self._ipfs is None:
            self._ipfs = make_ipfs_service(self.settings, cache=DictStore(self.settings.cache_path))
        return self._ipfs

    def _optional_ipfs(self):
        try:
            return self.ipfs
        except ValueError:
            log.info("No IPFS provider configured, documents will not be fetched")
            return None

    def data_source(self, use_api: bool = False) -> QCIDataSource:
        return QCIDataSource(self.registry, api=self.api if use_api else None, ipfs=self._optional_ipfs())

    async def close(self):
        for client in (self._registry, self._api, self._ipfs):
            if client is not None:
                await client.close()

    ### QCI (on chain) ###
    async def qci_show(self, qci_number: int, raw: bool = False):
        if raw:
            return (await self.registry.get_qci(qci_number)).to_dict()
        record = await self.data_source().fetch_qci(qci_number)
        if record is None:
            raise RegistryError(f"QCI {qci_number} does not exist", "QCIDoesNotExist")
        return record.to_dict()

    async def qci_list(self, status=None, author=None, source="auto", content=False):
        if author:
            numbers = sorted(await self.registry.get_qcis_by_author(author), reverse=True)
            qcis = await self.registry.get_qcis_batch(numbers)
            records = [q.to_dict() for q in qcis]
        else:
            records = [r.to_dict() for r in await self.data_source(use_api=source != "chain").fetch_all(content)]
        if status:
            wanted = status_display_name(status_type(status))
            records = [r for r in records if r["status"] == wanted]
        return records

    async def qci_page(self, page: int = 1, page_size: int = 10, content=False):
        return (await self.data_source().fetch_page(page, page_size, include_content=content)).to_dict()

    async def _upload(self, document: str) -> str:
        uploaded = await self.ipfs.upload_raw_content(document)
        log.info("Uploaded document to %s", uploaded["ipfs_url"])
        return uploaded["ipfs_url"]

    async def _current_transactions(self, ipfs_url: str) -> Optional[List[Any]]:
        """Transactions of the published document, carried into the next version."""
        ipfs = self._optional_ipfs()
        if ipfs is None or not ipfs_url:
            return None
        try:
            return content_from_markdown(await ipfs.fetch_qci(ipfs_url)).transactions
        except (APIError, ContentFormatError) as e:
            log.warning("Could not read transactions from %s: %s", ipfs_url, e)
            return None

    async def qci_create(self, title, chain, file, author=None, implementor=None, ipfs_url=None, transactions=None):
        qci = QCIContent(
            qci=0,
            title=title,
            chain=chain,
            content=_read_file(file),
            author=author or (self.registry.account.address if self.registry.account else ""),
            implementor=implementor or "None",
            created=_today(),
            transactions=_load_transactions(transactions),
        )
        ipfs_url = ipfs_url or await self._upload(format_qci_content(qci))
        result = await self.registry.create_qci_from_content(qci, ipfs_url)
        return {**result.to_dict(), "ipfs_url": ipfs_url}

    async def qci_update(
        self,
        qci_number,
        file,
        title=None,
        chain=None,
        implementor=None,
        change_note=None,
        ipfs_url=None,
        transactions=None,
    ):
        current = await self.registry.get_qci(qci_number)
        qci = QCIContent(
            qci=qci_number,
            title=title or current.title,
            chain=chain or current.chain,
            content=_read_file(file),
            status=current.status_name,
            author=current.author,
            implementor=implementor or current.implementor or "None",
            proposal=current.snapshot_proposal_id or "None",
            created=datetime.fromtimestamp(current.created_at, tz=timezone.utc).strftime("%Y-%m-%d"),
        )
        if transactions:
            qci.transactions = _load_transactions(transactions)
        elif not ipfs_url:
            qci.transactions = await self._current_transactions(current.ipfs_url)
        ipfs_url = ipfs_url or await self._upload(format_qci_content(qci))
        kwargs = {"change_note": change_note} if change_note else {}
        result = await self.registry.update_qci_from_content(qci_number, qci, ipfs_url, **kwargs)
        return {**result.to_dict(), "ipfs_url": ipfs_url}

    async def qci_status(self, qci_number, new_status):
        return (await self.registry.update_status(qci_number, status_type(new_status))).to_dict()

    async def qci_link_snapshot(self, qci_number, proposal_id):
        return (await self.registry.link_snapshot_proposal(qci_number, proposal_id)).to_dict()

    async def qci_update_snapshot(self, qci_number, proposal_id, reason):
        return (await self.registry.update_snapshot_proposal(qci_number, proposal_id, reason)).to_dict()

    async def qci_implement(self, qci_number, implementor, date):
        return (await self.registry.set_implementation(qci_number, implementor, date)).to_dict()

    async def qci_versions(self, qci_number):
        versions = await self.registry.get_version_history(qci_number)
        return [{"version": i + 1, **v.to_dict()} for i, v in enumerate(versions)]

    async def qci_export(self, qci_number, format="md", save=False, no_metadata=False):
        record = await self.data_source().fetch_qci(qci_number)
        if record is None:
            raise RegistryError(f"QCI {qci_number} does not exist", "QCIDoesNotExist")
        if format == "json":
            export_data = await self.registry.export_qci(qci_number)
            text = json.dumps(format_qci_as_json(record, export_data, self.registry.address), indent=2)
        else:
            text = format_qci_as_markdown(record, include_metadata=not no_metadata)
        if not save:
            return {"filename": generate_export_filename(qci_number, format, record.version), "content": text}
        filename = generate_export_filename(qci_number, format, record.version)
        with open(filename, "w", encoding="utf-8") as f:
            f.write(text)
        return {"filename": os.path.abspath(filename), "bytes": len(text.encode("utf-8"))}

    async def qci_import(self, file, dry_run=False, ipfs_url=None, transactions=None):
        data = json.loads(_read_file(file))
        valid, errors = validate_import_data(data)
        if not valid:
            return {"valid": False, "errors": errors}
        editor = convert_import_to_editor_format(data)
        loaded = _load_transactions(transactions)
        if dry_run:
            return {"valid": True, **editor, "transactions": len(loaded or [])}
        qci = QCIContent(
            qci=0,
            title=editor["title"],
            chain=editor["chain"],
            content=editor["content"],
            author=self.registry.account.address if self.registry.account else "",
            implementor=editor["implementor"] or "None",
            created=_today(),
            transactions=loaded,
        )
        ipfs_url = ipfs_url or await self._upload(format_qci_content(qci))
        result = await self.registry.create_qci_from_content(qci, ipfs_url)
        return {"valid": True, **result.to_dict(), "ipfs_url": ipfs_url}

    async def qci_verify(self, qci_number, file):
        content = _read_file(file)
        qci = await self.registry.get_qci(qci_number)
        on_chain = await self.registry.verify_content(qci_number, content)
        local_hash = calculate_content_hash(content)
        return {
            "qci_number": qci_number,
            "verified": on_chain,
            "content_hash": local_hash,
            "registered_hash": qci.content_hash,
            "hash_matches": local_hash.lower() == qci.content_hash.lower(),
        }

    async def qci_watch(self, from_block=None, interval=5.0, count=None):
        seen = []
        async for item in self.registry.watch_qcis(from_block=from_block, poll_interval=interval):
            seen.append(item)
            if count and len(seen) >= count:
                break
        return seen

    async def qci_statuses(self):
        hashes, names = await self.registry.fetch_all_statuses()
        counts = await self.data_source().status_counts()
        return [{"status_id": h, "name": n, "count": counts.get(n)} for h, n in zip(hashes, names)]

    async def qci_next(self):
        return {"next_qci_number": await self.registry.get_next_qci_number()}

    async def qci_info(self):
        return await self.registry.get_registry_info()

    ### REST API ###
    async def api_list(self, status=None, content=False, refresh=False):
        response = await self.api.fetch_qcis(include_content=content, force_refresh=refresh)
        records = [RegistryAPIClient.to_qci_data(q).to_dict() for q in response.qcis]
        if status:
            wanted = status_display_name(status_type(status))
            records = [r for r in records if r["status"] == wanted]
        return records

    async def api_show(self, qci_number):
        api_qci = await self.api.fetch_qci(qci_number)
        if api_qci is None:
            raise APIError(f"QCI {qci_number} not found in API")
        return RegistryAPIClient.to_qci_data(api_qci).to_dict()

    ### IPFS ###
    async def ipfs_upload(self, file):
        result = await self.ipfs.upload_raw_content(_read_file(file))
        return {**result, "gateway_url": self.ipfs.gateway_url(result["cid"])}

    async def ipfs_fetch(self, cid):
        return {"cid": cid, "gateway_url": self.ipfs.gateway_url(cid), "content": await self.ipfs.fetch_qci(cid)}

    async def ipfs_health(self, round_trip=False):
        health = await self.ipfs.check_health()
        if round_trip:
            health["round_trip"] = await self.ipfs.check_round_trip()
        return health


TRANSACTIONS_HELP = "JSON file with the proposal transactions (array of {chainId, to, function, args})"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="QCI registry CLI tool")
    subparsers = parser.add_subparsers(dest="command")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config", type=str, default=None, help="Path to config TOML (default ~/.qci/config.toml)")
    parser.add_argument("--rpc-url", type=str, default=None, help="RPC endpoint (env QCI_RPC_URL)")
    parser.add_argument("--registry", type=str, default=None, help="Registry contract address (env QCI_REGISTRY_ADDRESS)")
    parser.add_argument("--api-url", type=str, default=None, help="REST API base URL (env QCI_API_URL)")
    parser.add_argument("--private-key", "-p", type=str, default=None, help="Private key used to sign transactions")
    parser.add_argument("--local", action="store_true", default=None, help="Use a local dev node only")
    parser.add_argument("--testnet", action="store_true", default=None, help="Use Base Sepolia")
    parser.add_argument("--no-wait", action="store_true", default=None, help="Don't wait for tx to be confirmed.")
    parser.add_argument("-j", "--json", action="store_true", help="Return JSON instead of human readable output")
    parser.add_argument(
        "--progress",
        choices=["off", "text", "json"],
        default=os.environ.get("QCI_CLI_PROGRESS", "text"),
        help="Stream progress while waiting for receipts: 'off', 'text' for human output, 'json' for JSONL events",
    )

    ### QCI ###
    qci_parser = subparsers.add_parser("qci", help="Read and write QCIs in the registry")
    qci_subparsers = qci_parser.add_subparsers(dest="action")

    show_parser = qci_subparsers.add_parser("show", help="Show a QCI with its document")
    show_parser.add_argument("qci_number", type=int)
    show_parser.add_argument("--raw", action="store_true", help="Show the on-chain record only")

    list_parser = qci_subparsers.add_parser("list", help="List QCIs, newest first")
    list_parser.add_argument("--status", type=status_type, help="Only QCIs with this status")
    list_parser.add_argument("--author", type=str, help="Only QCIs by this address (on chain)")
    list_parser.add_argument(
        "--source",
        choices=["auto", "chain"],
        default="auto",
        help="'auto' tries the REST API first and falls back to the chain",
    )
    list_parser.add_argument("--content", action="store_true", help="Include documents")

    page_parser = qci_subparsers.add_parser("page", help="List one page of QCIs from the chain")
    page_parser.add_argument("--page", type=int, default=1)
    page_parser.add_argument("--page-size", type=int, default=10)
    page_parser.add_argument("--content", action="store_true", help="Include documents")

    create_parser = qci_subparsers.add_parser(
        "create",
        help="Create a QCI",
        description="Formats the markdown file as a QCI document, uploads it to IPFS "
        "(unless --ipfs-url is given) and registers it.",
    )
    create_parser.add_argument("--title", required=True)
    create_parser.add_argument("--chain", required=True)
    create_parser.add_argument("--file", required=True, help="Markdown body")
    create_parser.add_argument("--author", help="Author shown in the frontmatter (default: signer address)")
    create_parser.add_argument("--implementor")
    create_parser.add_argument("--ipfs-url", help="Use an already uploaded document")
    create_parser.add_argument("--transactions", help=TRANSACTIONS_HELP)

    update_parser = qci_subparsers.add_parser("update", help="Publish a new version of a QCI")
    update_parser.add_argument("qci_number", type=int)
    update_parser.add_argument("--file", required=True, help="Markdown body")
    update_parser.add_argument("--title")
    update_parser.add_argument("--chain")
    update_parser.add_argument("--implementor")
    update_parser.add_argument("--change-note")
    update_parser.add_argument("--ipfs-url", help="Use an already uploaded document")
    update_parser.add_argument(
        "--transactions", help=TRANSACTIONS_HELP + " (default: keep those of the current version)"
    )

    status_parser = qci_subparsers.add_parser("status", help="Change the status of a QCI")
    status_parser.add_argument("qci_number", type=int)
    status_parser.add_argument("new_status", type=status_type, help="e.g. 'Ready for Snapshot' or READY_FOR_SNAPSHOT")

    link_parser = qci_subparsers.add_parser("link-snapshot", help="Link a Snapshot proposal")
    link_parser.add_argument("qci_number", type=int)
    link_parser.add_argument("proposal_id")

    relink_parser = qci_subparsers.add_parser("update-snapshot", help="Replace the linked Snapshot proposal")
    relink_parser.add_argument("qci_number", type=int)
    relink_parser.add_argument("proposal_id")
    relink_parser.add_argument("--reason", required=True)

    implement_parser = qci_subparsers.add_parser("implement", help="Record implementation details")
    implement_parser.add_argument("qci_number", type=int)
    implement_parser.add_argument("--implementor", required=True)
    implement_parser.add_argument("--date", type=date_type, required=True, help="YYYY-MM-DD or unix timestamp")

    versions_parser = qci_subparsers.add_parser("versions", help="Show version history")
    versions_parser.add_argument("qci_number", type=int)

    export_parser = qci_subparsers.add_parser("export", help="Export a QCI as markdown or JSON")
    export_parser.add_argument("qci_number", type=int)
    export_parser.add_argument("--format", choices=["md", "json"], default="md")
    export_parser.add_argument("--save", action="store_true", help="Write to a file in the current directory")
    export_parser.add_argument("--no-metadata", action="store_true", help="Markdown without export metadata")

    import_parser = qci_subparsers.add_parser("import", help="Create a QCI from a JSON export")
    import_parser.add_argument("file")
    import_parser.add_argument("--dry-run", action="store_true", help="Only validate the file")
    import_parser.add_argument("--ipfs-url", help="Use an already uploaded document")
    import_parser.add_argument("--transactions", help=TRANSACTIONS_HELP)

    verify_parser = qci_subparsers.add_parser("verify", help="Check a document against the registered hash")
    verify_parser.add_argument("qci_number", type=int)
    verify_parser.add_argument("--file", required=True)

    watch_parser = qci_subparsers.add_parser("watch", help="Follow newly created QCIs")
    watch_parser.add_argument("--from-block", type=int)
    watch_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between polls")
    watch_parser.add_argument("--count", type=int, help="Stop after this many QCIs")

    qci_subparsers.add_parser("statuses", help="Statuses known to the registry with QCI counts")
    qci_subparsers.add_parser("next", help="Next QCI number")
    qci_subparsers.add_parser("info", help="Registry address and flags")

    ### API ###
    api_parser = subparsers.add_parser("api", help="Read QCIs from the caching REST API")
    api_subparsers = api_parser.add_subparsers(dest="action")
    api_list_parser = api_subparsers.add_parser("list", help="List QCIs")
    api_list_parser.add_argument("--status", type=status_type)
    api_list_parser.add_argument("--content", action="store_true", help="Include documents (slow)")
    api_list_parser.add_argument("--refresh", action="store_true", help="Bypass the API cache")
    api_show_parser = api_subparsers.add_parser("show", help="Show a QCI with its document")
    api_show_parser.add_argument("qci_number", type=int)

    ### IPFS ###
    ipfs_parser = subparsers.add_parser("ipfs", help="Upload and fetch documents")
    ipfs_subparsers = ipfs_parser.add_subparsers(dest="action")
    ipfs_upload_parser = ipfs_subparsers.add_parser("upload", help="Upload a file")
    ipfs_upload_parser.add_argument("file")
    ipfs_fetch_parser = ipfs_subparsers.add_parser("fetch", help="Fetch a document by CID or ipfs:// URL")
    ipfs_fetch_parser.add_argument("cid")
    ipfs_health_parser = ipfs_subparsers.add_parser("health", help="Check the IPFS API and gateway")
    ipfs_health_parser.add_argument("--round-trip", action="store_true", help="Also upload and read back a test document")

    return parser


GLOBAL_OPTIONS = (
    "command",
    "action",
    "verbose",
    "config",
    "rpc_url",
    "registry",
    "api_url",
    "private_key",
    "local",
    "testnet",
    "no_wait",
    "json",
    "progress",
)


def setup_logging(verbose: bool):
    log_level = logging.DEBUG if verbose else logging.WARNING
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Add a handler only if one doesn't already exist (e.g. when running in pytest)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        if verbose:
            formatter = logging.Formatter(
                fmt="%(asctime)s | %(levelname).1s | %(name)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        else:
            formatter = logging.Formatter(fmt="%(levelname)s: %(message)s")
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


def make_progress_handler(mode: str):
    if mode == "json":
        from qci_cli.progress import make_json_progress_handler

        return make_json_progress_handler()
    if mode == "text":
        from qci_cli.progress import make_text_progress_handler

        return make_text_progress_handler()
    return None


async def cli(argv: Optional[List[str]] = None, commands: Optional[QCICommands] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command is None or args.action is None:
        parser.print_help()
        return 1

    function_name = f"{args.command}_{args.action.replace('-', '_')}"
    kwargs: Dict[str, Any] = {k: v for k, v in vars(args).items() if k not in GLOBAL_OPTIONS}

    if commands is None:
        try:
            settings = load_settings(
                args.config,
                rpc_url=args.rpc_url,
                registry_address=args.registry,
                api_url=args.api_url,
                private_key=args.private_key,
                local_mode=args.local,
                testnet=args.testnet,
                no_wait=args.no_wait,
            )
        except ConfigError as e:
            sys.stderr.write(f"Configuration error: {e}\n")
            return 2
        progress_handler = None if args.json and args.progress == "text" else make_progress_handler(args.progress)
        commands = QCICommands(settings, progress_handler=progress_handler)
        if not args.json and args.command == "qci":
            try:
                registry = get_contract_address(settings)
            except ConfigError:
                registry = "unconfigured"
            sys.stderr.write(f"⏳ Registry {registry} on chain {settings.chain_id}\n")
            sys.stderr.write(f"↳ command: {function_name} | no_wait: {settings.no_wait} | progress: {args.progress}\n")
            sys.stderr.flush()

    try:
        log.info(f"Calling {function_name} with {kwargs}")
        result = await getattr(commands, function_name)(**kwargs)
        if args.json:
            print(json.dumps(result, default=str))
        else:
            from qci_cli.json_formatter import format_qci_response

            print(format_qci_response(result))
        return 0
    except (APIError, RegistryError, ConfigError, ContentFormatError, ValueError, OSError) as e:
        log.debug("Command %s failed", function_name, exc_info=True)
        if args.json:
            print(json.dumps({"error": str(e), "error_name": getattr(e, "error_name", None)}))
        else:
            sys.stderr.write(f"Error: {e}\n")
        return 1
    finally:
        await commands.close()


def main():
    sys.exit(asyncio.run(cli()))


if __name__ == "__main__":
    main()
