import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import aiohttp
import tenacity
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_none, wait_random_exponential
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import Web3RPCError

from qci_cli.config import is_local_url

log = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")
# JSON-RPC error codes providers use for throttling
TRANSIENT_RPC_CODES = (-32005, 429)


class RpcError(Exception):
    """Raised when every node in the pool failed a call."""


def is_transient(exc: BaseException) -> bool:
    """True for failures that are worth retrying on another node.

    Reverts and bad arguments are deterministic and never retried.
    """
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, Web3RPCError):
        rpc_response = getattr(exc, "rpc_response", None) or {}
        error = rpc_response.get("error") if isinstance(rpc_response, dict) else None
        code = error.get("code") if isinstance(error, dict) else None
        if code in TRANSIENT_RPC_CODES:
            return True
        message = str(exc).lower()
        return any(marker in message for marker in RATE_LIMIT_MARKERS)
    return False


class RpcPool:
    """Round-robin pool of AsyncWeb3 nodes with retry on transient failures.

    Every attempt goes to the next node, so a throttled or dead endpoint is
    skipped on retry rather than hammered.
    """

    def __init__(
        self,
        endpoints: Optional[Sequence[str]] = None,
        retries: int = 3,
        request_timeout: float = 30,
        backoff: float = 0.5,
        backoff_max: float = 8,
        nodes: Optional[List[Any]] = None,
    ):
        self.endpoints = list(endpoints or [])
        if nodes is None:
            if not self.endpoints:
                raise ValueError("RpcPool needs at least one endpoint")
            nodes = [
                AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": request_timeout}))
                for url in self.endpoints
            ]
        self.nodes = nodes
        self.retries = max(1, retries)
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._index = 0
        log.debug("RPC pool with %d node(s): %s", len(self.nodes), self.endpoints)

    @property
    def is_local(self) -> bool:
        return any(is_local_url(url) for url in self.endpoints)

    @property
    def current(self):
        return self.nodes[self._index % len(self.nodes)]

    def _next_node(self):
        idx = self._index % len(self.nodes)
        self._index = (idx + 1) % len(self.nodes)
        return idx, self.nodes[idx]

    def _wait(self):
        if self.backoff <= 0:
            return wait_none()
        return wait_random_exponential(multiplier=self.backoff, max=self.backoff_max)

    def _log_retry(self, retry_state: tenacity.RetryCallState):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "RPC attempt %d failed (%s), retrying on next node",
            retry_state.attempt_number,
            exc,
        )

    async def run(
        self,
        op: Callable[[Any], Awaitable[Any]],
        description: str = "rpc call",
        retry: bool = True,
    ) -> Any:
        """Run `op(web3)` against the pool.

        Args:
            op: Coroutine function taking an AsyncWeb3 instance.
            description: Used in log messages.
            retry: Set False for non-idempotent calls such as sending a transaction.

        Raises:
            RpcError: When the last attempt failed with a transient error.
            Any non-transient exception raised by `op` is propagated unchanged.
        """
        attempts = self.retries if retry else 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=self._wait(),
                retry=retry_if_exception(is_transient),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    idx, node = self._next_node()
                    log.debug("%s via node %d", description, idx)
                    return await op(node)
        except Exception as e:
            if is_transient(e):
                log.error("%s failed after %d attempt(s): %s", description, attempts, e)
                raise RpcError(f"{description} failed: {e}") from e
            raise

    async def mine_block(self) -> None:
        """Ask a local dev node (anvil, hardhat) to mine a block."""
        if not self.is_local:
            raise RpcError("evm_mine is only available on local nodes")
        await self.current.provider.make_request("evm_mine", [])
        log.info("Requested evm_mine on local node")

    async def close(self) -> None:
        for node in self.nodes:
            disconnect = getattr(getattr(node, "provider", None), "disconnect", None)
            if disconnect is not None:
                await disconnect()
