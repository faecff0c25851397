"""
Multicall3 batching.

Packs several registry reads into one `aggregate3` eth_call. Calls are made
with allowFailure so one reverting read (e.g. an unknown QCI number) yields
None for that slot instead of failing the whole batch.
"""

import logging
from typing import Any, List, NamedTuple, Sequence

from eth_abi import decode
from web3 import Web3

from qci_cli.abi import MULTICALL3_ABI, MULTICALL3_ADDRESS

log = logging.getLogger(__name__)


class Call(NamedTuple):
    target: str
    call_data: bytes
    output_types: Sequence[str]
    allow_failure: bool = True


def decode_results(calls: Sequence[Call], results) -> List[Any]:
    """Decode raw `(success, returnData)` pairs; single values are unwrapped."""
    decoded_results = []
    for call, (success, return_data) in zip(calls, results):
        if not success or not return_data:
            decoded_results.append(None)
            continue
        try:
            decoded = decode(list(call.output_types), bytes(return_data))
        except Exception as e:
            log.debug("Could not decode multicall result for %s: %s", call.output_types, e)
            decoded_results.append(None)
            continue
        decoded_results.append(decoded[0] if len(decoded) == 1 else decoded)
    return decoded_results


class Multicall:
    def __init__(self, web3, address: str = MULTICALL3_ADDRESS):
        self.web3 = web3
        self.contract = web3.eth.contract(address=Web3.to_checksum_address(address), abi=MULTICALL3_ABI)

    async def aggregate(self, calls: Sequence[Call]) -> List[Any]:
        """Execute calls in a single request and return decoded results, None for failures."""
        if not calls:
            return []
        call_structs = [(Web3.to_checksum_address(c.target), c.allow_failure, c.call_data) for c in calls]
        results = await self.contract.functions.aggregate3(call_structs).call()
        return decode_results(calls, results)
