import pytest
from eth_abi import encode
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from qci_cli.multicall import Call, Multicall, decode_results

TARGET = "0xf5D5CdccEe171F02293337b7F3eda4D45B85B233"


class TestDecodeResults:
    def test_single_value_is_unwrapped(self):
        calls = [Call(TARGET, b"", ["uint256"])]
        assert decode_results(calls, [(True, encode(["uint256"], [215]))]) == [215]

    def test_multiple_values_stay_a_tuple(self):
        calls = [Call(TARGET, b"", ["uint256", "string"])]
        assert decode_results(calls, [(True, encode(["uint256", "string"], [1, "Base"]))]) == [(1, "Base")]

    def test_failures_and_bad_data_are_none(self):
        calls = [
            Call(TARGET, b"", ["uint256[]"]),
            Call(TARGET, b"", ["uint256"]),
            Call(TARGET, b"", ["uint256"]),
            Call(TARGET, b"", ["string"]),
        ]
        results = [
            (True, encode(["uint256[]"], [[3, 4]])),
            (False, b"\x08\xc3\x79\xa0"),
            (True, b""),
            (True, b"\x01\x02"),
        ]
        assert decode_results(calls, results) == [(3, 4), None, None, None]


class FakeAggregate:
    def __init__(self, results):
        self.results = results
        self.calls = None

    def __call__(self, calls):
        self.calls = calls
        return self

    async def call(self):
        return self.results


class TestMulticall:
    @pytest.mark.asyncio
    async def test_aggregate_packs_calls(self):
        multicall = Multicall(AsyncWeb3(AsyncHTTPProvider("http://localhost:8545")))
        fake = FakeAggregate([(True, encode(["bool"], [True]))])
        multicall.contract = type("Contract", (), {"functions": type("Functions", (), {"aggregate3": fake})()})()

        result = await multicall.aggregate([Call(TARGET.lower(), b"\x12\x34", ["bool"])])
        assert result == [True]
        assert fake.calls == [(Web3.to_checksum_address(TARGET), True, b"\x12\x34")]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await Multicall(AsyncWeb3(AsyncHTTPProvider("http://localhost:8545"))).aggregate([]) == []
