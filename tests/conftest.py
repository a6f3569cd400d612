from typing import Dict, List, Optional

import pytest
from eth_account import Account

from searcher.arbitrage import Opportunity
from searcher.config_loader import ChainConfig, GasConfig, SearcherConfig
from searcher.markets import Market, MultipleCallData, UniswapV2Market
from searcher.network import FeeData
from searcher.relay import BundleStats, BundleSubmission, SignedBundle, SimulationResult

WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
TOKEN = "0x1111111111111111111111111111111111111111"
OTHER_TOKEN = "0x3333333333333333333333333333333333333333"
EXECUTOR = "0x2222222222222222222222222222222222222222"

ETHER = 10 ** 18


class FixedRateMarket(Market):
    """Quotes at constant rates (in thousandths) whatever the size."""

    def __init__(self, address: str, token: str, token_per_base: int, base_per_token: int):
        super().__init__(address, [token, WETH], "Fixed")
        self.token_per_base = token_per_base
        self.base_per_token = base_per_token

    def _rate(self, token_in: str) -> int:
        if token_in.lower() == WETH.lower():
            return self.token_per_base
        return self.base_per_token

    def quote_out(self, token_in, token_out, amount_in):
        return amount_in * self._rate(token_in) // 1000

    def quote_in(self, token_in, token_out, amount_out):
        return -(-amount_out * 1000 // self._rate(token_in))

    def build_routed_calls(self, token_in, amount_in, next_market):
        return MultipleCallData(
            targets=[self.address],
            payloads=[b"route" + amount_in.to_bytes(32, "big")],
        )

    def build_swap_call(self, token_in, amount_in, recipient):
        return b"swap" + amount_in.to_bytes(32, "big")


def make_v2_market(
    address: str,
    token_reserve: int,
    weth_reserve: int,
    token: str = TOKEN,
    protocol: str = "UniswapV2"
) -> UniswapV2Market:
    market = UniswapV2Market(address, [token, WETH], protocol)
    market.set_reserves(token_reserve, weth_reserve)
    return market


def make_opportunity(
    profit: int = ETHER // 10,
    volume: int = ETHER,
    token: str = TOKEN,
    check_gain: bool = True,
    suffix: str = "a"
) -> Opportunity:
    buy = FixedRateMarket("0x" + (suffix + "1") * 20, token, 1050, 940)
    sell = FixedRateMarket("0x" + (suffix + "2") * 20, token, 980, 1010)
    return Opportunity(
        token_address=token,
        buy_market=buy,
        sell_market=sell,
        volume=volume,
        profit=profit,
        check_gain=check_gain,
    )


class FakeNetwork:
    """Ledger double recording gas estimates and receipt lookups."""

    def __init__(
        self,
        estimate=200_000,
        fee_data: Optional[FeeData] = None,
        nonce: int = 7,
        receipts: Optional[Dict[str, dict]] = None
    ):
        self.estimate = estimate
        self.fee_data = fee_data or FeeData(
            last_base_fee_per_gas=10 * 10 ** 9,
            max_fee_per_gas=22 * 10 ** 9,
            max_priority_fee_per_gas=2 * 10 ** 9,
        )
        self.nonce = nonce
        self.receipts = receipts or {}
        self.estimated: List[dict] = []
        self.receipt_requests: List[str] = []

    async def get_fee_data(self) -> FeeData:
        return self.fee_data

    async def estimate_gas(self, tx: dict) -> int:
        self.estimated.append(tx)
        if isinstance(self.estimate, Exception):
            raise self.estimate
        return self.estimate

    async def get_nonce(self, address: str) -> int:
        return self.nonce

    async def get_transaction_receipt(self, tx_hash: str):
        self.receipt_requests.append(tx_hash)
        return self.receipts.get(tx_hash)


class FakeRelay:
    """Relay double; simulations are consumed in order, then default to success."""

    def __init__(
        self,
        network: Optional[FakeNetwork] = None,
        simulations: Optional[List[SimulationResult]] = None,
        rejected_blocks=(),
        failing_blocks=(),
        stats_error_blocks=(),
        hashless_blocks=()
    ):
        self.network = network
        self.simulations = list(simulations or [])
        self.rejected_blocks = set(rejected_blocks)
        self.failing_blocks = set(failing_blocks)
        self.stats_error_blocks = set(stats_error_blocks)
        self.hashless_blocks = set(hashless_blocks)
        self.signed: List[list] = []
        self.simulated: List[int] = []
        self.sent: List[int] = []
        self.stats_requests: List[int] = []

    def sign_bundle(self, transactions) -> SignedBundle:
        self.signed.append(transactions)
        return SignedBundle(raw_transactions=["0x02f8"], transaction_hashes=["0xabc"])

    async def simulate(self, signed_bundle, block_number) -> SimulationResult:
        self.simulated.append(block_number)
        if self.simulations:
            return self.simulations.pop(0)
        return SimulationResult(
            bundle_hash="0xsim",
            coinbase_diff=10 ** 16,
            total_gas_used=200_000,
            results=[{"txHash": "0xabc", "gasUsed": 200_000}],
        )

    async def send_raw_bundle(self, signed_bundle, block_number) -> BundleSubmission:
        self.sent.append(block_number)
        if block_number in self.failing_blocks:
            raise RuntimeError(f"relay unreachable for {block_number}")
        if block_number in self.rejected_blocks:
            return BundleSubmission(block_number, error="bundle rejected")
        if block_number in self.hashless_blocks:
            return BundleSubmission(block_number, network=self.network)
        return BundleSubmission(
            block_number,
            bundle_hash=f"0xbundle{block_number}",
            bundle_transactions=list(signed_bundle.transaction_hashes),
            network=self.network,
        )

    async def get_bundle_stats(self, bundle_hash, block_number) -> BundleStats:
        self.stats_requests.append(block_number)
        if block_number in self.stats_error_blocks:
            return BundleStats(error="stats unavailable")
        return BundleStats(
            is_simulated=True,
            considered_by_builders_at=[{"pubkey": "0x01", "timestamp": "2024-01-01T00:00:00Z"}],
        )


@pytest.fixture
def gas_config() -> GasConfig:
    return GasConfig(type="eip1559")


@pytest.fixture
def chain_config(gas_config) -> ChainConfig:
    return ChainConfig(
        name="ETHEREUM",
        chain_id=1,
        rpc_urls=["https://rpc-a.invalid", "https://rpc-b.invalid"],
        native_token="ETH",
        wnative_address=WETH,
        gas_config=gas_config,
        max_retries=2,
    )


@pytest.fixture
def searcher_config(chain_config) -> SearcherConfig:
    return SearcherConfig(
        chain=chain_config,
        private_key="0x" + "11" * 32,
        relay_signing_key="0x" + "22" * 32,
        bundle_executor_address=EXECUTOR,
    )


@pytest.fixture
def wallet():
    return Account.create()
