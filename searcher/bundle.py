"""
Bundle construction and gas finalization.

BundleBuilder turns one Opportunity into a single call to the
BundleExecutor contract:

    uniswapWeth(wethAmountToFirstMarket, ethAmountToCoinbase, targets, payloads, checkGain)

The contract sends `volume` WETH to the first target, executes every
(target, payload) in order and pays `reward` to the block builder. The buy
legs come first and route their output straight into the sell market; the
sell leg comes last and pays WETH back to the contract.

GasEstimator dry-runs that transaction and either finalizes its gas fields
or abandons the opportunity.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from eth_abi import encode
from web3 import Web3

from .arbitrage import Opportunity, format_ether
from .config_loader import GasConfig
from .network import FeeData, NetworkManager

logger = logging.getLogger(__name__)

UNISWAP_WETH_SIGNATURE = "uniswapWeth(uint256,uint256,address[],bytes[],bool)"
UNISWAP_WETH_SELECTOR = bytes(Web3.keccak(text=UNISWAP_WETH_SIGNATURE)[:4])

# Loss-allowed opportunities pay three times the absolute reward
NO_GAIN_CHECK_REWARD_MULTIPLIER = 3


class OpportunityAbandoned(Exception):
    """An opportunity failed a recoverable step and must be skipped."""
    pass


class GasEstimationError(OpportunityAbandoned):
    """Dry run reverted or returned a suspicious estimate."""
    pass


@dataclass(frozen=True)
class Bundle:
    """Calls, reward and transaction for one opportunity."""
    opportunity: Opportunity
    targets: List[str]
    payloads: List[bytes]
    reward: int
    intermediate_amount: int
    transaction: Dict[str, Any]
    gas_estimate: Optional[int] = None


def _div_toward_zero(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def calculate_reward(profit: int, reward_percentage: int, check_gain: bool = True) -> int:
    """
    Builder payment for an opportunity.

    profit * pct / 100 normally; abs(profit * pct / 100) * 3 when the gain
    check is off, since those trades may show a computed loss.
    """
    reward = _div_toward_zero(profit * reward_percentage, 100)
    if not check_gain:
        reward = abs(reward) * NO_GAIN_CHECK_REWARD_MULTIPLIER
    return reward


def encode_uniswap_weth(
    volume: int,
    reward: int,
    targets: List[str],
    payloads: List[bytes],
    check_gain: bool
) -> bytes:
    """Calldata for BundleExecutor.uniswapWeth."""
    return UNISWAP_WETH_SELECTOR + encode(
        ["uint256", "uint256", "address[]", "bytes[]", "bool"],
        [
            volume,
            reward,
            [Web3.to_checksum_address(t) for t in targets],
            list(payloads),
            check_gain,
        ],
    )


class BundleBuilder:
    """Builds the executor call for an opportunity."""

    def __init__(
        self,
        executor_contract_address: str,
        base_token: str,
        gas_config: GasConfig
    ):
        self.executor_contract_address = Web3.to_checksum_address(executor_contract_address)
        self.base_token = Web3.to_checksum_address(base_token)
        self.gas_config = gas_config

    def build_calls(self, opportunity: Opportunity) -> tuple:
        """
        Ordered (targets, payloads) and the intermediate token amount.

        Buy calls first, sell call last: the sell leg must see the tokens the
        buy legs delivered.
        """
        buy_calls = opportunity.buy_market.build_routed_calls(
            self.base_token, opportunity.volume, opportunity.sell_market
        )
        intermediate = opportunity.buy_market.quote_out(
            self.base_token, opportunity.token_address, opportunity.volume
        )
        sell_payload = opportunity.sell_market.build_swap_call(
            opportunity.token_address, intermediate, self.executor_contract_address
        )

        targets = [*buy_calls.targets, opportunity.sell_market.address]
        payloads = [*buy_calls.payloads, sell_payload]
        return targets, payloads, intermediate

    def fee_fields(self, fee_data: FeeData) -> Dict[str, int]:
        """EIP-1559 fee fields with the configured multiplier applied."""
        multiplier = self.gas_config.fee_multiplier

        if fee_data.max_priority_fee_per_gas:
            priority_fee = fee_data.max_priority_fee_per_gas * multiplier
        else:
            priority_fee = self.gas_config.fallback_priority_fee

        if fee_data.max_fee_per_gas:
            max_fee = fee_data.max_fee_per_gas * multiplier
        else:
            max_fee = priority_fee

        return {
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": max(max_fee, priority_fee),
        }

    def build(
        self,
        opportunity: Opportunity,
        reward_percentage: int,
        fee_data: FeeData
    ) -> Bundle:
        """Draft bundle; gas limit, nonce and chain id are set by GasEstimator."""
        targets, payloads, intermediate = self.build_calls(opportunity)
        reward = calculate_reward(opportunity.profit, reward_percentage, opportunity.check_gain)

        logger.info(
            f"Send {format_ether(opportunity.volume)} WETH for "
            f"{format_ether(opportunity.profit)} profit, "
            f"paying builder reward {format_ether(reward)}"
        )
        logger.debug(f"targets={targets} payloads={[Web3.to_hex(p) for p in payloads]}")

        transaction = {
            "to": self.executor_contract_address,
            "data": Web3.to_hex(encode_uniswap_weth(
                opportunity.volume, reward, targets, payloads, opportunity.check_gain
            )),
            "value": 0,
            "type": 2,
            "gas": self.gas_config.draft_gas_limit,
            **self.fee_fields(fee_data),
        }

        return Bundle(
            opportunity=opportunity,
            targets=targets,
            payloads=payloads,
            reward=reward,
            intermediate_amount=intermediate,
            transaction=transaction,
        )


class GasEstimator:
    """Dry-runs a draft bundle and finalizes its gas fields."""

    def __init__(
        self,
        network: NetworkManager,
        wallet_address: str,
        gas_config: GasConfig,
        chain_id: int
    ):
        self.network = network
        self.wallet_address = Web3.to_checksum_address(wallet_address)
        self.gas_config = gas_config
        self.chain_id = chain_id

    async def finalize(self, bundle: Bundle) -> Bundle:
        """
        Bundle with gas limit, chain id and nonce set.

        Raises:
            GasEstimationError: the dry run failed or the estimate is above
                the configured ceiling
        """
        draft = {**bundle.transaction, "from": self.wallet_address}

        try:
            estimate = await self.network.estimate_gas(draft)
        except Exception as e:
            raise GasEstimationError(
                f"Estimate gas failure for {bundle.opportunity.token_address}: {e}"
            ) from e

        if estimate > self.gas_config.max_gas_estimate:
            raise GasEstimationError(
                f"EstimateGas succeeded, but suspiciously large: {estimate}"
            )

        nonce = await self.network.get_nonce(self.wallet_address)
        transaction = {
            **bundle.transaction,
            "gas": estimate * (self.gas_config.gas_limit_multiplier + 1),
            "chainId": self.chain_id,
            "nonce": nonce,
        }

        logger.info(
            f"fees => gasLimit: {transaction['gas']} "
            f"maxPriorityFeePerGas: {transaction['maxPriorityFeePerGas']} "
            f"maxFeePerGas: {transaction['maxFeePerGas']}"
        )
        return replace(bundle, transaction=transaction, gas_estimate=estimate)
