"""
DEX market snapshots for the searcher.

A Market is the read-only, per-cycle view of one liquidity pool. The
arbitrage core only ever calls the four operations declared on the base
class, so any protocol can be plugged in by subclassing it.

UniswapV2 math (0.3% fee):
    amountOut = (amountIn * 997 * reserveOut) / (reserveIn * 1000 + amountIn * 997)
    amountIn  = (reserveIn * amountOut * 1000) / ((reserveOut - amountOut) * 997) + 1
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi import encode
from web3 import Web3

from .multicall import Multicall

logger = logging.getLogger(__name__)

# swap(uint256,uint256,address,bytes)
SWAP_SELECTOR = bytes.fromhex("022c0d9f")


class InsufficientLiquidityError(ValueError):
    """Raised when a pool cannot provide the requested output amount."""
    pass


@dataclass
class MultipleCallData:
    """Ordered call targets and their payloads."""
    targets: List[str] = field(default_factory=list)
    payloads: List[bytes] = field(default_factory=list)


# ============================================
# Constant product math
# ============================================

def get_amount_out(
    amount_in: int,
    reserve_in: int,
    reserve_out: int
) -> int:
    """V2 swap output calculation."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0

    amount_in_with_fee = amount_in * 997
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * 1000 + amount_in_with_fee

    return numerator // denominator


def get_amount_in(
    amount_out: int,
    reserve_in: int,
    reserve_out: int
) -> int:
    """
    V2 input required for an exact output.

    Raises:
        InsufficientLiquidityError: the pool holds no more than amount_out
    """
    if amount_out >= reserve_out or reserve_in <= 0:
        raise InsufficientLiquidityError(
            f"cannot take {amount_out} out of reserve {reserve_out}"
        )
    if amount_out <= 0:
        return 0

    numerator = reserve_in * amount_out * 1000
    denominator = (reserve_out - amount_out) * 997

    return numerator // denominator + 1


# ============================================
# Market interface
# ============================================

class Market(ABC):
    """
    Per-cycle quote and call-encoding capability of one pool.

    Reserves may change between cycles but are treated as immutable while
    a cycle is being evaluated.
    """

    def __init__(self, address: str, tokens: Sequence[str], protocol: str):
        self.address = Web3.to_checksum_address(address)
        self.tokens: Tuple[str, ...] = tuple(Web3.to_checksum_address(t) for t in tokens)
        self.protocol = protocol

    @abstractmethod
    def quote_out(self, token_in: str, token_out: str, amount_in: int) -> int:
        """Tokens received for selling amount_in of token_in."""

    @abstractmethod
    def quote_in(self, token_in: str, token_out: str, amount_out: int) -> int:
        """Tokens of token_in needed to receive amount_out of token_out."""

    @abstractmethod
    def build_routed_calls(
        self,
        token_in: str,
        amount_in: int,
        next_market: "Market"
    ) -> MultipleCallData:
        """Calls swapping amount_in and forwarding the output to next_market."""

    @abstractmethod
    def build_swap_call(self, token_in: str, amount_in: int, recipient: str) -> bytes:
        """Payload swapping amount_in of token_in, delivered to recipient."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.protocol} {self.address})"


class UniswapV2Market(Market):
    """UniswapV2-style constant product pair (Uniswap, Sushiswap, ...)."""

    def __init__(self, address: str, tokens: Sequence[str], protocol: str = "UniswapV2"):
        super().__init__(address, tokens, protocol)
        if len(self.tokens) != 2:
            raise ValueError(f"pair {address} must trade exactly two tokens")
        self._reserves: Dict[str, int] = {t.lower(): 0 for t in self.tokens}

    def set_reserves(self, reserve0: int, reserve1: int) -> None:
        self._reserves[self.tokens[0].lower()] = reserve0
        self._reserves[self.tokens[1].lower()] = reserve1

    def get_balance(self, token: str) -> int:
        try:
            return self._reserves[token.lower()]
        except KeyError:
            raise ValueError(f"bad token {token} for pair {self.address}") from None

    def quote_out(self, token_in: str, token_out: str, amount_in: int) -> int:
        return get_amount_out(amount_in, self.get_balance(token_in), self.get_balance(token_out))

    def quote_in(self, token_in: str, token_out: str, amount_out: int) -> int:
        return get_amount_in(amount_out, self.get_balance(token_in), self.get_balance(token_out))

    def build_routed_calls(
        self,
        token_in: str,
        amount_in: int,
        next_market: Market
    ) -> MultipleCallData:
        # V2 pairs accept tokens pushed before swap(), so output goes straight to the next pair
        return MultipleCallData(
            targets=[self.address],
            payloads=[self.build_swap_call(token_in, amount_in, next_market.address)],
        )

    def build_swap_call(self, token_in: str, amount_in: int, recipient: str) -> bytes:
        amount0_out = 0
        amount1_out = 0
        if token_in.lower() == self.tokens[0].lower():
            amount1_out = self.quote_out(token_in, self.tokens[1], amount_in)
        elif token_in.lower() == self.tokens[1].lower():
            amount0_out = self.quote_out(token_in, self.tokens[0], amount_in)
        else:
            raise ValueError(f"bad token input address {token_in}")

        return SWAP_SELECTOR + encode(
            ["uint256", "uint256", "address", "bytes"],
            [amount0_out, amount1_out, Web3.to_checksum_address(recipient), b""],
        )


# ============================================
# Market Data Provider
# ============================================

@dataclass
class MarketsByToken:
    """Markets grouped by the token they trade against the base asset."""
    markets_by_token: Dict[str, List[UniswapV2Market]]
    all_markets: List[UniswapV2Market]


def group_markets_by_token(
    markets: Sequence[UniswapV2Market],
    base_token: str
) -> MarketsByToken:
    """
    Group base-asset pairs by their other token.

    Tokens traded on fewer than two markets cannot be crossed and are dropped.
    """
    base = base_token.lower()
    grouped: Dict[str, List[UniswapV2Market]] = {}

    for market in markets:
        token0, token1 = market.tokens
        if token0.lower() == base:
            other = token1
        elif token1.lower() == base:
            other = token0
        else:
            continue
        grouped.setdefault(other, []).append(market)

    markets_by_token = {token: ms for token, ms in grouped.items() if len(ms) > 1}
    all_markets = [m for ms in markets_by_token.values() for m in ms]

    return MarketsByToken(markets_by_token=markets_by_token, all_markets=all_markets)


async def load_markets_by_token(
    multicall: Multicall,
    pairs: Sequence[Tuple[str, str]],
    base_token: str
) -> MarketsByToken:
    """
    Build markets from (pair address, protocol) entries.

    Pair tokens are read in a single multicall; unreadable pairs are skipped.
    """
    addresses = [address for address, _ in pairs]
    pair_tokens = await multicall.get_pair_tokens_batch(addresses)

    markets: List[UniswapV2Market] = []
    for (address, protocol), tokens in zip(pairs, pair_tokens):
        if tokens is None:
            logger.warning(f"Could not read tokens of pair {address}, skipping")
            continue
        markets.append(UniswapV2Market(address, tokens, protocol))

    grouped = group_markets_by_token(markets, base_token)
    logger.info(
        f"Loaded {len(grouped.all_markets)} markets across "
        f"{len(grouped.markets_by_token)} tokens"
    )
    return grouped


async def update_reserves(
    multicall: Multicall,
    markets: Sequence[UniswapV2Market]
) -> int:
    """
    Refresh reserves of every market in one multicall.

    Markets whose reserves cannot be read are zeroed so they quote nothing
    this cycle. Returns the number of markets refreshed.
    """
    reserves = await multicall.get_reserves_batch([m.address for m in markets])

    updated = 0
    for market, reserve in zip(markets, reserves):
        if reserve is None:
            logger.debug(f"No reserves for {market.address}")
            market.set_reserves(0, 0)
            continue
        market.set_reserves(reserve[0], reserve[1])
        updated += 1

    return updated
