"""
Cross-market arbitrage search.

Every cycle:
1. Price each market of a token at a small probe volume
2. Pair markets whose prices are crossed (sell price above buy price)
3. Walk a fixed ladder of trade sizes per pair, refining once at the first drop
4. Keep the best pair per token, filter by minimum profit, rank by profit

All amounts are integers in base-asset wei. Everything here is a pure
function of the current reserve snapshot.
"""

import logging
from dataclasses import dataclass
from functools import reduce
from typing import AbstractSet, Dict, List, Optional, Sequence

from .markets import InsufficientLiquidityError, Market

logger = logging.getLogger(__name__)

# ============================================
# Constants
# ============================================

ETHER = 10 ** 18

# 0.01 ETH, used to sample instantaneous prices
PROBE_VOLUME = ETHER // 100

# Opportunities must clear 0.001 ETH unless their token skips the gain check
MIN_PROFIT = ETHER // 1000

# TODO: replace the single midpoint refinement with a real binary search
TEST_VOLUMES = (
    ETHER // 1000,
    ETHER // 100,
    ETHER // 10,
    ETHER // 6,
    ETHER // 4,
    ETHER // 2,
    ETHER,
    ETHER * 2,
    ETHER * 5,
    ETHER * 10,
)

MarketsByTokenMap = Dict[str, List[Market]]


# ============================================
# Data Structures
# ============================================

@dataclass(frozen=True)
class PricedMarket:
    """A market with its token prices quoted at the probe volume."""
    market: Market
    buy_token_price: int   # tokens needed in to receive PROBE_VOLUME of base
    sell_token_price: int  # tokens received for PROBE_VOLUME of base


@dataclass(frozen=True)
class CandidatePair:
    """Ordered pair: tokens are bought on buy_market and sold on sell_market."""
    sell_market: Market
    buy_market: Market


@dataclass(frozen=True)
class Opportunity:
    """Best trade found for one token in this cycle."""
    token_address: str
    buy_market: Market
    sell_market: Market
    volume: int
    profit: int
    check_gain: bool = True

    def describe(self) -> str:
        buy_tokens = self.buy_market.tokens
        sell_tokens = self.sell_market.tokens
        return (
            f"Profit: {format_ether(self.profit)} Volume: {format_ether(self.volume)}\n"
            f"{self.buy_market.protocol} ({self.buy_market.address})\n"
            f"  {buy_tokens[0]} => {buy_tokens[1]}\n"
            f"{self.sell_market.protocol} ({self.sell_market.address})\n"
            f"  {sell_tokens[0]} => {sell_tokens[1]}\n"
        )


def format_ether(amount: int, decimals: int = 18) -> str:
    """Format a wei amount as a decimal string."""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** decimals)
    return f"{sign}{whole}.{frac:0{decimals}d}".rstrip("0").rstrip(".")


# ============================================
# CrossDetector
# ============================================

def price_markets(
    markets: Sequence[Market],
    token_address: str,
    base_token: str
) -> List[PricedMarket]:
    """Quote every market at the probe volume, skipping illiquid ones."""
    priced = []
    for market in markets:
        try:
            priced.append(PricedMarket(
                market=market,
                buy_token_price=market.quote_in(token_address, base_token, PROBE_VOLUME),
                sell_token_price=market.quote_out(base_token, token_address, PROBE_VOLUME),
            ))
        except InsufficientLiquidityError as e:
            logger.debug(f"Skipping {market.address} for {token_address}: {e}")
    return priced


def detect_crossed_pairs(
    markets: Sequence[Market],
    token_address: str,
    base_token: str,
    check_gain: bool = True
) -> List[CandidatePair]:
    """
    Ordered (sell, buy) pairs of distinct markets whose prices are crossed.

    Pair (A, B) is emitted when B gives more tokens for the probe than A
    needs to pay the probe back out. With check_gain off every ordered pair
    of distinct markets is emitted.
    """
    priced = price_markets(markets, token_address, base_token)

    pairs = []
    for sell_side in priced:
        for buy_side in priced:
            if sell_side.market.address.lower() == buy_side.market.address.lower():
                continue
            if not check_gain or buy_side.sell_token_price > sell_side.buy_token_price:
                pairs.append(CandidatePair(
                    sell_market=sell_side.market,
                    buy_market=buy_side.market,
                ))
    return pairs


# ============================================
# ProfitSearch
# ============================================

def calculate_profit(
    pair: CandidatePair,
    token_address: str,
    base_token: str,
    size: int
) -> int:
    """Base asset returned by the round trip minus the base asset spent."""
    tokens_out = pair.buy_market.quote_out(base_token, token_address, size)
    proceeds = pair.sell_market.quote_out(token_address, base_token, tokens_out)
    return proceeds - size


def search_best_size(
    pair: CandidatePair,
    token_address: str,
    base_token: str,
    check_gain: bool = True,
    volumes: Sequence[int] = TEST_VOLUMES
) -> Optional[Opportunity]:
    """
    Best (volume, profit) for one pair over the size ladder.

    Assumes profit rises then falls with size: the walk stops at the first
    size that loses against the best so far, after probing the midpoint
    between the two once.
    """
    best: Optional[Opportunity] = None

    for size in volumes:
        profit = calculate_profit(pair, token_address, base_token, size)

        if best is not None and profit < best.profit:
            try_size = (size + best.volume) // 2
            try_profit = calculate_profit(pair, token_address, base_token, try_size)
            if try_profit > best.profit:
                best = _opportunity(pair, token_address, try_size, try_profit, check_gain)
            break

        best = _opportunity(pair, token_address, size, profit, check_gain)

    return best


def _opportunity(
    pair: CandidatePair,
    token_address: str,
    volume: int,
    profit: int,
    check_gain: bool
) -> Opportunity:
    return Opportunity(
        token_address=token_address,
        buy_market=pair.buy_market,
        sell_market=pair.sell_market,
        volume=volume,
        profit=profit,
        check_gain=check_gain,
    )


# ============================================
# OpportunityRanker
# ============================================

def keep_better(
    best: Optional[Opportunity],
    candidate: Optional[Opportunity]
) -> Optional[Opportunity]:
    """Keep the candidate only if it is strictly more profitable."""
    if candidate is None:
        return best
    if best is None or candidate.profit > best.profit:
        return candidate
    return best


def best_opportunity_for_token(
    markets: Sequence[Market],
    token_address: str,
    base_token: str,
    check_gain: bool = True
) -> Optional[Opportunity]:
    """Most profitable pair and size for one token, or None."""
    pairs = detect_crossed_pairs(markets, token_address, base_token, check_gain)
    return reduce(
        keep_better,
        (search_best_size(p, token_address, base_token, check_gain) for p in pairs),
        None,
    )


def find_opportunities(
    markets_by_token: MarketsByTokenMap,
    base_token: str,
    gain_check_exempt: AbstractSet[str] = frozenset(),
    min_profit: int = MIN_PROFIT
) -> List[Opportunity]:
    """
    Best opportunity per token, sorted by descending profit.

    Tokens in gain_check_exempt (lowercase addresses) skip both the crossed
    price requirement and the minimum profit filter.
    """
    exempt = {t.lower() for t in gain_check_exempt}
    opportunities = []

    for token_address, markets in markets_by_token.items():
        check_gain = token_address.lower() not in exempt
        best = best_opportunity_for_token(markets, token_address, base_token, check_gain)

        if best is None:
            continue
        if check_gain and best.profit <= min_profit:
            continue
        opportunities.append(best)

    # sorted() is stable, ties keep discovery order
    return sorted(opportunities, key=lambda o: o.profit, reverse=True)
