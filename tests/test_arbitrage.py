from conftest import ETHER, OTHER_TOKEN, TOKEN, WETH, FixedRateMarket, make_v2_market
from searcher.arbitrage import (
    MIN_PROFIT,
    TEST_VOLUMES,
    CandidatePair,
    calculate_profit,
    detect_crossed_pairs,
    find_opportunities,
    format_ether,
    keep_better,
    search_best_size,
)
from searcher.markets import Market, MultipleCallData

M1 = "0xa1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1"
M2 = "0xb2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2"
M3 = "0xc3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3"
M4 = "0xd4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4"


class _CurveMarket(Market):
    """1:1 on the way in, base out = 23x - x^2 on the way back."""

    def __init__(self, address):
        super().__init__(address, [TOKEN, WETH], "Curve")
        self.seen = []

    def quote_out(self, token_in, token_out, amount_in):
        if token_in.lower() == WETH.lower():
            return amount_in
        self.seen.append(amount_in)
        return 23 * amount_in - amount_in * amount_in

    def quote_in(self, token_in, token_out, amount_out):
        return amount_out

    def build_routed_calls(self, token_in, amount_in, next_market):
        return MultipleCallData()

    def build_swap_call(self, token_in, amount_in, recipient):
        return b""


def _scenario_b():
    m1 = FixedRateMarket(M1, TOKEN, token_per_base=1050, base_per_token=940)
    m2 = FixedRateMarket(M2, TOKEN, token_per_base=980, base_per_token=1010)
    return m1, m2


def test_uncrossed_markets_yield_nothing():
    m1 = FixedRateMarket(M1, TOKEN, token_per_base=1020, base_per_token=950)
    m2 = FixedRateMarket(M2, TOKEN, token_per_base=1000, base_per_token=970)

    assert detect_crossed_pairs([m1, m2], TOKEN, WETH) == []
    assert find_opportunities({TOKEN: [m1, m2]}, WETH) == []


def test_crossed_markets_yield_profitable_opportunity():
    m1, m2 = _scenario_b()

    pairs = detect_crossed_pairs([m1, m2], TOKEN, WETH)
    assert pairs == [CandidatePair(sell_market=m2, buy_market=m1)]

    opportunities = find_opportunities({TOKEN: [m1, m2]}, WETH)

    assert len(opportunities) == 1
    best = opportunities[0]
    assert best.buy_market is m1
    assert best.sell_market is m2
    # Fixed rates never saturate, so the largest ladder size wins
    assert best.volume == TEST_VOLUMES[-1]
    assert best.profit == ETHER * 605 // 1000
    assert best.profit > MIN_PROFIT


def test_same_address_is_never_paired():
    m1 = FixedRateMarket(M1, TOKEN, token_per_base=1050, base_per_token=940)
    twin = FixedRateMarket(M1.upper().replace("0X", "0x"), TOKEN, 980, 1010)

    assert detect_crossed_pairs([m1, twin], TOKEN, WETH) == []
    assert detect_crossed_pairs([m1, twin], TOKEN, WETH, check_gain=False) == []


def test_search_refines_once_at_first_drop():
    buy = _CurveMarket(M1)
    sell = _CurveMarket(M2)
    pair = CandidatePair(sell_market=sell, buy_market=buy)

    best = search_best_size(pair, TOKEN, WETH, volumes=(2, 4, 8, 16, 32))

    # 16 loses against 8, the midpoint 12 beats it and the walk stops
    assert (best.volume, best.profit) == (12, 120)
    assert sell.seen == [2, 4, 8, 16, 12]


def test_search_on_constant_product_pools_dominates_the_ladder():
    cheap = make_v2_market(M1, token_reserve=210_000 * ETHER, weth_reserve=100 * ETHER)
    dear = make_v2_market(M2, token_reserve=200_000 * ETHER, weth_reserve=100 * ETHER)

    pairs = detect_crossed_pairs([cheap, dear], TOKEN, WETH)
    assert pairs == [CandidatePair(sell_market=dear, buy_market=cheap)]

    best = search_best_size(pairs[0], TOKEN, WETH)
    ladder_best = max(calculate_profit(pairs[0], TOKEN, WETH, v) for v in TEST_VOLUMES)

    assert best.profit > 0
    assert best.profit >= ladder_best
    # Oversized trades lose to slippage
    assert calculate_profit(pairs[0], TOKEN, WETH, TEST_VOLUMES[-1]) < 0


def test_opportunities_sorted_by_profit():
    m1, m2 = _scenario_b()
    m3 = FixedRateMarket(M3, OTHER_TOKEN, token_per_base=1020, base_per_token=940)
    m4 = FixedRateMarket(M4, OTHER_TOKEN, token_per_base=980, base_per_token=1010)

    opportunities = find_opportunities({OTHER_TOKEN: [m3, m4], TOKEN: [m1, m2]}, WETH)

    assert [o.token_address for o in opportunities] == [TOKEN, OTHER_TOKEN]
    assert opportunities[1].profit == ETHER * 302 // 1000
    profits = [o.profit for o in opportunities]
    assert profits == sorted(profits, reverse=True)


def test_min_profit_is_exclusive():
    m1, m2 = _scenario_b()
    profit = ETHER * 605 // 1000

    assert find_opportunities({TOKEN: [m1, m2]}, WETH, min_profit=profit) == []
    assert len(find_opportunities({TOKEN: [m1, m2]}, WETH, min_profit=profit - 1)) == 1


def test_exempt_token_is_kept_at_a_loss():
    m1 = FixedRateMarket(M1, TOKEN, token_per_base=1020, base_per_token=950)
    m2 = FixedRateMarket(M2, TOKEN, token_per_base=1000, base_per_token=970)

    opportunities = find_opportunities({TOKEN: [m1, m2]}, WETH, gain_check_exempt={TOKEN.lower()})

    assert len(opportunities) == 1
    best = opportunities[0]
    assert best.check_gain is False
    assert best.profit < 0
    assert best.volume == TEST_VOLUMES[0]
    assert best.buy_market is m1


def test_equal_profits_keep_discovery_order():
    m1, m2 = _scenario_b()
    m3 = FixedRateMarket(M3, OTHER_TOKEN, token_per_base=1050, base_per_token=940)
    m4 = FixedRateMarket(M4, OTHER_TOKEN, token_per_base=980, base_per_token=1010)

    forward = find_opportunities({TOKEN: [m1, m2], OTHER_TOKEN: [m3, m4]}, WETH)
    backward = find_opportunities({OTHER_TOKEN: [m3, m4], TOKEN: [m1, m2]}, WETH)

    assert [o.token_address for o in forward] == [TOKEN, OTHER_TOKEN]
    assert [o.token_address for o in backward] == [OTHER_TOKEN, TOKEN]


def test_keep_better_requires_strict_improvement():
    m1, m2 = _scenario_b()
    pair = CandidatePair(sell_market=m2, buy_market=m1)
    first = search_best_size(pair, TOKEN, WETH)
    second = search_best_size(pair, TOKEN, WETH)

    assert keep_better(None, first) is first
    assert keep_better(first, None) is first
    assert keep_better(first, second) is first


def test_format_ether():
    assert format_ether(ETHER) == "1"
    assert format_ether(ETHER * 605 // 1000) == "0.605"
    assert format_ether(-ETHER // 100) == "-0.01"
    assert format_ether(25 * 10 ** 8, 9) == "2.5"
