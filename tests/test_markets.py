import asyncio

import pytest
from eth_abi import decode

from conftest import ETHER, OTHER_TOKEN, TOKEN, WETH, make_v2_market
from searcher.markets import (
    SWAP_SELECTOR,
    InsufficientLiquidityError,
    UniswapV2Market,
    get_amount_in,
    get_amount_out,
    group_markets_by_token,
    load_markets_by_token,
    update_reserves,
)

PAIR_A = "0xa1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1a1"
PAIR_B = "0xb2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2b2"
PAIR_C = "0xc3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3c3"
PAIR_D = "0xd4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4d4"
PAIR_E = "0xe5e5e5e5e5e5e5e5e5e5e5e5e5e5e5e5e5e5e5e5"


class _FakeMulticall:
    def __init__(self, tokens=None, reserves=None):
        self.tokens = tokens or {}
        self.reserves = reserves or {}

    async def get_pair_tokens_batch(self, addresses):
        return [self.tokens.get(a) for a in addresses]

    async def get_reserves_batch(self, addresses):
        return [self.reserves.get(a) for a in addresses]


def _decode_swap(payload: bytes):
    assert payload[:4] == SWAP_SELECTOR
    return decode(["uint256", "uint256", "address", "bytes"], payload[4:])


def test_get_amount_out_applies_fee():
    assert get_amount_out(1000, 10_000, 10_000) == 906


def test_get_amount_out_non_positive_input():
    assert get_amount_out(0, 10_000, 10_000) == 0
    assert get_amount_out(-5, 10_000, 10_000) == 0
    assert get_amount_out(1000, 0, 10_000) == 0


def test_get_amount_in_inverts_amount_out():
    assert get_amount_in(906, 10_000, 10_000) == 1000


def test_get_amount_in_rejects_draining_the_pool():
    with pytest.raises(InsufficientLiquidityError):
        get_amount_in(10_000, 10_000, 10_000)

    with pytest.raises(InsufficientLiquidityError):
        get_amount_in(1, 0, 10_000)


def test_market_quotes_follow_token_direction():
    market = make_v2_market(PAIR_A, token_reserve=2000 * ETHER, weth_reserve=ETHER)

    tokens_out = market.quote_out(WETH, TOKEN, ETHER // 100)
    assert tokens_out == get_amount_out(ETHER // 100, ETHER, 2000 * ETHER)

    weth_in = market.quote_in(WETH, TOKEN, tokens_out)
    assert weth_in <= ETHER // 100 + 1


def test_market_rejects_unknown_token():
    market = make_v2_market(PAIR_A, 100, 100)

    with pytest.raises(ValueError):
        market.get_balance(OTHER_TOKEN)
    with pytest.raises(ValueError):
        market.build_swap_call(OTHER_TOKEN, 10, PAIR_B)


def test_market_requires_two_tokens():
    with pytest.raises(ValueError):
        UniswapV2Market(PAIR_A, [TOKEN], "UniswapV2")


def test_swap_call_pays_the_opposite_side():
    market = make_v2_market(PAIR_A, token_reserve=2000 * ETHER, weth_reserve=ETHER)

    # WETH is token1: the payload takes token0 out
    amount0_out, amount1_out, recipient, data = _decode_swap(
        market.build_swap_call(WETH, ETHER // 10, PAIR_B)
    )
    assert amount0_out == market.quote_out(WETH, TOKEN, ETHER // 10)
    assert amount1_out == 0
    assert recipient.lower() == PAIR_B.lower()
    assert data == b""

    amount0_out, amount1_out, _, _ = _decode_swap(
        market.build_swap_call(TOKEN, 100 * ETHER, PAIR_B)
    )
    assert amount0_out == 0
    assert amount1_out == market.quote_out(TOKEN, WETH, 100 * ETHER)


def test_routed_calls_deliver_to_next_market():
    market = make_v2_market(PAIR_A, token_reserve=2000 * ETHER, weth_reserve=ETHER)
    next_market = make_v2_market(PAIR_B, token_reserve=2000 * ETHER, weth_reserve=ETHER)

    calls = market.build_routed_calls(WETH, ETHER // 10, next_market)

    assert calls.targets == [market.address]
    _, _, recipient, _ = _decode_swap(calls.payloads[0])
    assert recipient.lower() == next_market.address.lower()


def test_group_markets_keeps_tokens_with_several_markets():
    crossed_a = make_v2_market(PAIR_A, 100, 100)
    crossed_b = UniswapV2Market(PAIR_B, [WETH, TOKEN])
    lonely = make_v2_market(PAIR_C, 100, 100, token=OTHER_TOKEN)
    no_base = UniswapV2Market(PAIR_D, [TOKEN, OTHER_TOKEN])

    grouped = group_markets_by_token([crossed_a, crossed_b, lonely, no_base], WETH)

    assert list(grouped.markets_by_token) == [TOKEN]
    assert grouped.markets_by_token[TOKEN] == [crossed_a, crossed_b]
    assert grouped.all_markets == [crossed_a, crossed_b]


def test_load_markets_skips_unreadable_pairs():
    multicall = _FakeMulticall(tokens={
        PAIR_A: (TOKEN, WETH),
        PAIR_B: (WETH, TOKEN),
        PAIR_C: (OTHER_TOKEN, WETH),
    })
    pairs = [
        (PAIR_A, "UniswapV2"),
        (PAIR_B, "Sushiswap"),
        (PAIR_C, "UniswapV2"),
        (PAIR_E, "UniswapV2"),
    ]

    grouped = asyncio.run(load_markets_by_token(multicall, pairs, WETH))

    markets = grouped.markets_by_token[TOKEN]
    assert [m.protocol for m in markets] == ["UniswapV2", "Sushiswap"]
    assert OTHER_TOKEN not in grouped.markets_by_token


def test_update_reserves_zeroes_failed_markets():
    refreshed = make_v2_market(PAIR_A, 1, 1)
    failed = make_v2_market(PAIR_B, 5, 5)
    multicall = _FakeMulticall(reserves={refreshed.address: (300, 400, 12345)})

    updated = asyncio.run(update_reserves(multicall, [refreshed, failed]))

    assert updated == 1
    assert refreshed.get_balance(TOKEN) == 300
    assert refreshed.get_balance(WETH) == 400
    assert failed.get_balance(TOKEN) == 0
    assert failed.quote_out(WETH, TOKEN, ETHER) == 0
