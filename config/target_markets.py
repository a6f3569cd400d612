"""
Flashbots Searcher - Target Markets Configuration

Ethereum mainnet UniswapV2-style pairs trading against WETH.

⚠️ IMPORTANT:
- Every token needs at least two markets, otherwise it is never crossed
- Pair tokens are read on-chain at startup, only the pair address matters

Venues:
- Uniswap V2
- Sushiswap
"""

TARGET_MARKETS = [

    # =========================================
    # USDC
    # =========================================
    {
        "symbol": "USDC",
        "address": "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc",
        "protocol": "UniswapV2",
    },
    {
        "symbol": "USDC",
        "address": "0x397FF1542f962076d0BFE58eA045FfA2d347ACa0",
        "protocol": "Sushiswap",
    },

    # =========================================
    # DAI
    # =========================================
    {
        "symbol": "DAI",
        "address": "0xA478c2975Ab1Ea89e8196811F51A7B7Ade33eB11",
        "protocol": "UniswapV2",
    },
    {
        "symbol": "DAI",
        "address": "0xC3D03e4F041Fd4cD388c549Ee2A29a9E5075882f",
        "protocol": "Sushiswap",
    },

    # =========================================
    # USDT
    # =========================================
    {
        "symbol": "USDT",
        "address": "0x0d4a11d5EEaaC28EC3F61d100daF4d40471f1852",
        "protocol": "UniswapV2",
    },
    {
        "symbol": "USDT",
        "address": "0x06da0fd433C1A5d7a4faa01111c044910A184553",
        "protocol": "Sushiswap",
    },

    # =========================================
    # WBTC (gain check disabled by default)
    # =========================================
    {
        "symbol": "WBTC",
        "address": "0xBb2b8038a1640196FbE3e38816F3e67Cba72D940",
        "protocol": "UniswapV2",
    },
    {
        "symbol": "WBTC",
        "address": "0xCEfF51756c56CeFFCA006cD410B03FFC46dd3a58",
        "protocol": "Sushiswap",
    },

]


# =========================================
# Helper functions for quick access
# =========================================

def get_market_pairs() -> list:
    """(pair address, protocol) tuples for the market loader."""
    return [(market["address"], market["protocol"]) for market in TARGET_MARKETS]

