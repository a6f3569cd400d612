"""
Flashbots Searcher: 核心模块
以太坊跨市场 WETH 套利（Flashbots bundle 提交）
"""

from .arbitrage import Opportunity, find_opportunities
from .bundle import BundleBuilder, GasEstimator, OpportunityAbandoned
from .config_loader import ConfigLoader, SearcherConfig
from .executor import NoArbitrageSubmittedError, RelaySubmitter
from .markets import Market, UniswapV2Market, load_markets_by_token
from .network import NetworkManager
from .relay import FlashbotsRelay

__all__ = [
    "BundleBuilder",
    "ConfigLoader",
    "FlashbotsRelay",
    "GasEstimator",
    "Market",
    "NetworkManager",
    "NoArbitrageSubmittedError",
    "Opportunity",
    "OpportunityAbandoned",
    "RelaySubmitter",
    "SearcherConfig",
    "UniswapV2Market",
    "find_opportunities",
    "load_markets_by_token",
]
