"""
Flashbots Searcher 配置

两个来源:
- config/chains.json: 链的静态数据（链 ID、RPC 列表、WETH、gas 参数、中继地址）
- 环境变量 / .env: 私钥、合约地址以及运行参数

使用示例:
    >>> config = load_searcher_config("ETHEREUM")
    >>> config.chain.relay_url
    'https://relay.flashbots.net'
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from dotenv import load_dotenv
from eth_account import Account

DEFAULT_RELAY_URL = "https://relay.flashbots.net"
DEFAULT_MULTICALL_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# WBTC 默认关闭收益检查
DEFAULT_GAIN_CHECK_EXEMPT_TOKENS = "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"

REQUIRED_CHAIN_FIELDS = ("chain_id", "rpc_urls", "native_token", "wnative_address", "gas_config")


@dataclass
class GasConfig:
    """Bundle 交易的 gas 参数"""

    type: str
    fee_multiplier: int = 4             # 费用报价放大倍数
    gas_limit_multiplier: int = 4       # gasLimit = 估算 × (倍数 + 1)
    max_gas_estimate: int = 1_400_000   # 超过该估算值的机会直接放弃
    draft_gas_limit: int = 1_000_000    # 估算前草稿交易的 gasLimit
    fallback_priority_fee: int = 2_500_000_000


@dataclass
class ChainConfig:
    """单条链的配置"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    native_token: str
    wnative_address: str
    gas_config: GasConfig
    relay_url: str = DEFAULT_RELAY_URL
    multicall_address: str = DEFAULT_MULTICALL_ADDRESS

    rpc_timeout: int = 10
    relay_timeout: int = 10
    max_retries: int = 3


@dataclass
class SearcherConfig:
    """搜索器运行配置"""

    chain: ChainConfig
    private_key: str
    relay_signing_key: str
    bundle_executor_address: str
    miner_reward_percentage: int = 80
    block_interval: int = 2
    healthcheck_url: str = ""
    gain_check_exempt_tokens: FrozenSet[str] = field(default_factory=frozenset)
    debug_mode: bool = False


class ConfigValidationError(Exception):
    """配置缺失或无效"""
    pass


def _is_address(value: str) -> bool:
    return value.startswith("0x") and len(value) == 42


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigValidationError(f"环境变量 {name} 必须是整数: {raw!r}") from None


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class ConfigLoader:
    """
    合并 chains.json 与环境变量

    环境变量在构造时读取一次；链配置解析后缓存。
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_path: Optional[str] = None
    ) -> None:
        root = self._find_project_root()

        env_file = Path(env_path) if env_path else root / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        config_file = Path(config_path) if config_path else root / "config" / "chains.json"
        self._raw_config = self._load_json_config(config_file)
        self._chain_cache: Dict[str, ChainConfig] = {}

        # 密钥与合约
        self._private_key = os.getenv("PRIVATE_KEY", "")
        self._relay_signing_key = os.getenv("FLASHBOTS_RELAY_SIGNING_KEY", "")
        self._bundle_executor_address = os.getenv("BUNDLE_EXECUTOR_ADDRESS", "")

        # 端点与超时
        self._relay_url = os.getenv("FLASHBOTS_RELAY_URL", "")
        self._rpc_timeout = _env_int("RPC_TIMEOUT", 10)
        self._relay_timeout = _env_int("RELAY_TIMEOUT", 10)
        self._max_retries = _env_int("MAX_RETRIES", 3)

        # 策略
        self._miner_reward_percentage = _env_int("MINER_REWARD_PERCENTAGE", 80)
        self._block_interval = _env_int("BLOCK_INTERVAL", 2)
        self._exempt_tokens = os.getenv("GAIN_CHECK_EXEMPT_TOKENS", DEFAULT_GAIN_CHECK_EXEMPT_TOKENS)
        self._healthcheck_url = os.getenv("HEALTHCHECK_URL", "")
        self._debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"

    @staticmethod
    def _find_project_root() -> Path:
        """向上查找包含 config/chains.json 的目录"""
        here = Path(__file__).resolve().parent
        for candidate in (here, *here.parents):
            if (candidate / "config" / "chains.json").exists():
                return candidate
        return here.parent

    @staticmethod
    def _load_json_config(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigValidationError(f"配置文件不存在: {path}")

        try:
            config = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"{path} 不是有效的 JSON: {e}") from e

        if not isinstance(config, dict):
            raise ConfigValidationError(f"{path} 的顶层必须是对象")
        return config

    @staticmethod
    def _validate_chain_config(name: str, raw: Dict[str, Any]) -> None:
        missing = [f for f in REQUIRED_CHAIN_FIELDS if f not in raw]
        if missing:
            raise ConfigValidationError(f"链 {name} 缺少字段: {', '.join(missing)}")

        if not isinstance(raw["rpc_urls"], list) or not raw["rpc_urls"]:
            raise ConfigValidationError(f"链 {name} 至少需要一个 RPC URL")

        # Flashbots bundle 只接受 type 2 交易
        if raw["gas_config"].get("type") != "eip1559":
            raise ConfigValidationError(f"链 {name} 的 gas_config.type 必须是 'eip1559'")

        if not _is_address(raw["wnative_address"]):
            raise ConfigValidationError(f"链 {name} 的 wnative_address 无效: {raw['wnative_address']}")

    @staticmethod
    def _parse_gas_config(raw: Dict[str, Any]) -> GasConfig:
        known = {f.name for f in fields(GasConfig)}
        return GasConfig(**{k: v for k, v in raw.items() if k in known})

    def get_chain_config(self, chain_name: str) -> ChainConfig:
        """
        解析一条链的配置

        `<CHAIN>_RPC_OVERRIDE`（逗号分隔）替换 RPC 列表，
        FLASHBOTS_RELAY_URL 替换中继地址。

        异常:
            ConfigValidationError: 链不存在或配置无效
        """
        name = chain_name.upper()
        if name in self._chain_cache:
            return self._chain_cache[name]

        if name not in self._raw_config:
            raise ConfigValidationError(
                f"未知的链 '{name}'，可用: {', '.join(self._raw_config)}"
            )

        raw = self._raw_config[name]
        self._validate_chain_config(name, raw)

        override = _split_list(os.getenv(f"{name}_RPC_OVERRIDE", ""))

        chain = ChainConfig(
            name=name,
            chain_id=raw["chain_id"],
            rpc_urls=override or list(raw["rpc_urls"]),
            native_token=raw["native_token"],
            wnative_address=raw["wnative_address"],
            gas_config=self._parse_gas_config(raw["gas_config"]),
            relay_url=self._relay_url or raw.get("relay_url", DEFAULT_RELAY_URL),
            multicall_address=raw.get("multicall_address", DEFAULT_MULTICALL_ADDRESS),
            rpc_timeout=self._rpc_timeout,
            relay_timeout=self._relay_timeout,
            max_retries=self._max_retries,
        )
        self._chain_cache[name] = chain
        return chain

    def get_searcher_config(self, chain_name: str) -> SearcherConfig:
        """
        完整的搜索器配置

        未设置 FLASHBOTS_RELAY_SIGNING_KEY 时生成随机密钥，
        该密钥只用于向中继标识身份，不持有资金。

        异常:
            ConfigValidationError: 缺少私钥、合约地址无效或参数越界
        """
        chain = self.get_chain_config(chain_name)

        if not self.has_private_key:
            raise ConfigValidationError("缺少 PRIVATE_KEY")
        if not _is_address(self._bundle_executor_address):
            raise ConfigValidationError(
                f"BUNDLE_EXECUTOR_ADDRESS 无效: {self._bundle_executor_address!r}"
            )
        if not 0 <= self._miner_reward_percentage <= 100:
            raise ConfigValidationError(
                f"MINER_REWARD_PERCENTAGE 必须在 0-100 之间: {self._miner_reward_percentage}"
            )
        if self._block_interval < 1:
            raise ConfigValidationError(f"BLOCK_INTERVAL 必须 >= 1: {self._block_interval}")

        return SearcherConfig(
            chain=chain,
            private_key=self._private_key,
            relay_signing_key=self._relay_signing_key or Account.create().key.hex(),
            bundle_executor_address=self._bundle_executor_address,
            miner_reward_percentage=self._miner_reward_percentage,
            block_interval=self._block_interval,
            healthcheck_url=self._healthcheck_url,
            gain_check_exempt_tokens=frozenset(t.lower() for t in _split_list(self._exempt_tokens)),
            debug_mode=self._debug_mode,
        )

    @property
    def debug_mode(self) -> bool:
        return self._debug_mode

    @property
    def has_private_key(self) -> bool:
        return bool(self._private_key)


def load_searcher_config(chain_name: str = "ETHEREUM") -> SearcherConfig:
    """用默认路径加载搜索器配置"""
    return ConfigLoader().get_searcher_config(chain_name)
