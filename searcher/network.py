"""
以太坊账本访问层

搜索器对链上的所有读取都经过 NetworkManager:
- 区块高度轮询、费用报价、nonce、gas 估算、交易收据
- Multicall3 的 eth_call

多个 RPC 端点按配置顺序轮换:
- 连接失败或 5xx 时切换到下一个健康端点
- 被限速（HTTP 429）时原地指数退避
- 合约回滚（ContractLogicError）不重试，直接交给调用方
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider
from web3.types import BlockData, TxParams, Wei

from .config_loader import ChainConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 连续失败达到该次数的端点在轮换时被跳过
UNHEALTHY_AFTER = 3

_TRANSPORT_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


class RPCError(Exception):
    """账本访问失败"""
    pass


class AllRPCsFailedError(RPCError):
    """重试预算耗尽，所有端点都没有给出结果"""
    pass


class RateLimitError(RPCError):
    """重试预算在限速退避中耗尽"""
    pass


class NetworkState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"  # 没有端点通过探测，调用仍会继续轮换重试


@dataclass
class FeeData:
    """当前区块的 EIP-1559 费用报价，节点不支持时各字段为 None"""

    last_base_fee_per_gas: Optional[Wei] = None
    max_fee_per_gas: Optional[Wei] = None
    max_priority_fee_per_gas: Optional[Wei] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None


@dataclass
class RPCHealth:
    """单个端点的请求统计"""

    url: str
    consecutive_failures: int = 0
    total_requests: int = 0
    avg_latency_ms: float = 0.0
    last_failure: float = 0.0

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < UNHEALTHY_AFTER

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        # 指数移动平均
        if self.avg_latency_ms:
            self.avg_latency_ms = 0.8 * self.avg_latency_ms + 0.2 * latency_ms
        else:
            self.avg_latency_ms = latency_ms

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.last_failure = time.time()

    def reset(self) -> None:
        self.consecutive_failures = 0


def _is_rate_limited(error: Exception) -> bool:
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status == 429
    message = str(error).lower()
    return "429" in message or "rate limit" in message or "too many requests" in message


class NetworkManager:
    """
    带故障转移的异步账本客户端

    每次调用的重试预算为 max_retries × 端点数量。

    使用示例:
        >>> config = load_searcher_config("ETHEREUM")
        >>> async with NetworkManager(config.chain) as network:
        ...     head = await network.get_block_number()
    """

    def __init__(self, config: ChainConfig) -> None:
        self.config = config
        self.chain_id = config.chain_id

        self._rpc_urls = list(config.rpc_urls)
        self._active = 0
        self._health: Dict[str, RPCHealth] = {url: RPCHealth(url) for url in self._rpc_urls}

        self._web3: Optional[AsyncWeb3] = None
        self._provider: Optional[AsyncHTTPProvider] = None

        self._max_retries = config.max_retries
        self._base_delay = 0.5
        self._max_delay = 30.0
        self._timeout = aiohttp.ClientTimeout(total=config.rpc_timeout)

        self._state = NetworkState.DISCONNECTED
        self._lock = asyncio.Lock()

    @property
    def current_rpc_url(self) -> str:
        return self._rpc_urls[self._active]

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def w3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise RPCError("NetworkManager 尚未连接，请先调用 connect()")
        return self._web3

    async def __aenter__(self) -> "NetworkManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # =====================================================
    # 连接管理
    # =====================================================

    async def connect(self) -> None:
        """
        按顺序探测端点，停在第一个链 ID 正确的端点上

        全部失败时进入 DEGRADED，后续调用仍按重试逻辑轮换。
        """
        self._state = NetworkState.CONNECTING

        for _ in range(len(self._rpc_urls)):
            self._create_web3_instance()
            url = self.current_rpc_url

            try:
                chain_id = await self._web3.eth.chain_id
            except (Web3Exception, *_TRANSPORT_ERRORS) as e:
                logger.warning(f"探测 {url} 失败: {e!r}")
                self._health[url].record_failure()
                self._active = (self._active + 1) % len(self._rpc_urls)
                continue

            if chain_id != self.chain_id:
                logger.error(f"{url} 的链 ID 为 {chain_id}，期望 {self.chain_id}，跳过")
                self._health[url].record_failure()
                self._active = (self._active + 1) % len(self._rpc_urls)
                continue

            self._state = NetworkState.CONNECTED
            logger.info(f"已连接到 {self.config.name}: {url}")
            return

        self._state = NetworkState.DEGRADED
        logger.error(f"{self.config.name} 没有可用的 RPC 端点")

    async def disconnect(self) -> None:
        if self._provider is not None:
            await self._provider.disconnect()

        self._web3 = None
        self._provider = None
        self._state = NetworkState.DISCONNECTED
        logger.info(f"已断开 {self.config.name}")

    def _create_web3_instance(self) -> None:
        self._provider = AsyncHTTPProvider(
            endpoint_uri=self.current_rpc_url,
            request_kwargs={"timeout": self._timeout},
        )
        self._web3 = AsyncWeb3(self._provider)

    async def _failover(self) -> None:
        """切换到下一个健康端点；没有健康端点时重置统计并顺延一个"""
        async with self._lock:
            count = len(self._rpc_urls)

            for step in range(1, count + 1):
                candidate = (self._active + step) % count
                if self._health[self._rpc_urls[candidate]].is_healthy:
                    break
            else:
                logger.warning("所有 RPC 端点都不健康，重置健康统计")
                for health in self._health.values():
                    health.reset()
                candidate = (self._active + 1) % count
                self._state = NetworkState.DEGRADED

            self._active = candidate
            self._create_web3_instance()
            logger.info(f"切换 RPC 到: {self.current_rpc_url}")

    def _backoff(self, attempt: int) -> float:
        return min(self._base_delay * (2 ** attempt), self._max_delay)

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        执行一次账本调用，按错误类型决定退避、切换或放弃

        异常:
            ContractLogicError: 节点执行时回滚
            RPCError: HTTP 4xx（429 除外）
            RateLimitError: 预算在限速退避中耗尽
            AllRPCsFailedError: 预算耗尽
        """
        budget = self._max_retries * len(self._rpc_urls)
        last_error: Optional[Exception] = None
        rate_limited = False

        for attempt in range(budget):
            url = self.current_rpc_url
            started = time.perf_counter()

            try:
                result = await operation()
            except ContractLogicError:
                raise
            except aiohttp.ClientResponseError as e:
                if e.status != 429 and e.status < 500:
                    raise RPCError(f"HTTP {e.status}: {e.message}") from e
                last_error = e
            except (Web3Exception, *_TRANSPORT_ERRORS) as e:
                last_error = e
            else:
                self._health[url].record_success((time.perf_counter() - started) * 1000)
                return result

            rate_limited = _is_rate_limited(last_error)
            if rate_limited:
                delay = self._backoff(attempt)
                logger.warning(f"{operation_name} 被限速，{delay:.2f} 秒后重试")
                await asyncio.sleep(delay)
                continue

            logger.warning(
                f"{operation_name} 在 {url} 失败: {last_error!r} "
                f"({attempt + 1}/{budget})"
            )
            self._health[url].record_failure()
            await self._failover()

        error_type = RateLimitError if rate_limited else AllRPCsFailedError
        raise error_type(
            f"{operation_name} 的 {budget} 次尝试全部失败，最后的错误: {last_error!r}"
        )

    # =====================================================
    # 读取
    # =====================================================

    async def get_latest_block(self) -> BlockData:
        return await self._execute_with_retry(
            lambda: self.w3.eth.get_block("latest"), "get_latest_block"
        )

    async def get_block_number(self) -> int:
        return await self._execute_with_retry(
            lambda: self.w3.eth.block_number, "get_block_number"
        )

    async def get_nonce(self, address: str) -> int:
        """地址的已确认交易数"""
        return await self._execute_with_retry(
            lambda: self.w3.eth.get_transaction_count(AsyncWeb3.to_checksum_address(address)),
            "get_nonce",
        )

    async def call_contract(
        self,
        contract_address: str,
        data: bytes,
        block_identifier: Union[int, str] = "latest",
    ) -> bytes:
        """只读调用（eth_call），返回原始返回数据"""
        tx = {"to": AsyncWeb3.to_checksum_address(contract_address), "data": data}
        return await self._execute_with_retry(
            lambda: self.w3.eth.call(tx, block_identifier), "call_contract"
        )

    async def estimate_gas(self, tx_params: TxParams) -> int:
        """
        试运行交易并返回 gas 估算

        异常:
            ContractLogicError: 交易在试运行中回滚
        """
        return await self._execute_with_retry(
            lambda: self.w3.eth.estimate_gas(tx_params), "estimate_gas"
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """交易收据，尚未上链时为 None"""
        async def _fetch():
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._execute_with_retry(_fetch, "get_transaction_receipt")

    async def get_fee_data(self) -> FeeData:
        """
        EIP-1559 费用报价

        maxFeePerGas = 2 × baseFee + priorityFee，
        priorityFee 取最近 5 个区块第 50 百分位小费的平均值。
        """
        block = await self.get_latest_block()

        base_fee = block.get("baseFeePerGas")
        if not base_fee:
            logger.warning(f"{self.config.name} 的最新区块没有 baseFee")
            return FeeData()

        priority_fee: Optional[Wei] = None
        try:
            history = await self.w3.eth.fee_history(5, "latest", [50])
        except (Web3Exception, *_TRANSPORT_ERRORS) as e:
            # 小费留空，由 BundleBuilder 使用 fallback_priority_fee
            logger.debug(f"fee_history 不可用: {e!r}")
        else:
            tips = [reward[0] for reward in history.get("reward", []) if reward]
            if tips:
                priority_fee = Wei(int(sum(tips) / len(tips)))

        return FeeData(
            last_base_fee_per_gas=Wei(base_fee),
            max_fee_per_gas=Wei(base_fee * 2 + (priority_fee or 0)),
            max_priority_fee_per_gas=priority_fee,
        )

    def get_rpc_health(self) -> Dict[str, RPCHealth]:
        return dict(self._health)
