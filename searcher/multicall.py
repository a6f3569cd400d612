"""
Multicall 批量调用辅助模块

功能：
- 使用 Multicall3 合约在一次 RPC 请求中批量调用多个合约函数
- 每个周期只需一次请求即可刷新全部配对的储备数据
- 批量读取配对的 token0/token1

使用示例：
    multicall = Multicall(network)
    reserves = await multicall.get_reserves_batch([pair1, pair2])
"""

import logging
from typing import List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .network import NetworkManager

logger = logging.getLogger(__name__)

# Multicall3 合约地址（所有 EVM 链通用）
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# aggregate3((address,bool,bytes)[]) 函数选择器
AGGREGATE3_SELECTOR = bytes(Web3.keccak(text="aggregate3((address,bool,bytes)[])")[:4])

# UniswapV2 配对的 view 函数选择器
GET_RESERVES_SELECTOR = bytes.fromhex("0902f1ac")
TOKEN0_SELECTOR = bytes.fromhex("0dfe1681")
TOKEN1_SELECTOR = bytes.fromhex("d21220a7")


def encode_aggregate3(calls: Sequence[Tuple[str, bytes]], allow_failure: bool = True) -> bytes:
    """
    编码 aggregate3 调用数据

    参数：
        calls: 调用列表，每个元素为 (目标合约地址, 调用数据)
        allow_failure: 是否允许单个调用失败
    """
    formatted_calls = [
        (Web3.to_checksum_address(target), allow_failure, call_data)
        for target, call_data in calls
    ]
    return AGGREGATE3_SELECTOR + encode(["(address,bool,bytes)[]"], [formatted_calls])


def decode_aggregate3(return_data: bytes) -> List[Tuple[bool, bytes]]:
    """解码 aggregate3 返回数据为 (是否成功, 返回数据) 列表"""
    (results,) = decode(["(bool,bytes)[]"], return_data)
    return [(success, data) for success, data in results]


def decode_reserves(return_data: bytes) -> Optional[Tuple[int, int, int]]:
    """
    解码 getReserves 返回数据

    返回：
        (reserve0, reserve1, timestamp) 或 None
    """
    if len(return_data) < 96:
        return None

    try:
        decoded = decode(["uint112", "uint112", "uint32"], return_data)
    except DecodingError:
        return None
    return (decoded[0], decoded[1], decoded[2])


def decode_address(return_data: bytes) -> Optional[str]:
    """解码返回单个地址的调用结果"""
    if len(return_data) < 32:
        return None

    try:
        (address,) = decode(["address"], return_data)
    except DecodingError:
        return None
    return Web3.to_checksum_address(address)


class Multicall:
    """
    Multicall 批量调用辅助类

    通过 NetworkManager 的 eth_call 执行 aggregate3，
    继承其故障转移与重试逻辑。
    """

    def __init__(self, network: NetworkManager, address: str = MULTICALL3_ADDRESS):
        """
        参数：
            network: 已连接的网络管理器
            address: Multicall3 合约地址（默认为标准地址）
        """
        self.network = network
        self.address = Web3.to_checksum_address(address)

    async def aggregate(
        self,
        calls: Sequence[Tuple[str, bytes]],
        allow_failure: bool = True
    ) -> List[Tuple[bool, bytes]]:
        """
        批量执行多个合约调用

        返回：
            结果列表，每个元素为 (是否成功, 返回数据)
        """
        if not calls:
            return []

        call_data = encode_aggregate3(calls, allow_failure)
        return_data = await self.network.call_contract(self.address, call_data)
        return decode_aggregate3(bytes(return_data))

    async def get_reserves_batch(
        self,
        pair_addresses: Sequence[str]
    ) -> List[Optional[Tuple[int, int, int]]]:
        """
        批量获取多个配对的储备数据

        返回：
            储备数据列表，每个元素为 (reserve0, reserve1, timestamp) 或 None（如果失败）
        """
        results = await self.aggregate(
            [(addr, GET_RESERVES_SELECTOR) for addr in pair_addresses]
        )

        return [
            decode_reserves(return_data) if success else None
            for success, return_data in results
        ]

    async def get_pair_tokens_batch(
        self,
        pair_addresses: Sequence[str]
    ) -> List[Optional[Tuple[str, str]]]:
        """
        批量获取配对的 (token0, token1)

        返回：
            每个配对的代币地址元组，任一调用失败时为 None
        """
        calls: List[Tuple[str, bytes]] = []
        for addr in pair_addresses:
            calls.append((addr, TOKEN0_SELECTOR))
            calls.append((addr, TOKEN1_SELECTOR))

        results = await self.aggregate(calls)

        pair_tokens: List[Optional[Tuple[str, str]]] = []
        for i in range(0, len(results), 2):
            (ok0, data0), (ok1, data1) = results[i], results[i + 1]
            token0 = decode_address(data0) if ok0 else None
            token1 = decode_address(data1) if ok1 else None
            if token0 is None or token1 is None:
                pair_tokens.append(None)
            else:
                pair_tokens.append((token0, token1))

        return pair_tokens
