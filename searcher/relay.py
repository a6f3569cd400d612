"""
Flashbots relay client.

Speaks the relay's JSON-RPC dialect over aiohttp:
- eth_callBundle              simulate a signed bundle against a target block
- eth_sendBundle              offer a signed bundle for one target block
- flashbots_getBundleStatsV2  builder-side statistics for a submitted bundle

Every request carries `X-Flashbots-Signature: <address>:<signature>`, the
EIP-191 signature of the keccak hash of the request body made with the
relay signing key. That key only identifies the searcher to the relay, it
never holds funds.

Relay-side errors and transport failures are reported through the `error`
field of the returned objects rather than raised.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
import orjson
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .network import NetworkManager

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Raised for unusable relay configuration."""
    pass


@dataclass
class BundleTransaction:
    """A transaction and the account that signs it."""
    signer: LocalAccount
    transaction: Dict[str, Any]


@dataclass
class SignedBundle:
    """Raw signed transactions, in execution order."""
    raw_transactions: List[str]
    transaction_hashes: List[str]


@dataclass
class SimulationResult:
    """Outcome of eth_callBundle."""
    bundle_hash: Optional[str] = None
    coinbase_diff: int = 0
    total_gas_used: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def first_revert(self) -> Optional[Dict[str, Any]]:
        for result in self.results:
            if "error" in result or "revert" in result:
                return result
        return None

    @property
    def ok(self) -> bool:
        return self.error is None and self.first_revert is None

    @property
    def effective_gas_price(self) -> int:
        if self.total_gas_used == 0:
            return 0
        return self.coinbase_diff // self.total_gas_used


@dataclass
class BundleStats:
    """Outcome of flashbots_getBundleStatsV2."""
    is_simulated: bool = False
    is_high_priority: bool = False
    received_at: Optional[str] = None
    simulated_at: Optional[str] = None
    considered_by_builders_at: List[Dict[str, Any]] = field(default_factory=list)
    sealed_by_builders_at: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class BundleSubmission:
    """Outcome of eth_sendBundle for one target block."""

    def __init__(
        self,
        block_number: int,
        bundle_hash: Optional[str] = None,
        bundle_transactions: Optional[List[str]] = None,
        error: Optional[str] = None,
        network: Optional[NetworkManager] = None,
    ):
        self.block_number = block_number
        self.bundle_hash = bundle_hash
        self.bundle_transactions = bundle_transactions or []
        self.error = error
        self._network = network

    async def receipts(self) -> List[Optional[Dict[str, Any]]]:
        """Receipts of the bundled transactions, None for those not mined yet."""
        if self._network is None:
            return [None for _ in self.bundle_transactions]
        return [
            await self._network.get_transaction_receipt(tx_hash)
            for tx_hash in self.bundle_transactions
        ]

    def __repr__(self) -> str:
        if self.error:
            return f"BundleSubmission(block={self.block_number}, error={self.error!r})"
        return f"BundleSubmission(block={self.block_number}, hash={self.bundle_hash})"


def _get_raw_tx(signed) -> Optional[bytes]:
    """Extract raw transaction bytes (version-compatible)."""
    if hasattr(signed, "raw_transaction"):
        return signed.raw_transaction
    elif hasattr(signed, "rawTransaction"):
        return signed.rawTransaction
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


class FlashbotsRelay:
    """
    Minimal Flashbots bundle provider.

    Usage:
        async with FlashbotsRelay(network, relay_signing_key) as relay:
            signed = relay.sign_bundle([BundleTransaction(wallet, tx)])
            simulation = await relay.simulate(signed, block_number + 2)
    """

    def __init__(
        self,
        network: Optional[NetworkManager],
        relay_signing_key: str,
        relay_url: str = "https://relay.flashbots.net",
        timeout: float = 10.0,
    ):
        if not relay_signing_key:
            raise RelayError("relay signing key is required")

        self.network = network
        self.relay_url = relay_url
        self.signer: LocalAccount = Account.from_key(relay_signing_key)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "FlashbotsRelay":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    # =====================================================
    # Signing
    # =====================================================

    def signature_header(self, body: str) -> str:
        """X-Flashbots-Signature value for a request body."""
        message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
        signed = self.signer.sign_message(message)
        return f"{self.signer.address}:{Web3.to_hex(signed.signature)}"

    def sign_bundle(self, transactions: List[BundleTransaction]) -> SignedBundle:
        """Sign every transaction with its own signer, keeping order."""
        raw_transactions = []
        transaction_hashes = []

        for bundle_tx in transactions:
            tx = {k: v for k, v in bundle_tx.transaction.items() if k != "from"}
            signed = bundle_tx.signer.sign_transaction(tx)
            raw_tx = _get_raw_tx(signed)
            if raw_tx is None:
                raise RelayError("could not extract raw transaction")
            raw_transactions.append(Web3.to_hex(raw_tx))
            transaction_hashes.append(Web3.to_hex(signed.hash))

        return SignedBundle(
            raw_transactions=raw_transactions,
            transaction_hashes=transaction_hashes,
        )

    # =====================================================
    # Transport
    # =====================================================

    async def _request(self, method: str, params: List[Any]) -> Dict[str, Any]:
        """
        POST one JSON-RPC request to the relay.

        Transport failures come back as {"error": {"message": ...}}.
        """
        body = orjson.dumps({
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }).decode()
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": self.signature_header(body),
        }

        try:
            async with self._get_session().post(self.relay_url, data=body, headers=headers) as resp:
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} transport error: {e!r}")
            return {"error": {"message": f"transport error: {e!r}"}}

        try:
            payload = orjson.loads(text)
        except orjson.JSONDecodeError:
            return {"error": {"message": f"HTTP {resp.status}: {text[:200]}"}}

        if not isinstance(payload, dict):
            return {"error": {"message": f"unexpected relay response: {text[:200]}"}}
        return payload

    # =====================================================
    # Relay API
    # =====================================================

    async def simulate(self, signed_bundle: SignedBundle, block_number: int) -> SimulationResult:
        """Simulate the bundle on top of the latest state, as if mined in block_number."""
        response = await self._request("eth_callBundle", [{
            "txs": signed_bundle.raw_transactions,
            "blockNumber": hex(block_number),
            "stateBlockNumber": "latest",
        }])

        if "error" in response:
            return SimulationResult(error=_error_message(response["error"]))

        result = response.get("result") or {}
        return SimulationResult(
            bundle_hash=result.get("bundleHash"),
            coinbase_diff=int(result.get("coinbaseDiff", 0)),
            total_gas_used=int(result.get("totalGasUsed", 0)),
            results=list(result.get("results", [])),
        )

    async def send_raw_bundle(self, signed_bundle: SignedBundle, block_number: int) -> BundleSubmission:
        """Offer the bundle for inclusion in exactly block_number."""
        response = await self._request("eth_sendBundle", [{
            "txs": signed_bundle.raw_transactions,
            "blockNumber": hex(block_number),
        }])

        if "error" in response:
            return BundleSubmission(block_number, error=_error_message(response["error"]))

        result = response.get("result") or {}
        return BundleSubmission(
            block_number,
            bundle_hash=result.get("bundleHash"),
            bundle_transactions=list(signed_bundle.transaction_hashes),
            network=self.network,
        )

    async def get_bundle_stats(self, bundle_hash: str, block_number: int) -> BundleStats:
        """Relay statistics for a submitted bundle."""
        response = await self._request("flashbots_getBundleStatsV2", [{
            "bundleHash": bundle_hash,
            "blockNumber": hex(block_number),
        }])

        if "error" in response:
            return BundleStats(error=_error_message(response["error"]))

        result = response.get("result") or {}
        return BundleStats(
            is_simulated=bool(result.get("isSimulated", False)),
            is_high_priority=bool(result.get("isHighPriority", False)),
            received_at=result.get("receivedAt"),
            simulated_at=result.get("simulatedAt"),
            considered_by_builders_at=list(result.get("consideredByBuildersAt") or []),
            sealed_by_builders_at=list(result.get("sealedByBuildersAt") or []),
        )
