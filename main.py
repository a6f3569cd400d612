#!/usr/bin/env python3
"""
=========================================================
     ⚡ Flashbots Searcher - Cross-Market WETH Arbitrage
=========================================================

Watches UniswapV2-style WETH pairs on Ethereum mainnet, finds tokens whose
price is crossed between two markets and submits the best trade as a
Flashbots bundle through the BundleExecutor contract.

Features:
- One reserve refresh per cycle (Multicall3)
- Size ladder search per crossed market pair
- Bundle simulation before submission
- Same bundle offered for the next ten blocks
- Optional health check ping after each submission

Usage:
    python main.py
    flashbots-searcher
"""

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from dotenv import load_dotenv
from eth_account import Account

# Project root
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))

# Load environment
load_dotenv(PROJECT_ROOT / ".env")

from config.target_markets import get_market_pairs
from searcher.arbitrage import find_opportunities
from searcher.bundle import BundleBuilder, GasEstimator
from searcher.config_loader import ConfigLoader, ConfigValidationError, SearcherConfig
from searcher.executor import ExecutionReport, NoArbitrageSubmittedError, RelaySubmitter
from searcher.markets import MarketsByToken, load_markets_by_token, update_reserves
from searcher.multicall import Multicall
from searcher.network import NetworkManager, RPCError
from searcher.relay import FlashbotsRelay

logger = logging.getLogger("searcher.main")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

CHAIN_NAME = "ETHEREUM"

# Head polling period in seconds
POLL_INTERVAL = 1.0

HEALTHCHECK_TIMEOUT = 10


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def create_healthcheck_session() -> requests.Session:
    """
    HTTP session for health check pings.

    Retries transient failures and keeps the connection alive between cycles.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=0.1,
        status_forcelist=[429, 500, 502, 503, 504],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)

    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def ping_healthcheck(session: requests.Session, url: str) -> bool:
    """GET the health check URL; failures are logged, never raised."""
    try:
        response = session.get(url, timeout=HEALTHCHECK_TIMEOUT)
        response.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.warning(f"Health check failed: {e}")
        return False


# ============================================
# Main Bot Class
# ============================================

class SearcherBot:
    """
    Block-driven Flashbots arbitrage searcher.

    At most one cycle runs at a time: a qualifying block that arrives
    while the previous cycle is still in flight is skipped, never queued.
    """

    def __init__(
        self,
        config: SearcherConfig,
        pairs: Sequence[Tuple[str, str]] = (),
        poll_interval: float = POLL_INTERVAL
    ):
        self.config = config
        self.pairs = list(pairs)
        self.poll_interval = poll_interval

        self.network: Optional[NetworkManager] = None
        self.multicall: Optional[Multicall] = None
        self.relay: Optional[FlashbotsRelay] = None
        self.submitter: Optional[RelaySubmitter] = None
        self.markets: Optional[MarketsByToken] = None
        self._http_session: Optional[requests.Session] = None

        # State
        self.running = False
        self.block_count = 0
        self.cycle_count = 0
        self.skipped_count = 0
        self.submission_count = 0
        self.start_time = None
        self._last_block: Optional[int] = None
        self._cycle_task: Optional[asyncio.Task] = None

    def _signal_handler(self, signum, frame):
        """Handle shutdown signal."""
        print("\n\n🛑 Shutting down...")
        self.running = False

    async def initialize(self) -> bool:
        """
        Connect, load markets and wire the execution pipeline.

        Returns:
            True if successful
        """
        chain = self.config.chain

        print("\n" + "=" * 60)
        print("     ⚡ Flashbots Searcher - Cross-Market WETH Arbitrage")
        print("=" * 60)

        print(f"\n🌐 Connecting to {chain.name}...")
        self.network = NetworkManager(chain)
        await self.network.connect()

        try:
            head = await self.network.get_block_number()
        except RPCError as e:
            print(f"❌ Failed to connect: {e}")
            return False
        print(f"✅ Connected, head block: {head}")

        wallet = Account.from_key(self.config.private_key)
        self.relay = FlashbotsRelay(
            self.network,
            self.config.relay_signing_key,
            chain.relay_url,
            chain.relay_timeout,
        )
        print(f"🔐 Executor wallet: {wallet.address}")
        print(f"🔏 Relay signer:    {self.relay.signer.address}")

        print(f"\n📊 Loading {len(self.pairs)} markets...")
        self.multicall = Multicall(self.network, chain.multicall_address)
        try:
            self.markets = await load_markets_by_token(
                self.multicall, self.pairs, chain.wnative_address
            )
        except RPCError as e:
            print(f"❌ Market loading failed: {e}")
            return False

        builder = BundleBuilder(
            self.config.bundle_executor_address,
            chain.wnative_address,
            chain.gas_config,
        )
        estimator = GasEstimator(
            self.network,
            wallet.address,
            chain.gas_config,
            chain.chain_id,
        )
        self.submitter = RelaySubmitter(self.network, self.relay, builder, estimator, wallet)

        self._print_configuration()
        return True

    def _print_configuration(self):
        chain = self.config.chain
        print("\n" + "=" * 60)
        print("⚙️  Configuration")
        print("=" * 60)
        print(f"  Chain ID:           {chain.chain_id}")
        print(f"  Relay:              {chain.relay_url}")
        print(f"  Bundle Executor:    {self.config.bundle_executor_address}")
        print(f"  Miner Reward:       {self.config.miner_reward_percentage}%")
        print(f"  Block Interval:     {self.config.block_interval}")
        print(f"  Gain Check Exempt:  {len(self.config.gain_check_exempt_tokens)} tokens")
        print(f"  Health Check:       {'✅ On' if self.config.healthcheck_url else '❌ Off'}")
        print(f"  Debug Mode:         {'✅ On' if self.config.debug_mode else '❌ Off'}")
        print("=" * 60)
        print("📊 Discovery")
        print("=" * 60)
        print(f"  Tokens:             {len(self.markets.markets_by_token)}")
        print(f"  Markets:            {len(self.markets.all_markets)}")
        print("=" * 60)

    # =========================================
    # Block loop
    # =========================================

    async def run(self):
        """Poll the head block until stopped."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.running = True
        self.start_time = time.time()
        print(f"\n🏃 Waiting for blocks... (Ctrl+C to stop)\n")

        try:
            while self.running:
                try:
                    block_number = await self.network.get_block_number()
                except RPCError as e:
                    logger.error(f"Head block poll failed: {e}")
                    await asyncio.sleep(self.poll_interval)
                    continue

                if block_number != self._last_block:
                    self._last_block = block_number
                    self.on_block(block_number)

                await asyncio.sleep(self.poll_interval)
        finally:
            await self.shutdown()

    def on_block(self, block_number: int) -> Optional[asyncio.Task]:
        """
        Start a cycle for a qualifying block.

        Returns the new cycle task, or None if the block does not qualify or
        the previous cycle is still running.
        """
        self.block_count += 1
        if block_number % self.config.block_interval != 0:
            return None

        if self._cycle_task is not None and not self._cycle_task.done():
            self.skipped_count += 1
            logger.info(f"Skipping block {block_number}, previous cycle still running")
            return None

        self._cycle_task = asyncio.create_task(self.run_cycle(block_number))
        self._cycle_task.add_done_callback(self._on_cycle_done)
        return self._cycle_task

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Cycle failed: {error!r}", exc_info=error)

    async def run_cycle(self, block_number: int) -> Optional[ExecutionReport]:
        """Refresh reserves, rank opportunities and execute the best one."""
        self.cycle_count += 1

        try:
            await update_reserves(self.multicall, self.markets.all_markets)
        except RPCError as e:
            logger.error(f"Reserve refresh failed at block {block_number}: {e}")
            return None

        opportunities = find_opportunities(
            self.markets.markets_by_token,
            self.config.chain.wnative_address,
            self.config.gain_check_exempt_tokens,
        )
        if not opportunities:
            logger.info(f"No crossed markets at block {block_number}")
            return None

        self._print_opportunities(block_number, opportunities)

        try:
            report = await self.submitter.execute_top_opportunity(
                opportunities, block_number, self.config.miner_reward_percentage
            )
        except NoArbitrageSubmittedError as e:
            logger.info(str(e))
            return None

        self.submission_count += 1
        logger.info(
            f"Bundle for {report.opportunity.token_address} accepted for "
            f"{report.accepted_count}/{len(report.attempts)} blocks"
        )

        if self.config.healthcheck_url:
            if self._http_session is None:
                self._http_session = create_healthcheck_session()
            await asyncio.to_thread(
                ping_healthcheck, self._http_session, self.config.healthcheck_url
            )

        return report

    def _print_opportunities(self, block_number: int, opportunities: list):
        print(f"\n{'=' * 60}")
        print(f"🎯 Block {block_number}: {len(opportunities)} crossed markets")
        print(f"{'=' * 60}")
        for opportunity in opportunities:
            print(opportunity.describe())

    # =========================================
    # Shutdown
    # =========================================

    async def shutdown(self):
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                pass

        if self.relay is not None:
            await self.relay.close()
        if self.network is not None:
            await self.network.disconnect()
        if self._http_session is not None:
            self._http_session.close()
            self._http_session = None

        self._display_final_stats()

    def _display_final_stats(self):
        """Display final statistics."""
        runtime = time.time() - self.start_time if self.start_time else 0
        hours = int(runtime // 3600)
        minutes = int((runtime % 3600) // 60)
        seconds = int(runtime % 60)

        print("\n\n" + "=" * 60)
        print("📊 Final Statistics")
        print("=" * 60)
        print(f"  Runtime:        {hours}h {minutes}m {seconds}s")
        print(f"  Blocks Seen:    {self.block_count}")
        print(f"  Cycles:         {self.cycle_count}")
        print(f"  Skipped:        {self.skipped_count}")
        print(f"  Submissions:    {self.submission_count}")
        print("=" * 60)
        print("👋 Goodbye!")


# ============================================
# Entry Point
# ============================================

async def _run(config: SearcherConfig) -> int:
    bot = SearcherBot(config, get_market_pairs())

    if not await bot.initialize():
        print("\n❌ Initialization failed")
        await bot.shutdown()
        return 1

    await bot.run()
    return 0


def main():
    """Main entry point."""
    try:
        loader = ConfigLoader()
        setup_logging(loader.debug_mode)
        config = loader.get_searcher_config(CHAIN_NAME)
    except ConfigValidationError as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(1)

    sys.exit(asyncio.run(_run(config)))


if __name__ == "__main__":
    main()
