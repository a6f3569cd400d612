"""
Flashbots bundle executor.

Tries ranked opportunities in order until one reaches the relay:

    BUILT -> SIGNED -> SIMULATED -> SUBMITTED -> MONITORED
       \\         \\           \\
        +---------+-----------+--> ABANDONED (next opportunity)

- Gas estimation failure or a failed simulation abandons one opportunity
- A successful simulation is submitted for ten consecutive target blocks
  at once; a rejected block is only skipped
- The first submitted opportunity ends the cycle, only one is executed
- If every opportunity is abandoned the cycle fails with
  NoArbitrageSubmittedError
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Union

from eth_account.signers.local import LocalAccount

from .arbitrage import Opportunity, format_ether
from .bundle import BundleBuilder, GasEstimator, OpportunityAbandoned
from .network import NetworkManager, RPCError
from .relay import (
    BundleSubmission,
    BundleTransaction,
    FlashbotsRelay,
    SignedBundle,
    SimulationResult,
)

logger = logging.getLogger(__name__)

# First target block is head + 2
START_BLOCK_OFFSET = 2
# Blocks the same bundle is offered for
TARGET_BLOCK_COUNT = 10


class SimulationError(OpportunityAbandoned):
    """The relay simulation errored or a bundled transaction reverted."""
    pass


class NoArbitrageSubmittedError(Exception):
    """Every ranked opportunity was abandoned before submission."""

    def __init__(self, message: str, abandoned: Optional[List["AbandonedOpportunity"]] = None):
        super().__init__(message)
        self.abandoned = abandoned or []


class ExecutionState(Enum):
    BUILT = "built"
    SIGNED = "signed"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    MONITORED = "monitored"
    ABANDONED = "abandoned"


class SubmissionStatus(Enum):
    REJECTED = "rejected"                # relay refused the bundle for this block
    CONSIDERED = "considered"            # at least one builder considered it
    NOT_CONSIDERED = "not_considered"    # accepted, no builder activity reported yet
    STATS_ERROR = "stats_error"          # accepted, statistics unavailable


@dataclass
class SubmissionAttempt:
    """Submission of the signed bundle for one target block."""
    block_number: int
    bundle_hash: Optional[str]
    simulation: SimulationResult
    status: SubmissionStatus
    included: bool = False
    considered_at: List[dict] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class AbandonedOpportunity:
    """An opportunity dropped before submission and the states it went through."""
    opportunity: Opportunity
    reason: str
    states: List[ExecutionState] = field(default_factory=list)

    @property
    def reached(self) -> Optional[ExecutionState]:
        """Last state before ABANDONED."""
        progress = [s for s in self.states if s is not ExecutionState.ABANDONED]
        return progress[-1] if progress else None


@dataclass
class ExecutionReport:
    """Outcome of the one opportunity that reached the relay."""
    opportunity: Opportunity
    states: List[ExecutionState]
    simulation: SimulationResult
    attempts: List[SubmissionAttempt] = field(default_factory=list)
    abandoned: List[AbandonedOpportunity] = field(default_factory=list)

    @property
    def state(self) -> ExecutionState:
        return self.states[-1]

    @property
    def accepted_count(self) -> int:
        return sum(1 for a in self.attempts if a.status is not SubmissionStatus.REJECTED)


class RelaySubmitter:
    """
    Executes the best opportunity of a cycle through the relay.

    Opportunities are tried strictly one after another; only the final
    submission to the target blocks runs concurrently.
    """

    def __init__(
        self,
        network: NetworkManager,
        relay: FlashbotsRelay,
        builder: BundleBuilder,
        estimator: GasEstimator,
        wallet: LocalAccount,
        start_block_offset: int = START_BLOCK_OFFSET,
        target_block_count: int = TARGET_BLOCK_COUNT,
    ):
        self.network = network
        self.relay = relay
        self.builder = builder
        self.estimator = estimator
        self.wallet = wallet
        self.start_block_offset = start_block_offset
        self.target_block_count = target_block_count

    async def execute_top_opportunity(
        self,
        opportunities: Sequence[Opportunity],
        block_number: int,
        reward_percentage: int
    ) -> ExecutionReport:
        """
        Submit the first opportunity that survives estimation and simulation.

        Raises:
            NoArbitrageSubmittedError: no opportunity reached the relay
        """
        abandoned: List[AbandonedOpportunity] = []

        for opportunity in opportunities:
            states: List[ExecutionState] = []
            try:
                report = await self._execute(opportunity, block_number, reward_percentage, states)
            except OpportunityAbandoned as e:
                states.append(ExecutionState.ABANDONED)
                entry = AbandonedOpportunity(opportunity, str(e), states)
                logger.warning(
                    f"Abandoning {opportunity.token_address} at "
                    f"{entry.reached.value if entry.reached else 'start'} "
                    f"(volume {format_ether(opportunity.volume)}, "
                    f"profit {format_ether(opportunity.profit)}): {e}"
                )
                abandoned.append(entry)
                continue

            report.abandoned = abandoned
            return report

        raise NoArbitrageSubmittedError(
            f"No arbitrage submitted to relay ({len(abandoned)} opportunities abandoned)",
            abandoned,
        )

    def target_blocks(self, block_number: int) -> List[int]:
        first = block_number + self.start_block_offset
        return [first + i for i in range(self.target_block_count)]

    async def _execute(
        self,
        opportunity: Opportunity,
        block_number: int,
        reward_percentage: int,
        states: List[ExecutionState]
    ) -> ExecutionReport:
        """Drive one opportunity through the pipeline, appending each state reached to `states`."""
        fee_data = await self.network.get_fee_data()
        bundle = self.builder.build(opportunity, reward_percentage, fee_data)
        states.append(ExecutionState.BUILT)
        bundle = await self.estimator.finalize(bundle)

        signed = self.relay.sign_bundle([BundleTransaction(self.wallet, bundle.transaction)])
        states.append(ExecutionState.SIGNED)
        logger.debug(f"Signed bundle {signed.transaction_hashes}")

        simulation = await self.relay.simulate(signed, block_number + self.start_block_offset)
        if not simulation.ok:
            raise SimulationError(
                f"Simulation Error on token {opportunity.token_address}: "
                f"{simulation.error or simulation.first_revert}"
            )
        states.append(ExecutionState.SIMULATED)

        logger.info(
            f"Submitting bundle, profit sent to miner: {format_ether(simulation.coinbase_diff)}, "
            f"effective gas price: {format_ether(simulation.effective_gas_price, 9)} GWEI"
        )

        blocks = self.target_blocks(block_number)
        logger.info(f"target block numbers: {blocks}")
        submissions = await self._submit(signed, blocks)
        states.append(ExecutionState.SUBMITTED)

        attempts = await self._monitor(blocks, submissions, simulation)
        states.append(ExecutionState.MONITORED)
        return ExecutionReport(
            opportunity=opportunity,
            states=states,
            simulation=simulation,
            attempts=attempts,
        )

    async def _submit(
        self,
        signed: SignedBundle,
        blocks: List[int]
    ) -> List[Union[BundleSubmission, BaseException]]:
        # One failing block must not cancel the others
        return await asyncio.gather(
            *(self.relay.send_raw_bundle(signed, block) for block in blocks),
            return_exceptions=True,
        )

    async def _monitor(
        self,
        blocks: List[int],
        submissions: List[Union[BundleSubmission, BaseException]],
        simulation: SimulationResult
    ) -> List[SubmissionAttempt]:
        attempts = []
        receipts_fetched = False

        for block, submission in zip(blocks, submissions):
            if isinstance(submission, BaseException):
                error = repr(submission)
            elif submission.error:
                error = submission.error
            elif not submission.bundle_hash:
                error = "relay returned no bundle hash"
            else:
                error = None

            if error is not None:
                logger.warning(f"flashbot transaction failed ({block}): {error}")
                attempts.append(SubmissionAttempt(
                    block_number=block,
                    bundle_hash=None,
                    simulation=simulation,
                    status=SubmissionStatus.REJECTED,
                    error=error,
                ))
                continue

            attempt = SubmissionAttempt(
                block_number=block,
                bundle_hash=submission.bundle_hash,
                simulation=simulation,
                status=SubmissionStatus.NOT_CONSIDERED,
            )

            if not receipts_fetched:
                receipts_fetched = True
                attempt.included = await self._log_receipts(submission)

            stats = await self.relay.get_bundle_stats(submission.bundle_hash, block)
            if stats.error:
                logger.warning(f"bundle stats error ({block}): {stats.error}")
                attempt.status = SubmissionStatus.STATS_ERROR
                attempt.error = stats.error
            elif stats.considered_by_builders_at:
                logger.info(
                    f"flashbot transaction considered ({block}): {stats.considered_by_builders_at}"
                )
                attempt.status = SubmissionStatus.CONSIDERED
                attempt.considered_at = stats.considered_by_builders_at

            attempts.append(attempt)

        return attempts

    async def _log_receipts(self, submission: BundleSubmission) -> bool:
        """Log receipts of the first accepted submission; True if mined successfully."""
        try:
            receipts = await submission.receipts()
        except RPCError as e:
            logger.warning(f"receipt fetch failed for {submission.bundle_hash}: {e}")
            return False

        logger.info(f"flashbot transaction receipts: {receipts}")
        if submission.bundle_transactions:
            logger.info(f"bundled transaction hash: {submission.bundle_transactions[0]}")

        return any(r is not None and r.get("status") == 1 for r in receipts)
