#!/usr/bin/env python3
"""
Integrated Round Coordinator
============================
Drives one voting round end to end: command processing, proof generation
and ledger submission, batch by batch.

Each batch runs against a snapshot of the coordinator context.  The batch is
kept only once a proof exists and the ledger has accepted it; any failure in
between restores the snapshot, so a partially applied batch is never visible.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config import SystemConfig
from coordinator import (
    BatchKind,
    BatchTranscript,
    CommandProcessor,
    CommitmentMismatch,
    CoordinatorContext,
    CoordinatorError,
    LedgerRejection,
    Period,
    ReactivationPolicy,
    ReactivationProtocol,
    ReactivationRequest,
    load_context,
    save_context,
)
from ledger import (
    BatchSubmission,
    HttpLedgerClient,
    InMemoryLedger,
    Ledger,
    LedgerError,
    LedgerState,
    LedgerUnavailable,
)
from primitives import Point
from utils import LoopLock, PerformanceMonitor
from zk import (
    ProofArtifact,
    ProofGenerationError,
    ProofType,
    Prover,
    ZKError,
    create_prover,
    create_verifier,
)

logger = logging.getLogger(__name__)

PROOF_TYPES = {
    BatchKind.DEACTIVATE: ProofType.DEACTIVATE,
    BatchKind.VOTE: ProofType.PROCESS_MESSAGES,
    BatchKind.TALLY: ProofType.TALLY_VOTES,
}


@dataclass
class RoundResult:
    """Final tally with the commitments that back it"""
    tally: List[int]
    num_signups: int
    batches_committed: int
    tally_commitment: int
    state_commitment: int
    rejections: Dict[str, int] = field(default_factory=dict)
    computation_time: float = 0.0


class IntegratedCoordinator:
    """
    Coordinator driving three collaborators:
    1. CommandProcessor: validates and applies batches to the context
    2. Prover: proves each batch transcript
    3. Ledger: accepts proven batches in strict order
    """

    def __init__(
        self,
        context: CoordinatorContext,
        prover: Prover,
        ledger: Ledger,
        policy: ReactivationPolicy = ReactivationPolicy.FRESH_ACTIVE,
        max_proof_retries: int = 3,
        max_ledger_retries: int = 3,
        retry_backoff: float = 0.0,
        state_file: Optional[Path] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.context = context
        self.prover = prover
        self.ledger = ledger
        self.processor = CommandProcessor(context)
        self.reactivation = ReactivationProtocol(context, policy)

        self.max_proof_retries = max_proof_retries
        self.max_ledger_retries = max_ledger_retries
        self.retry_backoff = retry_backoff
        self.state_file = Path(state_file) if state_file else None
        self.monitor = monitor or PerformanceMonitor()

        self.committed: List[BatchTranscript] = []
        self.rejections: Counter = Counter()
        self._lock = LoopLock()

    # ------------------------------------------------------------------
    # Ledger synchronization
    # ------------------------------------------------------------------

    async def initialize(self) -> LedgerState:
        async with self._lock:
            return await self._refresh_from_ledger()

    async def _refresh_from_ledger(self) -> LedgerState:
        state = await self.ledger.fetch_state()
        if state.coord_pub_key_hash != self.context.coord_pub_key_hash:
            raise LedgerRejection("Ledger round belongs to a different coordinator key",
                                  state.batch_number)
        if state.batch_number != self.context.batch_number:
            logger.warning(f"Local batch number {self.context.batch_number} "
                           f"refreshed to ledger's {state.batch_number}")
            self.context.batch_number = state.batch_number
        return state

    @staticmethod
    def _already_committed(state: LedgerState, transcript: BatchTranscript) -> bool:
        return (state.batch_number == transcript.batch_number + 1
                and state.commitment(transcript.kind) == transcript.new_commitment)

    def _persist(self):
        if self.state_file is not None:
            save_context(self.context, self.state_file)

    # ------------------------------------------------------------------
    # Batch pipeline
    # ------------------------------------------------------------------

    async def _prove(self, proof_type: ProofType, witness: Dict[str, Any],
                     input_hash: int) -> ProofArtifact:
        last_error = None
        for attempt in range(1, self.max_proof_retries + 1):
            try:
                with self.monitor.start_operation(f"prove_{proof_type.value}", attempt=attempt):
                    return await self.prover.prove(proof_type, witness, input_hash)
            except ProofGenerationError as e:
                last_error = e
                logger.warning(f"Proof attempt {attempt}/{self.max_proof_retries} "
                               f"for {proof_type.value} failed: {e}")
                await asyncio.sleep(self.retry_backoff * attempt)
        raise ProofGenerationError(
            f"{proof_type.value} proof failed after {self.max_proof_retries} attempts: {last_error}")

    async def _submit(self, transcript: BatchTranscript, proof: ProofArtifact):
        submission = BatchSubmission.from_transcript(transcript, proof)

        for attempt in range(1, self.max_ledger_retries + 1):
            try:
                with self.monitor.start_operation("ledger_submit", kind=transcript.kind.value):
                    await self.ledger.submit_batch(submission)
                return
            except LedgerUnavailable as e:
                logger.warning(f"Ledger unavailable on attempt {attempt}: {e}")
                try:
                    state = await self.ledger.fetch_state()
                except LedgerUnavailable:
                    state = None
                if state is not None and self._already_committed(state, transcript):
                    logger.info(f"Batch {transcript.batch_number} was committed despite the error")
                    return
                await asyncio.sleep(self.retry_backoff * attempt)
            except LedgerRejection:
                state = await self.ledger.fetch_state()
                if self._already_committed(state, transcript):
                    logger.info(f"Batch {transcript.batch_number} already on the ledger")
                    return
                raise

        raise LedgerUnavailable(
            f"Batch {transcript.batch_number} not submitted after {self.max_ledger_retries} attempts")

    async def _commit_batch(self, build: Callable[[], BatchTranscript]) -> BatchTranscript:
        ctx = self.context
        rejections = 0

        while True:
            snapshot = ctx.snapshot()
            try:
                transcript = build()
                proof = await self._prove(PROOF_TYPES[transcript.kind],
                                          transcript.witness, transcript.input_hash)
                await self._submit(transcript, proof)
            except LedgerRejection as e:
                ctx.restore(snapshot)
                rejections += 1
                logger.warning(f"Ledger rejected batch: {e}")
                if rejections > self.max_ledger_retries:
                    raise
                await self._refresh_from_ledger()
                continue
            except CommitmentMismatch:
                ctx.restore(snapshot)
                logger.error("Commitment lineage broken; manual recovery required")
                raise
            except (ZKError, LedgerError, CoordinatorError):
                ctx.restore(snapshot)
                raise

            self.committed.append(transcript)
            for rejection in transcript.rejections():
                self.rejections[rejection.reason.value] += 1
            self._persist()
            return transcript

    # ------------------------------------------------------------------
    # Filling period
    # ------------------------------------------------------------------

    async def sign_up(self, pub_key: Point, balance: Optional[int] = None) -> int:
        async with self._lock:
            index = self.context.sign_up(pub_key, balance)
            self._persist()
            return index

    async def publish_message(self, ciphertext: List[int], enc_pub_key: Point):
        async with self._lock:
            result = self.context.push_message(ciphertext, enc_pub_key)
            self._persist()
            return result

    async def publish_deactivate_message(self, ciphertext: List[int], enc_pub_key: Point):
        async with self._lock:
            result = self.context.push_deactivate_message(ciphertext, enc_pub_key)
            self._persist()
            return result

    async def process_deactivations(self) -> List[BatchTranscript]:
        transcripts = []
        async with self._lock:
            ctx = self.context
            while ctx.processed_deactivate_count < len(ctx.deactivate_queue):
                with self.monitor.start_operation("deactivate_batch"):
                    transcripts.append(await self._commit_batch(self.processor.process_deactivate_batch))
        return transcripts

    async def prove_reactivation(self, request: ReactivationRequest) -> ProofArtifact:
        """Client-side proof over a reactivation witness"""
        return await self._prove(ProofType.ADD_NEW_KEY, request.witness, request.input_hash)

    async def reactivate(self, request: ReactivationRequest, proof: ProofArtifact,
                         balance: Optional[int] = None) -> int:
        async with self._lock:
            # Nothing may fail locally once the ledger has burned the nullifier
            self.reactivation.check(request)

            with self.monitor.start_operation("reactivation"):
                await self.ledger.submit_reactivation(request, proof)
                index = self.reactivation.apply(request, balance)
            self._persist()
            return index

    async def end_vote_period(self) -> LedgerState:
        async with self._lock:
            snapshot = self.context.snapshot()
            self.context.end_vote_period()
            try:
                state = await self.ledger.open_processing(self.context.store.state_root)
            except (LedgerError, CoordinatorError):
                self.context.restore(snapshot)
                raise
            self._persist()
            return state

    # ------------------------------------------------------------------
    # Processing and tallying
    # ------------------------------------------------------------------

    async def process_messages(self) -> List[BatchTranscript]:
        transcripts = []
        async with self._lock:
            while self.context.period is Period.PROCESSING:
                with self.monitor.start_operation("vote_batch"):
                    transcripts.append(await self._commit_batch(self.processor.process_vote_batch))
        return transcripts

    async def tally(self) -> List[BatchTranscript]:
        transcripts = []
        async with self._lock:
            while self.context.period is Period.TALLYING:
                with self.monitor.start_operation("tally_batch"):
                    transcripts.append(await self._commit_batch(self.processor.process_tally_batch))
        return transcripts

    def results(self) -> RoundResult:
        ctx = self.context
        return RoundResult(
            tally=self.processor.tally_results(),
            num_signups=ctx.store.num_signups,
            batches_committed=len(self.committed),
            tally_commitment=ctx.tally.last.commitment,
            state_commitment=ctx.state_commitment,
            rejections=dict(self.rejections),
        )

    async def run_round(self) -> RoundResult:
        """Finish the filling period and carry the round through to a tally"""
        start_time = time.time()
        if self.context.period is Period.FILLING:
            await self.process_deactivations()
            await self.end_vote_period()
        await self.process_messages()
        await self.tally()

        result = self.results()
        result.computation_time = time.time() - start_time
        logger.info(f"Round finished in {result.computation_time:.2f}s, tally {result.tally}")
        return result


# ============================================================================
# FACTORY
# ============================================================================


def create_coordinator(config: SystemConfig, context: Optional[CoordinatorContext] = None,
                       monitor: Optional[PerformanceMonitor] = None) -> IntegratedCoordinator:
    """Wire context, prover and ledger from configuration"""
    if context is None:
        if config.state_file is not None and config.state_file.exists():
            context = load_context(config.state_file)
        else:
            context = CoordinatorContext(config.round.to_parameters())

    zk_config = config.prover.to_zk_config()
    prover = create_prover(zk_config)

    if config.ledger.backend == "http":
        ledger = HttpLedgerClient(config.ledger.url, config.ledger.round_id, config.ledger.timeout)
    elif config.ledger.backend == "memory":
        ledger = InMemoryLedger(context.coord_pub_key, create_verifier(zk_config),
                                context.params.state_tree_depth)
    else:
        raise ValueError(f"Unknown ledger backend: {config.ledger.backend}")

    return IntegratedCoordinator(
        context,
        prover,
        ledger,
        policy=config.policy,
        max_proof_retries=config.prover.max_retries,
        max_ledger_retries=config.ledger.max_retries,
        retry_backoff=config.ledger.retry_backoff,
        state_file=config.state_file,
        monitor=monitor,
    )
