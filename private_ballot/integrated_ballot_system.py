"""
Integrated Private Ballot System
================================
Async facade wiring the protocol layers together:
1. Ledger: election records, nullifier ledger, encrypted accumulators
2. Vote casting: one vote per nullifier, homomorphic accumulation
3. Tally: threshold decryption by the quorum, verified finalization

The protocol core is synchronous and thread-safe; this facade runs it in
worker threads so many async callers can submit votes concurrently.
"""

import asyncio
import logging
import secrets
import time
from collections import Counter
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from private_ballot.casting.vote_casting import (
    CiphertextInput,
    PreparedBallot,
    VoteCastingProtocol,
    prepare_ballot,
)
from private_ballot.config.config import SystemConfig
from private_ballot.errors import BallotProtocolError, InvalidElectionConfig
from private_ballot.ledger.election_ledger import (
    BallotRecord,
    Election,
    ElectionLedger,
    InMemoryLedgerStore,
    LedgerStore,
    QuorumPolicy,
)
from private_ballot.ledger.sqlite_store import SQLiteLedgerStore
from private_ballot.quorum.threshold_quorum import (
    DecryptionQuorum,
    EligibilityVerifier,
    ThresholdDecryptionQuorum,
)
from private_ballot.tally.tally_finalization import TallyFinalizer, TallyResult
from private_ballot.utils.utils import (
    PerformanceMonitor,
    create_performance_report,
    format_duration,
    save_results,
)

logger = logging.getLogger(__name__)

# ============================================================================
# INTEGRATED BALLOT SYSTEM
# ============================================================================


def create_ledger_store(config: SystemConfig) -> LedgerStore:
    """Ledger backend selected by config.ledger.backend"""
    if config.ledger.backend == "sqlite":
        return SQLiteLedgerStore(str(config.ledger.database_path),
                                 busy_timeout=config.ledger.busy_timeout)
    return InMemoryLedgerStore()


class PrivateBallotSystem:
    """
    Complete private-ballot service:
    elections are created against a threshold quorum's public key, voters
    cast encrypted one-hot ballots, and the quorum's signed, proof-carrying
    tally is verified before the election is marked Tallied.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        store: Optional[LedgerStore] = None,
        quorum: Optional[DecryptionQuorum] = None,
        eligibility_verifier: Optional[EligibilityVerifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SystemConfig()
        logger.info("Initializing Private Ballot System...")

        self.store = store or create_ledger_store(self.config)
        self.ledger = ElectionLedger(self.store, clock=clock,
                                     max_options=self.config.protocol.max_options)
        self.casting = VoteCastingProtocol(self.ledger, eligibility_verifier=eligibility_verifier)
        self.finalizer = TallyFinalizer(self.ledger)

        if quorum is None:
            quorum = ThresholdDecryptionQuorum.generate(
                self.config.quorum.threshold,
                self.config.quorum.num_members,
                max_value=self.config.protocol.max_tally_value,
            )
        self.quorum = quorum

        self.monitor = PerformanceMonitor()
        self.rejections: Counter = Counter()
        self.results: Dict[bytes, TallyResult] = {}

        logger.info(
            f"Private Ballot System initialized ({type(self.store).__name__}, "
            f"{type(self.quorum).__name__})")

    def _operation(self, name: str):
        if self.config.enable_performance_monitoring:
            return self.monitor.start_operation(name)
        return nullcontext()

    # ------------------------------------------------------------------
    # Elections
    # ------------------------------------------------------------------

    async def create_election(
        self,
        authority: str,
        options: int,
        closes_at: float,
        election_id: Optional[bytes] = None,
        eligibility_root: Optional[bytes] = None,
        tally_public_key: Optional[bytes] = None,
        quorum_policy: Optional[QuorumPolicy] = None,
    ) -> Election:
        """
        Register a new Open election.

        The tally key and quorum policy default to this system's quorum; an
        external DecryptionQuorum must pass both explicitly.
        """
        if tally_public_key is None or quorum_policy is None:
            if not isinstance(self.quorum, ThresholdDecryptionQuorum):
                raise InvalidElectionConfig(
                    "tally_public_key and quorum_policy are required with an external quorum")
            tally_public_key = tally_public_key or self.quorum.public_key
            quorum_policy = quorum_policy or self.quorum.policy()

        return await asyncio.to_thread(
            self.ledger.create_election,
            election_id or secrets.token_bytes(32),
            authority,
            tally_public_key,
            eligibility_root or secrets.token_bytes(32),
            options,
            closes_at,
            quorum_policy,
        )

    async def get_election(self, election_id: bytes) -> Election:
        return await asyncio.to_thread(self.ledger.get_election, election_id)

    async def list_elections(self) -> List[bytes]:
        return await asyncio.to_thread(self.ledger.list_elections)

    async def close_election(self, election_id: bytes, requester: str) -> Election:
        return await asyncio.to_thread(self.ledger.close_election, election_id, requester)

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def prepare_ballot(self, election: Election, option_index: int, voter_secret: bytes,
                       nonce: Optional[int] = None) -> PreparedBallot:
        """Voter-side helper bound to an election's key and option count"""
        return prepare_ballot(
            election.tally_public_key,
            election.election_id,
            option_index,
            election.options,
            voter_secret,
            nonce=self.config.protocol.nullifier_nonce if nonce is None else nonce,
        )

    async def cast_vote(
        self,
        election_id: bytes,
        ciphertexts: Sequence[CiphertextInput],
        nullifier: bytes,
        commitment: bytes,
        blinding: Optional[bytes] = None,
        eligibility_proof: Optional[bytes] = None,
    ) -> BallotRecord:
        with self._operation("cast_vote"):
            try:
                return await asyncio.to_thread(
                    self.casting.cast_vote, election_id, ciphertexts, nullifier,
                    commitment, blinding, eligibility_proof)
            except BallotProtocolError as e:
                self.rejections[type(e).__name__] += 1
                raise

    async def cast_prepared(self, ballot: PreparedBallot,
                            eligibility_proof: Optional[bytes] = None) -> BallotRecord:
        return await self.cast_vote(
            ballot.election_id, ballot.ciphertexts, ballot.nullifier, ballot.commitment,
            blinding=ballot.blinding, eligibility_proof=eligibility_proof)

    # ------------------------------------------------------------------
    # Tally
    # ------------------------------------------------------------------

    async def tally(self, election_id: bytes) -> TallyResult:
        """
        Compute and finalize the tally of a closed election:
        1. Build the decryption request from the stored accumulator
        2. Quorum decrypts, proves and signs
        3. Verify signatures and proof, then mark the election Tallied
        """
        start_time = time.perf_counter()
        with self._operation("tally"):
            request = await asyncio.to_thread(self.finalizer.request_decryption, election_id)
            submission = await self.quorum.request_decrypt(request)
            try:
                result = await asyncio.to_thread(self.finalizer.finalize, election_id, submission)
            except BallotProtocolError as e:
                self.rejections[type(e).__name__] += 1
                raise

        self.results[election_id] = result
        logger.info(
            f"Tally for election {election_id.hex()[:16]} finalized in "
            f"{format_duration(time.perf_counter() - start_time)}: {list(result.tally)}")
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_system_metrics(self) -> Dict[str, Any]:
        return {
            'ledger_backend': type(self.store).__name__,
            'elections': len(self.ledger.list_elections()),
            'tallied_elections': len(self.results),
            'rejections': dict(self.rejections),
            'performance': self.monitor.get_summary(),
        }

    def performance_report(self) -> str:
        return create_performance_report(self.monitor)

    def save_election_results(self, election_id: bytes,
                              filepath: Optional[Path] = None) -> Path:
        """Export election state, tally and metrics as JSON plus a text summary"""
        election = self.ledger.get_election(election_id)
        if filepath is None:
            filepath = self.config.results_dir / f"election_{election_id.hex()[:16]}.json"

        result = self.results.get(election_id)
        save_results({
            'election_id': election_id,
            'election': election,
            'tally': election.tally,
            'result': result,
            'rejections': dict(self.rejections),
            'performance_metrics': self.monitor.get_summary(),
        }, Path(filepath))
        return Path(filepath)
