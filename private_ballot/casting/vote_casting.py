"""
Vote Casting Protocol
=====================
Accepts an encrypted ballot for an open election, enforcing one vote per
nullifier, and folds it into the election's encrypted accumulator.

Validation runs first and touches nothing; the ledger store then commits the
nullifier, accumulator and ballot record as a single atomic unit. A rejected
vote leaves the election exactly as it was.

Also provides the voter-side helper prepare_ballot(), which builds the
one-hot encrypted ballot, its nullifier and its commitment.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from private_ballot.crypto.ballot_crypto import (
    HASH_BYTES,
    Ciphertext,
    commit,
    derive_nullifier,
    encrypt,
    random_scalar,
    verify_commitment,
)
from private_ballot.errors import (
    ElectionClosed,
    InvalidCiphertext,
    InvalidCommitment,
    InvalidEligibilityProof,
    InvalidSubmission,
    VoteRejected,
)
from private_ballot.ledger.election_ledger import BallotRecord, ElectionLedger
from private_ballot.quorum.threshold_quorum import EligibilityVerifier

logger = logging.getLogger(__name__)

CiphertextInput = Union[Ciphertext, bytes]

# ============================================================================
# VOTER SIDE
# ============================================================================


@dataclass(frozen=True)
class PreparedBallot:
    """Everything a voter submits, plus the secrets needed to open it later"""
    election_id: bytes
    option_index: int
    ciphertexts: Tuple[Ciphertext, ...]
    nullifier: bytes
    commitment: bytes
    blinding: bytes
    randomness: Tuple[int, ...]

    def __repr__(self) -> str:
        return (f"PreparedBallot(election_id={self.election_id.hex()[:16]}, "
                f"nullifier={self.nullifier.hex()[:16]}, options={len(self.ciphertexts)})")


def encrypt_choice(public_key: bytes, option_index: int, options: int,
                   randomness: Optional[Sequence[int]] = None
                   ) -> Tuple[Tuple[Ciphertext, ...], Tuple[int, ...]]:
    """One-hot encryption: 1 for the chosen option, 0 elsewhere, fresh r per slot"""
    if not 0 <= option_index < options:
        raise ValueError(f"Option index {option_index} out of range [0, {options})")
    if randomness is None:
        randomness = tuple(random_scalar() for _ in range(options))
    if len(randomness) != options:
        raise ValueError("Need one randomness value per option")

    ciphertexts = tuple(
        encrypt(1 if k == option_index else 0, public_key, randomness[k])
        for k in range(options)
    )
    return ciphertexts, tuple(randomness)


def prepare_ballot(public_key: bytes, election_id: bytes, option_index: int, options: int,
                   voter_secret: bytes, nonce: int = 0,
                   blinding: Optional[bytes] = None) -> PreparedBallot:
    """Build ciphertexts, nullifier and commitment for one vote"""
    ciphertexts, randomness = encrypt_choice(public_key, option_index, options)
    if blinding is None:
        blinding = secrets.token_bytes(32)

    return PreparedBallot(
        election_id=election_id,
        option_index=option_index,
        ciphertexts=ciphertexts,
        nullifier=derive_nullifier(voter_secret, election_id, nonce),
        commitment=commit(ciphertexts, blinding),
        blinding=blinding,
        randomness=randomness,
    )


# ============================================================================
# LEDGER SIDE
# ============================================================================


class VoteCastingProtocol:
    """Validates and commits encrypted ballots against an ElectionLedger"""

    def __init__(self, ledger: ElectionLedger,
                 eligibility_verifier: Optional[EligibilityVerifier] = None):
        self.ledger = ledger
        # Without a verifier every submission is eligible; with one, every vote needs a proof
        self.eligibility_verifier = eligibility_verifier

    def cast_vote(self, election_id: bytes, ciphertexts: Sequence[CiphertextInput],
                  nullifier: bytes, commitment: bytes,
                  blinding: Optional[bytes] = None,
                  eligibility_proof: Optional[bytes] = None) -> BallotRecord:
        """
        Accept one encrypted ballot or raise a VoteRejected subclass.

        Args:
            election_id: 32-byte election identifier
            ciphertexts: one ciphertext per option (Ciphertext or 64 raw bytes)
            nullifier: 32-byte voter-derived nullifier
            commitment: 32-byte commitment to the ballot
            blinding: opening of the commitment; checked when supplied
            eligibility_proof: opaque proof; required whenever a verifier is wired in

        Returns:
            The stored BallotRecord
        """
        try:
            record = self._validate(election_id, ciphertexts, nullifier, commitment,
                                    blinding, eligibility_proof)
            updated = self.ledger.store.commit_ballot(record, self.ledger.clock())
        except VoteRejected as e:
            logger.warning(
                f"Rejected vote for election {_prefix(election_id)} "
                f"nullifier {_prefix(nullifier)}: {type(e).__name__}: {e}")
            raise

        logger.info(
            f"✓ Vote accepted for election {election_id.hex()[:16]} "
            f"(nullifier {nullifier.hex()[:16]}..., total {updated.vote_count})")
        return record

    def cast_prepared(self, ballot: PreparedBallot,
                      eligibility_proof: Optional[bytes] = None) -> BallotRecord:
        return self.cast_vote(
            ballot.election_id, ballot.ciphertexts, ballot.nullifier, ballot.commitment,
            blinding=ballot.blinding, eligibility_proof=eligibility_proof)

    def has_voted(self, election_id: bytes, nullifier: bytes) -> bool:
        return self.ledger.store.get_ballot(election_id, nullifier) is not None

    def _validate(self, election_id: bytes, ciphertexts: Sequence[CiphertextInput],
                  nullifier: bytes, commitment: bytes, blinding: Optional[bytes],
                  eligibility_proof: Optional[bytes]) -> BallotRecord:
        if not _is_hash(election_id):
            raise InvalidSubmission(f"Election id must be {HASH_BYTES} bytes")
        now = self.ledger.clock()
        election = self.ledger.get_election(election_id)
        if not election.accepts_votes(now):
            raise ElectionClosed(
                f"Election {election_id.hex()[:16]} is {election.effective_status(now).value}")

        if not _is_hash(nullifier):
            raise InvalidSubmission(f"Nullifier must be {HASH_BYTES} bytes")
        if not _is_hash(commitment):
            raise InvalidSubmission(f"Commitment must be {HASH_BYTES} bytes")

        ballot = _parse_ciphertexts(ciphertexts)
        if len(ballot) != election.options:
            raise InvalidCiphertext(
                f"Ballot has {len(ballot)} ciphertexts, election has {election.options} options")

        if blinding is not None:
            if not _is_hash(blinding):
                raise InvalidSubmission(f"Blinding must be {HASH_BYTES} bytes")
            if not verify_commitment(commitment, ballot, blinding):
                raise InvalidCommitment("Commitment does not open to the submitted ballot")

        self._check_eligibility(election.eligibility_root, nullifier, election_id,
                                eligibility_proof)

        return BallotRecord(
            election_id=election_id,
            ciphertexts=ballot,
            nullifier=nullifier,
            commitment=commitment,
            timestamp=now,
            eligibility_proof=eligibility_proof,
        )

    def _check_eligibility(self, eligibility_root: bytes, nullifier: bytes,
                           election_id: bytes, proof: Optional[bytes]):
        if self.eligibility_verifier is None:
            return
        if proof is None:
            raise InvalidEligibilityProof("Eligibility proof is required")
        if not self.eligibility_verifier.verify(eligibility_root, nullifier, election_id, proof):
            raise InvalidEligibilityProof("Eligibility proof rejected by verifier")


def _is_hash(value) -> bool:
    return isinstance(value, bytes) and len(value) == HASH_BYTES


def _prefix(value) -> str:
    return value.hex()[:16] if isinstance(value, (bytes, bytearray)) else repr(value)


def _parse_ciphertexts(ciphertexts: Sequence[CiphertextInput]) -> Tuple[Ciphertext, ...]:
    if isinstance(ciphertexts, (bytes, bytearray, Ciphertext)):
        raise InvalidCiphertext("Ballot must be a sequence of ciphertexts, one per option")
    parsed = []
    for item in ciphertexts:
        if isinstance(item, Ciphertext):
            item.validate()
            parsed.append(item)
        elif isinstance(item, (bytes, bytearray)):
            parsed.append(Ciphertext.from_bytes(item))
        else:
            raise InvalidCiphertext(f"Unsupported ciphertext type {type(item).__name__}")
    return tuple(parsed)
