"""
Tally Finalization
==================
Moves a closed election to Tallied only after verifying that a quorum of
key holders signed the tally and that the threshold partial decryptions
prove the encrypted accumulator decrypts to exactly that tally.

Verification order: status, tally shape, threshold signatures, decryption
proof, then a compare-and-swap Closed -> Tallied. Any failure leaves the
election Closed so a corrected submission can be retried.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from private_ballot.crypto.ballot_crypto import (
    GROUP_ORDER,
    Ciphertext,
    DecryptionShareProof,
    base_mult,
    ciphertext_bytes,
    combine_decryption_shares,
    keccak256,
    verify_decryption_share,
)
from private_ballot.errors import (
    ConcurrentModification,
    ElectionNotClosed,
    FinalizationRejected,
    InsufficientThresholdSignatures,
    InvalidStatusTransition,
    InvalidTallyProof,
    TallyAlreadyFinalized,
)
from private_ballot.ledger.election_ledger import Election, ElectionLedger, ElectionStatus

logger = logging.getLogger(__name__)

TALLY_DOMAIN = b"private-ballot/tally/v1"
MAX_U64 = 2**64 - 1

# ============================================================================
# SUBMISSION TYPES
# ============================================================================


@dataclass(frozen=True)
class DecryptionRequest:
    """What the quorum needs to decrypt a closed election's accumulator"""
    election_id: bytes
    accumulator: Tuple[Ciphertext, ...]
    vote_count: int
    options: int


@dataclass(frozen=True)
class PartialDecryption:
    """One member's D_i = s_i·c1 for one option, with its DLEQ proof"""
    member_index: int
    partial: bytes
    proof: DecryptionShareProof

    def to_dict(self) -> Dict[str, Any]:
        return {
            'member_index': self.member_index,
            'partial': self.partial.hex(),
            'proof': self.proof.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialDecryption":
        return cls(
            member_index=int(data['member_index']),
            partial=bytes.fromhex(data['partial']),
            proof=DecryptionShareProof.from_dict(data['proof']),
        )


@dataclass(frozen=True)
class TallyProof:
    """Per-option partial decryptions of the accumulator"""
    partials: Tuple[Tuple[PartialDecryption, ...], ...]

    def to_dict(self) -> Dict[str, Any]:
        return {'partials': [[p.to_dict() for p in option] for option in self.partials]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TallyProof":
        return cls(partials=tuple(
            tuple(PartialDecryption.from_dict(p) for p in option)
            for option in data['partials']
        ))


@dataclass(frozen=True)
class TallySubmission:
    """Claimed tally, its decryption proof and quorum signatures by member index"""
    tally: Tuple[int, ...]
    proof: TallyProof
    signatures: Dict[int, bytes] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tally': list(self.tally),
            'proof': self.proof.to_dict(),
            'signatures': {str(i): sig.hex() for i, sig in self.signatures.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TallySubmission":
        return cls(
            tally=tuple(int(v) for v in data['tally']),
            proof=TallyProof.from_dict(data['proof']),
            signatures={int(i): bytes.fromhex(sig) for i, sig in data['signatures'].items()},
        )


@dataclass(frozen=True)
class TallyResult:
    election_id: bytes
    tally: Tuple[int, ...]
    vote_count: int
    signers: Tuple[int, ...]
    finalized_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'election_id': self.election_id.hex(),
            'tally': list(self.tally),
            'vote_count': self.vote_count,
            'signers': list(self.signers),
            'finalized_at': self.finalized_at,
        }


class _TallyContext(Protocol):
    election_id: bytes
    accumulator: Tuple[Ciphertext, ...]
    vote_count: int


# ============================================================================
# VERIFICATION
# ============================================================================


def tally_message(context: _TallyContext, tally: Sequence[int]) -> bytes:
    """
    Canonical digest the quorum signs:
    Keccak256(domain || election_id || accumulator || vote_count u64 || tally u64...)

    Accepts an Election or a DecryptionRequest.
    """
    parts = [
        TALLY_DOMAIN,
        context.election_id,
        ciphertext_bytes(context.accumulator),
        struct.pack("<Q", context.vote_count),
    ]
    parts.extend(struct.pack("<Q", value) for value in tally)
    return keccak256(*parts)


def _check_tally_shape(election: Election, tally: Sequence[int]):
    # Ballots are not proven one-hot at cast time. An all-zero ballot makes the
    # true counts sum below vote_count, so that election can never finalize; a
    # ballot that shifts weight between options keeps the sum and goes unnoticed.
    if len(tally) != election.options:
        raise InvalidTallyProof(
            f"Tally has {len(tally)} entries, election has {election.options} options")
    for value in tally:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_U64:
            raise InvalidTallyProof(f"Tally value {value!r} is not a non-negative u64")
    if sum(tally) != election.vote_count:
        raise InvalidTallyProof(
            f"Tally sums to {sum(tally)} but {election.vote_count} ballots were accepted")


def _verified_signers(election: Election, message: bytes,
                      signatures: Dict[int, bytes]) -> Tuple[int, ...]:
    """Quorum members with a valid signature, one per distinct signing key"""
    signers = []
    seen_keys = set()
    for index, signature in signatures.items():
        member = election.quorum.member(index)
        if member is None or member.signing_key in seen_keys:
            continue
        if not isinstance(signature, bytes):
            continue
        try:
            Ed25519PublicKey.from_public_bytes(member.signing_key).verify(signature, message)
        except (InvalidSignature, ValueError):
            logger.debug(f"Signature from quorum member {index} did not verify")
            continue
        seen_keys.add(member.signing_key)
        signers.append(index)
    return tuple(sorted(signers))


def _check_decryption_proof(election: Election, tally: Sequence[int], proof: TallyProof):
    if len(proof.partials) != election.options:
        raise InvalidTallyProof(
            f"Proof covers {len(proof.partials)} options, election has {election.options}")

    threshold = election.quorum.threshold
    for k, (ciphertext, option_partials) in enumerate(zip(election.accumulator, proof.partials)):
        valid: Dict[int, bytes] = {}
        for item in option_partials:
            member = election.quorum.member(item.member_index)
            if member is None or item.member_index in valid:
                continue
            if verify_decryption_share(member.verification_key, ciphertext.c1,
                                       item.partial, item.proof):
                valid[item.member_index] = item.partial

        if len(valid) < threshold:
            raise InvalidTallyProof(
                f"Option {k}: {len(valid)} valid partial decryptions, need {threshold}")

        # Verified shares all lie on the same polynomial, so any >= threshold of them interpolate
        if combine_decryption_shares(ciphertext, valid) != base_mult(tally[k] % GROUP_ORDER):
            raise InvalidTallyProof(f"Option {k}: accumulator does not decrypt to {tally[k]}")


def verify_tally_submission(election: Election, submission: TallySubmission) -> Tuple[int, ...]:
    """
    Check signatures and decryption proof against a Closed election.

    Returns:
        Indices of the quorum members whose signatures verified
    """
    tally = tuple(submission.tally)
    _check_tally_shape(election, tally)

    signers = _verified_signers(election, tally_message(election, tally), submission.signatures)
    if len(signers) < election.quorum.threshold:
        raise InsufficientThresholdSignatures(
            f"{len(signers)} valid quorum signatures, need {election.quorum.threshold}")

    _check_decryption_proof(election, tally, submission.proof)
    return signers


# ============================================================================
# FINALIZER
# ============================================================================


class TallyFinalizer:
    """Decryption requests and verified Closed -> Tallied transitions"""

    def __init__(self, ledger: ElectionLedger):
        self.ledger = ledger

    def request_decryption(self, election_id: bytes) -> DecryptionRequest:
        election = self.ledger.ensure_closed(election_id)
        if election.status == ElectionStatus.OPEN:
            raise ElectionNotClosed(
                f"Election {election_id.hex()[:16]} accepts votes until {election.closes_at}")

        logger.info(
            f"Decryption requested for election {election_id.hex()[:16]} "
            f"({election.vote_count} ballots, {election.options} options)")
        return DecryptionRequest(
            election_id=election.election_id,
            accumulator=election.accumulator,
            vote_count=election.vote_count,
            options=election.options,
        )

    def finalize(self, election_id: bytes, submission: TallySubmission) -> TallyResult:
        try:
            return self._finalize(election_id, submission)
        except FinalizationRejected as e:
            logger.warning(
                f"Rejected tally for election {election_id.hex()[:16]}: "
                f"{type(e).__name__}: {e}")
            raise

    def _finalize(self, election_id: bytes, submission: TallySubmission) -> TallyResult:
        election = self.ledger.ensure_closed(election_id)
        if election.status == ElectionStatus.TALLIED:
            raise TallyAlreadyFinalized(f"Election {election_id.hex()[:16]} is already tallied")
        if election.status != ElectionStatus.CLOSED:
            raise ElectionNotClosed(f"Election {election_id.hex()[:16]} is still open")

        signers = verify_tally_submission(election, submission)
        tally = tuple(submission.tally)

        try:
            updated = self.ledger.store.compare_and_set_status(
                election_id, ElectionStatus.CLOSED, ElectionStatus.TALLIED,
                expected_version=election.version, tally=tally)
        except (InvalidStatusTransition, ConcurrentModification):
            if self.ledger.get_election(election_id).status == ElectionStatus.TALLIED:
                raise TallyAlreadyFinalized(
                    f"Election {election_id.hex()[:16]} was tallied concurrently")
            raise

        logger.info(
            f"✓ Election {election_id.hex()[:16]} tallied: {list(tally)} "
            f"({updated.vote_count} ballots, signed by members {list(signers)})")
        return TallyResult(
            election_id=election_id,
            tally=tally,
            vote_count=updated.vote_count,
            signers=signers,
            finalized_at=self.ledger.clock(),
        )
