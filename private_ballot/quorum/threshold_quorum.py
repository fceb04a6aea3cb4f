"""
Threshold Decryption Quorum
===========================
Capability interfaces the protocol core depends on (eligibility verifier,
decryption quorum) and in-process reference implementations of both.

ThresholdDecryptionQuorum runs a dealerless DKG: every member deals a random
polynomial over Z_L with Feldman commitments, every share is checked against
its dealer's commitments, and each member's key share is the sum of the
shares it received. The tally public key is the sum of the dealers' constant
term commitments. Each member also holds an Ed25519 key for signing tallies.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from private_ballot.crypto.ballot_crypto import (
    DEFAULT_MAX_PLAINTEXT,
    GROUP_ORDER,
    IDENTITY,
    Ciphertext,
    base_mult,
    combine_decryption_shares,
    constant_time_equal,
    discrete_log,
    keccak256,
    point_add,
    prove_decryption_share,
    random_scalar,
    scalar_mult,
)
from private_ballot.errors import ThresholdViolation
from private_ballot.ledger.election_ledger import QuorumMember, QuorumPolicy
from private_ballot.tally.tally_finalization import (
    DecryptionRequest,
    PartialDecryption,
    TallyProof,
    TallySubmission,
    tally_message,
)

logger = logging.getLogger(__name__)

# ============================================================================
# CAPABILITY INTERFACES
# ============================================================================


@runtime_checkable
class EligibilityVerifier(Protocol):
    """Checks a voter's proof of membership in the eligibility set"""

    def verify(self, eligibility_root: bytes, nullifier: bytes, election_id: bytes,
               proof: bytes) -> bool:
        ...


@runtime_checkable
class DecryptionQuorum(Protocol):
    """Produces a signed, proof-carrying tally for a closed election"""

    async def request_decrypt(self, request: DecryptionRequest) -> TallySubmission:
        ...


# ============================================================================
# FELDMAN VSS / DKG
# ============================================================================


def evaluate_polynomial(coefficients: Sequence[int], x: int) -> int:
    """Evaluate polynomial at point x using Horner's method, mod the group order"""
    result = 0
    for coeff in reversed(coefficients):
        result = (result * x + coeff) % GROUP_ORDER
    return result


def feldman_commitments(coefficients: Sequence[int]) -> List[bytes]:
    """C_j = a_j·G for every coefficient"""
    return [base_mult(coeff) for coeff in coefficients]


def verify_feldman_share(index: int, share: int, commitments: Sequence[bytes]) -> bool:
    """share·G == Σ index^j · C_j"""
    expected = IDENTITY
    power = 1
    for commitment in commitments:
        expected = point_add(expected, scalar_mult(power, commitment))
        power = (power * index) % GROUP_ORDER
    return base_mult(share) == expected


@dataclass(frozen=True)
class Dealing:
    """One dealer's contribution to the DKG"""
    dealer_index: int
    commitments: Tuple[bytes, ...]
    shares: Dict[int, int]

    def __repr__(self) -> str:
        return f"Dealing(dealer_index={self.dealer_index}, recipients={sorted(self.shares)})"


class DistributedKeyGeneration:
    """Pedersen DKG for threshold key generation"""

    def __init__(self, threshold: int, num_members: int):
        if num_members < 1:
            raise ValueError("Quorum needs at least one member")
        if not 1 <= threshold <= num_members:
            raise ValueError(f"Threshold {threshold} must be in [1, {num_members}]")
        self.threshold = threshold
        self.num_members = num_members

    def deal(self, dealer_index: int) -> Dealing:
        coefficients = [random_scalar() for _ in range(self.threshold)]
        return Dealing(
            dealer_index=dealer_index,
            commitments=tuple(feldman_commitments(coefficients)),
            shares={i: evaluate_polynomial(coefficients, i)
                    for i in range(1, self.num_members + 1)},
        )

    def qualified_dealers(self, dealings: Sequence[Dealing]) -> List[Dealing]:
        """Dealers whose every share matches their commitments"""
        qualified = []
        for dealing in dealings:
            bad = [i for i, share in dealing.shares.items()
                   if not verify_feldman_share(i, share, dealing.commitments)]
            if bad:
                logger.warning(
                    f"Dealer {dealing.dealer_index} disqualified: invalid shares for {bad}")
                continue
            qualified.append(dealing)
        return qualified

    def combine(self, dealings: Sequence[Dealing]) -> Tuple[bytes, Dict[int, int]]:
        qualified = self.qualified_dealers(dealings)
        if not qualified:
            raise ThresholdViolation("No qualified dealers in key generation")

        shares = {i: 0 for i in range(1, self.num_members + 1)}
        public_key = IDENTITY
        for dealing in qualified:
            for i in shares:
                shares[i] = (shares[i] + dealing.shares[i]) % GROUP_ORDER
            public_key = point_add(public_key, dealing.commitments[0])
        return public_key, shares

    def generate_threshold_keys(self) -> Tuple[bytes, Dict[int, int]]:
        """Generate distributed threshold keypair without trusted dealer"""
        dealings = [self.deal(i) for i in range(1, self.num_members + 1)]
        public_key, shares = self.combine(dealings)
        logger.info(
            f"DKG complete: ({self.threshold},{self.num_members}) quorum, "
            f"public key {public_key.hex()[:16]}...")
        return public_key, shares


# ============================================================================
# REFERENCE QUORUM
# ============================================================================


class QuorumMemberKeys:
    """Secret material held by one quorum member"""

    def __init__(self, index: int, share: int, signing_key: Optional[Ed25519PrivateKey] = None):
        self.index = index
        self._share = share % GROUP_ORDER
        self.verification_key = base_mult(self._share)
        self._signing_key = signing_key or Ed25519PrivateKey.generate()

    def __repr__(self) -> str:
        return f"QuorumMemberKeys(index={self.index})"

    @property
    def signing_public_key(self) -> bytes:
        return self._signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def public_member(self) -> QuorumMember:
        return QuorumMember(
            index=self.index,
            signing_key=self.signing_public_key,
            verification_key=self.verification_key,
        )

    def partial_decrypt(self, ciphertext: Ciphertext) -> PartialDecryption:
        partial, proof = prove_decryption_share(self._share, ciphertext.c1)
        return PartialDecryption(member_index=self.index, partial=partial, proof=proof)

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message)


class ThresholdDecryptionQuorum:
    """In-process t-of-n decryption quorum implementing DecryptionQuorum"""

    def __init__(self, threshold: int, public_key: bytes, members: Sequence[QuorumMemberKeys],
                 max_value: int = DEFAULT_MAX_PLAINTEXT):
        self.threshold = threshold
        self.max_value = max_value
        self.public_key = public_key
        self.members: Dict[int, QuorumMemberKeys] = {m.index: m for m in members}
        self.offline: Set[int] = set()

    @classmethod
    def generate(cls, threshold: int, num_members: int,
                 max_value: int = DEFAULT_MAX_PLAINTEXT) -> "ThresholdDecryptionQuorum":
        public_key, shares = DistributedKeyGeneration(threshold, num_members).generate_threshold_keys()
        members = [QuorumMemberKeys(index, share) for index, share in shares.items()]
        return cls(threshold, public_key, members, max_value=max_value)

    def policy(self) -> QuorumPolicy:
        """Public quorum description to register with an election"""
        return QuorumPolicy(
            threshold=self.threshold,
            members=tuple(self.members[i].public_member() for i in sorted(self.members)),
        )

    def available_members(self) -> List[int]:
        return [i for i in sorted(self.members) if i not in self.offline]

    def _select(self, participants: Optional[Sequence[int]]) -> List[int]:
        if participants is None:
            participants = self.available_members()[:self.threshold]
        chosen = sorted({i for i in participants if i in self.members and i not in self.offline})
        if len(chosen) < self.threshold:
            raise ThresholdViolation(
                f"Only {len(chosen)} quorum members available, need {self.threshold}")
        return chosen

    def _decrypt_option(self, ciphertext: Ciphertext, participants: Sequence[int],
                        max_value: int) -> Tuple[int, Tuple[PartialDecryption, ...]]:
        partials = tuple(self.members[i].partial_decrypt(ciphertext) for i in participants)
        message_point = combine_decryption_shares(
            ciphertext, {p.member_index: p.partial for p in partials})
        return discrete_log(message_point, max_value), partials

    async def request_decrypt(self, request: DecryptionRequest,
                              participants: Optional[Sequence[int]] = None,
                              max_value: Optional[int] = None) -> TallySubmission:
        """
        Decrypt every option of the accumulator with `participants` (default:
        the first `threshold` available members) and sign the result.

        Raises:
            ThresholdViolation: fewer than `threshold` participants
            DecryptionFailed: an option count exceeds the search bound
        """
        chosen = self._select(participants)
        bound = min(self.max_value if max_value is None else max_value, request.vote_count)
        logger.info(
            f"Quorum members {chosen} decrypting {request.options} options "
            f"for election {request.election_id.hex()[:16]}")

        results = await asyncio.gather(*[
            asyncio.to_thread(self._decrypt_option, ciphertext, chosen, bound)
            for ciphertext in request.accumulator
        ])
        tally = tuple(count for count, _ in results)
        proof = TallyProof(partials=tuple(partials for _, partials in results))

        message = tally_message(request, tally)
        signatures = {i: self.members[i].sign(message) for i in chosen}
        logger.debug(f"Tally {list(tally)} signed by {len(signatures)} members")
        return TallySubmission(tally=tally, proof=proof, signatures=signatures)


# ============================================================================
# REFERENCE ELIGIBILITY VERIFIER
# ============================================================================


class AllowListEligibilityVerifier:
    """
    Eligibility by explicit allow-list of nullifiers.

    A proof is Keccak256(root || election_id || nullifier) for a nullifier on
    the list; stands in for a zero-knowledge membership verifier.
    """

    def __init__(self, eligibility_root: bytes, nullifiers: Sequence[bytes] = ()):
        self.eligibility_root = eligibility_root
        self._allowed: Set[bytes] = set(nullifiers)

    def allow(self, nullifier: bytes):
        self._allowed.add(nullifier)

    def issue_proof(self, election_id: bytes, nullifier: bytes) -> bytes:
        return keccak256(self.eligibility_root, election_id, nullifier)

    def verify(self, eligibility_root: bytes, nullifier: bytes, election_id: bytes,
               proof: bytes) -> bool:
        if eligibility_root != self.eligibility_root or nullifier not in self._allowed:
            return False
        if not isinstance(proof, bytes):
            return False
        return constant_time_equal(proof, self.issue_proof(election_id, nullifier))
