"""
Election Ledger
===============
Election records, the per-election nullifier ledger, and the ledger store
contract that vote casting and tally finalization build on.

The store is the single linearization point: commit_ballot() performs the
nullifier create-if-absent, the accumulator fold and the ballot insert as one
atomic unit, and every status change is a compare-and-swap on the record
version.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from private_ballot.crypto.ballot_crypto import (
    Ciphertext,
    combine_public_keys,
    homomorphic_add,
    validate_point,
    validate_public_key,
)
from private_ballot.errors import (
    ElectionAlreadyExists,
    ElectionClosed,
    ElectionNotFound,
    ConcurrentModification,
    InvalidElectionConfig,
    InvalidStatusTransition,
    InvalidPublicKey,
    NullifierAlreadyUsed,
    Unauthorized,
)

logger = logging.getLogger(__name__)

ID_BYTES = 32
MAX_OPTIONS = 255

# ============================================================================
# ELECTION RECORD
# ============================================================================


class ElectionStatus(Enum):
    """Election lifecycle; transitions only move forward"""
    OPEN = "open"
    CLOSED = "closed"
    TALLIED = "tallied"


ALLOWED_TRANSITIONS = {
    ElectionStatus.OPEN: ElectionStatus.CLOSED,
    ElectionStatus.CLOSED: ElectionStatus.TALLIED,
}


@dataclass(frozen=True)
class QuorumMember:
    """One member of the threshold decryption quorum"""
    index: int
    signing_key: bytes        # Ed25519 public key, 32 bytes
    verification_key: bytes   # share·G, 32 bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'signing_key': self.signing_key.hex(),
            'verification_key': self.verification_key.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuorumMember":
        return cls(
            index=int(data['index']),
            signing_key=bytes.fromhex(data['signing_key']),
            verification_key=bytes.fromhex(data['verification_key']),
        )


@dataclass(frozen=True)
class QuorumPolicy:
    """Threshold and membership that a tally submission is checked against"""
    threshold: int
    members: Tuple[QuorumMember, ...]

    def member(self, index: int) -> Optional[QuorumMember]:
        for member in self.members:
            if member.index == index:
                return member
        return None

    def validate(self, tally_public_key: bytes):
        """Check the policy is internally consistent and matches the tally key"""
        if not self.members:
            raise InvalidElectionConfig("Quorum must have at least one member")
        if not 1 <= self.threshold <= len(self.members):
            raise InvalidElectionConfig(
                f"Threshold {self.threshold} must be in [1, {len(self.members)}]")

        indices = [member.index for member in self.members]
        if len(set(indices)) != len(indices):
            raise InvalidElectionConfig(f"Duplicate quorum member indices: {indices}")

        for member in self.members:
            if member.index < 1:
                raise InvalidElectionConfig("Quorum member indices start at 1")
            if len(member.signing_key) != 32:
                raise InvalidElectionConfig(
                    f"Member {member.index} signing key must be 32 bytes")
            if not validate_point(member.verification_key):
                raise InvalidElectionConfig(
                    f"Member {member.index} verification key is not a group element")

        # The first threshold keys fix the polynomial; every other key must lie on it
        subset = {m.index: m.verification_key for m in self.members[:self.threshold]}
        if combine_public_keys(subset) != tally_public_key:
            raise InvalidElectionConfig(
                "Quorum verification keys do not combine to the tally public key")
        for member in self.members[self.threshold:]:
            if combine_public_keys(subset, x=member.index) != member.verification_key:
                raise InvalidElectionConfig(
                    f"Member {member.index} verification key is inconsistent with the quorum")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'threshold': self.threshold,
            'members': [member.to_dict() for member in self.members],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuorumPolicy":
        return cls(
            threshold=int(data['threshold']),
            members=tuple(QuorumMember.from_dict(m) for m in data['members']),
        )


@dataclass(frozen=True)
class Election:
    """
    Per-election configuration and encrypted tally accumulator.

    Instances are immutable snapshots; the store replaces them wholesale on
    every accepted vote or status transition and bumps `version`.
    """
    election_id: bytes
    authority: str
    tally_public_key: bytes
    eligibility_root: bytes
    options: int
    closes_at: float
    quorum: QuorumPolicy
    status: ElectionStatus = ElectionStatus.OPEN
    accumulator: Tuple[Ciphertext, ...] = ()
    vote_count: int = 0
    created_at: float = field(default_factory=time.time)
    tally: Optional[Tuple[int, ...]] = None
    version: int = 0

    def accepts_votes(self, now: float) -> bool:
        return self.status == ElectionStatus.OPEN and now < self.closes_at

    def effective_status(self, now: float) -> ElectionStatus:
        """Status with the lazy Open -> Closed cutoff applied"""
        if self.status == ElectionStatus.OPEN and now >= self.closes_at:
            return ElectionStatus.CLOSED
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'election_id': self.election_id.hex(),
            'authority': self.authority,
            'tally_public_key': self.tally_public_key.hex(),
            'eligibility_root': self.eligibility_root.hex(),
            'options': self.options,
            'closes_at': self.closes_at,
            'quorum': self.quorum.to_dict(),
            'status': self.status.value,
            'accumulator': [ct.to_dict() for ct in self.accumulator],
            'vote_count': self.vote_count,
            'created_at': self.created_at,
            'tally': list(self.tally) if self.tally is not None else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Election":
        tally = data.get('tally')
        return cls(
            election_id=bytes.fromhex(data['election_id']),
            authority=data['authority'],
            tally_public_key=bytes.fromhex(data['tally_public_key']),
            eligibility_root=bytes.fromhex(data['eligibility_root']),
            options=int(data['options']),
            closes_at=float(data['closes_at']),
            quorum=QuorumPolicy.from_dict(data['quorum']),
            status=ElectionStatus(data['status']),
            accumulator=tuple(Ciphertext.from_dict(ct) for ct in data['accumulator']),
            vote_count=int(data['vote_count']),
            created_at=float(data['created_at']),
            tally=tuple(int(v) for v in tally) if tally is not None else None,
            version=int(data['version']),
        )


@dataclass(frozen=True)
class BallotRecord:
    """Stored ballot; exactly one per (election_id, nullifier)"""
    election_id: bytes
    ciphertexts: Tuple[Ciphertext, ...]
    nullifier: bytes
    commitment: bytes
    timestamp: float
    eligibility_proof: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'election_id': self.election_id.hex(),
            'ciphertexts': [ct.to_dict() for ct in self.ciphertexts],
            'nullifier': self.nullifier.hex(),
            'commitment': self.commitment.hex(),
            'timestamp': self.timestamp,
            'eligibility_proof': self.eligibility_proof.hex() if self.eligibility_proof else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BallotRecord":
        proof = data.get('eligibility_proof')
        return cls(
            election_id=bytes.fromhex(data['election_id']),
            ciphertexts=tuple(Ciphertext.from_dict(ct) for ct in data['ciphertexts']),
            nullifier=bytes.fromhex(data['nullifier']),
            commitment=bytes.fromhex(data['commitment']),
            timestamp=float(data['timestamp']),
            eligibility_proof=bytes.fromhex(proof) if proof else None,
        )


def fold_ballot(accumulator: Sequence[Ciphertext],
                ciphertexts: Sequence[Ciphertext]) -> Tuple[Ciphertext, ...]:
    """Add each option's ciphertext into the matching accumulator slot"""
    if len(accumulator) != len(ciphertexts):
        raise ValueError(
            f"Ballot has {len(ciphertexts)} ciphertexts, accumulator has {len(accumulator)}")
    return tuple(homomorphic_add(acc, ct) for acc, ct in zip(accumulator, ciphertexts))


def build_election(election_id: bytes, authority: str, tally_public_key: bytes,
                   eligibility_root: bytes, options: int, closes_at: float,
                   quorum: QuorumPolicy, now: float,
                   max_options: int = MAX_OPTIONS) -> Election:
    """Validate parameters and return a fresh Open election with a zero accumulator"""
    if not isinstance(election_id, bytes) or len(election_id) != ID_BYTES:
        raise InvalidElectionConfig(f"Election id must be {ID_BYTES} bytes")
    if not isinstance(eligibility_root, bytes) or len(eligibility_root) != ID_BYTES:
        raise InvalidElectionConfig(f"Eligibility root must be {ID_BYTES} bytes")
    if not authority:
        raise InvalidElectionConfig("Election authority is required")
    if isinstance(options, bool) or not isinstance(options, int) or not 1 <= options <= max_options:
        raise InvalidElectionConfig(f"Options must be an int in [1, {max_options}]")
    if closes_at <= now:
        raise InvalidElectionConfig("closes_at must be in the future")
    try:
        tally_public_key = validate_public_key(tally_public_key)
    except InvalidPublicKey as e:
        raise InvalidElectionConfig(str(e)) from e
    quorum.validate(tally_public_key)

    return Election(
        election_id=election_id,
        authority=authority,
        tally_public_key=tally_public_key,
        eligibility_root=eligibility_root,
        options=options,
        closes_at=float(closes_at),
        quorum=quorum,
        accumulator=tuple(Ciphertext.zero() for _ in range(options)),
        created_at=now,
    )


# ============================================================================
# NULLIFIER LEDGER
# ============================================================================


class NullifierLedger:
    """Append-only ordered set of consumed nullifiers for one election"""

    def __init__(self, election_id: bytes):
        self.election_id = election_id
        self._nullifiers: Dict[bytes, int] = {}
        self._lock = threading.Lock()

    def insert_if_absent(self, nullifier: bytes) -> bool:
        """Atomic check-then-insert; False if the nullifier was already present"""
        with self._lock:
            if nullifier in self._nullifiers:
                return False
            self._nullifiers[nullifier] = len(self._nullifiers)
            return True

    def __contains__(self, nullifier: bytes) -> bool:
        with self._lock:
            return nullifier in self._nullifiers

    def __len__(self) -> int:
        with self._lock:
            return len(self._nullifiers)

    def __iter__(self) -> Iterator[bytes]:
        with self._lock:
            return iter(list(self._nullifiers))


# ============================================================================
# LEDGER STORE CONTRACT
# ============================================================================


class LedgerStore(ABC):
    """
    Persistence contract: atomic create-if-absent for nullifiers and atomic
    read-modify-write for the election accumulator.
    """

    @abstractmethod
    def create_election(self, election: Election) -> Election:
        """Insert a new election; ElectionAlreadyExists if the id is taken"""

    @abstractmethod
    def get_election(self, election_id: bytes) -> Election:
        """Current snapshot; ElectionNotFound if unknown"""

    @abstractmethod
    def list_elections(self) -> List[bytes]:
        pass

    @abstractmethod
    def commit_ballot(self, record: BallotRecord, now: float) -> Election:
        """
        Re-check the election accepts votes, insert the nullifier if absent,
        fold the ciphertexts into the accumulator and store the ballot, all
        or nothing. Returns the updated election.
        """

    @abstractmethod
    def compare_and_set_status(self, election_id: bytes, expected: ElectionStatus,
                               target: ElectionStatus, expected_version: Optional[int] = None,
                               tally: Optional[Tuple[int, ...]] = None) -> Election:
        """Move expected -> target if the record still matches; returns the update"""

    @abstractmethod
    def get_ballot(self, election_id: bytes, nullifier: bytes) -> Optional[BallotRecord]:
        pass

    @abstractmethod
    def list_ballots(self, election_id: bytes) -> List[BallotRecord]:
        pass

    @abstractmethod
    def list_nullifiers(self, election_id: bytes) -> List[bytes]:
        """Consumed nullifiers in insertion order"""


def check_transition(current: Election, expected: ElectionStatus, target: ElectionStatus,
                     expected_version: Optional[int]):
    """Shared CAS precondition for every store backend"""
    if ALLOWED_TRANSITIONS.get(expected) != target:
        raise InvalidStatusTransition(
            f"Transition {expected.value} -> {target.value} is not allowed")
    if current.status != expected:
        raise InvalidStatusTransition(
            f"Election is {current.status.value}, expected {expected.value}")
    if expected_version is not None and current.version != expected_version:
        raise ConcurrentModification(
            f"Election version {current.version} != expected {expected_version}")


def apply_ballot(election: Election, record: BallotRecord, now: float) -> Election:
    """Pure state transition for one accepted ballot"""
    if not election.accepts_votes(now):
        raise ElectionClosed(f"Election {election.election_id.hex()[:16]} is not accepting votes")
    return replace(
        election,
        accumulator=fold_ballot(election.accumulator, record.ciphertexts),
        vote_count=election.vote_count + 1,
        version=election.version + 1,
    )


@dataclass
class _ElectionEntry:
    election: Election
    nullifiers: NullifierLedger
    ballots: Dict[bytes, BallotRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class InMemoryLedgerStore(LedgerStore):
    """Thread-safe in-process store; one lock per election, no global lock on votes"""

    def __init__(self):
        self._entries: Dict[bytes, _ElectionEntry] = {}
        self._registry_lock = threading.Lock()

    def _entry(self, election_id: bytes) -> _ElectionEntry:
        with self._registry_lock:
            entry = self._entries.get(election_id)
        if entry is None:
            raise ElectionNotFound(f"Unknown election {election_id.hex()}")
        return entry

    def create_election(self, election: Election) -> Election:
        with self._registry_lock:
            if election.election_id in self._entries:
                raise ElectionAlreadyExists(
                    f"Election {election.election_id.hex()} already exists")
            self._entries[election.election_id] = _ElectionEntry(
                election=election,
                nullifiers=NullifierLedger(election.election_id),
            )
        return election

    def get_election(self, election_id: bytes) -> Election:
        entry = self._entry(election_id)
        with entry.lock:
            return entry.election

    def list_elections(self) -> List[bytes]:
        with self._registry_lock:
            return list(self._entries)

    def commit_ballot(self, record: BallotRecord, now: float) -> Election:
        entry = self._entry(record.election_id)
        with entry.lock:
            # Fold first: it is pure, so a failure here leaves nothing behind
            updated = apply_ballot(entry.election, record, now)
            if not entry.nullifiers.insert_if_absent(record.nullifier):
                raise NullifierAlreadyUsed(
                    f"Nullifier {record.nullifier.hex()[:16]}... already used")
            entry.ballots[record.nullifier] = record
            entry.election = updated
            return updated

    def compare_and_set_status(self, election_id: bytes, expected: ElectionStatus,
                               target: ElectionStatus, expected_version: Optional[int] = None,
                               tally: Optional[Tuple[int, ...]] = None) -> Election:
        entry = self._entry(election_id)
        with entry.lock:
            check_transition(entry.election, expected, target, expected_version)
            updated = replace(
                entry.election,
                status=target,
                tally=tally if tally is not None else entry.election.tally,
                version=entry.election.version + 1,
            )
            entry.election = updated
            return updated

    def get_ballot(self, election_id: bytes, nullifier: bytes) -> Optional[BallotRecord]:
        entry = self._entry(election_id)
        with entry.lock:
            return entry.ballots.get(nullifier)

    def list_ballots(self, election_id: bytes) -> List[BallotRecord]:
        entry = self._entry(election_id)
        with entry.lock:
            return list(entry.ballots.values())

    def list_nullifiers(self, election_id: bytes) -> List[bytes]:
        return list(self._entry(election_id).nullifiers)


# ============================================================================
# ELECTION LEDGER SERVICE
# ============================================================================


class ElectionLedger:
    """Election lifecycle on top of a LedgerStore: creation, lookup, closing"""

    def __init__(self, store: LedgerStore, clock: Callable[[], float] = time.time,
                 max_options: int = MAX_OPTIONS):
        self.store = store
        self.clock = clock
        self.max_options = max_options

    def create_election(self, election_id: bytes, authority: str, tally_public_key: bytes,
                        eligibility_root: bytes, options: int, closes_at: float,
                        quorum: QuorumPolicy) -> Election:
        election = build_election(
            election_id, authority, tally_public_key, eligibility_root,
            options, closes_at, quorum, now=self.clock(), max_options=self.max_options)
        self.store.create_election(election)
        logger.info(
            f"Created election {election_id.hex()[:16]}: {options} options, "
            f"closes at {closes_at}, quorum {quorum.threshold}/{len(quorum.members)}")
        return election

    def get_election(self, election_id: bytes) -> Election:
        return self.store.get_election(election_id)

    def list_elections(self) -> List[bytes]:
        return self.store.list_elections()

    def close_election(self, election_id: bytes, requester: str) -> Election:
        """Authority action: Open -> Closed before closes_at"""
        election = self.store.get_election(election_id)
        if requester != election.authority:
            raise Unauthorized(
                f"{requester} is not the authority of election {election_id.hex()[:16]}")
        closed = self.store.compare_and_set_status(
            election_id, ElectionStatus.OPEN, ElectionStatus.CLOSED)
        logger.info(
            f"Election {election_id.hex()[:16]} closed by authority with {closed.vote_count} votes")
        return closed

    def ensure_closed(self, election_id: bytes) -> Election:
        """Persist the lazy cutoff: an Open election past closes_at becomes Closed"""
        election = self.store.get_election(election_id)
        if election.effective_status(self.clock()) != ElectionStatus.CLOSED \
                or election.status != ElectionStatus.OPEN:
            return election
        try:
            election = self.store.compare_and_set_status(
                election_id, ElectionStatus.OPEN, ElectionStatus.CLOSED)
            logger.info(
                f"Election {election_id.hex()[:16]} reached closes_at with {election.vote_count} votes")
        except InvalidStatusTransition:
            # Another caller closed it first
            election = self.store.get_election(election_id)
        return election

    def nullifiers(self, election_id: bytes) -> List[bytes]:
        return self.store.list_nullifiers(election_id)

    def ballots(self, election_id: bytes) -> List[BallotRecord]:
        return self.store.list_ballots(election_id)
