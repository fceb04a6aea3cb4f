import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from conftest import AUTHORITY, START_TIME, VOTING_PERIOD, ballot_for, new_election
from private_ballot.crypto.ballot_crypto import IDENTITY, Ciphertext, base_mult, random_scalar
from private_ballot.errors import (
    ConcurrentModification,
    ElectionAlreadyExists,
    ElectionClosed,
    ElectionNotFound,
    InvalidElectionConfig,
    InvalidStatusTransition,
    LedgerError,
    NullifierAlreadyUsed,
    Unauthorized,
)
from private_ballot.ledger.election_ledger import (
    BallotRecord,
    Election,
    ElectionLedger,
    ElectionStatus,
    NullifierLedger,
    QuorumPolicy,
    build_election,
)
from private_ballot.ledger.sqlite_store import SQLiteLedgerStore
from private_ballot.quorum.threshold_quorum import ThresholdDecryptionQuorum


def record_for(ballot, timestamp=START_TIME):
    return BallotRecord(
        election_id=ballot.election_id,
        ciphertexts=ballot.ciphertexts,
        nullifier=ballot.nullifier,
        commitment=ballot.commitment,
        timestamp=timestamp,
    )


def test_create_and_get(ledger, election):
    stored = ledger.get_election(election.election_id)
    assert stored == election
    assert stored.status == ElectionStatus.OPEN
    assert stored.vote_count == 0
    assert stored.accumulator == tuple(Ciphertext.zero() for _ in range(3))
    assert election.election_id in ledger.list_elections()


def test_duplicate_election_rejected(ledger, quorum, election):
    with pytest.raises(ElectionAlreadyExists):
        new_election(ledger, quorum, election_id=election.election_id)


def test_unknown_election(ledger):
    with pytest.raises(ElectionNotFound):
        ledger.get_election(secrets.token_bytes(32))


@pytest.mark.parametrize("overrides", [
    {"options": 0},
    {"options": 256},
    {"closes_at": START_TIME - 1},
    {"election_id": b"short"},
    {"eligibility_root": b"\x00" * 31},
    {"tally_public_key": IDENTITY},
    {"authority": ""},
])
def test_build_election_validation(quorum, overrides):
    params = dict(
        election_id=secrets.token_bytes(32),
        authority=AUTHORITY,
        tally_public_key=quorum.public_key,
        eligibility_root=secrets.token_bytes(32),
        options=3,
        closes_at=START_TIME + VOTING_PERIOD,
        quorum=quorum.policy(),
        now=START_TIME,
    )
    params.update(overrides)
    with pytest.raises(InvalidElectionConfig):
        build_election(**params)


def test_quorum_policy_must_match_tally_key(ledger, quorum):
    other = ThresholdDecryptionQuorum.generate(threshold=2, num_members=3)
    with pytest.raises(InvalidElectionConfig):
        new_election(ledger, quorum, quorum_policy=other.policy())

    policy = quorum.policy()
    with pytest.raises(InvalidElectionConfig):
        new_election(ledger, quorum, quorum_policy=QuorumPolicy(threshold=4, members=policy.members))
    with pytest.raises(InvalidElectionConfig):
        new_election(ledger, quorum, quorum_policy=QuorumPolicy(
            threshold=2, members=policy.members[:1] + policy.members[:1]))


def test_quorum_policy_checks_every_member_key(ledger, quorum):
    policy = quorum.policy()
    stray = replace(policy.members[2], verification_key=base_mult(random_scalar()))
    inconsistent = QuorumPolicy(threshold=2, members=policy.members[:2] + (stray,))

    with pytest.raises(InvalidElectionConfig):
        inconsistent.validate(quorum.public_key)
    with pytest.raises(InvalidElectionConfig):
        new_election(ledger, quorum, quorum_policy=inconsistent)
    assert ledger.list_elections() == []


def test_accepts_votes_and_effective_status(election):
    assert election.accepts_votes(START_TIME)
    assert not election.accepts_votes(election.closes_at)
    assert election.effective_status(START_TIME) == ElectionStatus.OPEN
    assert election.effective_status(election.closes_at) == ElectionStatus.CLOSED


def test_commit_ballot_updates_accumulator(ledger, election):
    ballot = ballot_for(election, 1)
    updated = ledger.store.commit_ballot(record_for(ballot), START_TIME)

    assert updated.vote_count == 1
    assert updated.version == election.version + 1
    assert updated.accumulator == ballot.ciphertexts
    assert ledger.get_election(election.election_id) == updated
    assert ledger.nullifiers(election.election_id) == [ballot.nullifier]
    assert ledger.store.get_ballot(election.election_id, ballot.nullifier) == record_for(ballot)


def test_duplicate_nullifier_changes_nothing(ledger, election):
    ballot = ballot_for(election, 0)
    ledger.store.commit_ballot(record_for(ballot), START_TIME)
    before = ledger.get_election(election.election_id)

    other = ballot_for(election, 2)
    replay = replace(record_for(ballot), ciphertexts=other.ciphertexts,
                     commitment=other.commitment)
    with pytest.raises(NullifierAlreadyUsed):
        ledger.store.commit_ballot(replay, START_TIME)

    assert ledger.get_election(election.election_id) == before
    assert ledger.store.get_ballot(election.election_id, ballot.nullifier) == record_for(ballot)
    assert len(ledger.ballots(election.election_id)) == 1


def test_commit_after_close_rejected(ledger, election):
    ballot = ballot_for(election, 0)
    with pytest.raises(ElectionClosed):
        ledger.store.commit_ballot(record_for(ballot), election.closes_at)
    assert ledger.nullifiers(election.election_id) == []


def test_nullifiers_in_insertion_order(ledger, election):
    ballots = [ballot_for(election, i % 3) for i in range(5)]
    for ballot in ballots:
        ledger.store.commit_ballot(record_for(ballot), START_TIME)
    assert ledger.nullifiers(election.election_id) == [b.nullifier for b in ballots]
    assert [r.nullifier for r in ledger.ballots(election.election_id)] == \
        [b.nullifier for b in ballots]


def test_status_transitions(ledger, election):
    store = ledger.store
    with pytest.raises(InvalidStatusTransition):
        store.compare_and_set_status(
            election.election_id, ElectionStatus.OPEN, ElectionStatus.TALLIED)
    with pytest.raises(InvalidStatusTransition):
        store.compare_and_set_status(
            election.election_id, ElectionStatus.CLOSED, ElectionStatus.TALLIED)

    closed = store.compare_and_set_status(
        election.election_id, ElectionStatus.OPEN, ElectionStatus.CLOSED)
    assert closed.status == ElectionStatus.CLOSED

    with pytest.raises(ConcurrentModification):
        store.compare_and_set_status(
            election.election_id, ElectionStatus.CLOSED, ElectionStatus.TALLIED,
            expected_version=closed.version - 1)

    tallied = store.compare_and_set_status(
        election.election_id, ElectionStatus.CLOSED, ElectionStatus.TALLIED,
        expected_version=closed.version, tally=(0, 0, 0))
    assert tallied.status == ElectionStatus.TALLIED
    assert tallied.tally == (0, 0, 0)

    with pytest.raises(InvalidStatusTransition):
        store.compare_and_set_status(
            election.election_id, ElectionStatus.TALLIED, ElectionStatus.OPEN)


def test_close_election_requires_authority(ledger, election):
    with pytest.raises(Unauthorized):
        ledger.close_election(election.election_id, "someone-else")
    assert ledger.get_election(election.election_id).status == ElectionStatus.OPEN

    closed = ledger.close_election(election.election_id, AUTHORITY)
    assert closed.status == ElectionStatus.CLOSED
    with pytest.raises(InvalidStatusTransition):
        ledger.close_election(election.election_id, AUTHORITY)


def test_ensure_closed_is_lazy(ledger, clock, election):
    assert ledger.ensure_closed(election.election_id).status == ElectionStatus.OPEN
    clock.advance(VOTING_PERIOD)
    closed = ledger.ensure_closed(election.election_id)
    assert closed.status == ElectionStatus.CLOSED
    assert ledger.ensure_closed(election.election_id) == closed


def test_election_dict_round_trip(ledger, election):
    ballot = ballot_for(election, 2)
    updated = ledger.store.commit_ballot(record_for(ballot), START_TIME)
    assert Election.from_dict(updated.to_dict()) == updated
    assert BallotRecord.from_dict(record_for(ballot).to_dict()) == record_for(ballot)


def test_nullifier_ledger_insert_if_absent_is_atomic():
    nullifiers = NullifierLedger(secrets.token_bytes(32))
    nullifier = secrets.token_bytes(32)
    barrier = threading.Barrier(16)

    def insert():
        barrier.wait()
        return nullifiers.insert_if_absent(nullifier)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: insert(), range(16)))

    assert results.count(True) == 1
    assert len(nullifiers) == 1
    assert nullifier in nullifiers


def test_sqlite_store_persists_across_instances(tmp_path, quorum, clock):
    path = str(tmp_path / "persist.db")
    ledger = ElectionLedger(SQLiteLedgerStore(path), clock=clock)
    election = new_election(ledger, quorum)
    ballot = ballot_for(election, 1)
    ledger.store.commit_ballot(record_for(ballot), START_TIME)

    reopened = SQLiteLedgerStore(path)
    assert reopened.get_election(election.election_id).vote_count == 1
    assert reopened.list_nullifiers(election.election_id) == [ballot.nullifier]
    with pytest.raises(NullifierAlreadyUsed):
        reopened.commit_ballot(record_for(ballot), START_TIME)


def test_sqlite_store_requires_file():
    with pytest.raises(LedgerError):
        SQLiteLedgerStore(":memory:")
