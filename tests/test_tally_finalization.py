import asyncio
import secrets
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from conftest import VOTING_PERIOD, ballot_for, new_election
from private_ballot.crypto.ballot_crypto import (
    GROUP_ORDER,
    DecryptionShareProof,
    commit,
    encrypt,
    random_scalar,
)
from private_ballot.errors import (
    ElectionClosed,
    ElectionNotClosed,
    InsufficientThresholdSignatures,
    InvalidTallyProof,
    TallyAlreadyFinalized,
)
from private_ballot.ledger.election_ledger import ElectionStatus
from private_ballot.tally.tally_finalization import (
    TallyProof,
    TallySubmission,
    tally_message,
    verify_tally_submission,
)


def cast_all(casting, election, choices):
    for choice in choices:
        casting.cast_prepared(ballot_for(election, choice))


def closed_request(finalizer, clock, election):
    clock.advance(VOTING_PERIOD)
    return finalizer.request_decryption(election.election_id)


def resign(quorum, request, tally, signers=(1, 2)):
    message = tally_message(request, tally)
    return {i: quorum.members[i].sign(message) for i in signers}


def test_request_decryption_requires_closed(casting, finalizer, clock, election):
    cast_all(casting, election, [0, 1])
    with pytest.raises(ElectionNotClosed):
        finalizer.request_decryption(election.election_id)

    request = closed_request(finalizer, clock, election)
    assert request.vote_count == 2
    assert request.options == 3
    assert finalizer.ledger.get_election(election.election_id).status == ElectionStatus.CLOSED


def test_finalize_happy_path(quorum, ledger, casting, finalizer, clock, election):
    cast_all(casting, election, [2, 2, 0])
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    result = finalizer.finalize(election.election_id, submission)
    assert result.tally == (1, 0, 2)
    assert result.signers == (1, 2)

    stored = ledger.get_election(election.election_id)
    assert stored.status == ElectionStatus.TALLIED
    assert stored.tally == (1, 0, 2)

    with pytest.raises(TallyAlreadyFinalized):
        finalizer.finalize(election.election_id, submission)
    with pytest.raises(ElectionClosed):
        casting.cast_prepared(ballot_for(election, 0))


def test_finalize_open_election_rejected(quorum, ledger, casting, finalizer, election):
    cast_all(casting, election, [0])
    request = finalizer.ledger.get_election(election.election_id)
    submission = asyncio.run(quorum.request_decrypt(request))
    with pytest.raises(ElectionNotClosed):
        finalizer.finalize(election.election_id, submission)


def test_wrong_tally_with_valid_signatures_rejected(quorum, ledger, casting, finalizer, clock,
                                                     election):
    cast_all(casting, election, [0, 0, 1])
    request = closed_request(finalizer, clock, election)
    honest = asyncio.run(quorum.request_decrypt(request))

    # Same total, different distribution, signed by the whole quorum
    forged_tally = (1, 2, 0)
    forged = replace(honest, tally=forged_tally,
                     signatures=resign(quorum, request, forged_tally, (1, 2, 3)))
    with pytest.raises(InvalidTallyProof):
        finalizer.finalize(election.election_id, forged)

    assert ledger.get_election(election.election_id).status == ElectionStatus.CLOSED


def test_tally_must_account_for_every_ballot(quorum, casting, finalizer, clock, election):
    cast_all(casting, election, [0, 1])
    request = closed_request(finalizer, clock, election)
    honest = asyncio.run(quorum.request_decrypt(request))

    # Every member signs each wrong tally, so only the count check can reject it
    for tally in [(1, 0, 0), (2, 1, 0), (1, 1), (1, 1, 0, 0)]:
        bad = replace(honest, tally=tally,
                      signatures=resign(quorum, request, tally, (1, 2, 3)))
        with pytest.raises(InvalidTallyProof):
            finalizer.finalize(election.election_id, bad)

    # Negative counts cannot be encoded for signing at all
    with pytest.raises(InvalidTallyProof):
        finalizer.finalize(election.election_id, replace(honest, tally=(2, 1, -1)))

    assert finalizer.ledger.get_election(election.election_id).status == ElectionStatus.CLOSED


def test_insufficient_signatures(quorum, casting, finalizer, clock, election):
    cast_all(casting, election, [1])
    request = closed_request(finalizer, clock, election)
    honest = asyncio.run(quorum.request_decrypt(request))
    message = tally_message(request, honest.tally)
    sig_1 = quorum.members[1].sign(message)

    cases = [
        {1: sig_1},
        {1: sig_1, 2: sig_1},               # member 1's signature claimed for member 2
        {1: sig_1, 2: secrets.token_bytes(64)},
        {1: sig_1, 9: quorum.members[2].sign(message)},
        {},
    ]
    for signatures in cases:
        with pytest.raises(InsufficientThresholdSignatures):
            finalizer.finalize(election.election_id, replace(honest, signatures=signatures))


def test_tampered_partial_decryption_rejected(quorum, ledger, casting, finalizer, clock,
                                              election):
    cast_all(casting, election, [0, 2])
    request = closed_request(finalizer, clock, election)
    honest = asyncio.run(quorum.request_decrypt(request))

    option_zero = honest.proof.partials[0]
    broken = replace(option_zero[0], proof=DecryptionShareProof(
        option_zero[0].proof.challenge, (option_zero[0].proof.response + 1) % GROUP_ORDER))
    tampered = replace(honest, proof=TallyProof(
        partials=((broken,) + option_zero[1:],) + honest.proof.partials[1:]))

    with pytest.raises(InvalidTallyProof):
        finalizer.finalize(election.election_id, tampered)

    # A failed finalization leaves the election retryable
    assert ledger.get_election(election.election_id).status == ElectionStatus.CLOSED
    result = finalizer.finalize(election.election_id, honest)
    assert result.tally == (1, 0, 1)


def test_any_threshold_subset_decrypts(quorum, casting, finalizer, clock, election):
    cast_all(casting, election, [1, 1, 2])
    request = closed_request(finalizer, clock, election)
    stored = finalizer.ledger.get_election(election.election_id)

    for participants in [(1, 2), (1, 3), (2, 3), (1, 2, 3)]:
        submission = asyncio.run(quorum.request_decrypt(request, participants=participants))
        assert submission.tally == (0, 2, 1)
        assert verify_tally_submission(stored, submission) == participants


def test_submission_survives_serialization(quorum, casting, finalizer, clock, election):
    cast_all(casting, election, [2])
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    restored = TallySubmission.from_dict(submission.to_dict())
    assert restored == submission
    assert finalizer.finalize(election.election_id, restored).tally == (0, 0, 1)


def test_empty_election_tallies_to_zero(quorum, ledger, finalizer, clock):
    election = new_election(ledger, quorum, options=2)
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    assert finalizer.finalize(election.election_id, submission).tally == (0, 0)


def test_concurrent_finalization_single_winner(quorum, ledger, casting, finalizer, clock,
                                               election):
    cast_all(casting, election, [0, 1, 2, 2])
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    def attempt(_):
        try:
            finalizer.finalize(election.election_id, submission)
            return "won"
        except TallyAlreadyFinalized:
            return "lost"

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(attempt, range(4)))

    assert outcomes.count("won") == 1
    assert outcomes.count("lost") == 3
    assert ledger.get_election(election.election_id).tally == (1, 1, 2)


def cast_raw(casting, election, plaintexts):
    """Cast a ballot with arbitrary per-option plaintexts instead of a one-hot vector"""
    ciphertexts = tuple(encrypt(m % GROUP_ORDER, election.tally_public_key, random_scalar())
                        for m in plaintexts)
    blinding = secrets.token_bytes(32)
    return casting.cast_vote(election.election_id, ciphertexts, secrets.token_bytes(32),
                             commit(ciphertexts, blinding), blinding=blinding)


def test_empty_ballot_blocks_finalization(quorum, ledger, casting, finalizer, clock, election):
    cast_all(casting, election, [0])
    cast_raw(casting, election, [0, 0, 0])
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    # Two ballots accepted but only one vote inside them
    assert submission.tally == (1, 0, 0)
    with pytest.raises(InvalidTallyProof):
        finalizer.finalize(election.election_id, submission)
    assert ledger.get_election(election.election_id).status == ElectionStatus.CLOSED


def test_weight_shifting_ballot_is_not_detected(quorum, casting, finalizer, clock, election):
    cast_all(casting, election, [1])
    cast_raw(casting, election, [2, -1, 0])
    request = closed_request(finalizer, clock, election)
    submission = asyncio.run(quorum.request_decrypt(request))

    # Ballot well-formedness needs a proof outside the ledger; the sum alone cannot see this
    assert submission.tally == (2, 0, 0)
    assert finalizer.finalize(election.election_id, submission).tally == (2, 0, 0)
