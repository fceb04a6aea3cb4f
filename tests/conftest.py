import secrets

import pytest

from private_ballot.casting.vote_casting import VoteCastingProtocol, prepare_ballot
from private_ballot.ledger.election_ledger import ElectionLedger, InMemoryLedgerStore
from private_ballot.ledger.sqlite_store import SQLiteLedgerStore
from private_ballot.quorum.threshold_quorum import ThresholdDecryptionQuorum
from private_ballot.tally.tally_finalization import TallyFinalizer

START_TIME = 1_700_000_000.0
VOTING_PERIOD = 3600.0
AUTHORITY = "election-authority"


class FakeClock:
    """Manually advanced clock injected wherever the core reads time"""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="session")
def quorum():
    return ThresholdDecryptionQuorum.generate(threshold=2, num_members=3)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteLedgerStore(str(tmp_path / "ledger.db"))
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(store, clock):
    return ElectionLedger(store, clock=clock)


@pytest.fixture
def casting(ledger):
    return VoteCastingProtocol(ledger)


@pytest.fixture
def finalizer(ledger):
    return TallyFinalizer(ledger)


def new_election(ledger, quorum, options=3, closes_in=VOTING_PERIOD, **kwargs):
    return ledger.create_election(
        election_id=kwargs.pop("election_id", secrets.token_bytes(32)),
        authority=kwargs.pop("authority", AUTHORITY),
        tally_public_key=kwargs.pop("tally_public_key", quorum.public_key),
        eligibility_root=kwargs.pop("eligibility_root", secrets.token_bytes(32)),
        options=options,
        closes_at=ledger.clock() + closes_in,
        quorum=kwargs.pop("quorum_policy", quorum.policy()),
    )


def ballot_for(election, option_index, voter_secret=None, nonce=0):
    return prepare_ballot(
        election.tally_public_key,
        election.election_id,
        option_index,
        election.options,
        voter_secret or secrets.token_bytes(32),
        nonce=nonce,
    )


@pytest.fixture
def election(ledger, quorum):
    return new_election(ledger, quorum)
