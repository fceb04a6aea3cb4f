import asyncio
import json
import logging
import secrets

import pytest

from conftest import AUTHORITY, VOTING_PERIOD, FakeClock
from private_ballot import PrivateBallotSystem
from private_ballot.config.config import (
    LedgerConfig,
    ProtocolConfig,
    QuorumConfig,
    SystemConfig,
    load_config,
    save_config,
)
from private_ballot.errors import (
    ConfigError,
    ElectionClosed,
    InvalidEligibilityProof,
    NullifierAlreadyUsed,
)
from private_ballot.ledger.election_ledger import ElectionStatus, InMemoryLedgerStore
from private_ballot.ledger.sqlite_store import SQLiteLedgerStore
from private_ballot.quorum.threshold_quorum import AllowListEligibilityVerifier
from private_ballot.utils.utils import (
    PerformanceMonitor,
    convert_to_serializable,
    create_performance_report,
    format_duration,
    setup_logging,
)


@pytest.fixture(params=["memory", "sqlite"])
def config(request, tmp_path):
    return SystemConfig(
        ledger=LedgerConfig(backend=request.param, database_path=tmp_path / "data" / "ledger.db"),
        log_dir=tmp_path / "logs",
        results_dir=tmp_path / "results",
    )


async def run_election(system, clock, choices):
    election = await system.create_election(
        authority=AUTHORITY, options=3, closes_at=clock() + VOTING_PERIOD)

    voters = [secrets.token_bytes(32) for _ in choices]
    ballots = [system.prepare_ballot(election, choice, voter)
               for choice, voter in zip(choices, voters)]
    await asyncio.gather(*[system.cast_prepared(ballot) for ballot in ballots])

    # Second ballot from the first voter
    with pytest.raises(NullifierAlreadyUsed):
        await system.cast_prepared(system.prepare_ballot(election, 2, voters[0]))

    clock.advance(VOTING_PERIOD)
    with pytest.raises(ElectionClosed):
        await system.cast_prepared(system.prepare_ballot(election, 0, secrets.token_bytes(32)))

    return election, await system.tally(election.election_id)


def test_end_to_end(config):
    clock = FakeClock()
    system = PrivateBallotSystem(config=config, clock=clock)
    expected_store = SQLiteLedgerStore if config.ledger.backend == "sqlite" else InMemoryLedgerStore
    assert isinstance(system.store, expected_store)

    election, result = asyncio.run(run_election(system, clock, [0, 1, 1, 2, 0, 1]))

    assert result.tally == (2, 3, 1)
    assert result.vote_count == 6
    stored = asyncio.run(system.get_election(election.election_id))
    assert stored.status == ElectionStatus.TALLIED
    assert stored.tally == (2, 3, 1)

    metrics = system.get_system_metrics()
    assert metrics['elections'] == 1
    assert metrics['tallied_elections'] == 1
    assert metrics['rejections'] == {'NullifierAlreadyUsed': 1, 'ElectionClosed': 1}
    assert metrics['performance']['operations']['cast_vote']['count'] == 8
    assert metrics['performance']['operations']['cast_vote']['failures'] == 2
    assert "CAST_VOTE" in system.performance_report()


def test_authority_close_then_tally(config):
    clock = FakeClock()
    system = PrivateBallotSystem(config=config, clock=clock)

    async def scenario():
        election = await system.create_election(
            authority=AUTHORITY, options=2, closes_at=clock() + VOTING_PERIOD)
        await system.cast_prepared(system.prepare_ballot(election, 1, secrets.token_bytes(32)))
        await system.close_election(election.election_id, AUTHORITY)
        return await system.tally(election.election_id)

    assert asyncio.run(scenario()).tally == (0, 1)


def test_save_election_results(config):
    clock = FakeClock()
    system = PrivateBallotSystem(config=config, clock=clock)
    election, _ = asyncio.run(run_election(system, clock, [2, 2]))

    path = system.save_election_results(election.election_id)
    assert path.parent == config.results_dir

    with open(path) as f:
        saved = json.load(f)
    assert saved['data']['election_id'] == election.election_id.hex()
    assert saved['data']['tally'] == [0, 0, 2]
    assert saved['data']['election']['status'] == ElectionStatus.TALLIED.value

    summary = (path.parent / f"{path.stem}_summary.txt").read_text()
    assert "Option 2: 2 votes (100.0%)" in summary
    assert "NullifierAlreadyUsed: 1" in summary


def test_eligibility_verifier_blocks_unproven_votes(config):
    clock = FakeClock()
    root = secrets.token_bytes(32)
    verifier = AllowListEligibilityVerifier(root)
    system = PrivateBallotSystem(config=config, eligibility_verifier=verifier, clock=clock)

    async def scenario():
        election = await system.create_election(
            authority=AUTHORITY, options=2, closes_at=clock() + VOTING_PERIOD,
            eligibility_root=root)
        ballot = system.prepare_ballot(election, 0, secrets.token_bytes(32))
        with pytest.raises(InvalidEligibilityProof):
            await system.cast_prepared(ballot)
        return await system.get_election(election.election_id)

    assert asyncio.run(scenario()).vote_count == 0
    assert system.get_system_metrics()["rejections"] == {"InvalidEligibilityProof": 1}


def test_elections_persist_in_sqlite(tmp_path):
    config = SystemConfig(ledger=LedgerConfig(backend="sqlite",
                                              database_path=tmp_path / "ledger.db"))
    clock = FakeClock()
    first = PrivateBallotSystem(config=config, clock=clock)
    election = asyncio.run(first.create_election(
        authority=AUTHORITY, options=2, closes_at=clock() + VOTING_PERIOD))

    second = PrivateBallotSystem(config=config, store=SQLiteLedgerStore(
        str(tmp_path / "ledger.db")), quorum=first.quorum, clock=clock)
    assert asyncio.run(second.list_elections()) == [election.election_id]


def test_load_config_defaults_when_missing(tmp_path):
    config = load_config(tmp_path / "missing.yaml")
    assert config == SystemConfig()
    assert config.ledger.backend == "memory"
    assert config.quorum.threshold == 2


def test_config_yaml_round_trip(tmp_path):
    path = tmp_path / "config.yaml"
    config = SystemConfig(
        ledger=LedgerConfig(backend="sqlite", database_path=tmp_path / "ledger.db"),
        protocol=ProtocolConfig(max_options=8, nullifier_nonce=3, max_tally_value=500),
        quorum=QuorumConfig(num_members=5, threshold=3),
        log_level="debug",
    )
    save_config(config, path)
    assert load_config(path) == config
    assert load_config(path).log_level == "DEBUG"


@pytest.mark.parametrize("content", [
    "ledger: [unclosed",
    "- just\n- a list\n",
    "ledger: not-a-mapping\n",
    "ledger:\n  backend: postgres\n",
    "quorum:\n  num_members: 3\n  threshold: 4\n",
    "protocol:\n  max_options: many\n",
    "protocol:\n  max_options: 300\n",
])
def test_malformed_config_rejected(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_config(path)


def test_ensure_directories(tmp_path):
    config = SystemConfig(
        ledger=LedgerConfig(backend="sqlite", database_path=tmp_path / "db" / "ledger.db"),
        log_dir=tmp_path / "logs",
        results_dir=tmp_path / "results",
    )
    config.ensure_directories()
    assert (tmp_path / "logs").is_dir()
    assert (tmp_path / "results").is_dir()
    assert (tmp_path / "db").is_dir()


def test_performance_monitor_summary():
    monitor = PerformanceMonitor()
    with monitor.start_operation("cast_vote"):
        pass
    with pytest.raises(RuntimeError):
        with monitor.start_operation("cast_vote"):
            raise RuntimeError("boom")
    with monitor.start_operation("tally"):
        pass

    summary = monitor.get_summary()
    assert summary['total_operations'] == 3
    assert summary['operations']['cast_vote']['count'] == 2
    assert summary['operations']['cast_vote']['failures'] == 1
    assert summary['operations']['tally']['failures'] == 0
    assert "TALLY" in create_performance_report(monitor)

    monitor.reset()
    assert monitor.get_summary()['total_operations'] == 0
    assert "No performance data available." in create_performance_report(monitor)


@pytest.mark.parametrize("seconds,expected", [
    (0.25, "250.0ms"),
    (5, "5.00s"),
    (125, "2m 5.0s"),
    (3725, "1h 2m 5.0s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_convert_to_serializable():
    converted = convert_to_serializable({
        1: b"\x01\x02",
        'status': ElectionStatus.CLOSED,
        'values': (1, 2),
    })
    assert converted == {"1": "0102", "status": "closed", "values": [1, 2]}


def test_setup_logging_writes_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_file = tmp_path / "logs" / "run.log"
    try:
        setup_logging("DEBUG", log_file=log_file)
        logging.getLogger("private_ballot.test").debug("ledger opened")
        for handler in root.handlers:
            handler.flush()
        assert "ledger opened" in log_file.read_text()
        assert root.level == logging.DEBUG
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)