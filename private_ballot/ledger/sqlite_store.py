"""
SQLite Ledger Store
===================
Persistent LedgerStore. The nullifier table's primary key is the
uniqueness guarantee; every mutation runs in a BEGIN IMMEDIATE transaction
so the nullifier insert, accumulator update and ballot insert commit together.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from private_ballot.errors import (
    ConcurrentModification,
    ElectionAlreadyExists,
    ElectionNotFound,
    LedgerError,
    NullifierAlreadyUsed,
)
from private_ballot.ledger.election_ledger import (
    BallotRecord,
    Election,
    ElectionStatus,
    LedgerStore,
    apply_ballot,
    check_transition,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS elections (
        election_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        version INTEGER NOT NULL,
        record TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS nullifiers (
        election_id TEXT NOT NULL,
        nullifier TEXT NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (election_id, nullifier),
        FOREIGN KEY (election_id) REFERENCES elections(election_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS ballots (
        election_id TEXT NOT NULL,
        nullifier TEXT NOT NULL,
        record TEXT NOT NULL,
        PRIMARY KEY (election_id, nullifier),
        FOREIGN KEY (election_id) REFERENCES elections(election_id)
    )
    ''',
]


class SQLiteLedgerStore(LedgerStore):
    """File-backed store; safe to share across threads and processes"""

    def __init__(self, database_path: str, busy_timeout: float = 30.0):
        if not database_path or database_path == ":memory:":
            # Each operation opens its own connection, so an in-memory db would vanish
            raise LedgerError("SQLiteLedgerStore requires a database file path")
        self.database_path = str(database_path)
        self.busy_timeout = busy_timeout
        Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.database_path, timeout=self.busy_timeout,
                               isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database lock from the first statement"""
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self):
        with self._transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.debug(f"SQLite ledger ready at {self.database_path}")

    def _load(self, conn: sqlite3.Connection, election_id: bytes) -> Election:
        row = conn.execute(
            "SELECT record FROM elections WHERE election_id = ?",
            (election_id.hex(),)).fetchone()
        if row is None:
            raise ElectionNotFound(f"Unknown election {election_id.hex()}")
        return Election.from_dict(json.loads(row[0]))

    def _store(self, conn: sqlite3.Connection, election: Election, expected_version: int):
        cursor = conn.execute(
            "UPDATE elections SET status = ?, version = ?, record = ? "
            "WHERE election_id = ? AND version = ?",
            (election.status.value, election.version, json.dumps(election.to_dict()),
             election.election_id.hex(), expected_version))
        if cursor.rowcount != 1:
            raise ConcurrentModification(
                f"Election {election.election_id.hex()[:16]} changed underneath the update")

    def create_election(self, election: Election) -> Election:
        with self._transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO elections (election_id, status, version, record) "
                    "VALUES (?, ?, ?, ?)",
                    (election.election_id.hex(), election.status.value, election.version,
                     json.dumps(election.to_dict())))
            except sqlite3.IntegrityError as e:
                raise ElectionAlreadyExists(
                    f"Election {election.election_id.hex()} already exists") from e
        return election

    def get_election(self, election_id: bytes) -> Election:
        with self._connection() as conn:
            return self._load(conn, election_id)

    def list_elections(self) -> List[bytes]:
        with self._connection() as conn:
            rows = conn.execute("SELECT election_id FROM elections ORDER BY rowid").fetchall()
        return [bytes.fromhex(row[0]) for row in rows]

    def commit_ballot(self, record: BallotRecord, now: float) -> Election:
        with self._transaction() as conn:
            election = self._load(conn, record.election_id)
            updated = apply_ballot(election, record, now)
            try:
                conn.execute(
                    "INSERT INTO nullifiers (election_id, nullifier, position) VALUES (?, ?, ?)",
                    (record.election_id.hex(), record.nullifier.hex(), election.vote_count))
            except sqlite3.IntegrityError as e:
                raise NullifierAlreadyUsed(
                    f"Nullifier {record.nullifier.hex()[:16]}... already used") from e
            self._store(conn, updated, election.version)
            conn.execute(
                "INSERT INTO ballots (election_id, nullifier, record) VALUES (?, ?, ?)",
                (record.election_id.hex(), record.nullifier.hex(),
                 json.dumps(record.to_dict())))
        return updated

    def compare_and_set_status(self, election_id: bytes, expected: ElectionStatus,
                               target: ElectionStatus, expected_version: Optional[int] = None,
                               tally: Optional[Tuple[int, ...]] = None) -> Election:
        with self._transaction() as conn:
            election = self._load(conn, election_id)
            check_transition(election, expected, target, expected_version)
            updated = replace(
                election,
                status=target,
                tally=tally if tally is not None else election.tally,
                version=election.version + 1,
            )
            self._store(conn, updated, election.version)
        return updated

    def get_ballot(self, election_id: bytes, nullifier: bytes) -> Optional[BallotRecord]:
        with self._connection() as conn:
            self._load(conn, election_id)
            row = conn.execute(
                "SELECT record FROM ballots WHERE election_id = ? AND nullifier = ?",
                (election_id.hex(), nullifier.hex())).fetchone()
        return BallotRecord.from_dict(json.loads(row[0])) if row else None

    def list_ballots(self, election_id: bytes) -> List[BallotRecord]:
        with self._connection() as conn:
            self._load(conn, election_id)
            rows = conn.execute(
                "SELECT b.record FROM ballots b JOIN nullifiers n "
                "ON b.election_id = n.election_id AND b.nullifier = n.nullifier "
                "WHERE b.election_id = ? ORDER BY n.position",
                (election_id.hex(),)).fetchall()
        return [BallotRecord.from_dict(json.loads(row[0])) for row in rows]

    def list_nullifiers(self, election_id: bytes) -> List[bytes]:
        with self._connection() as conn:
            self._load(conn, election_id)
            rows = conn.execute(
                "SELECT nullifier FROM nullifiers WHERE election_id = ? ORDER BY position",
                (election_id.hex(),)).fetchall()
        return [bytes.fromhex(row[0]) for row in rows]
