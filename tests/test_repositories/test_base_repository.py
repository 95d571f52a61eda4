"""Tests for idempotent inserts in BaseRepository.

Test Strategy:
1. Test a new key is inserted and returned with its column defaults
2. Test an existing key is skipped
3. Test a row committed by another session between lookup and insert is skipped

Each test follows the pattern:
- Given: An OracleSubmission table, optionally with a row for the market
- When: insert_if_absent() runs
- Then: Exactly one row exists and the return value says who wrote it
"""
from conftest import seed
from marketsync.core.database import session_scope
from marketsync.models import OracleSubmission
from marketsync.repositories import OracleSubmissionRepository

MARKET_ID = "19391153"


def submission(**overrides):
    values = {"market_id": MARKET_ID, "result_string": "1", "result_data": "0x31", "source": "submitted"}
    values.update(overrides)
    return values


class TestInsertIfAbsent:
    """Idempotent inserts keyed by a lookup."""

    def test_new_key_is_inserted(self, session_factory):
        with session_scope(session_factory) as db:
            values = submission()
            row = OracleSubmissionRepository(db).insert_if_absent({"market_id": values.pop("market_id")}, **values)

            assert row is not None
            assert row.market_id == MARKET_ID
            assert row.submitted_at is not None

        with session_scope(session_factory) as db:
            assert db.query(OracleSubmission).count() == 1

    def test_existing_key_is_skipped(self, session_factory):
        seed(session_factory, OracleSubmission(**submission(source="already_set")))

        with session_scope(session_factory) as db:
            values = submission()
            row = OracleSubmissionRepository(db).insert_if_absent({"market_id": values.pop("market_id")}, **values)

            assert row is None

    def test_concurrent_insert_of_same_key_is_a_no_op(self, session_factory):
        """Should skip the row, not fail the unit of work, when another writer wins the race."""
        with session_scope(session_factory) as db:
            repo = OracleSubmissionRepository(db)

            def stale_lookup(**kwargs):
                # The other writer commits after this session looked
                seed(session_factory, OracleSubmission(**submission(source="already_set")))
                return None

            repo.filter_by_first = stale_lookup
            values = submission()
            row = repo.insert_if_absent({"market_id": values.pop("market_id")}, **values)

            assert row is None

        with session_scope(session_factory) as db:
            rows = db.query(OracleSubmission).all()
            assert [(r.market_id, r.source) for r in rows] == [(MARKET_ID, "already_set")]
