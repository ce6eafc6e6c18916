"""
Unit tests for the PostgreSQL lead store, with a mocked psycopg2 connection.
"""
import unittest
from unittest.mock import MagicMock, patch

import psycopg2

from models.leads import LeadStore, LeadTx
from tools.ingest.classifier import classify
from tools.ingest.models import LeadType, ParsedLeadRecord
from triggers.errors import PersistenceError


def _record():
    return ParsedLeadRecord(
        type=LeadType.CONTACT, source="autotrack", first_name="Sanne", last_name="Bakker",
        email="Sanne@Example.nl", phone="06-12345678",
    )


class TestTransaction(unittest.TestCase):

    def setUp(self):
        self.conn = MagicMock()
        self.cur = self.conn.cursor.return_value
        patcher_get = patch("models.leads.get_conn", return_value=self.conn)
        patcher_put = patch("models.leads.put_conn")
        patcher_get.start()
        self.put_conn = patcher_put.start()
        self.addCleanup(patcher_get.stop)
        self.addCleanup(patcher_put.stop)

    def test_commits_on_success(self):
        with LeadStore().transaction() as tx:
            self.assertIsInstance(tx, LeadTx)
        self.conn.commit.assert_called_once()
        self.conn.rollback.assert_not_called()
        self.cur.close.assert_called_once()
        self.put_conn.assert_called_once_with(self.conn, close=False)

    def test_driver_error_rolls_back_as_persistence_error(self):
        with self.assertRaises(PersistenceError):
            with LeadStore().transaction():
                raise psycopg2.OperationalError("connection reset")
        self.conn.commit.assert_not_called()
        self.conn.rollback.assert_called_once()

    def test_failed_rollback_discards_connection(self):
        self.conn.rollback.side_effect = psycopg2.InterfaceError("closed")
        with self.assertRaises(PersistenceError):
            with LeadStore().transaction():
                raise psycopg2.OperationalError("connection reset")
        self.put_conn.assert_called_once_with(self.conn, close=True)

    def test_other_errors_roll_back_and_propagate(self):
        with self.assertRaises(ValueError):
            with LeadStore().transaction():
                raise ValueError("bad record")
        self.conn.rollback.assert_called_once()

    @patch("models.leads.get_conn", return_value=None)
    def test_no_connection(self, _):
        with self.assertRaises(PersistenceError):
            with LeadStore().transaction():
                pass


class TestLeadTx(unittest.TestCase):

    def test_create_lead_normalizes_contact_keys(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"id": 7}
        record = _record()
        lead_id, created = LeadTx(cur).create_lead(
            record, classify(record), "noreply@autotrack.nl", "notes", None,
        )
        self.assertEqual((lead_id, created), (7, True))
        params = cur.execute.call_args.args[1]
        self.assertEqual(params[2], "sanne@example.nl")
        self.assertEqual(params[4], "0612345678")

    def test_create_lead_conflict_returns_existing(self):
        cur = MagicMock()
        # insert hits the unique index, then the re-read finds the winner
        cur.fetchone.side_effect = [None, {"id": 3}]
        record = _record()
        self.assertEqual(
            LeadTx(cur).create_lead(record, classify(record), "x", "notes", None), (3, False),
        )

    def test_create_lead_conflict_without_match_raises(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [None, None]
        record = _record()
        with self.assertRaises(PersistenceError):
            LeadTx(cur).create_lead(record, classify(record), "x", "notes", None)

    def test_find_lead_without_keys_skips_query(self):
        cur = MagicMock()
        self.assertIsNone(LeadTx(cur).find_lead_by_contact(None, ""))
        cur.execute.assert_not_called()

    def test_create_thread_conflict_reads_existing(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [None, {"id": 11, "lead_id": 3, "message_count": 2}]
        self.assertEqual(LeadTx(cur).create_thread("t1", 3, None, []), (11, False))
