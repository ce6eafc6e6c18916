"""
Tests for duplicate detection against the in-memory store: replay,
thread match, contact convergence and the phone-only missed-call path.
"""
from unittest import TestCase

from conftest import MemoryStore, gmail_message
from tools.ingest.classifier import classify
from tools.ingest.decoder import decode_message
from tools.ingest.dedup import DeduplicationEngine, compose_notes, participants_of
from tools.ingest.models import LeadType, ParsedLeadRecord, TradeIn


def _message(message_id, thread_id, sender="AutoTrack <noreply@autotrack.nl>"):
    return decode_message(gmail_message(message_id, thread_id, sender=sender, plain="x"))


def _contact(email="sanne@example.nl", phone=None, source="autotrack"):
    return ParsedLeadRecord(
        type=LeadType.CONTACT, source=source, first_name="Sanne", last_name="Bakker",
        email=email, phone=phone, clean_message="Is de auto nog beschikbaar?",
    )


class TestResolve(TestCase):

    def setUp(self):
        self.store = MemoryStore()
        self.engine = DeduplicationEngine()

    def _resolve(self, message, record):
        with self.store.transaction() as tx:
            return self.engine.resolve(tx, message, record, classify(record))

    def test_new_contact_creates_lead_thread_and_message(self):
        resolution = self._resolve(_message("m1", "t1"), _contact())
        self.assertEqual(resolution.match, "new")
        self.assertTrue(resolution.lead_created)
        self.assertTrue(resolution.thread_created)
        self.assertTrue(resolution.message_inserted)
        self.assertEqual(len(self.store.leads), 1)
        self.assertEqual(len(self.store.threads), 1)
        self.assertEqual(len(self.store.messages), 1)
        lead = self.store.leads[resolution.lead_id]
        self.assertEqual(lead["temperature"], "warm")
        self.assertIn("Lead van AutoTrack", lead["notes"])

    def test_replay_writes_nothing(self):
        first = self._resolve(_message("m1", "t1"), _contact())
        again = self._resolve(_message("m1", "t1"), _contact())
        self.assertEqual(again.match, "duplicate")
        self.assertFalse(again.message_inserted)
        self.assertEqual(again.lead_id, first.lead_id)
        self.assertEqual(len(self.store.leads), 1)
        self.assertEqual(len(self.store.messages), 1)
        self.assertEqual(self.store.threads["t1"]["message_count"], 1)
        self.assertEqual(self.store.leads[first.lead_id]["touches"], 0)

    def test_same_thread_attaches_to_thread_lead(self):
        first = self._resolve(_message("m1", "t1"), _contact())
        # follow-up in the thread from a different address still lands on the thread's lead
        second = self._resolve(_message("m2", "t1"), _contact(email="other@example.nl"))
        self.assertEqual(second.match, "thread")
        self.assertEqual(second.lead_id, first.lead_id)
        self.assertEqual(len(self.store.leads), 1)
        self.assertEqual(self.store.threads["t1"]["message_count"], 2)
        self.assertEqual(len(self.store.messages), 2)

    def test_same_email_new_thread_converges_on_lead(self):
        first = self._resolve(_message("m1", "t1"), _contact(email="Sanne@Example.nl"))
        second = self._resolve(
            _message("m2", "t2", sender="Marktplaats <noreply@marktplaats.nl>"),
            _contact(email="sanne@example.nl", source="marktplaats"),
        )
        self.assertEqual(second.match, "contact")
        self.assertFalse(second.lead_created)
        self.assertTrue(second.thread_created)
        self.assertEqual(second.lead_id, first.lead_id)
        self.assertEqual(len(self.store.leads), 1)
        self.assertEqual(len(self.store.threads), 2)
        self.assertEqual(self.store.leads[first.lead_id]["touches"], 1)

    def test_missed_call_matches_on_phone(self):
        first = self._resolve(_message("m1", "t1"), _contact(phone="06-12345678"))
        missed = ParsedLeadRecord(type=LeadType.MISSED_CALL, source="autotrack", phone="+31612345678")
        second = self._resolve(_message("m2", "t2"), missed)
        self.assertEqual(second.match, "contact")
        self.assertEqual(second.lead_id, first.lead_id)

    def test_unknown_missed_call_creates_phone_only_lead(self):
        missed = ParsedLeadRecord(type=LeadType.MISSED_CALL, source="autotrack", phone="0612345678")
        resolution = self._resolve(_message("m1", "t1"), missed)
        lead = self.store.leads[resolution.lead_id]
        self.assertIsNone(lead["email"])
        self.assertEqual(lead["phone_normalized"], "0612345678")
        self.assertEqual(lead["type_tag"], "missed_call")

    def test_email_or_phone_match(self):
        first = self._resolve(_message("m1", "t1"), _contact(email="a@example.nl", phone="0612345678"))
        # new email, known phone
        second = self._resolve(_message("m2", "t2"), _contact(email="b@example.nl", phone="06 12 34 56 78"))
        self.assertEqual(second.lead_id, first.lead_id)

    def test_ignored_record_is_rejected(self):
        with self.assertRaises(ValueError):
            self._resolve(_message("m1", "t1"), ParsedLeadRecord.ignored("autotrack", "viewed"))
        self.assertEqual(self.store.messages, {})

    def test_failed_message_write_rolls_back_lead_and_thread(self):
        self.store.fail_on.add("m1")
        with self.assertRaises(Exception):
            self._resolve(_message("m1", "t1"), _contact())
        self.assertEqual(self.store.leads, {})
        self.assertEqual(self.store.threads, {})


def test_compose_notes_for_trade_in():
    record = ParsedLeadRecord(
        type=LeadType.TRADE_IN, source="website", first_name="Jan", last_name="de Vries",
        email="jan@example.com", vehicle="Audi A3",
        trade_in=TradeIn(plate="AB-123-C", mileage="45000 km"),
        clean_message="Graag een bod.",
    )
    notes = compose_notes(record, classify(record))
    lines = notes.split("\n")
    assert lines[0] == "Lead van Website (Inruilaanvraag, trade_in_request)."
    assert "Inruil: AB-123-C, 45000 km" in lines
    assert "Interesse in: Audi A3" in lines
    assert lines[-1] == "Graag een bod."


def test_participants_include_customer_email():
    message = _message("m1", "t1", sender="Marktplaats <NoReply@marktplaats.nl>")
    participants = participants_of(message, _contact())
    assert participants == ["noreply@marktplaats.nl", "verkoop@auto-city.nl", "sanne@example.nl"]

