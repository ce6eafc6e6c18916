"""
Shared fixtures for the lead pipeline tests: Gmail payload builders, a fake
Gmail client and an in-memory lead store with the same interface (and the
same unique-key behaviour) as models.leads.LeadStore.
"""
import base64
import copy
import itertools
import os
import sys
from contextlib import contextmanager
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tools.ingest.models import SearchResult
from tools.ingest.text import normalize_email, normalize_phone
from triggers.errors import PersistenceError


def b64url(text: str) -> str:
    """Gmail-style body data: base64url with the padding stripped."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(
    message_id: str,
    thread_id: Optional[str] = None,
    sender: str = "AutoTrack <noreply@autotrack.nl>",
    subject: str = "Nieuwe aanvraag",
    plain: Optional[str] = None,
    html: Optional[str] = None,
    reply_to: Optional[str] = None,
    internal_date: str = "1735725600000",
) -> dict:
    """A messages.get(format=full) response with a multipart/alternative payload."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": "verkoop@auto-city.nl"},
        {"name": "Subject", "value": subject},
    ]
    if reply_to:
        headers.append({"name": "Reply-To", "value": reply_to})
    parts = []
    if plain is not None:
        parts.append({"mimeType": "text/plain", "filename": "", "body": {"data": b64url(plain)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "filename": "", "body": {"data": b64url(html)}})
    return {
        "id": message_id,
        "threadId": thread_id or f"t-{message_id}",
        "labelIds": ["UNREAD", "INBOX"],
        "internalDate": internal_date,
        "payload": {"mimeType": "multipart/alternative", "headers": headers, "parts": parts},
    }


class FakeGmail:
    """Stands in for GmailClient: serves canned messages, records mark_read."""

    def __init__(self, messages: List[dict] = ()):
        self.messages: Dict[str, dict] = {m["id"]: m for m in messages}
        self.fetched: List[str] = []
        self.marked_read: List[str] = []
        self.fail_fetch: Dict[str, Exception] = {}
        self.fail_mark_read: Dict[str, Exception] = {}

    def get_message(self, message_id: str) -> dict:
        self.fetched.append(message_id)
        if message_id in self.fail_fetch:
            raise self.fail_fetch[message_id]
        return self.messages[message_id]

    def mark_read(self, message_id: str):
        if message_id in self.fail_mark_read:
            raise self.fail_mark_read[message_id]
        self.marked_read.append(message_id)

    def close(self):
        pass


class FakeScanner:
    def __init__(self, gmail: FakeGmail = None, result: SearchResult = None):
        self.result = result or SearchResult(
            ok=True, message_refs=[{"id": mid} for mid in (gmail.messages if gmail else [])],
        )

    def scan(self) -> SearchResult:
        return self.result


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryTx:
    def __init__(self, store: "MemoryStore"):
        self.store = store

    def message_exists(self, message_id):
        return message_id in self.store.messages

    def find_thread(self, thread_id):
        row = self.store.threads.get(thread_id)
        return {"id": row["id"], "lead_id": row["lead_id"], "message_count": row["message_count"]} if row else None

    def _thread_by_row(self, thread_row_id):
        return next(t for t in self.store.threads.values() if t["id"] == thread_row_id)

    def touch_thread(self, thread_row_id, received_at, participants):
        row = self._thread_by_row(thread_row_id)
        row["message_count"] += 1
        row["participants"] = sorted(set(row["participants"]) | set(participants))

    def find_lead_by_contact(self, email, phone):
        email, phone = normalize_email(email), normalize_phone(phone)
        if email:
            for lead in self.store.leads.values():
                if lead["email"] == email:
                    return lead["id"]
        if phone:
            for lead in self.store.leads.values():
                if lead["phone_normalized"] == phone:
                    return lead["id"]
        return None

    def create_lead(self, record, classification, source_email, notes, received_at):
        existing = self.find_lead_by_contact(record.email, record.phone)
        if existing is not None:
            return existing, False
        lead_id = next(self.store.ids)
        self.store.leads[lead_id] = {
            "id": lead_id,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "email": normalize_email(record.email),
            "phone": record.phone,
            "phone_normalized": normalize_phone(record.phone),
            "source": record.source,
            "source_email": source_email,
            "lead_type": record.type.value,
            "temperature": classification.temperature,
            "type_tag": classification.tag,
            "urgency": classification.urgency,
            "intent": classification.intent,
            "notes": notes,
            "touches": 0,
        }
        return lead_id, True

    def touch_lead(self, lead_id, received_at):
        self.store.leads[lead_id]["touches"] += 1

    def create_thread(self, thread_id, lead_id, received_at, participants):
        if thread_id in self.store.threads:
            return self.store.threads[thread_id]["id"], False
        row_id = next(self.store.ids)
        self.store.threads[thread_id] = {
            "id": row_id, "thread_id": thread_id, "lead_id": lead_id,
            "participants": list(participants), "message_count": 1,
        }
        return row_id, True

    def insert_message(self, message, lead_id, thread_row_id, record):
        if message.message_id in self.store.fail_on:
            raise PersistenceError(f"simulated write failure for {message.message_id}")
        if message.message_id in self.store.messages:
            return False
        self.store.messages[message.message_id] = {
            "message_id": message.message_id,
            "lead_id": lead_id,
            "thread_row_id": thread_row_id,
            "clean_message": record.clean_message,
            "parsed_data": record.to_dict(),
        }
        return True


class MemoryStore:
    """All-or-nothing per transaction, like one PostgreSQL transaction per message."""

    def __init__(self, fail_on=()):
        self.leads: Dict[int, dict] = {}
        self.threads: Dict[str, dict] = {}
        self.messages: Dict[str, dict] = {}
        self.ids = itertools.count(1)
        self.fail_on = set(fail_on)

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy((self.leads, self.threads, self.messages))
        try:
            yield MemoryTx(self)
        except Exception:
            self.leads, self.threads, self.messages = snapshot
            raise


@pytest.fixture
def store():
    return MemoryStore()
