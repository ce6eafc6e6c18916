"""Lead Sentinel — duplicate detection.

Resolves one parsed message to an existing or new Lead/Thread, then logs
the message. Resolution order, first match wins:
1. provider thread id → that thread's lead
2. contact (email, or email OR phone, or phone alone) → that lead, new thread
3. nothing → new lead and new thread
A message id that is already logged is a replay and writes nothing.
"""
import logging
from email.utils import getaddresses
from typing import List

from tools.ingest.models import (
    Classification,
    InboundMessage,
    LeadType,
    ParsedLeadRecord,
    Resolution,
)

logger = logging.getLogger("sentinel.leads.dedup")

_SOURCE_LABELS = {
    "autotrack": "AutoTrack",
    "autoscout24": "AutoScout24",
    "marktplaats": "Marktplaats",
    "2dehands": "2dehands",
    "findio": "Findio",
    "website": "Website",
    "email": "E-mail",
}

_TYPE_LABELS = {
    LeadType.CONTACT: "Contactaanvraag",
    LeadType.TRADE_IN: "Inruilaanvraag",
    LeadType.FINANCIAL_LEAD: "Financieringsaanvraag",
    LeadType.MISSED_CALL: "Gemiste oproep",
}


def compose_notes(record: ParsedLeadRecord, classification: Classification) -> str:
    """Human-readable notes for a new lead."""
    source = _SOURCE_LABELS.get(record.source, record.source)
    kind = _TYPE_LABELS.get(record.type, record.type.value)
    lines = [f"Lead van {source} ({kind}, {classification.tag})."]
    if record.sub_type:
        lines.append(f"Type aanvraag: {record.sub_type}")
    if record.trade_in_summary:
        lines.append(record.trade_in_summary)
    if record.vehicle:
        lines.append(f"Interesse in: {record.vehicle}")
    if record.vehicle_url:
        lines.append(f"Advertentie: {record.vehicle_url}")
    if record.company_name:
        lines.append(f"Bedrijf: {record.company_name}")
    if record.clean_message:
        lines.append("")
        lines.append(record.clean_message)
    return "\n".join(lines)


def participants_of(message: InboundMessage, record: ParsedLeadRecord) -> List[str]:
    addresses = [a.lower() for _, a in getaddresses([message.sender, message.to]) if a]
    if record.email and record.email not in addresses:
        addresses.append(record.email)
    return addresses


class DeduplicationEngine:
    """Stateless; every read and write goes through the transaction it is given."""

    def resolve(self, tx, message: InboundMessage, record: ParsedLeadRecord,
                classification: Classification) -> Resolution:
        if record.is_ignored:
            raise ValueError(f"{record.type.value} records are not persisted")

        if tx.message_exists(message.message_id):
            thread = tx.find_thread(message.thread_id)
            logger.info(f"{message.message_id}: already logged, replay ignored")
            return Resolution(
                lead_id=thread["lead_id"] if thread else None,
                thread_row_id=thread["id"] if thread else None,
                match="duplicate",
            )

        participants = participants_of(message, record)
        thread = tx.find_thread(message.thread_id)

        if thread:
            tx.touch_thread(thread["id"], message.received_at, participants)
            tx.touch_lead(thread["lead_id"], message.received_at)
            resolution = Resolution(lead_id=thread["lead_id"], thread_row_id=thread["id"], match="thread")
            logger.info(f"{message.message_id}: thread match → lead {thread['lead_id']}")
        else:
            lead_id = tx.find_lead_by_contact(record.email, record.phone)
            lead_created = False
            if lead_id is not None:
                tx.touch_lead(lead_id, message.received_at)
                match = "contact"
            else:
                lead_id, lead_created = tx.create_lead(
                    record, classification,
                    source_email=message.sender,
                    notes=compose_notes(record, classification),
                    received_at=message.received_at,
                )
                match = "new" if lead_created else "contact"

            thread_row_id, thread_created = tx.create_thread(
                message.thread_id, lead_id, message.received_at, participants,
            )
            if not thread_created:
                # another batch created the thread between our read and insert
                tx.touch_thread(thread_row_id, message.received_at, participants)
            resolution = Resolution(
                lead_id=lead_id,
                thread_row_id=thread_row_id,
                match=match,
                lead_created=lead_created,
                thread_created=thread_created,
            )
            logger.info(
                f"{message.message_id}: {match} → lead {lead_id}"
                f"{' (new thread)' if thread_created else ''}"
            )

        resolution.message_inserted = tx.insert_message(
            message, resolution.lead_id, resolution.thread_row_id, record,
        )
        return resolution
