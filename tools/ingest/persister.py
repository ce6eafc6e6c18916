"""Lead Sentinel — persister.

Writes one message's rows in a single transaction and only then clears
the UNREAD label. A crash in between means the message is seen again next
run and the dedup rules converge on the same rows.
"""
import logging
from typing import Optional

import httpx

from tools.ingest.dedup import DeduplicationEngine
from tools.ingest.models import Classification, InboundMessage, ParsedLeadRecord, Resolution
from triggers.errors import GmailApiError, RateLimitExceeded

logger = logging.getLogger("sentinel.leads.persister")


class Persister:

    def __init__(self, store, gmail, engine: Optional[DeduplicationEngine] = None):
        self.store = store
        self.gmail = gmail
        self.engine = engine or DeduplicationEngine()

    def persist(self, message: InboundMessage, record: ParsedLeadRecord,
                classification: Classification) -> Resolution:
        """Raises PersistenceError (nothing written, message left unread)."""
        with self.store.transaction() as tx:
            resolution = self.engine.resolve(tx, message, record, classification)
        return resolution

    def mark_read(self, message_id: str) -> bool:
        """Clear UNREAD. False if Gmail refused; the next run replays the message."""
        try:
            self.gmail.mark_read(message_id)
            return True
        except (RateLimitExceeded, GmailApiError, httpx.TransportError) as e:
            logger.warning(f"{message_id}: stored but could not mark as read: {e}")
            return False
