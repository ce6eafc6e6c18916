"""
Lead Sentinel: database schema and store for leads, threads and messages.

Tables:
  - leads: one row per distinct contact (email and/or phone)
  - lead_threads: provider thread id → owning lead
  - lead_messages: append-only log of every inbound lead email

Uses raw psycopg2 with CREATE TABLE IF NOT EXISTS. Contact identity and
provider ids carry unique indexes; every insert is ON CONFLICT DO NOTHING
followed by a re-read, so concurrent batches converge on the same rows.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config.settings import config
from tools.ingest.models import Classification, InboundMessage, ParsedLeadRecord
from tools.ingest.text import normalize_email, normalize_phone
from triggers.errors import PersistenceError

logger = logging.getLogger("sentinel.models.leads")

# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------

_pool: Optional[psycopg2.pool.SimpleConnectionPool] = None


def _get_pool():
    global _pool
    if _pool is None:
        try:
            _pool = psycopg2.pool.SimpleConnectionPool(
                minconn=1, maxconn=3, **config.postgres.dsn_params,
            )
            logger.info("leads: PostgreSQL pool initialised")
        except psycopg2.Error as e:
            logger.warning(f"leads: PostgreSQL pool init failed: {e}")
    return _pool


def get_conn():
    pool = _get_pool()
    if pool is None:
        return None
    try:
        return pool.getconn()
    except psycopg2.Error as e:
        logger.warning(f"leads: could not get connection: {e}")
        return None


def put_conn(conn, close: bool = False):
    pool = _get_pool()
    if pool and conn:
        try:
            pool.putconn(conn, close=close)
        except psycopg2.Error as e:
            logger.debug(f"leads: putconn failed: {e}")


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS leads (
        id SERIAL PRIMARY KEY,
        first_name VARCHAR(200),
        last_name VARCHAR(200),
        email VARCHAR(320),
        phone VARCHAR(40),
        phone_normalized VARCHAR(40),
        source VARCHAR(50) NOT NULL,
        source_email VARCHAR(320),
        lead_type VARCHAR(30) NOT NULL,
        sub_type VARCHAR(100),
        intent VARCHAR(50),
        urgency VARCHAR(10),
        temperature VARCHAR(10),
        type_tag VARCHAR(50),
        status VARCHAR(20) NOT NULL DEFAULT 'new',
        interested_vehicle TEXT,
        vehicle_url TEXT,
        company_name VARCHAR(200),
        notes TEXT,
        last_email_at TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS leads_email_uniq
        ON leads (lower(email)) WHERE email IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS leads_phone_uniq
        ON leads (phone_normalized) WHERE phone_normalized IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS lead_threads (
        id SERIAL PRIMARY KEY,
        thread_id TEXT NOT NULL UNIQUE,
        lead_id INTEGER NOT NULL REFERENCES leads(id),
        participants TEXT[] NOT NULL DEFAULT '{}',
        first_message_at TIMESTAMP WITH TIME ZONE,
        last_message_at TIMESTAMP WITH TIME ZONE,
        message_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lead_messages (
        id SERIAL PRIMARY KEY,
        message_id TEXT NOT NULL UNIQUE,
        thread_row_id INTEGER NOT NULL REFERENCES lead_threads(id),
        lead_id INTEGER NOT NULL REFERENCES leads(id),
        sender TEXT,
        recipient TEXT,
        subject TEXT,
        body_plain TEXT,
        body_html TEXT,
        clean_message TEXT,
        received_at TIMESTAMP WITH TIME ZONE,
        source VARCHAR(50),
        parsed_data JSONB,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_lead_messages_lead ON lead_messages(lead_id)",
]


def ensure_tables():
    """Create leads, lead_threads and lead_messages if they don't exist."""
    conn = get_conn()
    if not conn:
        logger.warning("leads: no DB connection — tables not verified")
        return
    try:
        cur = conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        conn.commit()
        cur.close()
        logger.info("leads: tables verified (leads, lead_threads, lead_messages)")
    except psycopg2.Error as e:
        conn.rollback()
        logger.error(f"leads: table creation failed: {e}")
    finally:
        put_conn(conn)


# ---------------------------------------------------------------------------
# Per-message transaction
# ---------------------------------------------------------------------------

class LeadTx:
    """All reads and writes for one inbound message, on one cursor."""

    def __init__(self, cur):
        self.cur = cur

    def message_exists(self, message_id: str) -> bool:
        self.cur.execute("SELECT 1 FROM lead_messages WHERE message_id = %s", (message_id,))
        return self.cur.fetchone() is not None

    def find_thread(self, thread_id: str) -> Optional[dict]:
        self.cur.execute(
            "SELECT id, lead_id, message_count FROM lead_threads WHERE thread_id = %s",
            (thread_id,),
        )
        row = self.cur.fetchone()
        return dict(row) if row else None

    def touch_thread(self, thread_row_id: int, received_at: Optional[datetime],
                     participants: List[str]):
        self.cur.execute(
            """
            UPDATE lead_threads
               SET message_count = message_count + 1,
                   last_message_at = GREATEST(COALESCE(last_message_at, %s), %s),
                   participants = ARRAY(
                       SELECT DISTINCT p FROM unnest(participants || %s::text[]) AS p
                   )
             WHERE id = %s
            """,
            (received_at, received_at, participants, thread_row_id),
        )

    def find_lead_by_contact(self, email: Optional[str], phone: Optional[str]) -> Optional[int]:
        """Email and/or normalized phone; an email hit wins over a phone hit."""
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if not email and not phone:
            return None
        self.cur.execute(
            """
            SELECT id FROM leads
             WHERE (%(email)s IS NOT NULL AND lower(email) = %(email)s)
                OR (%(phone)s IS NOT NULL AND phone_normalized = %(phone)s)
             ORDER BY (%(email)s IS NOT NULL AND lower(email) = %(email)s) DESC, id
             LIMIT 1
            """,
            {"email": email, "phone": phone},
        )
        row = self.cur.fetchone()
        return row["id"] if row else None

    def create_lead(self, record: ParsedLeadRecord, classification: Classification,
                    source_email: str, notes: str,
                    received_at: Optional[datetime]) -> Tuple[int, bool]:
        """Insert a lead; on a unique conflict return the existing one instead."""
        self.cur.execute(
            """
            INSERT INTO leads (
                first_name, last_name, email, phone, phone_normalized,
                source, source_email, lead_type, sub_type, intent, urgency,
                temperature, type_tag, interested_vehicle, vehicle_url,
                company_name, notes, last_email_at
            ) VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
            )
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                record.first_name, record.last_name, normalize_email(record.email),
                record.phone, normalize_phone(record.phone),
                record.source, source_email, record.type.value, record.sub_type,
                classification.intent, classification.urgency,
                classification.temperature, classification.tag,
                record.vehicle, record.vehicle_url, record.company_name, notes,
                received_at or datetime.now(timezone.utc),
            ),
        )
        row = self.cur.fetchone()
        if row:
            return row["id"], True
        existing = self.find_lead_by_contact(record.email, record.phone)
        if existing is None:
            raise PersistenceError("lead insert conflicted but no matching lead found")
        logger.info(f"leads: concurrent insert converged on lead {existing}")
        return existing, False

    def touch_lead(self, lead_id: int, received_at: Optional[datetime]):
        when = received_at or datetime.now(timezone.utc)
        self.cur.execute(
            """
            UPDATE leads
               SET last_email_at = GREATEST(COALESCE(last_email_at, %s), %s),
                   updated_at = NOW()
             WHERE id = %s
            """,
            (when, when, lead_id),
        )

    def create_thread(self, thread_id: str, lead_id: int, received_at: Optional[datetime],
                      participants: List[str]) -> Tuple[int, bool]:
        self.cur.execute(
            """
            INSERT INTO lead_threads (
                thread_id, lead_id, participants, first_message_at, last_message_at, message_count
            ) VALUES (%s, %s, %s, %s, %s, 1)
            ON CONFLICT (thread_id) DO NOTHING
            RETURNING id
            """,
            (thread_id, lead_id, participants, received_at, received_at),
        )
        row = self.cur.fetchone()
        if row:
            return row["id"], True
        existing = self.find_thread(thread_id)
        if existing is None:
            raise PersistenceError(f"thread {thread_id} conflicted but is not readable")
        return existing["id"], False

    def insert_message(self, message: InboundMessage, lead_id: int, thread_row_id: int,
                       record: ParsedLeadRecord) -> bool:
        self.cur.execute(
            """
            INSERT INTO lead_messages (
                message_id, thread_row_id, lead_id, sender, recipient, subject,
                body_plain, body_html, clean_message, received_at, source, parsed_data
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (message_id) DO NOTHING
            RETURNING id
            """,
            (
                message.message_id, thread_row_id, lead_id, message.sender, message.to,
                message.subject, message.plain_body, message.html_body,
                record.clean_message, message.received_at, record.source,
                psycopg2.extras.Json(record.to_dict()),
            ),
        )
        return self.cur.fetchone() is not None


class LeadStore:
    """Hands out one transaction per inbound message."""

    @contextmanager
    def transaction(self) -> Iterator[LeadTx]:
        """
        Commit every write made through the yielded LeadTx, or none of them.
        Driver errors surface as PersistenceError.
        """
        conn = get_conn()
        if not conn:
            raise PersistenceError("no database connection")
        broken = False
        try:
            cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield LeadTx(cur)
                conn.commit()
            finally:
                cur.close()
        except psycopg2.Error as e:
            broken = self._rollback(conn)
            raise PersistenceError(f"database error: {e}") from e
        except Exception:
            broken = self._rollback(conn)
            raise
        finally:
            put_conn(conn, close=broken)

    @staticmethod
    def _rollback(conn) -> bool:
        """Roll back; True if the connection is unusable afterwards."""
        try:
            conn.rollback()
            return False
        except psycopg2.Error as e:
            logger.warning(f"leads: rollback failed, discarding connection: {e}")
            return True
