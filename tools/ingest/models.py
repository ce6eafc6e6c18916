"""Lead Sentinel — Lead ingestion data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class LeadType(str, Enum):
    CONTACT = "Contact"
    TRADE_IN = "TradeIn"
    FINANCIAL_LEAD = "FinancialLead"
    MISSED_CALL = "MissedCall"
    IGNORED_CALL = "IgnoredCall"
    IGNORED = "Ignored"


IGNORED_TYPES = {LeadType.IGNORED, LeadType.IGNORED_CALL}

# Known sub-types (set by parsers, read by the classifier)
SUBTYPE_TEST_DRIVE = "test-drive request"
SUBTYPE_CALLBACK = "callback request"


@dataclass
class InboundMessage:
    """One decoded Gmail message."""
    message_id: str
    thread_id: str
    sender: str
    subject: str
    to: str = ""
    reply_to: Optional[str] = None
    received_at: Optional[datetime] = None
    plain_body: str = ""
    html_body: str = ""
    label_ids: List[str] = field(default_factory=list)


@dataclass
class TradeIn:
    plate: str
    mileage: str
    condition: Optional[str] = None
    remarks: Optional[str] = None

    def summary(self) -> str:
        """Short human-readable line, e.g. 'Inruil: AB-123-C, 45000 km (goed)'."""
        text = f"Inruil: {self.plate}, {self.mileage}"
        if self.condition:
            text += f" ({self.condition})"
        if self.remarks:
            text += f" — {self.remarks}"
        return text

    def to_dict(self) -> dict:
        d = {"plate": self.plate, "mileage": self.mileage}
        if self.condition:
            d["condition"] = self.condition
        if self.remarks:
            d["remarks"] = self.remarks
        return d


@dataclass
class ParsedLeadRecord:
    """
    Transient parse result, tagged by `type`.

    trade_in is only allowed on TradeIn records; MissedCall records carry a
    phone and no email; ignored records carry nothing but the reason.
    """
    type: LeadType
    source: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None
    vehicle_url: Optional[str] = None
    clean_message: Optional[str] = None
    trade_in: Optional[TradeIn] = None
    trade_in_summary: Optional[str] = None
    company_name: Optional[str] = None
    sub_type: Optional[str] = None
    ignore_reason: Optional[str] = None

    def __post_init__(self):
        if self.trade_in is not None and self.type is not LeadType.TRADE_IN:
            raise ValueError(f"trade_in block on a {self.type.value} record")
        if self.type is LeadType.TRADE_IN:
            if self.trade_in is None:
                raise ValueError("TradeIn record without trade_in block")
            if not self.trade_in_summary:
                self.trade_in_summary = self.trade_in.summary()
        if self.type is LeadType.MISSED_CALL:
            if not self.phone:
                raise ValueError("MissedCall record without phone")
            self.email = None

    @classmethod
    def ignored(cls, source: str, reason: str, call: bool = False) -> "ParsedLeadRecord":
        return cls(
            type=LeadType.IGNORED_CALL if call else LeadType.IGNORED,
            source=source,
            ignore_reason=reason,
        )

    @property
    def is_ignored(self) -> bool:
        return self.type in IGNORED_TYPES

    @property
    def full_name(self) -> str:
        # Single-token names repeat the token as last name
        if self.last_name == self.first_name:
            return self.first_name or ""
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> dict:
        """JSON payload stored on the message row (camelCase, as the CRM reads it)."""
        d = {
            "type": self.type.value,
            "source": self.source,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "vehicle": self.vehicle,
            "vehicleUrl": self.vehicle_url,
            "cleanMessage": self.clean_message,
            "tradeIn": self.trade_in.to_dict() if self.trade_in else None,
            "tradeInSummary": self.trade_in_summary,
            "companyName": self.company_name,
            "subType": self.sub_type,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class Classification:
    temperature: str      # hot | warm | cold | ice
    tag: str              # e.g. trade_in_request
    urgency: str          # high | medium | low
    intent: str           # trade-in-request | financing-request | information-request


@dataclass
class SearchResult:
    """Outcome of the one mailbox search per invocation."""
    ok: bool
    message_refs: List[dict] = field(default_factory=list)
    error_type: Optional[str] = None
    error: Optional[str] = None
    query: str = ""


@dataclass
class Resolution:
    """Which Lead/Thread an inbound message was attached to."""
    lead_id: Optional[int]
    thread_row_id: Optional[int]
    match: str                 # thread | contact | new | duplicate
    lead_created: bool = False
    thread_created: bool = False
    message_inserted: bool = False


@dataclass
class BatchStats:
    """Per-invocation counters; created at start, returned as the result."""
    max_error_details: int = 20
    processed: int = 0
    created: int = 0
    updated: int = 0
    ignored: int = 0
    parse_errors: int = 0
    missed_calls: int = 0
    trade_ins: int = 0
    financial_leads: int = 0
    rate_limit_skipped: int = 0
    errors: int = 0
    duplicates: int = 0
    mark_read_failures: int = 0
    candidates: int = 0
    stopped_early: bool = False
    stop_reason: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0
    by_source: Dict[str, Dict[str, int]] = field(default_factory=dict)
    error_details: List[dict] = field(default_factory=list)

    def bump_source(self, source: str, key: str):
        bucket = self.by_source.setdefault(source, {})
        bucket[key] = bucket.get(key, 0) + 1

    def add_error(self, message_id: str, kind: str, detail: str):
        if len(self.error_details) < self.max_error_details:
            self.error_details.append({
                "messageId": message_id, "kind": kind, "detail": detail[:300],
            })

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "ignored": self.ignored,
            "parseErrors": self.parse_errors,
            "missedCalls": self.missed_calls,
            "tradeIns": self.trade_ins,
            "financialLeads": self.financial_leads,
            "rateLimitSkipped": self.rate_limit_skipped,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "markReadFailures": self.mark_read_failures,
            "candidates": self.candidates,
            "stoppedEarly": self.stopped_early,
            "stopReason": self.stop_reason,
            "startedAt": self.started_at.isoformat(),
            "durationSeconds": round(self.duration_seconds, 3),
            "bySource": self.by_source,
            "errorDetails": self.error_details,
        }
