"""Lead Sentinel — source parsers.

One pure function per known sender template:
    parser(plain, html, subject, sender, reply_to) -> ParsedLeadRecord | None

None means the minimum fields (a name plus an email, or a phone for a
missed call) were not found. Known non-lead templates come back as an
Ignored / IgnoredCall record instead, so they are still marked read.
"""
import logging
import re
from email.utils import parseaddr
from typing import Callable, Optional

from tools.ingest.fields import FieldReader
from tools.ingest.models import (
    LeadType,
    ParsedLeadRecord,
    SUBTYPE_CALLBACK,
    SUBTYPE_TEST_DRIVE,
    TradeIn,
)
from tools.ingest.text import (
    first_email,
    first_phone,
    compact_phone,
    isolate_message,
    normalize_email,
    split_name,
    tidy_message,
)

logger = logging.getLogger("sentinel.leads.parsers")

ParserFn = Callable[[str, str, str, str, Optional[str]], Optional[ParsedLeadRecord]]

# Delivery/read receipts and auto-replies, whatever the sender
_RECEIPT_SUBJECT = re.compile(
    r"^\s*(?:delivery status notification|undeliverable|niet bezorgd|"
    r"gelezen\s*:|read\s*:|automatisch antwoord|automatic reply|"
    r"out of office|afwezig)",
    re.IGNORECASE,
)

_RELAY_LOCAL = re.compile(r"^(?:no-?reply|do-?not-?reply|mailer-daemon|postmaster|notifications?)\b", re.IGNORECASE)

_TEST_DRIVE = re.compile(r"proefrit|test\s*drive", re.IGNORECASE)
_CALLBACK = re.compile(r"terugbel|bel(?:\s+mij)?\s+terug|belverzoek|callback", re.IGNORECASE)

# Vehicle reference carried in a notification subject
_SUBJECT_VEHICLE = [
    re.compile(r"(?:interesse in|interested in|vraag over|reactie op(?: je advertentie)?)\s*:?\s*(.+)$", re.IGNORECASE),
    re.compile(r"(?:advertentie|aanvraag|proefrit|oproep)\s*(?:voor|:|-)\s*(.+)$", re.IGNORECASE),
    re.compile(r"\bvoor\s+(?:de|een|uw|je)?\s*(.+)$", re.IGNORECASE),
]
_SUBJECT_TRAILER = re.compile(r"\s*[|\-–]\s*(?:autotrack|autoscout24|marktplaats|2dehands)\b.*$", re.IGNORECASE)

_AUTOTRACK_URL = re.compile(r"https?://(?:www\.)?autotrack\.nl/a/[^\s\"'<>]+", re.IGNORECASE)
_AUTOSCOUT_URL = re.compile(r"https?://(?:www\.)?autoscout24\.(?:nl|com)/aanbod/[^\s\"'<>]+", re.IGNORECASE)
_MARKTPLAATS_URL = re.compile(
    r"https?://(?:www\.)?(?:marktplaats\.nl|2dehands\.be)/(?:a|v|l)/[^\s\"'<>]+", re.IGNORECASE,
)
_ANY_URL = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)


# -------------------------------------------------------
# Shared helpers
# -------------------------------------------------------

def triage_receipt(subject: str, source: str) -> Optional[ParsedLeadRecord]:
    """Receipts and auto-replies are never leads."""
    if _RECEIPT_SUBJECT.search(subject or ""):
        return ParsedLeadRecord.ignored(source, f"receipt: {subject.strip()[:80]}")
    return None


def _is_relay(email: str, portal_domain: Optional[str] = None) -> bool:
    local, _, domain = email.partition("@")
    if _RELAY_LOCAL.match(local):
        return True
    return bool(portal_domain) and domain.endswith(portal_domain)


def customer_email(reply_to: Optional[str], candidates=(), sender: Optional[str] = None,
                   portal_domain: Optional[str] = None) -> Optional[str]:
    """Reply-To first, then body candidates, then From; relay addresses never count."""
    ordered = [reply_to, *candidates]
    if sender:
        ordered.append(parseaddr(sender)[1])
    for value in ordered:
        if not value:
            continue
        email = normalize_email(value) or normalize_email(first_email(value))
        if email and not _is_relay(email, portal_domain):
            return email
    return None


def vehicle_from_subject(subject: str) -> Optional[str]:
    if not subject:
        return None
    for rx in _SUBJECT_VEHICLE:
        m = rx.search(subject)
        if m:
            vehicle = _SUBJECT_TRAILER.sub("", m.group(1)).strip(" :-\"'")
            if len(vehicle) >= 2:
                return vehicle
    return None


def sub_type_of(*texts: Optional[str]) -> Optional[str]:
    for text in texts:
        if text and _TEST_DRIVE.search(text):
            return SUBTYPE_TEST_DRIVE
    for text in texts:
        if text and _CALLBACK.search(text):
            return SUBTYPE_CALLBACK
    return None


def trade_in_block(reader: FieldReader) -> Optional[TradeIn]:
    """Plate and mileage are both required; condition and remarks are optional."""
    plate = reader.field("Kenteken", "Kenteken inruilauto", "Inruil kenteken")
    mileage = reader.field("Kilometerstand", "Km-stand", "Kilometerstand inruilauto")
    if not plate or not mileage:
        return None
    return TradeIn(
        plate=plate.upper(),
        mileage=mileage,
        condition=reader.field("Staat", "Conditie", "Staat van de auto"),
        remarks=reader.field("Opmerkingen", "Opmerking"),
    )


def build_contact(
    source: str,
    name: Optional[str],
    email: Optional[str],
    phone: Optional[str] = None,
    vehicle: Optional[str] = None,
    vehicle_url: Optional[str] = None,
    clean_message: Optional[str] = None,
    trade_in: Optional[TradeIn] = None,
    sub_type: Optional[str] = None,
    lead_type: LeadType = LeadType.CONTACT,
    company_name: Optional[str] = None,
) -> Optional[ParsedLeadRecord]:
    """Contact / TradeIn / FinancialLead record, or None without name + email."""
    first, last = split_name(name)
    if not first or not email:
        logger.info(f"{source}: missing name or email (name={bool(first)}, email={bool(email)})")
        return None
    if trade_in is not None and lead_type is LeadType.CONTACT:
        lead_type = LeadType.TRADE_IN
    return ParsedLeadRecord(
        type=lead_type,
        source=source,
        first_name=first,
        last_name=last,
        email=email,
        phone=compact_phone(phone) if phone else None,
        vehicle=vehicle,
        vehicle_url=vehicle_url,
        clean_message=clean_message,
        trade_in=trade_in if lead_type is LeadType.TRADE_IN else None,
        company_name=company_name,
        sub_type=sub_type,
    )


# -------------------------------------------------------
# AutoTrack
# -------------------------------------------------------

_AUTOTRACK_VIEWED = re.compile(r"advertentie(?:s)? (?:is |zijn )?bekeken|bekeken advertentie", re.IGNORECASE)
_AUTOTRACK_ANSWERED = re.compile(r"(?:oproep|gesprek) (?:is )?beantwoord|beantwoorde oproep", re.IGNORECASE)
_AUTOTRACK_MISSED = re.compile(r"gemiste oproep|gemist gesprek", re.IGNORECASE)


def parse_autotrack(plain: str, html: str, subject: str, sender: str,
                    reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    source = "autotrack"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored
    if _AUTOTRACK_VIEWED.search(subject or ""):
        return ParsedLeadRecord.ignored(source, "advertentie bekeken")
    if _AUTOTRACK_ANSWERED.search(subject or ""):
        return ParsedLeadRecord.ignored(source, "oproep beantwoord", call=True)

    reader = FieldReader(plain, html)
    vehicle = reader.field("Voertuig", "Auto", "Advertentie") or vehicle_from_subject(subject)
    vehicle_url = reader.listing_url(_AUTOTRACK_URL, "Bekijk advertentie")

    name = reader.field("Naam", "Name")
    body_email = reader.field("E-mailadres", "E-mail", "Email")
    # the notification template carries no contact fields; free text mentioning a call does
    missed = _AUTOTRACK_MISSED.search(subject or "") or (
        not name and not body_email and _AUTOTRACK_MISSED.search(reader.body)
    )
    if missed:
        phone = reader.field("Telefoonnummer", "Telefoon", "Beller", "Nummer") or first_phone(reader.body)
        phone = compact_phone(phone)
        if not phone:
            return None
        return ParsedLeadRecord(
            type=LeadType.MISSED_CALL,
            source=source,
            phone=phone,
            vehicle=vehicle,
            vehicle_url=vehicle_url,
        )

    email = customer_email(
        reply_to, [body_email], portal_domain="autotrack.nl",
    )
    message = reader.section("Bericht", "Vraag", "Opmerking") or isolate_message(
        reader.body, start_markers=[r"Bericht\s*:", r"Vraag\s*:"],
    )
    return build_contact(
        source,
        name=name,
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon", "Tel"),
        vehicle=vehicle,
        vehicle_url=vehicle_url,
        clean_message=tidy_message(message),
        trade_in=trade_in_block(reader),
        sub_type=sub_type_of(subject, reader.field("Type aanvraag", "Aanvraag")),
    )


# -------------------------------------------------------
# AutoScout24
# -------------------------------------------------------

def parse_autoscout24(plain: str, html: str, subject: str, sender: str,
                      reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    source = "autoscout24"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored

    reader = FieldReader(plain, html)
    email = customer_email(
        reply_to,
        [reader.html.mailto_near("Antwoorden op"), reader.field("Antwoorden op", "E-mailadres", "E-mail")],
        portal_domain="autoscout24",
    )
    message = reader.section("Bericht van de koper") or isolate_message(
        reader.body, start_markers=[r"Bericht van de koper\s*:?"],
        end_markers=[r"Antwoorden op", r"Naam\s*:"],
    )
    return build_contact(
        source,
        name=reader.field("Naam", "Name"),
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon", "Tel."),
        vehicle=reader.field("Voertuig", "Auto") or vehicle_from_subject(subject),
        vehicle_url=reader.listing_url(_AUTOSCOUT_URL, "Bekijk advertentie"),
        clean_message=tidy_message(message),
        trade_in=trade_in_block(reader),
        sub_type=sub_type_of(subject, message),
    )


# -------------------------------------------------------
# Marktplaats / 2dehands
# -------------------------------------------------------

_MARKTPLAATS_SEEN = re.compile(r"heeft je reactie bekeken", re.IGNORECASE)
_MARKTPLAATS_DIGEST = re.compile(r"(?:dagelijks|wekelijks) overzicht|samenvatting|statistieken", re.IGNORECASE)
_MARKTPLAATS_FROM = re.compile(
    r"(?:je hebt een (?:nieuwe )?reactie ontvangen van|nieuw bericht van)\s+([^\n:]+?)\s*:", re.IGNORECASE,
)


def parse_marktplaats(plain: str, html: str, subject: str, sender: str,
                      reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    source = "2dehands" if "2dehands" in (sender or "").lower() else "marktplaats"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored
    if _MARKTPLAATS_SEEN.search(subject or ""):
        return ParsedLeadRecord.ignored(source, "reactie bekeken")
    if _MARKTPLAATS_DIGEST.search(subject or ""):
        return ParsedLeadRecord.ignored(source, "digest")

    reader = FieldReader(plain, html)
    name = reader.text.search(_MARKTPLAATS_FROM, group=1) or reader.field("Van", "Naam")
    email = customer_email(
        reply_to, [reader.field("Antwoord-e-mail", "E-mailadres", "E-mail")],
    )
    message = isolate_message(
        reader.body,
        start_markers=[_MARKTPLAATS_FROM.pattern],
        end_markers=[r"Bekijk advertentie", r"\bVerkoper\b", r"Reageer (?:direct|op)"],
    ) or reader.section("Bericht")
    return build_contact(
        source,
        name=name,
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon"),
        vehicle=reader.field("Advertentie") or vehicle_from_subject(subject),
        vehicle_url=reader.listing_url(_MARKTPLAATS_URL, "Bekijk advertentie"),
        clean_message=tidy_message(message),
        trade_in=trade_in_block(reader),
        sub_type=sub_type_of(subject, message),
    )


# -------------------------------------------------------
# Financing partner
# -------------------------------------------------------

def parse_financing(plain: str, html: str, subject: str, sender: str,
                    reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    source = "findio"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored

    reader = FieldReader(plain, html)
    status = reader.field("Status", "Aanvraagstatus", "Uitslag")
    email = customer_email(
        reply_to, [reader.field("E-mailadres", "E-mail")], portal_domain="findio.nl",
    )
    message = reader.section("Toelichting", "Opmerkingen") or isolate_message(
        reader.body, start_markers=[r"Toelichting\s*:"],
    )
    return build_contact(
        source,
        name=reader.field("Naam aanvrager", "Naam klant", "Naam"),
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon"),
        vehicle=reader.field("Voertuig", "Auto", "Object") or vehicle_from_subject(subject),
        clean_message=tidy_message(message),
        lead_type=LeadType.FINANCIAL_LEAD,
        company_name=reader.field("Bedrijfsnaam", "Bedrijf", "Onderneming"),
        sub_type=f"financing {status.lower()}" if status else None,
    )


# -------------------------------------------------------
# Dealer website form
# -------------------------------------------------------

_FORM_NEXT_LABEL = r"\n[ \t*]*(?:Car URL|Auto URL|Onderwerp|Kenteken|Kilometerstand|Staat|Opmerkingen)\s*:"


def parse_website_form(plain: str, html: str, subject: str, sender: str,
                       reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    source = "website"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored

    reader = FieldReader(plain, html)
    topic = reader.field("Onderwerp", "Type aanvraag")
    car_url = reader.field("Car URL", "Auto URL", "Link")
    if car_url:
        m = _ANY_URL.search(car_url)
        car_url = m.group(0) if m else None
    message = reader.section("Bericht") or isolate_message(
        reader.body,
        start_markers=[r"\bBericht\s*:"],
        end_markers=[_FORM_NEXT_LABEL],
    )
    email = customer_email(
        reply_to, [reader.field("E-mailadres", "E-mail")], portal_domain="morgeninternet.nl",
    )
    return build_contact(
        source,
        name=reader.field("Naam", "Voor- en achternaam"),
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon"),
        vehicle=reader.field("Auto", "Voertuig") or vehicle_from_subject(subject),
        vehicle_url=car_url,
        clean_message=tidy_message(message),
        trade_in=trade_in_block(reader),
        sub_type=sub_type_of(subject, topic),
    )


# -------------------------------------------------------
# Fallback
# -------------------------------------------------------

def parse_generic(plain: str, html: str, subject: str, sender: str,
                  reply_to: Optional[str] = None) -> Optional[ParsedLeadRecord]:
    """Any sender: needs at least one email address somewhere."""
    source = "email"
    ignored = triage_receipt(subject, source)
    if ignored:
        return ignored

    reader = FieldReader(plain, html)
    email = customer_email(
        reply_to,
        [reader.field("E-mailadres", "E-mail", "Email"), first_email(reader.body)],
        sender=sender,
    )
    if not email:
        return None
    name = reader.field("Naam", "Name") or parseaddr(sender or "")[0] or "Onbekend"
    message = reader.section("Bericht", "Message") or isolate_message(reader.body)
    return build_contact(
        source,
        name=name,
        email=email,
        phone=reader.field("Telefoonnummer", "Telefoon", "Tel") or first_phone(reader.body),
        vehicle=vehicle_from_subject(subject),
        vehicle_url=None,
        clean_message=tidy_message(message),
        trade_in=trade_in_block(reader),
        sub_type=sub_type_of(subject),
    )
