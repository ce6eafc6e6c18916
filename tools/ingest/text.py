"""Lead Sentinel — text helpers shared by the source parsers."""
import re
from typing import Iterable, Optional, Pattern, Sequence, Tuple

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

# Dutch/Belgian numbers: +31 / 0031 / +32 / 0, then 9 digits with optional separators
PHONE_RE = re.compile(r"(?:\+3[12]|003[12]|0)[\s\-]?(?:\(0\))?[\s\-]?[1-9](?:[\s\-]?\d){7,8}")

# Footers and sign-offs that end the customer's own words
FOOTER_MARKERS = [
    r"Met vriendelijke groet",
    r"Vriendelijke groet",
    r"Klik hier om",
    r"Dit bericht is automatisch gegenereerd",
    r"Voor meer informatie",
    r"Bekijk (?:de )?advertentie",
    r"Je ontvangt deze e-?mail",
    r"Afmelden",
    r"Unsubscribe",
    r"Verzonden vanaf",
    r"Sent from",
    r"Get Outlook for",
    r"Disclaimer",
]

_MAX_MESSAGE_CHARS = 1200


def split_name(full_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'Jan de Vries' → ('Jan', 'de Vries'); 'Jan' → ('Jan', 'Jan')."""
    if not full_name:
        return None, None
    tokens = full_name.replace("*", " ").split()
    if not tokens:
        return None, None
    first = tokens[0]
    last = " ".join(tokens[1:]) or first
    return first, last


def first_email(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = EMAIL_RE.search(text)
    return m.group(0) if m else None


def first_phone(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = PHONE_RE.search(text)
    return compact_phone(m.group(0)) if m else None


def compact_phone(phone: Optional[str]) -> Optional[str]:
    """Strip separators but keep a leading '+'."""
    if not phone:
        return None
    phone = phone.strip()
    compact = re.sub(r"[^\d+]", "", phone.replace("(0)", ""))
    return compact or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Canonical digits-only form used for matching. '+' and '00' country
    prefixes compare equal (+32 470… == 0032 470…); Dutch numbers fold to
    the national form (+31 6… == 06…).
    """
    compact = compact_phone(phone)
    if not compact:
        return None
    if compact.startswith("+"):
        digits = "00" + compact.lstrip("+")
    else:
        digits = compact.replace("+", "")
    if digits.startswith("0031"):
        digits = "0" + digits[4:]
    return digits or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().strip("<>").strip()
    if email.lower().startswith("mailto:"):
        email = email[7:]
    email = email.split("?")[0]
    return email.lower() if EMAIL_RE.fullmatch(email) else None


def _compile_all(markers: Iterable[str]) -> Sequence[Pattern]:
    return [re.compile(m, re.IGNORECASE) for m in markers]


def isolate_message(
    text: Optional[str],
    start_markers: Sequence[str] = (),
    end_markers: Sequence[str] = (),
    drop_lines: Sequence[str] = (),
) -> Optional[str]:
    """
    Cut the customer's free text out of a templated body.

    Starts after the earliest start marker (the whole text if none is given
    or none matches), ends at the earliest end/footer marker, drops lines
    matching `drop_lines`, collapses runs of blank lines.
    """
    if not text:
        return None

    body = text
    if start_markers:
        starts = [m.search(body) for m in _compile_all(start_markers)]
        starts = [m for m in starts if m]
        if not starts:
            return None
        body = body[min(starts, key=lambda m: m.start()).end():]

    ends = [m.search(body) for m in _compile_all(list(end_markers) + FOOTER_MARKERS)]
    ends = [m for m in ends if m]
    if ends:
        body = body[:min(m.start() for m in ends)]

    return tidy_message(body, drop_lines)


def tidy_message(body: Optional[str], drop_lines: Sequence[str] = ()) -> Optional[str]:
    if not body:
        return None
    droppers = _compile_all(drop_lines)
    lines = []
    for line in body.replace("\r\n", "\n").split("\n"):
        line = line.strip().strip("*").strip()
        if re.fullmatch(r"[-_=]{3,}", line):
            continue
        if any(d.search(line) for d in droppers):
            continue
        lines.append(line)
    cleaned = "\n".join(lines)
    cleaned = re.sub(r"^[\s:]+", "", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    if len(cleaned) > _MAX_MESSAGE_CHARS:
        cleaned = cleaned[:_MAX_MESSAGE_CHARS].rstrip() + "..."
    return cleaned or None
