"""Lead Sentinel — lead classifier.

Deterministic, first-match-wins rule table mapping a parsed record to a
temperature and tag. Urgency follows temperature; intent follows type.
"""
import logging
from typing import Callable, List, Tuple

from tools.ingest.models import (
    Classification,
    IGNORED_TYPES,
    LeadType,
    ParsedLeadRecord,
    SUBTYPE_CALLBACK,
    SUBTYPE_TEST_DRIVE,
)

logger = logging.getLogger("sentinel.leads.classifier")

Rule = Tuple[Callable[[ParsedLeadRecord], bool], str, str]

# (predicate, temperature, tag), evaluated in order
RULES: List[Rule] = [
    (lambda r: r.type is LeadType.FINANCIAL_LEAD, "hot", "financial_approved"),
    (lambda r: r.sub_type == SUBTYPE_TEST_DRIVE, "hot", "test_drive_request"),
    (lambda r: r.type is LeadType.TRADE_IN, "hot", "trade_in_request"),
    (lambda r: r.sub_type == SUBTYPE_CALLBACK, "warm", "callback_request"),
    (lambda r: r.type is LeadType.CONTACT and bool(r.vehicle or r.vehicle_url), "warm", "vehicle_inquiry"),
    (lambda r: r.type is LeadType.CONTACT, "warm", "general_inquiry"),
    (lambda r: r.type is LeadType.MISSED_CALL, "cold", "missed_call"),
    (lambda r: r.type in IGNORED_TYPES, "ice", "ignored"),
]

DEFAULT_RULE = ("warm", "general_inquiry")

_URGENCY = {"hot": "high", "warm": "medium"}

_INTENT = {
    LeadType.TRADE_IN: "trade-in-request",
    LeadType.FINANCIAL_LEAD: "financing-request",
}


def classify(record: ParsedLeadRecord) -> Classification:
    """Classify a parsed lead record.

    Args:
        record: Output of one of the source parsers.

    Returns:
        Classification with temperature, tag, urgency and intent.
    """
    temperature, tag = DEFAULT_RULE
    for predicate, temp, rule_tag in RULES:
        if predicate(record):
            temperature, tag = temp, rule_tag
            break

    result = Classification(
        temperature=temperature,
        tag=tag,
        urgency=_URGENCY.get(temperature, "low"),
        intent=_INTENT.get(record.type, "information-request"),
    )
    logger.debug(f"Classified {record.type}/{record.sub_type} → {temperature}/{tag}")
    return result
