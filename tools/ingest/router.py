"""Lead Sentinel — parser dispatch.

Priority-ordered table of (sender predicate, parser); first match wins,
unmatched senders go to the generic parser.
"""
import logging
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Callable, List, Optional

from config.settings import config
from tools.ingest.models import InboundMessage, ParsedLeadRecord
from tools.ingest.parsers import (
    ParserFn,
    parse_autoscout24,
    parse_autotrack,
    parse_financing,
    parse_generic,
    parse_marktplaats,
    parse_website_form,
)

logger = logging.getLogger("sentinel.leads.router")


@dataclass(frozen=True)
class Route:
    name: str
    matches: Callable[[str], bool]
    parser: ParserFn


def sender_contains(*needles: str) -> Callable[[str], bool]:
    """Case-insensitive substring predicate on the sender address."""
    lowered = [n.lower() for n in needles if n]

    def _match(sender: str) -> bool:
        sender = (sender or "").lower()
        return any(n in sender for n in lowered)

    return _match


def default_routes(financing_domain: Optional[str] = None,
                   website_domain: Optional[str] = None) -> List[Route]:
    return [
        Route("autotrack", sender_contains("autotrack.nl"), parse_autotrack),
        Route("autoscout24", sender_contains("autoscout24"), parse_autoscout24),
        Route("marktplaats", sender_contains("marktplaats.nl", "2dehands.be"), parse_marktplaats),
        Route("financing", sender_contains(financing_domain or config.gmail.financing_partner_domain),
              parse_financing),
        Route("website", sender_contains(website_domain or config.gmail.website_form_domain),
              parse_website_form),
    ]


GENERIC_ROUTE = Route("generic", lambda sender: True, parse_generic)


class ParserRouter:

    def __init__(self, routes: Optional[List[Route]] = None, fallback: Route = GENERIC_ROUTE):
        self.routes = routes if routes is not None else default_routes()
        self.fallback = fallback

    def route_for(self, sender: str) -> Route:
        # Match on the bare address; display names are free text
        address = parseaddr(sender or "")[1] or sender or ""
        for route in self.routes:
            if route.matches(address):
                return route
        return self.fallback

    def parse(self, message: InboundMessage) -> Optional[ParsedLeadRecord]:
        route = self.route_for(message.sender)
        logger.debug(f"{message.message_id}: routed to {route.name} parser")
        return route.parser(
            message.plain_body,
            message.html_body,
            message.subject,
            message.sender,
            message.reply_to,
        )
