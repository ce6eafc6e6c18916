"""Lead Sentinel — field extraction.

Two layers behind one reader:
  - HtmlFields: structural lookups on the parsed HTML tree (label → the
    content that follows it, anchors by href shape or link text).
  - TextFields: line-oriented regex over the plain-text body.
FieldReader asks the HTML layer first and falls back to plain text only
when the structural lookup yields nothing.
"""
import logging
import re
from typing import Optional, Pattern

from bs4 import BeautifulSoup, NavigableString, Tag

logger = logging.getLogger("sentinel.leads.fields")

_INLINE_TAGS = {"b", "strong", "span", "em", "i", "u", "label", "font", "small"}
_BLOCK_TAGS = ["br", "p", "div", "tr", "li", "table", "h1", "h2", "h3", "h4"]


def _label_pattern(label: str) -> Pattern:
    """'Naam' matches 'Naam', 'Naam:', '*Naam:*', 'Naam: Jan' — not 'Naamloos'. One line at a time."""
    return re.compile(
        rf"^[ \t\r\xa0*]*{re.escape(label)}[ \t\r\xa0*]*(?::[ \t\r\xa0*]*(?P<value>[^\n]*?))?[ \t\r\xa0*]*$",
        re.IGNORECASE,
    )


def _squash(text: str) -> str:
    return re.sub(r"[ \t\xa0]+", " ", text).strip().strip("*").strip()


def html_to_text(html: Optional[str]) -> str:
    """Readable plain text from an HTML body (one line per block element)."""
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
    for tag in soup.find_all(["td", "th"]):
        tag.insert_before(" ")
    text = soup.get_text()
    lines = [_squash(line) for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


class HtmlFields:
    """Structural extraction on the HTML tree."""

    def __init__(self, html: Optional[str]):
        self.raw = html or ""
        self.soup = None
        if self.raw.strip():
            self.soup = BeautifulSoup(self.raw, "html.parser")
            for tag in self.soup(["script", "style", "head"]):
                tag.decompose()

    def _label_nodes(self, label: str):
        if self.soup is None:
            return
        rx = _label_pattern(label)
        for node in self.soup.find_all(string=True):
            # <pre> blocks and newline-separated sources hold several labels per node
            lines = str(node).split("\n")
            for i, line in enumerate(lines):
                match = rx.match(line)
                if match:
                    yield node, match, "\n".join(lines[i + 1:])
                    break

    @staticmethod
    def _text_after(el, separator: str) -> str:
        """Text of the siblings following `el` inside the same block."""
        parts = []
        for sib in el.next_siblings:
            if isinstance(sib, Tag) and sib.name == "br":
                # single-line values end at the first line break
                if separator == " " and "".join(parts).strip():
                    break
                parts.append("\n")
            elif isinstance(sib, NavigableString):
                parts.append(str(sib))
            elif isinstance(sib, Tag):
                parts.append(sib.get_text(separator))
        text = "".join(parts).lstrip(":* \t\n")
        if separator == " ":
            return _squash(text)
        return "\n".join(_squash(line) for line in text.split("\n")).strip()

    @staticmethod
    def _next_text(el: Tag, separator: str) -> Optional[str]:
        for sib in el.find_next_siblings():
            text = sib.get_text(separator, strip=True)
            if len(text) >= 2:
                return text
        return None

    def labeled(self, label: str, multiline: bool = False) -> Optional[str]:
        """
        Content that belongs to a label:
          <p>Naam: Jan</p>, <p><b>Naam:</b> Jan</p>,
          <td>Naam</td><td>Jan</td>, <tr><td>Bericht</td></tr><tr><td>…</td></tr>
        """
        separator = "\n" if multiline else " "
        for node, match, remainder in self._label_nodes(label):
            value = match.group("value")
            if value and value.strip():
                return _squash(value)
            if remainder.strip():
                # label alone on its line; the value follows inside the same node
                if multiline:
                    return "\n".join(_squash(line) for line in remainder.strip().split("\n"))
                return _squash(remainder.strip().split("\n")[0])
            el = node.parent
            if el is None:
                continue
            rest = self._text_after(node, separator)
            if not rest and el.name in _INLINE_TAGS:
                rest = self._text_after(el, separator)
            if rest:
                return rest
            # label cell / heading row: the content is in a following sibling
            scope = el
            for _ in range(3):
                if scope is None or scope.name == "[document]":
                    break
                text = self._next_text(scope, separator)
                if text:
                    return text
                scope = scope.parent
        return None

    def anchor_href(self, href_pattern: Optional[Pattern] = None,
                    link_text: Optional[str] = None) -> Optional[str]:
        if self.soup is None:
            return None
        for a in self.soup.find_all("a", href=True):
            href = a["href"].strip()
            if href_pattern is not None and href_pattern.search(href):
                return href
            if link_text and link_text.lower() in a.get_text(" ", strip=True).lower():
                return href
        return None

    def mailto_near(self, label: str) -> Optional[str]:
        """First mailto: link inside the element that carries `label` (or its parent)."""
        if self.soup is None:
            return None
        rx = re.compile(re.escape(label), re.IGNORECASE)
        for node in self.soup.find_all(string=rx):
            scope = node.parent
            for _ in range(3):
                if scope is None:
                    break
                link = scope.find("a", href=re.compile(r"^\s*mailto:", re.IGNORECASE))
                if link:
                    return link["href"].strip()[7:].split("?")[0].strip()
                scope = scope.parent
        return None

    def text(self) -> str:
        return html_to_text(self.raw)


class TextFields:
    """Line-oriented regex extraction on a plain-text body."""

    def __init__(self, text: Optional[str]):
        self.text = text or ""

    def labeled(self, label: str) -> Optional[str]:
        rx = re.compile(
            rf"^[ \t*>]*{re.escape(label)}[ \t*]*:[ \t*]*(\S[^\n]*?)[ \t*]*$",
            re.IGNORECASE | re.MULTILINE,
        )
        m = rx.search(self.text)
        return m.group(1).strip() if m else None

    def search(self, pattern: Pattern, group: int = 0) -> Optional[str]:
        m = pattern.search(self.text)
        return m.group(group).strip() if m else None


class FieldReader:
    """Per-field extraction: structural HTML first, plain-text regex second."""

    def __init__(self, plain: Optional[str], html: Optional[str]):
        self.html = HtmlFields(html)
        # HTML-only mails still get a text layer
        self.text = TextFields(plain if plain and plain.strip() else self.html.text())

    @property
    def body(self) -> str:
        return self.text.text

    def field(self, *labels: str) -> Optional[str]:
        for label in labels:
            value = self.html.labeled(label)
            if value:
                return value
        for label in labels:
            value = self.text.labeled(label)
            if value:
                return value
        return None

    def section(self, *headings: str) -> Optional[str]:
        """Multi-line block that follows a heading (HTML tree only)."""
        for heading in headings:
            value = self.html.labeled(heading, multiline=True)
            if value:
                return value
        return None

    def listing_url(self, href_pattern: Pattern, link_text: Optional[str] = None) -> Optional[str]:
        """Anchor with the portal's URL shape, then link text, then a raw scan."""
        href = self.html.anchor_href(href_pattern=href_pattern)
        if not href and link_text:
            href = self.html.anchor_href(link_text=link_text)
        if href:
            return href
        for haystack in (self.html.raw, self.text.text):
            m = href_pattern.search(haystack)
            if m:
                return m.group(0)
        return None
