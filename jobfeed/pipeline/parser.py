"""Tolerant XML feed parsing.

Job feeds in the wild are frequently broken: stray ``&``, unquoted
attributes, byte-order marks, HTML pasted into elements. Parsing therefore
runs in tiers:

1. **Cleaned strict parse**: `clean_xml` repairs the common defects and
   `xml.etree.ElementTree` parses the result.
2. **Lenient parse**: `aggressive_clean` drops every attribute and unwraps
   CDATA, then BeautifulSoup's ``html.parser`` builder, which never rejects
   input, builds the tree.
3. **Regex fallback**: `extract_items_by_regex` pattern-matches ``<item>``,
   ``<entry>`` or ``<job>`` blocks straight out of the raw text.

Tiers 1 and 2 produce a `StructuredParse`; tier 3 produces a
`FallbackParse`. Both carry loose ``dict`` items, which only the normalizer
turns into typed records.

The tree shape mirrors a permissive XML-to-dict conversion: tag names are
lower-cased with namespace prefixes removed, attributes are ignored (except
``href`` on an empty leaf), a leaf element becomes its stripped text, an
element with children becomes a dict (mixed-in text under ``"#text"``), and
repeated child tags become lists.
"""

import html
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Literal

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag
from pydantic import BaseModel, Field

from jobfeed.errors import MalformedFeedError

logger = logging.getLogger(__name__)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
TEXT_KEY = "#text"

# (shape name, path from the document root to the item list); first match wins.
FEED_SHAPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("rss", ("rss", "channel", "item")),
    ("atom", ("feed", "entry")),
    ("jobs", ("jobs", "job")),
    ("rdf", ("rdf", "item")),
)

_CDATA_SPLIT_RE = re.compile(r"(<!\[CDATA\[.*?\]\]>)", re.DOTALL)
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_OPEN_TAG_RE = re.compile(r"<([A-Za-z][\w:.-]*)(\s[^<>]*?)?(/?)>")
_ATTR_RE = re.compile(r"""([\w:.-]+)\s*=\s*("[^"]*"|'[^']*'|[^\s"'<>`]*)""")
_BARE_AMP_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")

# Elements html.parser treats as void; their text ends up in the next sibling.
_VOID_TAGS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "param", "source", "track", "wbr"}
)
_NON_TEXT_STRINGS = (Comment, ProcessingInstruction, Declaration, Doctype)


class StructuredParse(BaseModel):
    """Items recovered from a parsed XML tree."""

    kind: Literal["structured"] = "structured"
    items: list[dict[str, Any]] = Field(default_factory=list)
    shape: str | None = None
    lenient: bool = Field(default=False, description="True when the second, lenient pass produced the tree.")

    @property
    def used_fallback(self) -> bool:
        return False


class FallbackParse(BaseModel):
    """Items recovered by regex after structured parsing produced nothing."""

    kind: Literal["fallback"] = "fallback"
    items: list[dict[str, Any]] = Field(default_factory=list)
    reason: str = ""

    @property
    def used_fallback(self) -> bool:
        return True


ParsedFeed = StructuredParse | FallbackParse


def _outside_cdata(text: str, fn) -> str:
    """Apply ``fn`` to every segment of ``text`` that is not a CDATA section."""
    parts = _CDATA_SPLIT_RE.split(text)
    return "".join(part if i % 2 else fn(part) for i, part in enumerate(parts))


def _quote_attribute(match: re.Match) -> str:
    name, value = match.group(1), match.group(2)
    if value[:1] in ('"', "'"):
        return match.group(0)
    return f'{name}="{value}"'


def _repair_attributes(segment: str) -> str:
    def fix_tag(match: re.Match) -> str:
        name, attrs, self_closing = match.group(1), match.group(2) or "", match.group(3)
        if attrs:
            attrs = _ATTR_RE.sub(_quote_attribute, attrs)
        return f"<{name}{attrs}{self_closing}>"

    return _OPEN_TAG_RE.sub(fix_tag, segment)


def clean_xml(text: str) -> str:
    """Repair common defects so a strict XML parser has a chance.

    Strips BOM and NUL characters, quotes unquoted attribute values, gives
    valueless attributes an empty value, escapes ``&`` that does not start an
    entity, and prepends an XML declaration when there is none. CDATA
    sections are left untouched.
    """
    cleaned = text.replace("\x00", "").lstrip("\ufeff").lstrip()
    cleaned = _outside_cdata(cleaned, lambda s: _BARE_AMP_RE.sub("&amp;", _repair_attributes(s)))
    if not cleaned.startswith("<?xml"):
        cleaned = f"{XML_DECLARATION}\n{cleaned}"
    return cleaned


def aggressive_clean(text: str) -> str:
    """Strip every attribute and unwrap CDATA into escaped text."""
    cleaned = text.replace("\x00", "").replace("\ufeff", "")
    cleaned = _CDATA_RE.sub(lambda m: html.escape(m.group(1), quote=False), cleaned)
    return _OPEN_TAG_RE.sub(lambda m: f"<{m.group(1)}{m.group(3)}>", cleaned)


def _local_name(tag: str) -> str:
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    if ":" in tag:
        tag = tag.rsplit(":", 1)[1]
    return tag.strip().lower()


def _add_child(node: dict[str, Any], key: str, value: Any) -> None:
    if key not in node:
        node[key] = value
    elif isinstance(node[key], list):
        node[key].append(value)
    else:
        node[key] = [node[key], value]


def _etree_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        text = (element.text or "").strip()
        # Atom-style <link href="..."/>
        return text or element.attrib.get("href", "").strip()
    node: dict[str, Any] = {}
    text = "".join([element.text or ""] + [child.tail or "" for child in children]).strip()
    if text:
        node[TEXT_KEY] = text
    for child in children:
        if not isinstance(child.tag, str):
            continue
        _add_child(node, _local_name(child.tag), _etree_to_value(child))
    return node


def _soup_text(tag: Tag) -> str:
    return "".join(
        str(s) for s in tag.descendants if isinstance(s, NavigableString) and not isinstance(s, _NON_TEXT_STRINGS)
    ).strip()


def _soup_to_value(tag: Tag) -> Any:
    if not any(isinstance(c, Tag) for c in tag.children):
        return _soup_text(tag)
    node: dict[str, Any] = {}
    text_parts: list[str] = []
    pending_void: str | None = None
    for child in tag.children:
        if isinstance(child, Tag):
            key = _local_name(child.name)
            if key in _VOID_TAGS and not child.contents:
                pending_void = key
                continue
            _add_child(node, key, _soup_to_value(child))
            pending_void = None
        elif isinstance(child, NavigableString) and not isinstance(child, _NON_TEXT_STRINGS):
            if pending_void is not None and str(child).strip():
                _add_child(node, pending_void, str(child).strip())
            else:
                text_parts.append(str(child))
            pending_void = None
    if pending_void is not None:
        _add_child(node, pending_void, "")
    text = "".join(text_parts).strip()
    if text:
        node[TEXT_KEY] = text
    return node


def find_items(tree: dict[str, Any]) -> tuple[str | None, list[dict[str, Any]]]:
    """Locate the item list in a parsed tree; returns ``(shape, items)``."""
    for shape, path in FEED_SHAPES:
        node: Any = tree
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
            if node is None:
                break
        if not node:
            continue
        candidates = node if isinstance(node, list) else [node]
        items = [item for item in candidates if isinstance(item, dict)]
        if items:
            return shape, items
    return None, []


def _regex_field(block: str, *tags: str) -> str | None:
    for tag in tags:
        match = re.search(rf"<{tag}(?=[\s/>])[^>]*>(.*?)</{tag}\s*>", block, re.IGNORECASE | re.DOTALL)
        if match:
            value = _CDATA_RE.sub(lambda m: m.group(1), match.group(1))
            return html.unescape(value).strip()
    return None


def extract_items_by_regex(text: str) -> list[dict[str, Any]]:
    """Pull job items out of raw markup without parsing it.

    The first of ``<item>``, ``<entry>`` and ``<job>`` that matches at least
    once decides the block type. Each block yields a dict holding whichever of
    ``title``, ``description``, ``link``, ``company``, ``location`` and
    ``guid`` could be found.
    """
    fields = {
        "title": ("title",),
        "description": ("description", "summary", "content"),
        "link": ("link",),
        "company": ("company", "employer", "organization"),
        "location": ("location", "city", "place"),
        "guid": ("guid", "id"),
    }
    for tag in ("item", "entry", "job"):
        blocks = re.findall(rf"<{tag}(?=[\s/>])[^>]*>(.*?)</{tag}\s*>", text, re.IGNORECASE | re.DOTALL)
        if not blocks:
            continue
        items: list[dict[str, Any]] = []
        for block in blocks:
            item: dict[str, Any] = {}
            for key, tags in fields.items():
                value = _regex_field(block, *tags)
                if value:
                    item[key] = value
            if "link" not in item:
                href = re.search(r"""<link(?=[\s/>])[^>]*href\s*=\s*["']([^"']+)["']""", block, re.IGNORECASE)
                if href:
                    item["link"] = href.group(1).strip()
            items.append(item)
        return items
    return []


class FeedParser:
    """Turn raw feed text into loose item dicts, degrading instead of failing."""

    def parse_tree(self, text: str) -> tuple[dict[str, Any], bool]:
        """Parse ``text`` into a dict tree; returns ``(tree, lenient)``.

        Raises:
            MalformedFeedError: If neither the strict nor the lenient pass
                produced a tree.
        """
        try:
            root = ET.fromstring(clean_xml(text))
            return {_local_name(root.tag): _etree_to_value(root)}, False
        except ET.ParseError as first:
            logger.info("Strict XML parse failed (%s); retrying with aggressive cleaning", first)
            try:
                soup = BeautifulSoup(aggressive_clean(text), "html.parser")
                tree: dict[str, Any] = {}
                for top in soup.find_all(True, recursive=False):
                    _add_child(tree, _local_name(top.name), _soup_to_value(top))
            except Exception as second:
                logger.error("XML parsing failed even with aggressive cleaning: %s", second)
                logger.debug("Problematic XML sample: %s...", text[:500])
                raise MalformedFeedError(f"Failed to parse XML after cleaning attempts: {first}") from second
            if not tree:
                raise MalformedFeedError(f"Failed to parse XML after cleaning attempts: {first}")
            return tree, True

    def parse(self, text: str) -> StructuredParse:
        """Parse ``text`` and locate its items in a known feed shape."""
        tree, lenient = self.parse_tree(text)
        shape, items = find_items(tree)
        return StructuredParse(items=items, shape=shape, lenient=lenient)

    def parse_feed(self, text: str) -> ParsedFeed:
        """Structured parse with the regex extractor as last resort.

        When structured parsing fails or finds no items the regex extractor
        runs; its items become a `FallbackParse`. A document that parses but
        yields nothing from either path is an empty feed, not an error.

        Raises:
            MalformedFeedError: If the text is unparseable and the regex
                extractor also found nothing.
        """
        structured: StructuredParse | None = None
        try:
            structured = self.parse(text)
            if structured.items:
                return structured
            reason = "no items found in any known feed shape"
        except MalformedFeedError as e:
            reason = str(e)

        items = extract_items_by_regex(text)
        if items:
            logger.warning("Recovered %s item(s) with regex fallback (%s)", len(items), reason)
            return FallbackParse(items=items, reason=reason)
        if structured is not None:
            return structured
        raise MalformedFeedError(reason)
