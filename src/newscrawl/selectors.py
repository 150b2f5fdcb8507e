"""Ordered CSS selector fallback chains over parsed documents.

Every field of a source (list, title, lead, content, link, router) carries an
ordered list of selectors. Resolution walks the list in the order supplied and
stops at the first selector that produces a non-empty match, so a source with
unstable markup can list several candidates. Nothing here raises on a bad or
missing selector: a miss is ``None`` (or an empty list) and the caller decides
how severe it is.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Iterable

import soupsieve
from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from .errors import ValidationError
from .utils import normalize_text

COMMON_TAGS = ("a", "h1", "h2", "h3", "p", "div", "span", "article")
SUGGESTION_CLASS_HINTS = ("news", "article", "link")
MAX_SUGGESTIONS = 10
MAX_CLASS_SUGGESTIONS = 5


@dataclass(frozen=True)
class Match:
    selector: str
    text: str
    elements: list[Tag]


@dataclass(frozen=True)
class ElementInfo:
    text: str
    href: str | None
    tag_name: str
    class_name: str
    id: str
    element: Tag | None = None

    def to_dict(self, max_text: int | None = None) -> dict[str, object]:
        return {
            "text": self.text if max_text is None else self.text[:max_text],
            "href": self.href,
            "tag_name": self.tag_name,
            "class_name": self.class_name,
            "id": self.id,
        }


def resolve(
    document: BeautifulSoup | Tag,
    selectors: Iterable[str],
    *,
    join: bool = False,
) -> Match | None:
    """Return the first selector match whose text is non-empty.

    With ``join`` the text of every non-empty element of the winning selector
    is joined with newlines (body content split over several paragraphs);
    otherwise the first non-empty element's text is used.
    """
    for selector in selectors:
        elements = _select(document, selector)
        texts = [(el, element_text(el)) for el in elements]
        texts = [(el, text) for el, text in texts if text]
        if not texts:
            continue
        if join:
            text = "\n".join(text for _, text in texts)
        else:
            text = texts[0][1]
        return Match(selector=selector, text=text, elements=[el for el, _ in texts])
    return None


def resolve_all(document: BeautifulSoup | Tag, selectors: Iterable[str]) -> list[ElementInfo]:
    for selector in selectors:
        elements = _select(document, selector)
        if elements:
            return [describe_element(el) for el in elements]
    return []


def resolve_attr(element: Tag, selectors: Iterable[str], attr: str = "href") -> str | None:
    for selector in selectors:
        for candidate in _select_self_or_descendants(element, selector):
            value = candidate.get(attr)
            if isinstance(value, str) and value.strip():
                return value.strip()
    own = element.get(attr)
    if isinstance(own, str) and own.strip():
        return own.strip()
    if attr == "href":
        anchor = element.select_one("a[href]")
        if anchor is not None:
            href = anchor.get("href")
            if isinstance(href, str) and href.strip():
                return href.strip()
    return None


def describe_element(element: Tag) -> ElementInfo:
    href = element.get("href")
    classes = element.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    element_id = element.get("id") or ""
    return ElementInfo(
        text=element_text(element),
        href=href if isinstance(href, str) else None,
        tag_name=(element.name or "").lower(),
        class_name=" ".join(classes),
        id=element_id if isinstance(element_id, str) else "",
        element=element,
    )


def element_text(element: Tag) -> str:
    return normalize_text(element.get_text(" ", strip=True))


def sanitize_selector(selector: object) -> str:
    if not selector or not isinstance(selector, str):
        return ""
    cleaned = re.sub(r"\s+", " ", selector.strip())
    cleaned = re.sub(r"\.\s+", ".", cleaned)
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = re.sub(r",\s*,", ",", cleaned)
    cleaned = re.sub(r",\s*$", "", cleaned)
    cleaned = re.sub(r"^\s*,", "", cleaned)
    return cleaned.strip()


def coerce_selector_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return coerce_selector_list(parsed)
        return [text]
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, str) and item.strip():
                items.append(item.strip())
        return items
    raise ValidationError(f"selectors must be a string or a list, got {type(value).__name__}")


def validate_selector(selector: str) -> str:
    cleaned = sanitize_selector(selector)
    if not cleaned:
        raise ValidationError(f"empty selector: {selector!r}")
    try:
        soupsieve.compile(cleaned)
    except SelectorSyntaxError as exc:
        raise ValidationError(f"invalid selector {selector!r}: {exc}") from exc
    return cleaned


def validate_selectors(selectors: dict[str, object]) -> dict[str, list[str]]:
    validated: dict[str, list[str]] = {}
    for field_name, value in selectors.items():
        validated[field_name] = [validate_selector(item) for item in coerce_selector_list(value)]
    return validated


def suggest_selectors(document: BeautifulSoup | Tag) -> list[dict[str, object]]:
    suggestions: list[dict[str, object]] = []
    for tag in COMMON_TAGS:
        count = len(document.find_all(tag))
        if count:
            suggestions.append(
                {"selector": tag, "count": count, "description": f"all <{tag}> elements"}
            )
    class_names: list[str] = []
    for element in document.find_all(class_=True):
        for cls in element.get("class") or []:
            if cls in class_names:
                continue
            if any(hint in cls.lower() for hint in SUGGESTION_CLASS_HINTS):
                class_names.append(cls)
    for cls in class_names[:MAX_CLASS_SUGGESTIONS]:
        count = len(_select(document, f".{cls}"))
        if count:
            suggestions.append(
                {"selector": f".{cls}", "count": count, "description": f"elements with class {cls}"}
            )
    return suggestions[:MAX_SUGGESTIONS]


def _select(document: BeautifulSoup | Tag, selector: str) -> list[Tag]:
    selector = (selector or "").strip()
    if not selector:
        return []
    try:
        return list(document.select(selector))
    except (SelectorSyntaxError, ValueError, NotImplementedError):
        return []


def _select_self_or_descendants(element: Tag, selector: str) -> list[Tag]:
    selector = (selector or "").strip()
    if not selector:
        return []
    try:
        matches = list(element.select(selector))
        if soupsieve.match(selector, element):
            matches.insert(0, element)
    except (SelectorSyntaxError, ValueError, NotImplementedError):
        return []
    return matches
