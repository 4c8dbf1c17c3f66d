"""
HTML to readable text for LLM extraction.

Strips page chrome (scripts, navigation, ads, popups), optionally narrows to
a content selector, keeps block structure as newlines and caps the result
so a page fits one extraction call.
"""

import re
from typing import Optional

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from ..models import PageContent

MAX_TEXT_CHARS = 15000
MAX_LINKS = 50
TRUNCATION_SUFFIX = "\n\n[Content truncated...]"

STRIP_SELECTORS = [
    "script", "style", "noscript", "iframe", "svg",
    "nav", "footer", "header",
    "[role='navigation']", "[role='banner']", "[role='contentinfo']",
    ".cookie-banner", ".cookie-consent",
    ".ad", ".ads", ".advertisement",
    ".social-share", ".sidebar", "#sidebar",
    ".newsletter-signup", ".popup", ".modal",
]

BLOCK_TAGS = ["p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "tr"]

_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_BLANK_LINES = re.compile(r"\n\s*\n")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


def extract_page_content(
    html: str,
    content_selector: Optional[str] = None,
    max_chars: int = MAX_TEXT_CHARS,
) -> PageContent:
    """
    Extract readable text, title and absolute links from an HTML page.

    Args:
        html: Raw page HTML
        content_selector: CSS selector for the events area; falls back to
                          <body> when it matches nothing
        max_chars: Text budget before truncation

    Returns:
        PageContent with cleaned text
    """
    soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = title_tag.get_text().strip() if title_tag else ""

    for selector in STRIP_SELECTORS:
        for element in soup.select(selector):
            element.decompose()

    scope = None
    if content_selector:
        try:
            scope = soup.select_one(content_selector)
        except SelectorSyntaxError:
            scope = None
    if scope is None:
        scope = soup.body or soup

    links: list[str] = []
    for anchor in scope.select("a[href]"):
        href = anchor.get("href", "")
        if href.startswith("http") and href not in links:
            links.append(href)
            if len(links) >= MAX_LINKS:
                break

    for br in scope.find_all("br"):
        br.replace_with("\n")
    for block in scope.find_all(BLOCK_TAGS):
        block.insert(0, "\n")

    text = scope.get_text()
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _BLANK_LINES.sub("\n\n", text)
    text = _EXTRA_NEWLINES.sub("\n\n", text)
    text = text.strip()

    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_SUFFIX

    return PageContent(text=text, title=title, links=links)
