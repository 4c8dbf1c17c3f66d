"""Acquisition strategies: web search and page crawl."""

from .crawl import CrawlStrategy
from .html_extractor import extract_page_content
from .search import SearchStrategy
from .url_validator import UnsafeURLError, validate_source_url

__all__ = [
    "CrawlStrategy",
    "SearchStrategy",
    "extract_page_content",
    "UnsafeURLError",
    "validate_source_url",
]
