import html
import re

from bs4 import BeautifulSoup

_TAG_HINT = re.compile(r"<[a-zA-Z/!]")


def strip_html(text: str) -> str:
    if not text:
        return ""
    if not _TAG_HINT.search(text):
        return html.unescape(text)
    soup = BeautifulSoup(text, "lxml")
    return soup.get_text(separator=" ", strip=True)


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def truncate_to_chars(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars].rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:") + "…"


def clean_text(text: str | None, max_chars: int | None = None) -> str | None:
    """Strip markup, decode entities and collapse whitespace; None stays None."""
    if text is None:
        return None
    cleaned = normalize_whitespace(strip_html(text))
    if max_chars is not None:
        cleaned = truncate_to_chars(cleaned, max_chars)
    return cleaned or None
