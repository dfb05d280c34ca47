"""Plain-text extraction for knowledge base ingestion."""
from __future__ import annotations

from html.parser import HTMLParser
from pathlib import Path
from typing import List, Tuple
import csv
import io
import re

import httpx

from consilium.errors import ProviderError, ValidationError

TEXT_SUFFIXES = {".txt", ".md", ".markdown"}
HTML_SUFFIXES = {".html", ".htm"}
CSV_SUFFIXES = {".csv"}

_TITLE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)


class _TextExtractor(HTMLParser):
    block_tags = {"p", "li", "h1", "h2", "h3", "h4", "h5", "h6", "section", "div", "br", "tr"}

    def __init__(self) -> None:
        super().__init__()
        self.parts: List[str] = []
        self.skip = False

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in {"script", "style"}:
            self.skip = True
        if tag in self.block_tags and self.parts:
            self.parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in {"script", "style"}:
            self.skip = False

    def handle_data(self, data: str) -> None:
        if self.skip:
            return
        text = data.strip()
        if text:
            self.parts.append(text)


def extract_text(html: str) -> str:
    """Visible text of an HTML page, one line per block element."""
    parser = _TextExtractor()
    parser.feed(html)
    text = " ".join(parser.parts)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" ?\n ?", "\n", text)
    text = re.sub(r"\n{2,}", "\n", text)
    return text.strip()


def html_title(html: str, fallback: str) -> str:
    match = _TITLE.search(html)
    return match.group(1).strip() if match and match.group(1).strip() else fallback


def csv_to_text(raw: str) -> str:
    rows = csv.reader(io.StringIO(raw))
    lines = [", ".join(cell.strip() for cell in row if cell.strip()) for row in rows]
    return "\n".join(line for line in lines if line)


def read_document(path: Path) -> Tuple[str, str]:
    """Return ``(title, content)`` for a local document."""
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8", errors="replace")
    if suffix in TEXT_SUFFIXES:
        return path.stem, raw.strip()
    if suffix in HTML_SUFFIXES:
        return html_title(raw, path.stem), extract_text(raw)
    if suffix in CSV_SUFFIXES:
        return path.stem, csv_to_text(raw)
    raise ValidationError(f"Unsupported document type: {path.suffix or path.name}")


def fetch_document(url: str, timeout: float = 15.0) -> Tuple[str, str]:
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            resp = client.get(url)
            resp.raise_for_status()
            body = resp.text
    except httpx.HTTPError as exc:
        raise ProviderError(f"Fetching {url} failed: {exc}") from exc
    content_type = resp.headers.get("content-type", "")
    if "html" in content_type or body.lstrip().lower().startswith(("<!doctype", "<html")):
        return html_title(body, url), extract_text(body)
    return url, body.strip()
