#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "httpx",
#     "beautifulsoup4",
#     "lxml",
#     "markdownify",
#     "python-dateutil",
# ]
# ///
"""
Fetch a URL and extract a clean article: title, author, publish date,
lead image, excerpt and sanitized content.

Usage:
    ./parse_article.py <url> [options]

Options:
    --text              Emit whitespace-normalized text instead of HTML
    --markdown, -m      Write markdown with frontmatter instead of printing JSON
    --output, -o DIR    Output directory for --markdown (default: ./fetched/<date>-<slug>)
    --timeout SECS      Request timeout (default: 10)

Example:
    ./parse_article.py https://example.com/article
    ./parse_article.py https://example.com/article --markdown -o ./my-article
"""

import argparse
import copy
import json
import logging
import re
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag
from dateutil import parser as date_parser
from markdownify import markdownify as md

log = logging.getLogger("parser")

# =============================================================================
# Configuration
# =============================================================================

USER_AGENT = "Mozilla/5.0 (compatible; SoraBot/1.0; +https://sora.app)"
FETCH_TIMEOUT = 10  # seconds

MAX_CONTENT_LENGTH = 500_000  # sanitized HTML
MAX_TEXT_CONTENT_LENGTH = 100_000  # plain text
MAX_EXCERPT_LENGTH = 300
MAX_TITLE_LENGTH = 200
ELLIPSIS = "..."
DEFAULT_TITLE = "Untitled"

# Two defaults differing in year, month and day; a date parsed the same under
# both was fully specified.
DATE_PROBE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))

# Content root candidates, highest priority first
CONTENT_ROOT_SELECTORS = ("article", "main", '[role="main"]', "body")

# Tags that never carry article content
STRIPPED_TAGS = (
    "script",
    "style",
    "nav",
    "header",
    "footer",
    "aside",
    "iframe",
    "noscript",
)

# Case-sensitive substrings of class/id values that mark promo or social clutter
CLUTTER_PATTERNS = (
    "ad",
    "advertisement",
    "social-share",
    "comments",
    "related-posts",
    "popup",
    "modal",
    "overlay",
    "webmention",
    "like",
    "reaction",
    "share",
    "follow",
    "subscribe",
    "repost",
)
CLUTTER_ATTRIBUTES = ("class", "id")

# Link targets left exactly as written
PRESERVED_HREF_PREFIXES = ("#", "mailto:", "tel:")

FAVICON_SELECTORS = (
    'link[rel="icon"]',
    'link[rel="shortcut icon"]',
    'link[rel="apple-touch-icon"]',
)


class ContentFormat(str, Enum):
    HTML = "html"
    TEXT = "text"


# =============================================================================
# Errors
# =============================================================================


class FetchError(Exception):
    """The server answered with a non-success status."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Failed to fetch: {status_code} {reason}".rstrip())


class NetworkError(Exception):
    """The request never got a response (DNS, TLS, timeout, reset)."""


class ExtractionError(Exception):
    """Querying or rewriting the parsed document failed."""


class ArticleParseError(Exception):
    """The only error parse_article() lets escape."""


class BookmarkMetadataError(Exception):
    pass


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class ParsedArticle:
    title: str
    content: str
    excerpt: str
    image_url: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[int] = None  # epoch milliseconds

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    status: int
    headers: dict[str, str]
    text: str
    content: bytes = b""


@dataclass(frozen=True)
class BookmarkMetadata:
    title: str
    favicon_url: str
    normalized_url: str


# =============================================================================
# Fetcher
# =============================================================================


def fetch_page(
    url: str,
    client: httpx.Client | None = None,
    timeout: float = FETCH_TIMEOUT,
    headers: dict[str, str] | None = None,
) -> FetchedPage:
    """
    GET a page once. No retries, no caching.

    Raises FetchError for non-2xx statuses and NetworkError when the
    transport fails.
    """
    request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
    try:
        if client is None:
            with httpx.Client(timeout=timeout, follow_redirects=True) as own_client:
                resp = own_client.get(url, headers=request_headers)
        else:
            resp = client.get(url, headers=request_headers, follow_redirects=True)
    except httpx.TransportError as e:
        raise NetworkError(f"Network error: {e}") from e

    if not resp.is_success:
        raise FetchError(resp.status_code, resp.reason_phrase)

    return FetchedPage(
        url=url,
        final_url=str(resp.url),
        status=resp.status_code,
        headers=dict(resp.headers),
        text=resp.text,
        content=resp.content,
    )


# =============================================================================
# Markup tree
# =============================================================================


class Node:
    """
    A parsed element with just the operations extraction needs: selector
    queries, attribute get/set, text, removal and serialization.
    """

    # Strings under these tags are code or styling, not readable text
    NON_TEXT_PARENTS = frozenset({"script", "style", "noscript", "template"})

    def __init__(self, tag: Tag):
        self._tag = tag

    @property
    def name(self) -> str:
        return self._tag.name

    @property
    def removed(self) -> bool:
        return self._tag.decomposed

    def select(self, selector: str) -> list["Node"]:
        return [Node(t) for t in self._tag.select(selector)]

    def select_one(self, selector: str) -> Optional["Node"]:
        found = self._tag.select_one(selector)
        return Node(found) if found is not None else None

    def get(self, attr: str) -> str | None:
        value = self._tag.get(attr)
        if isinstance(value, list):  # multi-valued attributes like class, rel
            return " ".join(value)
        return value

    def set(self, attr: str, value: str) -> None:
        self._tag[attr] = value

    def text(self) -> str:
        return "".join(
            s
            for s in self._tag.descendants
            if isinstance(s, NavigableString)
            and not isinstance(s, PreformattedString)  # comments, doctypes, CDATA
            and s.parent is not None
            and s.parent.name not in self.NON_TEXT_PARENTS
        )

    def remove(self) -> None:
        if not self._tag.decomposed:
            self._tag.decompose()

    def inner_html(self) -> str:
        return self._tag.decode_contents()

    def clone(self) -> "Node":
        return Node(copy.copy(self._tag))


def parse_html(html: str) -> Node:
    return Node(BeautifulSoup(html, "lxml"))


# =============================================================================
# URL helpers
# =============================================================================


def to_absolute(candidate: str, base_url: str) -> str:
    """Resolve candidate against base_url. Returns candidate untouched on bad input."""
    if candidate.startswith(("http://", "https://")):
        return candidate

    try:
        scheme = urlsplit(base_url).scheme
        if not scheme:
            return candidate
        # Protocol-relative (//cdn.example.com/x.jpg)
        if candidate.startswith("//"):
            return f"{scheme}:{candidate}"
        return urljoin(base_url, candidate)
    except ValueError:
        return candidate


def absolutize_srcset(srcset: str, base_url: str) -> str:
    """Rewrite the URL of each srcset candidate, keeping its descriptor (2x, 480w)."""
    candidates = []
    for candidate in srcset.split(","):
        parts = candidate.split()
        if parts:
            parts[0] = to_absolute(parts[0], base_url)
        candidates.append(" ".join(parts))
    return ", ".join(candidates)


def is_valid_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def absolutize_urls(root: Node, base_url: str) -> None:
    for img in root.select("img"):
        src = img.get("src")
        if src:
            img.set("src", to_absolute(src, base_url))
        srcset = img.get("srcset")
        if srcset:
            img.set("srcset", absolutize_srcset(srcset, base_url))

    for a in root.select("a[href]"):
        href = a.get("href")
        if href and not href.startswith(PRESERVED_HREF_PREFIXES):
            a.set("href", to_absolute(href, base_url))


# =============================================================================
# Content locator & sanitizer
# =============================================================================


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def truncate(text: str, limit: int) -> str:
    """Cut text at limit characters and mark the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def locate_content_root(tree: Node) -> Node | None:
    """First element matching the highest-priority selector, in document order."""
    for selector in CONTENT_ROOT_SELECTORS:
        node = tree.select_one(selector)
        if node is not None:
            return node
    return None


def is_clutter(value: str) -> bool:
    return any(pattern in value for pattern in CLUTTER_PATTERNS)


def sanitize_content(root: Node, base_url: str) -> Node:
    """
    Return a cleaned copy of root: non-content tags and promo/social
    clutter removed, image and link URLs made absolute. root itself is
    not modified.
    """
    content = root.clone()

    for node in content.select(", ".join(STRIPPED_TAGS)):
        node.remove()

    # Separate passes so a match on either attribute is enough
    for attr in CLUTTER_ATTRIBUTES:
        for node in content.select(f"[{attr}]"):
            if node.removed:  # inside something already dropped
                continue
            if is_clutter(node.get(attr) or ""):
                node.remove()

    absolutize_urls(content, base_url)
    return content


def render_content(
    root: Node | None, base_url: str, content_format: ContentFormat = ContentFormat.HTML
) -> str:
    if root is None:
        return ""
    cleaned = sanitize_content(root, base_url)
    if content_format == ContentFormat.TEXT:
        return truncate(collapse_whitespace(cleaned.text()), MAX_TEXT_CONTENT_LENGTH)
    return truncate(cleaned.inner_html().strip(), MAX_CONTENT_LENGTH)


def make_excerpt(root: Node | None) -> str:
    if root is None:
        return ""
    text = collapse_whitespace(root.text())
    if len(text) <= MAX_EXCERPT_LENGTH:
        return text
    return text[: MAX_EXCERPT_LENGTH - len(ELLIPSIS)].rstrip() + ELLIPSIS


# =============================================================================
# Field extractor
# =============================================================================

Lookup = Callable[[Node], Optional[str]]


def attr_of(selector: str, attr: str = "content") -> Lookup:
    def lookup(tree: Node) -> str | None:
        node = tree.select_one(selector)
        return node.get(attr) if node is not None else None

    return lookup


def text_of(selector: str) -> Lookup:
    def lookup(tree: Node) -> str | None:
        node = tree.select_one(selector)
        return node.text() if node is not None else None

    return lookup


def first_value(tree: Node, chain: tuple[Lookup, ...]) -> str | None:
    """Run lookups in order; the first non-blank result wins."""
    for lookup in chain:
        value = lookup(tree)
        if value and value.strip():
            return value.strip()
    return None


TITLE_CHAIN = (
    attr_of('meta[property="og:title"]'),
    attr_of('meta[name="twitter:title"]'),
    text_of("h1"),
    text_of("title"),
)
AUTHOR_CHAIN = (
    attr_of('meta[name="author"]'),
    attr_of('meta[property="article:author"]'),
    attr_of('meta[name="twitter:creator"]'),
    # First rel=author element only; joining every byline repeats names
    text_of('[rel="author"]'),
)
IMAGE_CHAIN = (
    attr_of('meta[property="og:image"]'),
    attr_of('meta[name="twitter:image"]'),
    attr_of("article img, main img", "src"),
)
PUBLISHED_CHAIN = (
    attr_of('meta[property="article:published_time"]'),
    attr_of('meta[name="publish-date"]'),
    attr_of("time[datetime]", "datetime"),
)


def extract_title(tree: Node) -> str:
    title = first_value(tree, TITLE_CHAIN) or DEFAULT_TITLE
    return title[:MAX_TITLE_LENGTH]


def extract_author(tree: Node) -> str | None:
    return first_value(tree, AUTHOR_CHAIN)


def extract_image(tree: Node, base_url: str) -> str | None:
    candidate = first_value(tree, IMAGE_CHAIN)
    if not candidate:
        return None
    image_url = to_absolute(candidate, base_url)
    return image_url if is_valid_url(image_url) else None


def parse_timestamp(value: str) -> int | None:
    """
    Parse a date string to epoch milliseconds. Naive values are taken as UTC.

    Year, month and day must all come from the string: "Monday" or "March"
    is absent, not filled in from today.
    """
    try:
        parsed, check = (date_parser.parse(value, default=d) for d in DATE_PROBE_DEFAULTS)
    except (ValueError, OverflowError):
        return None
    if parsed != check:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return int(parsed.timestamp() * 1000)
    except (OverflowError, OSError, ValueError):
        return None


def extract_published_at(tree: Node) -> int | None:
    date_string = first_value(tree, PUBLISHED_CHAIN)
    return parse_timestamp(date_string) if date_string else None


# =============================================================================
# Orchestration
# =============================================================================


def extract_article(
    html: str, base_url: str, content_format: ContentFormat = ContentFormat.HTML
) -> ParsedArticle:
    """Build a ParsedArticle from raw HTML. Raises ExtractionError on any failure."""
    try:
        tree = parse_html(html)
        root = locate_content_root(tree)
        return ParsedArticle(
            title=extract_title(tree),
            content=render_content(root, base_url, ContentFormat(content_format)),
            excerpt=make_excerpt(root),
            image_url=extract_image(tree, base_url),
            author=extract_author(tree),
            published_at=extract_published_at(tree),
        )
    except Exception as e:
        raise ExtractionError(str(e)) from e


def parse_article(
    url: str,
    client: httpx.Client | None = None,
    content_format: ContentFormat = ContentFormat.HTML,
    timeout: float = FETCH_TIMEOUT,
) -> ParsedArticle:
    """
    Fetch url and extract its article.

    Every failure (HTTP status, transport, extraction) comes out as
    ArticleParseError; a partial record is never returned.
    """
    try:
        page = fetch_page(url, client=client, timeout=timeout)
        article = extract_article(page.text, url, content_format)
    except Exception as e:
        message = str(e) or "Unknown error"
        raise ArticleParseError(f"Failed to parse article: {message}") from e

    byline = f" by {article.author}" if article.author else ""
    log.info(f'[parser] Parsed "{article.title}"{byline}')
    return article


# =============================================================================
# Bookmark metadata
# =============================================================================


def normalize_url(url: str) -> str:
    """Add https:// when the input has no http(s) scheme."""
    trimmed = url.strip()
    if trimmed.startswith(("http://", "https://")):
        return trimmed
    return f"https://{trimmed}"


def fetch_bookmark_metadata(
    url: str, client: httpx.Client | None = None
) -> BookmarkMetadata:
    """Fetch just the title and favicon for a bookmark."""
    try:
        normalized = normalize_url(url)
        parts = urlsplit(normalized)
        if not parts.netloc:
            raise ValueError(f"Invalid URL: {url}")
        origin = f"{parts.scheme}://{parts.netloc}"

        page = fetch_page(normalized, client=client)
        tree = parse_html(page.text)

        title = first_value(
            tree,
            (
                attr_of('meta[property="og:title"]'),
                attr_of('meta[name="twitter:title"]'),
                text_of("title"),
            ),
        )
        icon = first_value(tree, tuple(attr_of(s, "href") for s in FAVICON_SELECTORS))
        favicon_url = to_absolute(icon, normalized) if icon else f"{origin}/favicon.ico"

        return BookmarkMetadata(
            title=title or parts.hostname or normalized,
            favicon_url=favicon_url,
            normalized_url=normalized,
        )
    except Exception as e:
        message = str(e) or "Unknown error"
        raise BookmarkMetadataError(
            f"Failed to fetch bookmark metadata: {message}"
        ) from e


# =============================================================================
# Markdown export
# =============================================================================


def slugify(text: str) -> str:
    """Convert text to URL-friendly slug."""
    text = text.lower().strip()
    text = re.sub(r"\s+", "-", text)  # spaces to hyphens
    text = re.sub(r"[^\w\-]", "", text)  # remove non-word chars
    text = re.sub(r"-+", "-", text)  # collapse multiple hyphens
    text = text.strip("-")
    return text[:80] if text else "untitled"


def render_markdown(article: ParsedArticle, url: str) -> str:
    """Article as markdown with YAML frontmatter."""
    body = md(article.content, heading_style="ATX", code_language_callback=lambda _: "")
    # Linked images get split across lines by markdownify
    body = re.sub(r"\[\s*(!\[.*?\]\(.*?\))\s*\]\((.*?)\)", r"[\1](\2)", body)
    body = re.sub(r"\n{3,}", "\n\n", body).strip()

    def quoted(value: str) -> str:
        return '"' + value.replace('"', '\\"') + '"'

    frontmatter = [f"title: {quoted(article.title)}"]
    if article.author:
        frontmatter.append(f"author: {quoted(article.author)}")
    if article.published_at is not None:
        published = datetime.fromtimestamp(article.published_at / 1000, timezone.utc)
        frontmatter.append(f"date: {published.isoformat()}")
    frontmatter.append(f"source_url: {quoted(url)}")
    frontmatter.append(f"excerpt: {quoted(article.excerpt)}")
    if article.image_url:
        frontmatter.append(f"image: {quoted(article.image_url)}")

    header = "\n".join(frontmatter)
    return f"---\n{header}\n---\n\n[Original Link]({url})\n\n---\n\n{body}\n"


def write_markdown(article: ParsedArticle, url: str, output_dir: Path | None) -> Path:
    if output_dir is None:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        output_dir = Path("fetched") / f"{date_str}-{slugify(article.title)}"
    output_dir.mkdir(parents=True, exist_ok=True)
    output_file = output_dir / "index.md"
    output_file.write_text(render_markdown(article, url))
    return output_file


def main():
    parser = argparse.ArgumentParser(
        description="Fetch a URL and extract a clean article record"
    )
    parser.add_argument("url", help="URL to fetch")
    parser.add_argument(
        "--text", action="store_true", help="Plain text content instead of HTML"
    )
    parser.add_argument(
        "--markdown", "-m", action="store_true", help="Write markdown to a directory"
    )
    parser.add_argument(
        "--output", "-o", type=Path, help="Output directory", default=None
    )
    parser.add_argument(
        "--timeout", type=float, default=FETCH_TIMEOUT, help="Request timeout in seconds"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    content_format = ContentFormat.TEXT if args.text else ContentFormat.HTML

    try:
        article = parse_article(
            args.url, content_format=content_format, timeout=args.timeout
        )
    except ArticleParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.markdown:
        output_file = write_markdown(article, args.url, args.output)
        print(f"\nSaved: {output_file}")
        print(f"Title: {article.title}")
        print(f"Size:  {len(article.content)} chars")
    else:
        print(json.dumps(article.to_dict(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
