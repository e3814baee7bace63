#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "httpx",
#     "fastapi",
#     "uvicorn",
#     "feedparser",
#     "beautifulsoup4",
#     "lxml",
#     "markdownify",
#     "python-dateutil",
# ]
# ///
"""
Read-it-later service: save articles by URL, tag them, and subscribe to
RSS/Atom feeds whose new entries are saved automatically.

Articles are extracted with parse_article.py and stored in sqlite. A
background poller imports every subscribed feed once per interval.

Usage:
    ./reader.py                  # Start server (localhost:8000)
    ./reader.py --public         # Bind to all interfaces (0.0.0.0)
    ./reader.py --port 8080      # Custom port
    ./reader.py --import-feeds   # Import all feeds once and exit

Environment variables (optionally from .env next to this file):
    READER_DATA_DIR       - Directory for the sqlite database (default: ./.reader_data)
    READER_OWNER          - Owner id articles and feeds are saved under (default: local)
    READER_FEED_INTERVAL  - Minutes between feed imports (default: 60)
    READER_FETCH_TIMEOUT  - Seconds allowed per outbound request (default: 10)
"""

import argparse
import asyncio
import json
import logging
import math
import os
import sqlite3
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import feedparser
import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from parse_article import (
    ArticleParseError,
    BookmarkMetadataError,
    FetchError,
    NetworkError,
    ParsedArticle,
    fetch_bookmark_metadata,
    fetch_page,
    parse_article,
    parse_html,
    to_absolute,
)


class ColoredFormatter(logging.Formatter):
    """Timestamp, colored level and a fixed-width [prefix] column."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    PREFIX_COLORS = {
        "http": "\033[34m",
        "fetch": "\033[34m",
        "feeds": "\033[35m",
        "parser": "\033[36m",
        "poller": "\033[33m",
    }
    RESET = "\033[0m"
    PREFIX_WIDTH = 8

    def format(self, record):
        level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{record.levelname:<7}{self.RESET}"
        prefix, msg = self._split_prefix(record)
        color = self.PREFIX_COLORS.get(prefix, "")
        column = f"{color}[{prefix:<{self.PREFIX_WIDTH}}]{self.RESET}"
        return f"{self.formatTime(record, self.datefmt)} {level} {column} {msg}"

    def _split_prefix(self, record) -> tuple[str, str]:
        """Prefix comes from the logger name or a leading [tag] in the message."""
        msg = record.getMessage()
        if record.name.startswith("uvicorn"):
            return "http", msg
        if record.name.startswith("httpx"):
            return "fetch", msg
        if msg.startswith("["):
            end = msg.find("]")
            if end > 0:
                return msg[1:end], msg[end + 1 :].lstrip()
        return "main", msg


def setup_logging():
    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False


setup_logging()
log = logging.getLogger("reader")

# =============================================================================
# Configuration
# =============================================================================

_env_file = Path(__file__).parent / ".env"
if _env_file.exists():
    for line in _env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())

DATA_DIR = Path(os.environ.get("READER_DATA_DIR", Path(__file__).parent / ".reader_data"))
DB_FILE = DATA_DIR / "reader.db"

DEFAULT_OWNER = os.environ.get("READER_OWNER", "local")
FEED_INTERVAL_MINUTES = int(os.environ.get("READER_FEED_INTERVAL", "60"))
FETCH_TIMEOUT = float(os.environ.get("READER_FETCH_TIMEOUT", "10"))

FEED_USER_AGENT = "Sora/1.0 (RSS Reader)"
MAX_FEED_ITEMS = 20  # newest entries considered per import
FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")
COMMON_FEED_PATHS = ("/feed", "/rss", "/atom", "/feed.xml", "/rss.xml")

WORDS_PER_MINUTE = 200


def now_ms() -> int:
    return int(time.time() * 1000)


def calculate_reading_time(text: str) -> int:
    """Minutes to read text at 200 wpm, rounded up, never less than 1."""
    words = len(text.split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


# =============================================================================
# Errors
# =============================================================================


class DuplicateArticleError(Exception):
    pass


class DuplicateSubscriptionError(Exception):
    pass


class FeedError(Exception):
    pass


# =============================================================================
# Database Schema & Operations
# =============================================================================

SCHEMA = """
-- Saved articles (metadata only; content lives in article_content)
CREATE TABLE IF NOT EXISTS articles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    excerpt TEXT,
    image_url TEXT,
    author TEXT,
    published_at INTEGER,  -- epoch ms
    reading_time_minutes INTEGER DEFAULT 1,
    saved_at INTEGER NOT NULL,  -- epoch ms
    read_at INTEGER,
    archived INTEGER DEFAULT 0,
    favorited INTEGER DEFAULT 0,
    tags TEXT DEFAULT '[]',  -- JSON list of display names
    UNIQUE (user_id, url)
);

CREATE TABLE IF NOT EXISTS article_content (
    article_id INTEGER PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
    content TEXT NOT NULL
);

-- Per-user tags; name is the lowercase key, display_name the first spelling seen
CREATE TABLE IF NOT EXISTS tags (
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    count INTEGER DEFAULT 0,
    last_used_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, name)
);

CREATE TABLE IF NOT EXISTS feed_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    feed_url TEXT NOT NULL,
    feed_title TEXT NOT NULL,
    site_url TEXT,
    subscribed_at INTEGER NOT NULL,
    last_fetched_at INTEGER,
    UNIQUE (user_id, feed_url)
);

CREATE INDEX IF NOT EXISTS idx_articles_user_saved ON articles(user_id, saved_at DESC);
"""


def _article_row(row: sqlite3.Row) -> dict:
    article = dict(row)
    article["tags"] = json.loads(article["tags"] or "[]")
    article["archived"] = bool(article["archived"])
    article["favorited"] = bool(article["favorited"])
    return article


def dedupe_tags(tags) -> list[str]:
    """Trim and drop case-insensitive duplicates, keeping the last spelling."""
    unique: dict[str, str] = {}
    for tag in tags:
        tag = tag.strip()
        if tag:
            unique[tag.lower()] = tag
    return list(unique.values())


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn"):
            self._local.conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn.execute("PRAGMA synchronous = NORMAL")  # Safe with WAL
            self._local.conn.execute("PRAGMA busy_timeout = 5000")  # Wait 5s for locks
        return self._local.conn

    def init(self):
        conn = self._get_conn()
        conn.executescript(SCHEMA)
        conn.commit()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self._get_conn().execute(sql, params)

    def commit(self):
        self._get_conn().commit()

    def rollback(self):
        self._get_conn().rollback()

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    # --- Articles ---

    def article_id_for(self, user_id: str, url: str) -> Optional[int]:
        row = self.fetchone(
            "SELECT id FROM articles WHERE user_id = ? AND url = ?", (user_id, url)
        )
        return row["id"] if row else None

    def article_exists(self, user_id: str, url: str) -> bool:
        return self.article_id_for(user_id, url) is not None

    def save_article(
        self,
        user_id: str,
        url: str,
        article: ParsedArticle,
        tags=(),
        allow_existing: bool = False,
    ) -> int:
        """
        Store a parsed article for user_id and return its id.

        A URL the user already saved raises DuplicateArticleError, unless
        allow_existing is set, in which case the existing id is returned.
        """
        existing = self.article_id_for(user_id, url)
        if existing is not None:
            if allow_existing:
                return existing
            raise DuplicateArticleError("Article already saved")

        text = parse_html(article.content).text()
        try:
            stored_tags = [self._touch_tag(user_id, tag) for tag in dedupe_tags(tags)]
            stored_tags = dedupe_tags(stored_tags)
            for tag in stored_tags:
                self._adjust_tag_count(user_id, tag, 1)

            cursor = self.execute(
                """
                INSERT INTO articles (user_id, url, title, excerpt, image_url, author,
                                      published_at, reading_time_minutes, saved_at, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    url,
                    article.title,
                    article.excerpt,
                    article.image_url,
                    article.author,
                    article.published_at,
                    calculate_reading_time(text),
                    now_ms(),
                    json.dumps(stored_tags),
                ),
            )
            article_id = cursor.lastrowid
            self.execute(
                "INSERT INTO article_content (article_id, content) VALUES (?, ?)",
                (article_id, article.content),
            )
        except sqlite3.IntegrityError as e:
            # Another thread saved the same URL after the check above
            self.rollback()
            existing = self.article_id_for(user_id, url)
            if allow_existing and existing is not None:
                return existing
            raise DuplicateArticleError("Article already saved") from e
        except sqlite3.Error:
            self.rollback()
            raise
        self.commit()
        return article_id

    def get_article(self, user_id: str, article_id: int) -> Optional[dict]:
        row = self.fetchone(
            """
            SELECT a.*, c.content FROM articles a
            LEFT JOIN article_content c ON c.article_id = a.id
            WHERE a.id = ? AND a.user_id = ?
            """,
            (article_id, user_id),
        )
        return _article_row(row) if row else None

    def list_articles(
        self,
        user_id: str,
        tag: Optional[str] = None,
        archived: Optional[bool] = None,
        limit: int = 50,
    ) -> list[dict]:
        sql = "SELECT * FROM articles WHERE user_id = ?"
        params: list = [user_id]
        if archived is not None:
            sql += " AND archived = ?"
            params.append(int(archived))
        sql += " ORDER BY saved_at DESC, id DESC"
        rows = [_article_row(r) for r in self.fetchall(sql, tuple(params))]
        if tag:
            wanted = tag.strip().lower()
            rows = [r for r in rows if wanted in (t.lower() for t in r["tags"])]
        return rows[:limit]

    def update_article(
        self,
        user_id: str,
        article_id: int,
        read_at: Optional[int] = None,
        archived: Optional[bool] = None,
        favorited: Optional[bool] = None,
    ) -> bool:
        updates = {}
        if read_at is not None:
            updates["read_at"] = read_at
        if archived is not None:
            updates["archived"] = int(archived)
        if favorited is not None:
            updates["favorited"] = int(favorited)
        if not self.get_article(user_id, article_id):
            return False
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.execute(
                f"UPDATE articles SET {assignments} WHERE id = ? AND user_id = ?",
                (*updates.values(), article_id, user_id),
            )
            self.commit()
        return True

    def delete_article(self, user_id: str, article_id: int) -> bool:
        article = self.get_article(user_id, article_id)
        if not article:
            return False
        for tag in article["tags"]:
            self._adjust_tag_count(user_id, tag, -1)
        self.execute("DELETE FROM article_content WHERE article_id = ?", (article_id,))
        self.execute("DELETE FROM articles WHERE id = ?", (article_id,))
        self.commit()
        return True

    def add_tag(self, user_id: str, article_id: int, tag: str) -> list[str]:
        article = self.get_article(user_id, article_id)
        if not article:
            raise KeyError(article_id)
        if not tag.strip():
            raise ValueError("Tag cannot be empty")
        display = self._touch_tag(user_id, tag)
        tags = article["tags"]
        if display.lower() not in (t.lower() for t in tags):
            tags.append(display)
            self._adjust_tag_count(user_id, display, 1)
            self._set_tags(article_id, tags)
        self.commit()
        return tags

    def remove_tag(self, user_id: str, article_id: int, tag: str) -> list[str]:
        article = self.get_article(user_id, article_id)
        if not article:
            raise KeyError(article_id)
        key = tag.strip().lower()
        remaining = [t for t in article["tags"] if t.lower() != key]
        if len(remaining) == len(article["tags"]):
            raise ValueError("Tag not found on this article")
        self._adjust_tag_count(user_id, tag, -1)
        self._set_tags(article_id, remaining)
        self.commit()
        return remaining

    def _set_tags(self, article_id: int, tags: list[str]):
        self.execute(
            "UPDATE articles SET tags = ? WHERE id = ?", (json.dumps(tags), article_id)
        )

    # --- Tags ---

    def _touch_tag(self, user_id: str, tag: str) -> str:
        """Create the tag or bump last_used_at; returns the stored display name."""
        name = tag.strip().lower()
        now = now_ms()
        row = self.fetchone(
            "SELECT display_name FROM tags WHERE user_id = ? AND name = ?",
            (user_id, name),
        )
        if row:
            self.execute(
                "UPDATE tags SET last_used_at = ? WHERE user_id = ? AND name = ?",
                (now, user_id, name),
            )
            return row["display_name"]
        self.execute(
            """
            INSERT INTO tags (user_id, name, display_name, count, last_used_at, created_at)
            VALUES (?, ?, ?, 0, ?, ?)
            """,
            (user_id, name, tag.strip(), now, now),
        )
        return tag.strip()

    def _adjust_tag_count(self, user_id: str, tag: str, delta: int):
        self.execute(
            "UPDATE tags SET count = MAX(0, count + ?) WHERE user_id = ? AND name = ?",
            (delta, user_id, tag.strip().lower()),
        )

    def list_tags(self, user_id: str) -> list[dict]:
        rows = self.fetchall(
            """
            SELECT name, display_name, count, last_used_at, created_at FROM tags
            WHERE user_id = ?
            ORDER BY count DESC, last_used_at DESC
            """,
            (user_id,),
        )
        return [dict(r) for r in rows]

    # --- Feed subscriptions ---

    def create_subscription(
        self,
        user_id: str,
        feed_url: str,
        feed_title: str,
        site_url: Optional[str] = None,
    ) -> int:
        try:
            cursor = self.execute(
                """
                INSERT INTO feed_subscriptions (user_id, feed_url, feed_title, site_url, subscribed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, feed_url, feed_title, site_url, now_ms()),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateSubscriptionError("Already subscribed to this feed") from e
        self.commit()
        return cursor.lastrowid

    def list_subscriptions(self, user_id: str) -> list[dict]:
        rows = self.fetchall(
            "SELECT * FROM feed_subscriptions WHERE user_id = ? ORDER BY subscribed_at DESC, id DESC",
            (user_id,),
        )
        return [dict(r) for r in rows]

    def all_subscriptions(self) -> list[dict]:
        return [dict(r) for r in self.fetchall("SELECT * FROM feed_subscriptions ORDER BY id")]

    def unsubscribe(self, user_id: str, subscription_id: int) -> bool:
        cursor = self.execute(
            "DELETE FROM feed_subscriptions WHERE id = ? AND user_id = ?",
            (subscription_id, user_id),
        )
        self.commit()
        return cursor.rowcount > 0

    def mark_feed_fetched(self, subscription_id: int):
        self.execute(
            "UPDATE feed_subscriptions SET last_fetched_at = ? WHERE id = ?",
            (now_ms(), subscription_id),
        )
        self.commit()

    def get_stats(self, user_id: str) -> dict:
        row = self.fetchone(
            """
            SELECT COUNT(*) AS articles,
                   COALESCE(SUM(archived), 0) AS archived,
                   COALESCE(SUM(read_at IS NOT NULL), 0) AS read
            FROM articles WHERE user_id = ?
            """,
            (user_id,),
        )
        feeds = self.fetchone(
            "SELECT COUNT(*) AS n FROM feed_subscriptions WHERE user_id = ?", (user_id,)
        )
        return {**dict(row), "feeds": feeds["n"]}


# =============================================================================
# Feeds
# =============================================================================


@dataclass
class FeedImportResult:
    feed_url: str
    saved: list[int] = field(default_factory=list)
    skipped: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)  # (url, message)

    def summary(self) -> dict:
        return {
            "feed_url": self.feed_url,
            "saved": len(self.saved),
            "skipped": self.skipped,
            "failed": len(self.failures),
        }


def _get_feed(feed_url: str, client: httpx.Client | None) -> feedparser.FeedParserDict:
    try:
        page = fetch_page(
            feed_url,
            client=client,
            timeout=FETCH_TIMEOUT,
            headers={"User-Agent": FEED_USER_AGENT},
        )
    except FetchError as e:
        raise FeedError(f"Failed to fetch feed: HTTP {e.status_code}") from e
    except NetworkError as e:
        raise FeedError(f"Failed to fetch feed: {e}") from e
    return feedparser.parse(page.content)


def fetch_feed_links(feed_url: str, client: httpx.Client | None = None) -> list[str]:
    """Article links of the newest entries in a feed."""
    feed = _get_feed(feed_url, client)
    links = []
    for entry in feed.entries[:MAX_FEED_ITEMS]:
        link = entry.get("link")
        if link:
            links.append(link)
    return links


def import_feed(
    db: Database, subscription: dict, client: httpx.Client | None = None
) -> FeedImportResult:
    """
    Save new entries of one subscribed feed for its owner.

    Each entry is isolated: a failed extraction is logged and recorded,
    and the remaining entries are still processed.
    """
    feed_url = subscription["feed_url"]
    user_id = subscription["user_id"]
    result = FeedImportResult(feed_url=feed_url)

    for url in fetch_feed_links(feed_url, client):
        if db.article_exists(user_id, url):
            result.skipped += 1
            continue
        try:
            article = parse_article(url, client=client, timeout=FETCH_TIMEOUT)
        except ArticleParseError as e:
            log.warning(f"[feeds] Failed to save {url}: {e}")
            result.failures.append((url, str(e)))
            continue
        try:
            result.saved.append(db.save_article(user_id, url, article, allow_existing=True))
        except (DuplicateArticleError, sqlite3.Error) as e:
            log.warning(f"[feeds] Failed to store {url}: {e}")
            result.failures.append((url, str(e)))

    db.mark_feed_fetched(subscription["id"])
    log.info(
        f"[feeds] {feed_url}: saved {len(result.saved)}, skipped {result.skipped}, failed {len(result.failures)}"
    )
    return result


def import_all_feeds(
    db: Database, client: httpx.Client | None = None
) -> list[FeedImportResult]:
    """Import every subscription; one broken feed never stops the rest."""
    subscriptions = db.all_subscriptions()
    log.info(f"[feeds] Importing {len(subscriptions)} feeds...")
    results = []
    for sub in subscriptions:
        try:
            results.append(import_feed(db, sub, client))
        except Exception as e:
            log.error(f"[feeds] Error importing {sub['feed_url']}: {e}")
    log.info("[feeds] Import complete")
    return results


def discover_feed(
    article_url: str, client: httpx.Client | None = None
) -> tuple[str, str, str]:
    """
    Find the feed for the site an article lives on.

    Looks for RSS/Atom <link> tags first, then probes common feed paths.
    Returns (feed_url, feed_title, site_url).
    """
    try:
        page = fetch_page(article_url, client=client, timeout=FETCH_TIMEOUT)
    except (FetchError, NetworkError) as e:
        raise FeedError(f"Failed to fetch article: {e}") from e

    parts = urlsplit(article_url)
    origin = f"{parts.scheme}://{parts.netloc}"

    feed_url = None
    feed_title = None
    tree = parse_html(page.text)
    for link in tree.select("link[type][href]"):
        if link.get("type") in FEED_LINK_TYPES:
            feed_url = to_absolute(link.get("href").strip(), article_url)
            feed_title = link.get("title") or "RSS Feed"
            break

    if feed_url is None:
        for path in COMMON_FEED_PATHS:
            candidate = f"{origin}{path}"
            try:
                probe = fetch_page(candidate, client=client, timeout=FETCH_TIMEOUT)
            except (FetchError, NetworkError):
                continue
            if "xml" in probe.headers.get("content-type", ""):
                feed_url = candidate
                feed_title = parts.netloc
                break

    if feed_url is None:
        raise FeedError("No RSS feed found for this site")

    feed = _get_feed(feed_url, client)
    if feed.bozo and not feed.entries and not feed.feed.get("title"):
        raise FeedError(f"Not a valid feed: {feed_url}")

    title = feed.feed.get("title") or feed_title or "RSS Feed"
    site_url = feed.feed.get("link") or origin
    return feed_url, title, site_url


def subscribe_to_feed(
    db: Database, user_id: str, article_url: str, client: httpx.Client | None = None
) -> dict:
    """Discover a site's feed, subscribe user_id to it, and import it right away."""
    feed_url, feed_title, site_url = discover_feed(article_url, client)
    subscription_id = db.create_subscription(user_id, feed_url, feed_title, site_url)
    log.info(f"[feeds] Subscribed to {feed_url}")

    subscription = {"id": subscription_id, "user_id": user_id, "feed_url": feed_url}
    try:
        result = import_feed(db, subscription, client)
        imported = len(result.saved)
    except FeedError as e:
        log.warning(f"[feeds] Initial import of {feed_url} failed: {e}")
        imported = 0

    return {
        "id": subscription_id,
        "feed_url": feed_url,
        "feed_title": feed_title,
        "site_url": site_url,
        "imported": imported,
    }


async def feed_poller(db: Database, stop_event: asyncio.Event, interval_minutes: int = 60):
    """Background task that imports all feeds at the top of each interval."""
    log.info(f"[poller] started (interval: {interval_minutes}m)")

    while not stop_event.is_set():
        now = datetime.now()
        minutes_until_next = interval_minutes - (now.minute % interval_minutes)
        seconds_until_next = minutes_until_next * 60 - now.second

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds_until_next)
            break  # Stop event was set
        except asyncio.TimeoutError:
            pass  # Time to import

        log.info(f"[poller] Scheduled import at {datetime.now().strftime('%H:%M:%S')}")
        try:
            await asyncio.to_thread(import_all_feeds, db, app.state.http_client)
        except Exception as e:
            log.error(f"[poller] Import error: {e}")

    log.info("[poller] stopped")


# =============================================================================
# FastAPI Application
# =============================================================================

db: Database = None
poller_task: asyncio.Task = None
stop_event: asyncio.Event = None
last_import: dict = {"status": "idle"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global db, poller_task, stop_event

    db = Database(DB_FILE)
    db.init()
    stop_event = asyncio.Event()
    poller_task = asyncio.create_task(
        feed_poller(db, stop_event, app.state.feed_interval)
    )
    log.info(f"Server ready - http://127.0.0.1:{app.state.port}")

    yield

    log.info("Shutting down...")
    stop_event.set()
    poller_task.cancel()
    try:
        await poller_task
    except asyncio.CancelledError:
        pass
    log.info("Shutdown complete")


app = FastAPI(lifespan=lifespan)
app.state.feed_interval = FEED_INTERVAL_MINUTES
app.state.port = 8000
app.state.owner = DEFAULT_OWNER
app.state.http_client = None  # None: each call opens its own httpx.Client


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
        else:
            client_ip = request.client.host if request.client else "-"

        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000
        log.info(
            f'[http] {client_ip} "{request.method} {request.url.path}" {response.status_code} {duration_ms:.0f}ms'
        )
        return response


app.add_middleware(RequestLoggingMiddleware)


class SaveArticleRequest(BaseModel):
    url: str
    tags: list[str] = []


class UpdateArticleRequest(BaseModel):
    read_at: Optional[int] = None
    archived: Optional[bool] = None
    favorited: Optional[bool] = None


class TagRequest(BaseModel):
    tag: str


class UrlRequest(BaseModel):
    url: str


def _owner() -> str:
    return app.state.owner


# --- Articles ---


@app.post("/api/articles", status_code=201)
def save_article(body: SaveArticleRequest):
    url = body.url.strip()
    if db.article_exists(_owner(), url):
        raise HTTPException(409, "Article already saved")
    log.info(f"[parser] Parsing article: {url}")
    try:
        article = parse_article(url, client=app.state.http_client, timeout=FETCH_TIMEOUT)
    except ArticleParseError as e:
        raise HTTPException(422, str(e))
    try:
        article_id = db.save_article(_owner(), url, article, body.tags)
    except DuplicateArticleError as e:
        raise HTTPException(409, str(e))
    log.info(f"Saved article with ID: {article_id}")
    return {"id": article_id}


@app.get("/api/articles")
def list_articles(
    tag: Optional[str] = None,
    archived: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=100),
):
    return db.list_articles(_owner(), tag=tag, archived=archived, limit=limit)


@app.get("/api/articles/{article_id}")
def get_article(article_id: int):
    article = db.get_article(_owner(), article_id)
    if not article:
        raise HTTPException(404, "Article not found")
    return article


@app.patch("/api/articles/{article_id}")
def update_article(article_id: int, body: UpdateArticleRequest):
    if not db.update_article(
        _owner(),
        article_id,
        read_at=body.read_at,
        archived=body.archived,
        favorited=body.favorited,
    ):
        raise HTTPException(404, "Article not found")
    return {"ok": True}


@app.delete("/api/articles/{article_id}")
def delete_article(article_id: int):
    if not db.delete_article(_owner(), article_id):
        raise HTTPException(404, "Article not found")
    return {"ok": True}


@app.post("/api/articles/{article_id}/tags")
def add_article_tag(article_id: int, body: TagRequest):
    try:
        tags = db.add_tag(_owner(), article_id, body.tag)
    except KeyError:
        raise HTTPException(404, "Article not found")
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"tags": tags}


@app.delete("/api/articles/{article_id}/tags/{tag}")
def remove_article_tag(article_id: int, tag: str):
    try:
        tags = db.remove_tag(_owner(), article_id, tag)
    except KeyError:
        raise HTTPException(404, "Article not found")
    except ValueError as e:
        raise HTTPException(404, str(e))
    return {"tags": tags}


@app.get("/api/tags")
def list_tags():
    return db.list_tags(_owner())


# --- Bookmarks ---


@app.post("/api/bookmarks/metadata")
def bookmark_metadata(body: UrlRequest):
    try:
        meta = fetch_bookmark_metadata(body.url, client=app.state.http_client)
    except BookmarkMetadataError as e:
        raise HTTPException(422, str(e))
    return {
        "title": meta.title,
        "favicon_url": meta.favicon_url,
        "normalized_url": meta.normalized_url,
    }


# --- Feeds ---


@app.get("/api/feeds")
def list_feeds():
    return db.list_subscriptions(_owner())


@app.post("/api/feeds", status_code=201)
def subscribe(body: UrlRequest):
    try:
        return subscribe_to_feed(db, _owner(), body.url.strip(), app.state.http_client)
    except DuplicateSubscriptionError as e:
        raise HTTPException(409, str(e))
    except FeedError as e:
        raise HTTPException(422, str(e))


@app.delete("/api/feeds/{subscription_id}")
def unsubscribe(subscription_id: int):
    if not db.unsubscribe(_owner(), subscription_id):
        raise HTTPException(404, "Subscription not found")
    return {"ok": True}


@app.post("/api/feeds/fetch")
def trigger_import():
    """Import every subscribed feed now instead of waiting for the poller."""
    global last_import

    results = import_all_feeds(db, app.state.http_client)
    last_import = {
        "status": "done",
        "at": now_ms(),
        "feeds": [r.summary() for r in results],
    }
    return last_import


# --- Stats and Status ---


@app.get("/api/status")
def get_status():
    return {
        "owner": _owner(),
        "feed_interval_minutes": app.state.feed_interval,
        "last_import": last_import,
        "stats": db.get_stats(_owner()),
    }


# =============================================================================
# Main
# =============================================================================


async def main_async(args):
    global db

    DATA_DIR.mkdir(parents=True, exist_ok=True)
    db = Database(DB_FILE)
    db.init()

    if args.import_feeds:
        for result in await asyncio.to_thread(import_all_feeds, db):
            log.info(f"[feeds] {result.summary()}")
        return

    app.state.port = args.port
    app.state.feed_interval = args.feed_interval

    host = "0.0.0.0" if args.public else "127.0.0.1"
    log.info(f"Starting server on http://{host}:{args.port} (owner: {app.state.owner})")

    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=args.port,
        log_level="info",
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    await server.serve()


def main():
    parser = argparse.ArgumentParser(description="Read-it-later service")
    parser.add_argument("--port", type=int, default=8000, help="Server port")
    parser.add_argument(
        "--public", action="store_true", help="Bind to 0.0.0.0 (all interfaces)"
    )
    parser.add_argument(
        "--import-feeds",
        action="store_true",
        help="Import all subscribed feeds once and exit",
    )
    parser.add_argument(
        "--feed-interval",
        type=int,
        default=FEED_INTERVAL_MINUTES,
        help=f"Minutes between feed imports (default: {FEED_INTERVAL_MINUTES})",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args))
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass  # Graceful shutdown already handled in lifespan


if __name__ == "__main__":
    main()
