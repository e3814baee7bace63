import httpx
import pytest

import parse_article as pa
from conftest import html_response, make_client

BASE = "https://example.com/post"


def page(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


# --- URL helpers ---


class TestToAbsolute:
    def test_absolute_urls_pass_through(self):
        assert pa.to_absolute("https://cdn.example.com/x.jpg", BASE) == "https://cdn.example.com/x.jpg"
        assert pa.to_absolute("http://other.org/a", BASE) == "http://other.org/a"

    def test_idempotent(self):
        for candidate in ("/img/x.png", "//cdn.example.com/x.jpg", "a/b.html", "https://x.org/"):
            once = pa.to_absolute(candidate, BASE)
            assert pa.to_absolute(once, BASE) == once

    def test_protocol_relative_takes_base_scheme(self):
        assert (
            pa.to_absolute("//cdn.example.com/x.jpg", "https://site.com/a")
            == "https://cdn.example.com/x.jpg"
        )
        assert pa.to_absolute("//cdn.example.com/x.jpg", "http://site.com/a") == "http://cdn.example.com/x.jpg"

    def test_root_relative(self):
        assert pa.to_absolute("/img/x.png", "https://site.com/a/b") == "https://site.com/img/x.png"

    def test_relative_segments(self):
        assert pa.to_absolute("x.png", "https://site.com/a/b") == "https://site.com/a/x.png"
        assert pa.to_absolute("../img/x.png", "https://site.com/a/b/c") == "https://site.com/a/img/x.png"

    def test_malformed_input_is_returned_unchanged(self):
        assert pa.to_absolute("x.png", "not a url") == "x.png"
        assert pa.to_absolute("/x.png", "http://[::1") == "/x.png"


def test_absolutize_srcset_keeps_descriptors():
    srcset = "/small.jpg 480w,  big.jpg 2x"
    assert (
        pa.absolutize_srcset(srcset, "https://site.com/p/")
        == "https://site.com/small.jpg 480w, https://site.com/p/big.jpg 2x"
    )


def test_is_valid_url():
    assert pa.is_valid_url("https://example.com/a.png")
    assert not pa.is_valid_url("/a.png")
    assert not pa.is_valid_url("http://[broken")
    assert not pa.is_valid_url("data:image/png;base64,AAAA")


# --- Content locator & sanitizer ---


class TestContent:
    def test_article_beats_main(self):
        html = page(body="<main><p>Main only</p></main><article><p>Article only</p></article>")
        article = pa.extract_article(html, BASE)
        assert "Article only" in article.content
        assert "Main only" not in article.content
        assert article.excerpt == "Article only"

    def test_first_article_wins(self):
        html = page(body="<article><p>First</p></article><article><p>Second</p></article>")
        article = pa.extract_article(html, BASE)
        assert "First" in article.content
        assert "Second" not in article.content

    def test_role_main_then_body_fallback(self):
        html = page(body='<div><p>Outside</p></div><div role="main"><p>Inside</p></div>')
        assert pa.extract_article(html, BASE).excerpt == "Inside"

        html = page(body="<div><p>Just a body</p></div>")
        assert pa.extract_article(html, BASE).excerpt == "Just a body"

    def test_strips_structural_tags(self):
        html = page(
            body="<article><nav>Menu</nav><p>Body text</p><script>var x = 1;</script>"
            "<footer>Copyright</footer><aside>Sidebar</aside><iframe src='/e'></iframe></article>"
        )
        content = pa.extract_article(html, BASE).content
        assert "Body text" in content
        for gone in ("Menu", "var x", "Copyright", "Sidebar", "<iframe"):
            assert gone not in content

    def test_strips_clutter_by_class_and_id(self):
        html = page(
            body='<article><p>Keep me</p><div class="social-share-box">Share this post</div>'
            '<div id="comments">Comment text</div><span class="newsletter-subscribe">Join</span></article>'
        )
        content = pa.extract_article(html, BASE).content
        assert "Keep me" in content
        assert "Share this post" not in content
        assert "Comment text" not in content
        assert "Join" not in content

    def test_clutter_match_is_case_sensitive(self):
        html = page(body='<article><div class="SHARE">Loud</div></article>')
        assert "Loud" in pa.extract_article(html, BASE).content

    def test_sanitizing_leaves_parsed_tree_alone(self):
        tree = pa.parse_html(page(body="<article><p>Text</p><script>x()</script></article>"))
        root = pa.locate_content_root(tree)
        cleaned = pa.sanitize_content(root, BASE)
        assert cleaned.select("script") == []
        assert len(root.select("script")) == 1

    def test_special_links_untouched(self):
        html = page(
            body='<article><a href="#section">A</a><a href="mailto:x@y.com">B</a>'
            '<a href="tel:+123">C</a><a href="/rel">D</a></article>'
        )
        content = pa.extract_article(html, BASE).content
        assert 'href="#section"' in content
        assert 'href="mailto:x@y.com"' in content
        assert 'href="tel:+123"' in content
        assert 'href="https://example.com/rel"' in content

    def test_images_made_absolute(self):
        html = page(
            body='<article><img src="/a.png" srcset="/a-1x.png 1x, //cdn.example.com/a-2x.png 2x"></article>'
        )
        content = pa.extract_article(html, BASE).content
        assert 'src="https://example.com/a.png"' in content
        assert (
            'srcset="https://example.com/a-1x.png 1x, https://cdn.example.com/a-2x.png 2x"'
            in content
        )

    def test_html_content_is_capped(self):
        html = page(body="<main><p>" + "x" * 600_000 + "</p></main>")
        content = pa.extract_article(html, BASE).content
        assert len(content) == 500_003
        assert content.endswith("...")

    def test_text_format_collapses_whitespace_and_caps(self):
        html = page(body="<article><p>One\n\n   two</p>\t<p>three</p></article>")
        assert pa.extract_article(html, BASE, pa.ContentFormat.TEXT).content == "One two three"

        html = page(body="<article><p>" + "word " * 30_000 + "</p></article>")
        content = pa.extract_article(html, BASE, "text").content
        assert len(content) == 100_003
        assert content.endswith("...")

    def test_excerpt_is_capped_at_300(self):
        html = page(body="<article><p>" + "lorem ipsum " * 100 + "</p></article>")
        excerpt = pa.extract_article(html, BASE).excerpt
        assert len(excerpt) <= 300
        assert excerpt.endswith("...")

    def test_empty_document(self):
        article = pa.extract_article("", BASE)
        assert article.content == ""
        assert article.excerpt == ""
        assert article.title == "Untitled"


# --- Field extractor ---


class TestFields:
    def test_og_title_beats_h1(self):
        html = page('<meta property="og:title" content="From OG">', "<h1>From H1</h1>")
        assert pa.extract_article(html, BASE).title == "From OG"

    def test_title_fallbacks(self):
        html = page('<meta name="twitter:title" content="Tweet title"><title>Tab</title>', "<h1>Heading</h1>")
        assert pa.extract_article(html, BASE).title == "Tweet title"

        html = page("<title>Tab</title>", "<h1>  Heading  </h1>")
        assert pa.extract_article(html, BASE).title == "Heading"

        html = page("<title> Tab </title>", "<p>no heading</p>")
        assert pa.extract_article(html, BASE).title == "Tab"

        assert pa.extract_article(page(body="<p>nothing</p>"), BASE).title == "Untitled"

    def test_blank_meta_falls_through(self):
        html = page('<meta property="og:title" content="   ">', "<h1>Heading</h1>")
        assert pa.extract_article(html, BASE).title == "Heading"

    def test_title_is_capped(self):
        html = page(f"<title>{'t' * 500}</title>")
        assert len(pa.extract_article(html, BASE).title) == 200

    def test_author_chain(self):
        html = page(
            '<meta property="article:author" content="Second"><meta name="author" content=" First ">'
        )
        assert pa.extract_article(html, BASE).author == "First"

        html = page(body='<article><a rel="author" href="/me">Jane Doe</a></article>')
        assert pa.extract_article(html, BASE).author == "Jane Doe"

        assert pa.extract_article(page(body="<p>x</p>"), BASE).author is None

    def test_image_is_absolutized(self):
        html = page('<meta property="og:image" content="/img/cover.png">')
        assert pa.extract_article(html, BASE).image_url == "https://example.com/img/cover.png"

    def test_image_falls_back_to_content_img(self):
        html = page(body='<main><img src="//cdn.example.com/hero.jpg"></main>')
        assert pa.extract_article(html, BASE).image_url == "https://cdn.example.com/hero.jpg"

    def test_invalid_image_is_dropped(self):
        html = page('<meta property="og:image" content="http://[broken">')
        assert pa.extract_article(html, BASE).image_url is None

    def test_published_at(self):
        html = page('<meta property="article:published_time" content="2024-03-01T12:00:00Z">')
        assert pa.extract_article(html, BASE).published_at == 1709294400000

        html = page(body='<time datetime="2024-03-01">March 1</time>')
        assert pa.extract_article(html, BASE).published_at == 1709251200000

    def test_unparseable_date_is_absent(self):
        html = page(body='<time datetime="not-a-date">whenever</time>')
        assert pa.extract_article(html, BASE).published_at is None

    @pytest.mark.parametrize("value", ["Monday", "March", "12:30", "2024-03"])
    def test_partial_date_is_absent(self, value):
        html = page(f'<meta property="article:published_time" content="{value}">')
        assert pa.extract_article(html, BASE).published_at is None

    def test_date_without_time_still_parses(self):
        assert pa.parse_timestamp("March 1, 2024") == 1709251200000


# --- Orchestration ---


class TestParseArticle:
    def test_end_to_end(self):
        html = page(
            '<meta property="og:title" content="Hello">',
            '<article><p>Some <a href="/rel">link</a> text.</p></article>',
        )
        client = make_client({BASE: html_response(html)})

        article = pa.parse_article(BASE, client=client)

        assert article.title == "Hello"
        assert 'href="https://example.com/rel"' in article.content
        assert article.excerpt == "Some link text."
        assert article.image_url is None
        assert article.to_dict()["title"] == "Hello"

    def test_sends_identifying_user_agent(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers["user-agent"]
            return html_response(page(body="<p>hi</p>"))

        client = httpx.Client(transport=httpx.MockTransport(handler))
        pa.parse_article(BASE, client=client)
        assert seen["ua"] == pa.USER_AGENT

    def test_http_error_status(self):
        client = make_client({BASE: httpx.Response(500)})
        with pytest.raises(pa.ArticleParseError, match="500 Internal Server Error") as exc_info:
            pa.parse_article(BASE, client=client)
        assert isinstance(exc_info.value.__cause__, pa.FetchError)
        assert exc_info.value.__cause__.status_code == 500

    def test_network_error(self):
        client = make_client({BASE: httpx.ConnectError("connection refused")})
        with pytest.raises(pa.ArticleParseError, match="connection refused") as exc_info:
            pa.parse_article(BASE, client=client)
        assert isinstance(exc_info.value.__cause__, pa.NetworkError)

    def test_extraction_failure_is_wrapped(self, monkeypatch):
        def explode(tree):
            raise RuntimeError("bad markup")

        monkeypatch.setattr(pa, "locate_content_root", explode)
        client = make_client({BASE: html_response(page(body="<p>x</p>"))})
        with pytest.raises(pa.ArticleParseError, match="Failed to parse article: bad markup") as exc_info:
            pa.parse_article(BASE, client=client)
        assert isinstance(exc_info.value.__cause__, pa.ExtractionError)

    def test_messageless_failure_reads_unknown_error(self, monkeypatch):
        def explode(tree):
            raise RuntimeError()

        monkeypatch.setattr(pa, "locate_content_root", explode)
        client = make_client({BASE: html_response(page(body="<p>x</p>"))})
        with pytest.raises(pa.ArticleParseError, match="Failed to parse article: Unknown error"):
            pa.parse_article(BASE, client=client)


# --- Bookmarks ---


class TestBookmarkMetadata:
    def test_normalize_url(self):
        assert pa.normalize_url("  example.com/a ") == "https://example.com/a"
        assert pa.normalize_url("http://example.com") == "http://example.com"

    def test_title_and_favicon(self):
        html = page('<title>Site</title><link rel="icon" href="static/icon.png">')
        client = make_client({"https://example.com/a/page": html_response(html)})

        meta = pa.fetch_bookmark_metadata("example.com/a/page", client=client)

        assert meta.title == "Site"
        assert meta.favicon_url == "https://example.com/a/static/icon.png"
        assert meta.normalized_url == "https://example.com/a/page"

    def test_defaults_to_hostname_and_favicon_ico(self):
        client = make_client({"https://example.com/x": html_response(page(body="<p>x</p>"))})
        meta = pa.fetch_bookmark_metadata("https://example.com/x", client=client)
        assert meta.title == "example.com"
        assert meta.favicon_url == "https://example.com/favicon.ico"

    def test_failure_is_wrapped(self):
        client = make_client({})
        with pytest.raises(pa.BookmarkMetadataError, match="Failed to fetch bookmark metadata: Failed to fetch: 404"):
            pa.fetch_bookmark_metadata("https://example.com/missing", client=client)


def test_render_markdown_has_frontmatter():
    article = pa.ParsedArticle(
        title='Say "hi"',
        content='<p>Some <a href="https://example.com/rel">link</a></p>',
        excerpt="Some link",
        author="Jane",
        published_at=1709294400000,
    )
    text = pa.render_markdown(article, BASE)
    assert text.startswith("---\ntitle: \"Say \\\"hi\\\"\"\n")
    assert "author: \"Jane\"" in text
    assert "date: 2024-03-01T12:00:00+00:00" in text
    assert "[link](https://example.com/rel)" in text
