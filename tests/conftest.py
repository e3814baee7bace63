import httpx
import pytest

import reader


def make_client(routes: dict) -> httpx.Client:
    """
    Client whose transport answers from routes: url -> httpx.Response,
    or an exception instance to raise. Unknown URLs get a 404.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        answer = routes.get(str(request.url))
        if answer is None:
            return httpx.Response(404)
        if isinstance(answer, Exception):
            raise answer
        # Fresh copy so the same route can be requested more than once
        return httpx.Response(
            answer.status_code, headers=answer.headers, content=answer.content
        )

    return httpx.Client(transport=httpx.MockTransport(handler))


def html_response(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"content-type": "text/html"})


def xml_response(body: str) -> httpx.Response:
    return httpx.Response(
        200, content=body.encode(), headers={"content-type": "application/rss+xml"}
    )


def rss(*links: str, title: str = "Example Feed") -> str:
    items = "".join(
        f"<item><title>Item {i}</title><link>{link}</link></item>"
        for i, link in enumerate(links, 1)
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link>{items}"
        "</channel></rss>"
    )


@pytest.fixture
def db(tmp_path):
    database = reader.Database(tmp_path / "reader.db")
    database.init()
    return database
