import os
import threading

import pytest
import requests

from crawler import default_url_filter, local_path_for, mirror_site
from errors import FetchFailed
from tests.conftest import FakeResponse, FakeSiteSession, html_page

SEED = "https://www.example.com/"


def example_site():
    return {
        SEED: html_page(
            '<a href="/about">About</a>'
            '<a href="https://other.org/x">Elsewhere</a>'
            '<a href="#top">Top</a>'
            '<a href="mailto:me@example.com">Mail</a>'
            '<img src="/img/logo.png">'
            '<link rel="stylesheet" href="/css/site.css">'
            '<link rel="canonical" href="https://www.example.com/">'
        ),
        "https://www.example.com/about": html_page(
            '<a href="/">Home</a><a href="/deep#section">Deeper</a>'
        ),
        "https://www.example.com/deep": html_page('<a href="/deeper">Even deeper</a>'),
        "https://www.example.com/css/site.css": FakeResponse(
            content="body { background: url('../img/bg.png'); }",
            headers={"Content-Type": "text/css"},
        ),
        "https://www.example.com/img/logo.png": FakeResponse(content=b"\x89PNG-logo", headers={"Content-Type": "image/png"}),
        "https://www.example.com/img/bg.png": FakeResponse(content=b"\x89PNG-bg", headers={"Content-Type": "image/png"}),
    }


def read(root, rel):
    with open(os.path.join(root, *rel.split("/")), encoding="utf-8") as f:
        return f.read()


def test_mirror_respects_depth_filter_and_rewrites_links(tmp_path):
    session = FakeSiteSession(example_site())
    dest = str(tmp_path / "site")

    result = mirror_site(SEED, dest, "example.com", max_depth=1, session=session)

    assert "https://other.org/x" not in session.requested
    assert "https://www.example.com/deep" not in session.requested
    assert session.headers["User-Agent"] == "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"
    assert result.pages == 2
    assert result.assets == 3
    assert sorted(set(result.files.values())) == [
        "about.html", "css/site.css", "img/bg.png", "img/logo.png", "index.html",
    ]

    index = read(dest, "index.html")
    assert 'href="about.html"' in index
    assert 'src="img/logo.png"' in index
    assert 'href="css/site.css"' in index
    assert 'href="https://other.org/x"' in index

    about = read(dest, "about.html")
    assert 'href="index.html"' in about
    # /deep was beyond the depth limit, so its link stays online
    assert 'href="/deep#section"' in about

    assert "url('../img/bg.png')" in read(dest, "css/site.css")


def test_mirror_follows_links_to_max_depth(tmp_path):
    session = FakeSiteSession(example_site())
    dest = str(tmp_path / "site")

    mirror_site(SEED, dest, "example.com", max_depth=2, session=session)

    assert "https://www.example.com/deep" in session.requested
    assert "https://www.example.com/deeper" not in session.requested
    assert 'href="deep.html#section"' in read(dest, "about.html")


def test_seed_http_error_fails_the_crawl(tmp_path):
    session = FakeSiteSession({SEED: FakeResponse(status_code=503)})

    with pytest.raises(FetchFailed, match="HTTP 503"):
        mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session)


def test_missing_child_page_is_skipped(tmp_path):
    routes = {SEED: html_page('<a href="/gone">Gone</a>')}
    session = FakeSiteSession(routes)

    result = mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session)

    assert result.skipped == ["https://www.example.com/gone"]
    assert result.pages == 1


def test_network_error_fails_the_crawl(tmp_path):
    routes = example_site()
    routes["https://www.example.com/about"] = requests.exceptions.ConnectionError("connection reset")
    session = FakeSiteSession(routes)

    with pytest.raises(FetchFailed) as excinfo:
        mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session)
    assert isinstance(excinfo.value.__cause__, requests.exceptions.ConnectionError)


def test_cancelled_crawl_fetches_nothing(tmp_path):
    session = FakeSiteSession(example_site())
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(FetchFailed, match="cancelled"):
        mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session, cancel=cancel)
    assert session.requested == []


def test_expired_deadline_fails_the_crawl(tmp_path):
    session = FakeSiteSession(example_site())

    with pytest.raises(FetchFailed, match="timed out"):
        mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session, deadline=0)


def test_resource_limit_stops_quietly(tmp_path):
    session = FakeSiteSession(example_site())

    result = mirror_site(SEED, str(tmp_path / "site"), "example.com", session=session, max_resources=2)

    assert len(set(result.files.values())) == 2


@pytest.mark.parametrize("url, is_html, expected", [
    ("https://www.example.com/", True, "index.html"),
    ("https://www.example.com", True, "index.html"),
    ("https://www.example.com/docs/", True, "docs/index.html"),
    ("https://www.example.com/docs/intro", True, "docs/intro.html"),
    ("https://www.example.com/page.htm", True, "page.htm"),
    ("https://www.example.com/files/report.pdf", False, "files/report.pdf"),
    ("https://cdn.example.com/app.js", False, "cdn.example.com/app.js"),
    ("https://www.example.com/../../etc/passwd", False, "_/_/etc/passwd"),
])
def test_local_path_for(url, is_html, expected):
    assert local_path_for(url, "www.example.com", is_html) == expected


def test_local_path_for_folds_query_into_name():
    first = local_path_for("https://www.example.com/list?page=1", "www.example.com", True)
    second = local_path_for("https://www.example.com/list?page=2", "www.example.com", True)
    assert first != second
    assert first.startswith("list_") and first.endswith(".html")


def test_default_url_filter_matches_host_substring():
    url_filter = default_url_filter("example.com")
    assert url_filter("https://blog.example.com/post")
    assert not url_filter("https://example.org/")
    assert not url_filter("ftp://example.com/file")


@pytest.mark.parametrize("body", [
    # assets are fetched before page links, so each order is exercised
    '<img src="/feed"><a href="/feed/logo.png">Logo</a>',
    '<img src="/feed/logo.png"><a href="/feed">Feed</a>',
])
def test_file_and_directory_with_same_name_both_saved(tmp_path, body):
    routes = {
        SEED: html_page(body),
        "https://www.example.com/feed": FakeResponse(
            content="<rss></rss>", headers={"Content-Type": "application/rss+xml"},
        ),
        "https://www.example.com/feed/logo.png": FakeResponse(content=b"\x89PNG", headers={"Content-Type": "image/png"}),
    }
    dest = str(tmp_path / "site")

    result = mirror_site(SEED, dest, "example.com", session=FakeSiteSession(routes))

    feed = result.files["https://www.example.com/feed"]
    logo = result.files["https://www.example.com/feed/logo.png"]
    assert result.assets == 2
    assert read(dest, feed) == "<rss></rss>"
    with open(os.path.join(dest, *logo.split("/")), "rb") as f:
        assert f.read() == b"\x89PNG"
    index = read(dest, "index.html")
    assert f'"{feed}"' in index
    assert f'"{logo}"' in index
    assert feed != logo.split("/")[0]
