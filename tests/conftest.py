"""Pytest configuration and fixtures."""

import os
import shutil
import tempfile

# api_main loads its configuration at import time
os.environ.setdefault("CLIENT_ID", "test-client-id")
os.environ.setdefault("CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("REDIRECT_URI", "http://localhost:3000/oauth2callback")
os.environ.setdefault("REFRESH_TOKEN", "test-refresh-token")
os.environ.setdefault("DRIVE_FOLDER_ID", "test-folder")
# api_main creates DOWNLOADS_DIR on import; point it at a scratch dir removed after the run
SCRATCH_DOWNLOADS_DIR = tempfile.mkdtemp(prefix="sitesnap_test_")
os.environ["DOWNLOADS_DIR"] = SCRATCH_DOWNLOADS_DIR

import pytest
import requests

from config import Settings


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, content=b"", headers=None, url=None, json_body=None, chunks=None):
        self.status_code = status_code
        self.content = content.encode("utf-8") if isinstance(content, str) else content
        self.headers = headers or {}
        self.url = url
        self._json = json_body
        self._chunks = chunks
        self.closed = False

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)

    def iter_content(self, chunk_size=1):
        yield from (self._chunks if self._chunks is not None else [self.content])

    def close(self):
        self.closed = True


def html_page(body, url=None):
    return FakeResponse(
        content=f"<html><head><title>t</title></head><body>{body}</body></html>",
        headers={"Content-Type": "text/html; charset=utf-8"},
        url=url,
    )


class FakeSiteSession:
    """Serves canned responses by URL, like a requests.Session."""

    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.requested = []

    def get(self, url, timeout=None, **kwargs):
        self.requested.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status_code=404, url=url)
        if isinstance(route, Exception):
            raise route
        if route.url is None:
            route.url = url
        return route


class RecordingHttp:
    """Routes post/put/get calls to a handler and records them."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def _call(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.handler(method, url, kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def post(self, url, **kwargs):
        return self._call("POST", url, **kwargs)

    def put(self, url, **kwargs):
        if hasattr(kwargs.get("data"), "read"):
            kwargs["body"] = kwargs["data"].read()
        return self._call("PUT", url, **kwargs)

    def get(self, url, **kwargs):
        return self._call("GET", url, **kwargs)


@pytest.fixture
def downloads_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return str(path)


@pytest.fixture
def settings(downloads_dir):
    return Settings(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:3000/oauth2callback",
        refresh_token="refresh-token",
        drive_folder_id="folder-123",
        downloads_dir=downloads_dir,
        crawl_timeout_seconds=30,
        archive_timeout_seconds=30,
        http_timeout_seconds=5,
        upload_timeout_seconds=30,
    )


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(SCRATCH_DOWNLOADS_DIR, ignore_errors=True)
