import hashlib
import logging
import os
import posixpath
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from errors import FetchFailed

"""
SiteSnap mirror fetcher

Downloads the pages reachable from a seed URL (breadth-first, bounded by
hyperlink depth) together with the assets they reference, then rewrites the
saved HTML and CSS so the copy can be browsed offline.

Usage:
    python crawler.py <seed_url> <dest_dir> [--max-depth N]
"""

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"
DEFAULT_MAX_DEPTH = 2
DEFAULT_MAX_RESOURCES = 1000
REQUEST_TIMEOUT_SECONDS = 20

# (tag, attribute) pairs that point at another page
PAGE_REFS = [('a', 'href'), ('iframe', 'src'), ('frame', 'src')]
# (tag, attribute) pairs that point at an asset of the current page
ASSET_REFS = [
    ('img', 'src'),
    ('script', 'src'),
    ('link', 'href'),
    ('source', 'src'),
    ('video', 'src'),
    ('video', 'poster'),
    ('audio', 'src'),
    ('input', 'src'),
]
ASSET_LINK_RELS = {'stylesheet', 'icon', 'shortcut', 'apple-touch-icon', 'preload', 'manifest', 'mask-icon'}
CSS_URL_RE = re.compile(r"url\(\s*(['\"]?)([^)\"']+)\1\s*\)", re.IGNORECASE)
UNSAFE_CHARS_RE = re.compile(r'[^a-zA-Z0-9_.-]')

logger = logging.getLogger(__name__)


@dataclass
class MirrorResult:
    root_dir: str
    files: Dict[str, str] = field(default_factory=dict)  # url -> path relative to root_dir
    pages: int = 0
    assets: int = 0
    skipped: List[str] = field(default_factory=list)


def default_url_filter(host_id: str) -> Callable[[str], bool]:
    """Keeps http(s) links whose text contains the host identifier."""
    def url_filter(link: str) -> bool:
        return urlparse(link).scheme in ('http', 'https') and host_id in link
    return url_filter


def _safe_part(part: str) -> str:
    part = UNSAFE_CHARS_RE.sub('_', unquote(part))[:80]
    if part in ('', '.', '..'):
        return '_'
    return part


def local_path_for(url: str, seed_host: str, is_html: bool) -> str:
    """Maps a URL to a relative, slash-separated path inside the mirror."""
    parsed = urlparse(url)
    path = parsed.path or '/'
    parts = [_safe_part(p) for p in path.split('/') if p]

    if is_html:
        if not parts or path.endswith('/'):
            parts.append('index.html')
        elif not parts[-1].lower().endswith(('.html', '.htm')):
            parts[-1] += '.html'
    elif not parts or path.endswith('/'):
        parts.append('index')

    if parsed.query:
        digest = hashlib.sha1(parsed.query.encode('utf-8')).hexdigest()[:8]
        base, ext = posixpath.splitext(parts[-1])
        parts[-1] = f"{base}_{digest}{ext}"

    host = (parsed.hostname or '').lower()
    if host and host != seed_host:
        parts.insert(0, _safe_part(host))
    return '/'.join(parts)


def _is_html(response) -> bool:
    return 'text/html' in response.headers.get('Content-Type', '').lower()


def _is_css(url: str, response) -> bool:
    content_type = response.headers.get('Content-Type', '').lower()
    return 'text/css' in content_type or urlparse(url).path.lower().endswith('.css')


def _normalize(base_url: str, ref: str) -> Tuple[Optional[str], str]:
    """Resolves ref against base_url. Returns (absolute url without fragment, fragment)."""
    ref = ref.strip()
    if not ref or ref.startswith(('#', 'mailto:', 'tel:', 'javascript:', 'data:')):
        return None, ''
    absolute, fragment = urldefrag(urljoin(base_url, ref))
    if urlparse(absolute).scheme not in ('http', 'https'):
        return None, ''
    return absolute, fragment


def _is_asset_link(tag) -> bool:
    rels = tag.get('rel') or []
    if isinstance(rels, str):
        rels = rels.split()
    return any(rel.lower() in ASSET_LINK_RELS for rel in rels)


def extract_references(html_content: str, base_url: str) -> Tuple[List[str], List[str]]:
    """Returns (page links, asset links) found in an HTML document."""
    soup = BeautifulSoup(html_content, 'html.parser')
    pages, assets = [], []
    for tag_name, attr in PAGE_REFS:
        for tag in soup.find_all(tag_name):
            link, _ = _normalize(base_url, tag.get(attr) or '')
            if link:
                pages.append(link)
    for tag_name, attr in ASSET_REFS:
        for tag in soup.find_all(tag_name):
            if tag_name == 'link' and not _is_asset_link(tag):
                continue
            link, _ = _normalize(base_url, tag.get(attr) or '')
            if link:
                assets.append(link)
    return pages, assets


def extract_css_references(css_text: str, base_url: str) -> List[str]:
    links = []
    for match in CSS_URL_RE.finditer(css_text):
        link, _ = _normalize(base_url, match.group(2))
        if link:
            links.append(link)
    return links


def _check_budget(deadline: Optional[float], cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise FetchFailed("Crawl was cancelled.")
    if deadline is not None and time.monotonic() >= deadline:
        raise FetchFailed("Crawl timed out before the site was fully downloaded.")


def fetch_resource(session, url, request_timeout, deadline=None):
    timeout = request_timeout
    if deadline is not None:
        timeout = max(0.1, min(request_timeout, deadline - time.monotonic()))
    try:
        return session.get(url, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FetchFailed(f"Timed out fetching {url}.") from e
    except requests.exceptions.RequestException as e:
        raise FetchFailed(f"Network error fetching {url}: {e}") from e


def _claim_path(rel_path: str, used_files: set, used_dirs: set) -> str:
    """
    Reserves rel_path in the mirror, renaming it where it would clash.

    A file and a directory cannot share a name, so a directory component that
    is already a saved file becomes '<name>_<n>', and a file whose name is
    already a directory (or another file) gets a numeric suffix.
    """
    parts = rel_path.split('/')
    resolved = []
    for part in parts[:-1]:
        candidate = part
        counter = 1
        while '/'.join(resolved + [candidate]) in used_files:
            candidate = f"{part}_{counter}"
            counter += 1
        resolved.append(candidate)

    prefix = '/'.join(resolved)
    leaf = parts[-1]
    candidate = f"{prefix}/{leaf}" if prefix else leaf
    if candidate in used_files or candidate in used_dirs:
        base, ext = posixpath.splitext(leaf)
        counter = 1
        while True:
            name = f"{base}_{counter}{ext}"
            candidate = f"{prefix}/{name}" if prefix else name
            if candidate not in used_files and candidate not in used_dirs:
                break
            counter += 1

    for i in range(1, len(resolved) + 1):
        used_dirs.add('/'.join(resolved[:i]))
    used_files.add(candidate)
    return candidate


def _write_file(root_dir: str, rel_path: str, content: bytes):
    target = os.path.join(root_dir, *rel_path.split('/'))
    os.makedirs(os.path.dirname(target), exist_ok=True)
    with open(target, 'wb') as f:
        f.write(content)


def _relative_ref(from_rel: str, to_rel: str, fragment: str) -> str:
    ref = posixpath.relpath(to_rel, posixpath.dirname(from_rel) or '.')
    return f"{ref}#{fragment}" if fragment else ref


def rewrite_html(html_content: str, page_url: str, page_rel: str, files: Dict[str, str]) -> str:
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag_name, attr in PAGE_REFS + ASSET_REFS:
        for tag in soup.find_all(tag_name):
            value = tag.get(attr)
            if not value:
                continue
            link, fragment = _normalize(page_url, value)
            if link in files:
                tag[attr] = _relative_ref(page_rel, files[link], fragment)
    return str(soup)


def rewrite_css(css_text: str, css_url: str, css_rel: str, files: Dict[str, str]) -> str:
    def replacer(match):
        link, fragment = _normalize(css_url, match.group(2))
        if link not in files:
            return match.group(0)
        return f"url({match.group(1)}{_relative_ref(css_rel, files[link], fragment)}{match.group(1)})"
    return CSS_URL_RE.sub(replacer, css_text)


def mirror_site(
    seed_url: str,
    dest_dir: str,
    host_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
    user_agent: str = USER_AGENT,
    url_filter: Optional[Callable[[str], bool]] = None,
    max_resources: int = DEFAULT_MAX_RESOURCES,
    request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    session=None,
) -> MirrorResult:
    """
    Mirrors seed_url into dest_dir.

    Raises FetchFailed on transport or filesystem errors, on an HTTP error for
    the seed URL, and when the deadline passes or cancel is set. HTTP errors for
    any other resource are logged and skipped.
    """
    url_filter = url_filter or default_url_filter(host_id)
    seed_url, _ = urldefrag(seed_url)
    seed_host = (urlparse(seed_url).hostname or '').lower()

    if session is None:
        session = requests.Session()
    session.headers.update({'User-Agent': user_agent})

    result = MirrorResult(root_dir=dest_dir)
    used_files, used_dirs = set(), set()
    html_saved: List[Tuple[str, str]] = []  # (url, rel path)
    css_saved: List[Tuple[str, str]] = []

    # (url, depth, is_page_link)
    queue = deque([(seed_url, 0, True)])
    visited = {seed_url}

    def enqueue(link, depth, is_page):
        if link not in visited and url_filter(link):
            visited.add(link)
            queue.append((link, depth, is_page))

    logger.info(f"Mirroring {seed_url} into {dest_dir} (max depth {max_depth})")
    try:
        os.makedirs(dest_dir, exist_ok=True)
    except OSError as e:
        raise FetchFailed(f"Could not create download directory: {e}") from e

    while queue:
        _check_budget(deadline, cancel)
        if len(result.files) >= max_resources:
            logger.warning(f"Reached resource limit of {max_resources}; {len(queue)} queued URLs not fetched.")
            break

        url, depth, is_page = queue.popleft()
        response = fetch_resource(session, url, request_timeout, deadline)
        if response.status_code >= 400:
            if url == seed_url:
                raise FetchFailed(f"{url} responded with HTTP {response.status_code}.")
            logger.warning(f"Skipping {url}: HTTP {response.status_code}")
            result.skipped.append(url)
            continue

        is_html = _is_html(response)
        rel_path = _claim_path(local_path_for(url, seed_host, is_html), used_files, used_dirs)

        try:
            _write_file(dest_dir, rel_path, response.content)
        except OSError as e:
            raise FetchFailed(f"Could not save {url}: {e}") from e

        result.files[url] = rel_path
        final_url, _ = urldefrag(response.url or url)
        result.files.setdefault(final_url, rel_path)
        visited.add(final_url)
        logger.debug(f"Saved {url} -> {rel_path}")

        if is_html:
            result.pages += 1
            html_saved.append((final_url, rel_path))
            page_links, asset_links = extract_references(response.text, final_url)
            for link in asset_links:
                enqueue(link, depth, False)
            if is_page and depth < max_depth:
                for link in page_links:
                    enqueue(link, depth + 1, True)
        else:
            result.assets += 1
            if _is_css(url, response):
                css_saved.append((final_url, rel_path))
                for link in extract_css_references(response.text, final_url):
                    enqueue(link, depth, False)

    _check_budget(deadline, cancel)
    try:
        for page_url, rel_path in html_saved:
            target = os.path.join(dest_dir, *rel_path.split('/'))
            with open(target, 'r', encoding='utf-8', errors='replace') as f:
                html_content = f.read()
            with open(target, 'w', encoding='utf-8') as f:
                f.write(rewrite_html(html_content, page_url, rel_path, result.files))
        for css_url, rel_path in css_saved:
            target = os.path.join(dest_dir, *rel_path.split('/'))
            with open(target, 'r', encoding='utf-8', errors='replace') as f:
                css_text = f.read()
            with open(target, 'w', encoding='utf-8') as f:
                f.write(rewrite_css(css_text, css_url, rel_path, result.files))
    except OSError as e:
        raise FetchFailed(f"Could not rewrite links for offline viewing: {e}") from e

    logger.info(f"Mirror of {seed_url} complete: {result.pages} pages, {result.assets} assets, {len(result.skipped)} skipped.")
    return result


if __name__ == '__main__':
    import argparse

    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description='SiteSnap mirror fetcher')
    parser.add_argument('seed_url', help='Seed URL to start mirroring from')
    parser.add_argument('dest_dir', help='Directory to write the mirror into')
    parser.add_argument('--max-depth', type=int, default=DEFAULT_MAX_DEPTH, help='Maximum hyperlink depth')
    args = parser.parse_args()
    host = (urlparse(args.seed_url).hostname or '').lower()
    if host.startswith('www.'):
        host = host[4:]
    mirror_site(args.seed_url, args.dest_dir, host, max_depth=args.max_depth)
