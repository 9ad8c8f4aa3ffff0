import logging
import os
import re
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urldefrag, urlparse

from crawler import mirror_site
from drive import RemoteObject
from errors import InvalidInput, MalformedURL, PipelineError
from export_zip import create_zip_archive

logger = logging.getLogger(__name__)

HOST_LABEL_RE = re.compile(r'^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$')
RESERVED_NAMES = {'con', 'prn', 'aux', 'nul'} | {f'com{i}' for i in range(10)} | {f'lpt{i}' for i in range(10)}


# --- Request intake ---

def parse_target_url(raw: Optional[str]) -> str:
    """Validates a submitted URL and returns it stripped of surrounding whitespace."""
    if raw is None or not raw.strip():
        raise InvalidInput("Please enter the address of the website you want to download.")
    url = raw.strip()
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError as e:
        raise MalformedURL(f"'{url}' is not a valid URL.") from e
    if parsed.scheme not in ('http', 'https') or not hostname:
        raise MalformedURL(f"'{url}' is not a valid web address. Include http:// or https://.")
    return url


def derive_host_identifier(url: str) -> str:
    """Lower-cased host name without a leading 'www.', safe to use as a file name."""
    try:
        host = (urlparse(url).hostname or '').lower()
    except ValueError as e:
        raise MalformedURL(f"'{url}' is not a valid URL.") from e
    if host.startswith('www.'):
        host = host[len('www.'):]
    try:
        host = host.encode('idna').decode('ascii')
    except UnicodeError as e:
        raise MalformedURL(f"'{url}' has an invalid host name.") from e

    labels = host.split('.')
    if not host or not all(HOST_LABEL_RE.match(label) for label in labels):
        raise MalformedURL(f"'{url}' has an invalid host name.")
    if labels[0] in RESERVED_NAMES:
        raise MalformedURL(f"'{url}' uses a reserved host name.")
    return host


# --- Jobs ---

@dataclass
class FetchJob:
    target_url: str
    host_id: str
    job_id: str
    work_dir: str
    archive_path: str

    @property
    def archive_name(self) -> str:
        return f"{self.host_id}.zip"

    @property
    def request_key(self) -> str:
        """Concurrent jobs with the same key are served by one run."""
        return urldefrag(self.target_url)[0]


@dataclass
class DownloadResult:
    job: FetchJob
    remote: RemoteObject


def new_job(raw_url: Optional[str], downloads_dir: str) -> FetchJob:
    url = parse_target_url(raw_url)
    host_id = derive_host_identifier(url)
    job_id = uuid.uuid4().hex[:12]
    base = os.path.join(downloads_dir, f"{host_id}-{job_id}")
    return FetchJob(
        target_url=url,
        host_id=host_id,
        job_id=job_id,
        work_dir=base,
        archive_path=f"{base}.zip",
    )


def remove_path(path: str):
    """Deletes a file or directory tree, logging instead of raising."""
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Error during cleanup of {path}: {e}")


@contextmanager
def job_workspace(job: FetchJob):
    """Owns the job's local files; they are removed however the block exits."""
    os.makedirs(job.work_dir, exist_ok=True)
    try:
        yield job
    finally:
        remove_path(job.work_dir)
        remove_path(job.archive_path)
        logger.info(f"Local files for job {job.job_id} cleaned up.")


def _clone_error(error: BaseException) -> BaseException:
    """A new instance carrying the same args and attributes, with its own traceback."""
    clone = type(error).__new__(type(error), *error.args)
    clone.__dict__.update(error.__dict__)
    return clone


class _Flight:
    def __init__(self):
        self.done = threading.Event()
        self.result = None
        self.error: Optional[BaseException] = None
        self.followers = 0


class InFlightJobs:
    """Lets concurrent callers with the same key share a single run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._flights: Dict[str, _Flight] = {}

    def __contains__(self, key):
        with self._lock:
            return key in self._flights

    def followers(self, key) -> int:
        with self._lock:
            flight = self._flights.get(key)
            return flight.followers if flight else 0

    def run(self, key: str, fn: Callable[[], object], wait_timeout: Optional[float] = None):
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
            else:
                flight.followers += 1

        if not leader:
            logger.info(f"Joining in-flight download of {key} ({flight.followers} waiting)")
            if not flight.done.wait(wait_timeout):
                raise PipelineError(f"Timed out waiting for the in-progress download of {key}.")
            if flight.error is not None:
                # each waiting thread gets its own instance, chained to the shared one
                raise _clone_error(flight.error) from flight.error
            return flight.result

        try:
            flight.result = fn()
            return flight.result
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                del self._flights[key]
            flight.done.set()


class SiteDownloader:
    """Runs crawl -> archive -> upload for one submitted URL."""

    def __init__(self, settings, drive, in_flight: Optional[InFlightJobs] = None,
                 mirror=mirror_site, archive=create_zip_archive):
        self.settings = settings
        self.drive = drive
        self.in_flight = in_flight or InFlightJobs()
        self.mirror = mirror
        self.archive = archive
        self._active: Dict[str, threading.Event] = {}
        self._active_lock = threading.Lock()
        os.makedirs(settings.downloads_dir, exist_ok=True)

    def cancel_all(self):
        with self._active_lock:
            events = list(self._active.values())
        for event in events:
            event.set()
        if events:
            logger.info(f"Cancelled {len(events)} running download job(s).")

    def download(self, raw_url: Optional[str]) -> DownloadResult:
        job = new_job(raw_url, self.settings.downloads_dir)
        remote = self.in_flight.run(
            job.request_key,
            lambda: self._execute(job),
            wait_timeout=self.settings.job_budget_seconds,
        )
        return DownloadResult(job=job, remote=remote)

    def _execute(self, job: FetchJob) -> RemoteObject:
        cancel = threading.Event()
        with self._active_lock:
            self._active[job.job_id] = cancel
        logger.info(f"Job {job.job_id}: downloading {job.target_url} as {job.archive_name}")
        try:
            with job_workspace(job):
                self.mirror(
                    job.target_url,
                    job.work_dir,
                    job.host_id,
                    max_depth=self.settings.mirror_max_depth,
                    user_agent=self.settings.mirror_user_agent,
                    max_resources=self.settings.mirror_max_resources,
                    request_timeout=self.settings.http_timeout_seconds,
                    deadline=time.monotonic() + self.settings.crawl_timeout_seconds,
                    cancel=cancel,
                )
                self.archive(
                    job.work_dir,
                    job.archive_path,
                    deadline=time.monotonic() + self.settings.archive_timeout_seconds,
                    cancel=cancel,
                )
                remote = self.drive.upload(job.archive_path, job.archive_name)
        except PipelineError as e:
            logger.warning(f"Job {job.job_id} failed at {e.stage}: {e.message}")
            raise
        finally:
            with self._active_lock:
                self._active.pop(job.job_id, None)

        logger.info(f"Job {job.job_id} finished: {job.archive_name} stored as Drive file {remote.file_id}")
        return remote
