import os
import time
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

import requests

from celery_app import celery_app, settings
from pipeline import remove_path

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

KEEP_ALIVE_TIMEOUT_SECONDS = 30


@celery_app.task
def keep_alive():
    """Pings the web process so the host platform sees it as busy."""
    now = datetime.now(ZoneInfo(settings.keep_alive_timezone)).strftime("%Y-%m-%d %H:%M:%S")
    logger.info(f"Current time in {settings.keep_alive_timezone}: {now}")

    base_url = settings.keep_alive_url
    if not base_url:
        logger.info("KEEP_ALIVE_URL is not set; skipping keep-alive ping.")
        return {"status": "skipped"}

    try:
        response = requests.get(f"{base_url.rstrip('/')}/keep-alive", timeout=KEEP_ALIVE_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Keep-alive ping failed: {e}")
        return {"status": "error", "error": str(e)}

    logger.info("keep Alive")
    return {"status": "ok"}


@celery_app.task
def sweep_stale_downloads():
    """
    Removes working directories and archives left behind by a process that died
    mid-job. Anything in the downloads directory older than STALE_DOWNLOAD_HOURS
    is deleted.
    """
    downloads_dir = settings.downloads_dir
    max_age_hours = settings.stale_download_hours
    if not os.path.isdir(downloads_dir):
        return {"deleted_count": 0}

    cutoff = time.time() - max_age_hours * 3600
    deleted_count = 0
    for entry in os.scandir(downloads_dir):
        try:
            modified = entry.stat(follow_symlinks=False).st_mtime
        except OSError as e:
            logger.warning(f"Could not inspect {entry.path}: {e}")
            continue
        if modified < cutoff:
            logger.info(f"Deleting stale download: {entry.path}")
            remove_path(entry.path)
            deleted_count += 1

    logger.info(f"Completed sweep: {deleted_count} stale downloads deleted")
    return {"deleted_count": deleted_count}
