import os
import sys
import time
import zipfile
import logging
import argparse
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from errors import ArchiveFailed

logger = logging.getLogger(__name__)

MAX_COMPRESSION_LEVEL = 9


@dataclass
class ArchiveInfo:
    path: str
    entries: List[str]
    size: int


def collect_files(source_dir: str) -> List[Tuple[str, str]]:
    """Snapshot of (real path, archive name) for every file under source_dir."""
    files_to_zip = []
    for root, dirs, files in os.walk(source_dir):
        dirs.sort()
        for fname in sorted(files):
            real_path = os.path.join(root, fname)
            arcname = os.path.relpath(real_path, source_dir).replace(os.sep, '/')
            files_to_zip.append((real_path, arcname))
    return files_to_zip


def _remove_partial(zip_path: str):
    try:
        if os.path.exists(zip_path):
            os.remove(zip_path)
    except OSError as e:
        logger.warning(f"Could not remove partial archive {zip_path}: {e}")


def create_zip_archive(
    source_dir: str,
    zip_path: str,
    compresslevel: int = MAX_COMPRESSION_LEVEL,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> ArchiveInfo:
    """
    Packs the contents of source_dir into zip_path.

    Entry names are relative to source_dir, so the directory itself is not part
    of any path. The archive is complete on disk once this returns.
    """
    if not os.path.isdir(source_dir):
        raise ArchiveFailed(f"Nothing to archive: {source_dir} does not exist.")

    files_to_zip = collect_files(source_dir)
    logger.info(f"Archiving {len(files_to_zip)} files from {source_dir} into {zip_path}")

    try:
        with zipfile.ZipFile(zip_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zipf:
            for real_path, arcname in files_to_zip:
                if cancel is not None and cancel.is_set():
                    raise ArchiveFailed("Archiving was cancelled.")
                if deadline is not None and time.monotonic() >= deadline:
                    raise ArchiveFailed("Archiving timed out.")
                zipf.write(real_path, arcname)
        size = os.path.getsize(zip_path)
    except ArchiveFailed:
        _remove_partial(zip_path)
        raise
    except (OSError, zipfile.LargeZipFile) as e:
        _remove_partial(zip_path)
        raise ArchiveFailed(f"Could not create the ZIP archive: {e}") from e

    logger.info(f"Archive ready: {zip_path} ({size} bytes)")
    return ArchiveInfo(path=zip_path, entries=[arcname for _, arcname in files_to_zip], size=size)


def main():
    parser = argparse.ArgumentParser(description="Create a ZIP archive of a mirrored site directory.")
    parser.add_argument("source_dir", help="Directory to archive.")
    parser.add_argument("zip_path", help="Where to write the archive.")
    args = parser.parse_args()

    try:
        info = create_zip_archive(args.source_dir, args.zip_path)
    except ArchiveFailed as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    print(f"{info.path} ({len(info.entries)} entries, {info.size} bytes)")


if __name__ == '__main__':
    main()
