# -*- coding: utf-8 -*-
import os
import tarfile
import zipfile

from .console import print_log
from .errors import ArchiveError

TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar")


def detect_format(path: str) -> str:
    """Returns 'zip' or 'tar', judged by content first and file name second."""
    if zipfile.is_zipfile(path):
        return "zip"
    if tarfile.is_tarfile(path) or path.lower().endswith(TAR_SUFFIXES):
        return "tar"
    raise ArchiveError(f"Unknown format: {path}")


def extract_archive(path: str, dest_dir: str) -> str:
    """Extracts a ZIP or (gzipped) tar archive into dest_dir."""
    if not os.path.isfile(path):
        raise ArchiveError(f"Not found: {path}")
    try:
        os.makedirs(dest_dir, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create directory {dest_dir}: {e}") from e

    kind = detect_format(path)
    print_log("INFO", f"Extracting {path} ({kind}) to {dest_dir} ...")
    try:
        if kind == "zip":
            with zipfile.ZipFile(path) as zf:
                zf.extractall(dest_dir)
        else:
            with tarfile.open(path, "r:*") as tf:
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(dest_dir, filter="data")
                else:
                    tf.extractall(dest_dir)
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Extraction of {path} failed: {e}") from e

    print_log("SUCCESS", f"Extracted to {dest_dir}")
    return dest_dir
