# -*- coding: utf-8 -*-
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .api import FileEntry, FileListing, ZenodoClient
from .console import format_bytes, print_log
from .credentials import Credential
from .errors import DownloadVerificationFailed, NoMatch, PartialBatchFailure

# Local file header, empty archive, spanned archive
ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
INDEX_SELECTION_PATTERN = re.compile(r"^[0-9 ]+$")
MAX_PAYLOAD_REPORT = 2000
# Downloads land here first and replace the target only on success
PART_SUFFIX = ".part"


@dataclass
class BatchResult:
    downloaded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.downloaded) + len(self.failed)


def bundle_filename(record_id: int) -> str:
    return f"zenodo_{record_id}.zip"


def is_zip_file(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(4)
    except OSError:
        return False
    return head.startswith(ZIP_SIGNATURES)


def safe_destination(output_dir: str, name: str) -> Optional[str]:
    """Path for a remote file name inside output_dir, or None if the name
    is not a plain file name (separators, '..', absolute paths)."""
    if not name or name in (".", "..") or os.path.basename(name) != name or "\x00" in name:
        return None
    root = os.path.realpath(output_dir)
    dest = os.path.realpath(os.path.join(root, name))
    if os.path.dirname(dest) != root:
        return None
    return os.path.join(output_dir, name)


def select_files(listing: FileListing, selection: str) -> List[FileEntry]:
    """Picks entries by 1-based index list ("1 3") or by literal substring."""
    text = (selection or "").strip()
    # Strip one layer of surrounding quotes
    for quote_char in ('"', "'"):
        if len(text) >= 2 and text.startswith(quote_char) and text.endswith(quote_char):
            text = text[1:-1]
            break
    if not text:
        raise NoMatch(selection)

    if INDEX_SELECTION_PATTERN.match(text):
        selected = []
        for token in text.split():
            index = int(token)
            if 1 <= index <= len(listing):
                entry = listing.entries[index - 1]
                if entry not in selected:
                    selected.append(entry)
            else:
                print_log("WARN", f"No file number {index} (1-{len(listing)})")
    else:
        selected = [entry for entry in listing if text in entry.name]

    if not selected:
        raise NoMatch(text)
    return selected


class DownloadEngine:
    """Bundle and per-file downloads for one record. Output directories arrive already resolved."""

    def __init__(self, client: ZenodoClient):
        self.client = client

    def download_bundle(self, credential: Credential, record_id: int, output_dir: str) -> str:
        """Fetches the server-built ZIP of all files. Returns its path."""
        os.makedirs(output_dir, exist_ok=True)
        outfile = os.path.join(output_dir, bundle_filename(record_id))
        print_log("INFO", f"Downloading {outfile} ...")

        part_path = outfile + PART_SUFFIX
        outcome = self.client.fetch_archive(credential, record_id, part_path)
        if not outcome.ok:
            self._discard(part_path)
            raise DownloadVerificationFailed(outfile, outcome.status, outcome.error or "no data received")

        if not is_zip_file(part_path):
            payload = self._read_payload(part_path)
            self._discard(part_path)
            raise DownloadVerificationFailed(outfile, outcome.status, payload)

        os.replace(part_path, outfile)
        print_log("SUCCESS", f"Done: {outfile} ({format_bytes(outcome.bytes_written)})")
        return outfile

    def download_files(self, credential: Credential, record_id: int, entries: Sequence[FileEntry],
                       output_dir: str) -> BatchResult:
        """Downloads each entry in turn. Raises PartialBatchFailure after the batch if any failed."""
        os.makedirs(output_dir, exist_ok=True)
        result = BatchResult()
        count = len(entries)
        print_log("INFO", f"Downloading {count} files...")

        for i, entry in enumerate(entries, start=1):
            print_log("INFO", f"[{i}/{count}] {entry.name} ...")
            dest_path = safe_destination(output_dir, entry.name)
            if dest_path is None:
                reason = "unsafe file name, would be written outside the output directory"
                print_log("ERROR", f"{entry.name!r}: {reason}")
                result.failed.append((entry.name, reason))
                continue

            part_path = dest_path + PART_SUFFIX
            fetch = self.client.fetch_content(credential, record_id, entry.name, part_path)
            if fetch.ok:
                os.replace(part_path, dest_path)
                print_log("SUCCESS", f"{dest_path} ({format_bytes(fetch.bytes_written)}, "
                                     f"via {fetch.surface.label} API)")
                result.downloaded.append(entry.name)
            else:
                reason = fetch.describe_failure()
                print_log("ERROR", f"{entry.name}: {reason}")
                self._discard(part_path)
                result.failed.append((entry.name, reason))

        if result.failed:
            raise PartialBatchFailure(result)
        print_log("SUCCESS", f"Done: {len(result.downloaded)} files")
        return result

    def download_all_files(self, credential: Credential, record_id: int, output_dir: str) -> BatchResult:
        listing = self.client.list_files(credential, record_id)
        return self.download_files(credential, record_id, listing.entries, output_dir)

    @staticmethod
    def _read_payload(path: str) -> str:
        try:
            with open(path, "rb") as f:
                data = f.read(MAX_PAYLOAD_REPORT)
        except OSError as e:
            return f"<unreadable: {e}>"
        return data.decode("utf-8", errors="replace").strip() or "<empty response>"

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
                print_log("WARN", f"Removed partial file '{path}'")
            except OSError as rm_e:
                print_log("WARN", f"Cleanup failed for '{path}': {rm_e}")
