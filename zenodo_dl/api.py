# -*- coding: utf-8 -*-
"""Zenodo REST client.

Every record is reachable through two surfaces: the deposit API (drafts and
records owned by the token holder) and the public records API. Metadata and
file content are fetched owner-first, falling back to the public surface.
The two resource types use different fall-through rules:

* metadata falls through only when the deposit answer is not-found shaped
  (empty body, HTTP 404, or a JSON body with "status": 404);
* file content falls through on any failure of the deposit request.
"""
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests
from tqdm import tqdm

from .config import API_BASE, DOWNLOAD_CHUNK_SIZE, ZENODO_DL_VERSION
from .console import print_log
from .credentials import Credential
from .errors import InvalidRecordId, RecordNotFound

TQDM_BAR_FORMAT = '{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}{postfix}]'
RECORD_ID_PATTERN = re.compile(r"^[0-9]+$")


class RecordSurface(Enum):
    OWNER = "deposit"
    PUBLIC = "records"

    @property
    def label(self) -> str:
        return "deposit" if self is RecordSurface.OWNER else "public records"


SURFACE_ORDER = (RecordSurface.OWNER, RecordSurface.PUBLIC)

METADATA_ENDPOINTS = {
    RecordSurface.OWNER: "deposit/depositions/{record_id}",
    RecordSurface.PUBLIC: "records/{record_id}",
}
CONTENT_ENDPOINTS = {
    RecordSurface.OWNER: "deposit/depositions/{record_id}/files/{filename}/content",
    RecordSurface.PUBLIC: "records/{record_id}/files/{filename}/content",
}
ARCHIVE_ENDPOINT = "records/{record_id}/files-archive"

# Deposit API names first, public records API second
NAME_FIELDS = ("filename", "key")
SIZE_FIELDS = ("filesize", "size")


def parse_record_id(raw) -> int:
    """Accepts digits only, no sign, no whitespace, no zero."""
    text = str(raw)
    if not RECORD_ID_PATTERN.match(text) or int(text) == 0:
        raise InvalidRecordId(raw)
    return int(text)


# --- Listing Model ---

@dataclass(frozen=True)
class FileEntry:
    name: str
    size_bytes: int

    @property
    def size_mb(self) -> float:
        """Megabytes truncated to hundredths, for display."""
        return math.floor(self.size_bytes / 1024 / 1024 * 100) / 100


@dataclass(frozen=True)
class FileListing:
    record_id: int
    surface: RecordSurface
    entries: Tuple[FileEntry, ...]

    @classmethod
    def from_files(cls, record_id: int, surface: RecordSurface, files: List[Dict[str, Any]]) -> "FileListing":
        """Normalizes a metadata `files` array. Sorted by name, first occurrence of a name wins."""
        by_name: Dict[str, FileEntry] = {}
        for item in files:
            if not isinstance(item, dict):
                print_log("WARN", f"Skipping malformed file element in record {record_id}: {item!r}")
                continue
            name = _first_field(item, NAME_FIELDS)
            if not name:
                print_log("WARN", f"Skipping file element without a name in record {record_id}")
                continue
            try:
                size = int(_first_field(item, SIZE_FIELDS) or 0)
            except (TypeError, ValueError):
                size = 0
            by_name.setdefault(str(name), FileEntry(str(name), size))
        return cls(record_id, surface, tuple(sorted(by_name.values(), key=lambda e: e.name)))

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]

    @property
    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.entries)


def _first_field(item: Dict[str, Any], fields) -> Any:
    for name in fields:
        value = item.get(name)
        if value is not None and value != "":
            return value
    return None


# --- Request Outcomes ---

@dataclass
class SurfaceAttempt:
    """One request against one surface."""
    surface: RecordSurface
    url: str
    status: int = 0
    ok: bool = False
    not_found: bool = False
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    bytes_written: int = 0

    def describe(self) -> str:
        status = f"HTTP {self.status}" if self.status else "no response"
        return f"{self.surface.label} API {status}" + (f" ({self.error})" if self.error else "")

    def as_tuple(self) -> Tuple[str, int, Optional[str]]:
        return self.surface.label, self.status, self.error


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    status: int
    error: Optional[str] = None


@dataclass
class ContentFetch:
    """Result of fetching one file with fallback."""
    filename: str
    attempts: List[SurfaceAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].ok

    @property
    def surface(self) -> Optional[RecordSurface]:
        return self.attempts[-1].surface if self.ok else None

    @property
    def bytes_written(self) -> int:
        return self.attempts[-1].bytes_written if self.ok else 0

    def describe_failure(self) -> str:
        return "; ".join(attempt.describe() for attempt in self.attempts)


def _error_message(response) -> Optional[str]:
    try:
        data = response.json()
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
    except ValueError:
        pass
    text = (response.text or "").strip()
    return text[:200] or None


# --- Client ---

class ZenodoClient:
    """Thin wrapper over a requests session. The credential is passed to each call."""

    def __init__(
        self,
        api_base: str = API_BASE,
        session: Optional[requests.Session] = None,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        show_progress: bool = True,
    ):
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.chunk_size = chunk_size
        self.show_progress = show_progress

    def url(self, template: str, **params) -> str:
        if "filename" in params:
            params["filename"] = quote(str(params["filename"]), safe="")
        return f"{self.api_base}/{template.format(**params)}"

    def _get(self, credential: Credential, url: str, stream: bool = False):
        headers = credential.auth_header()
        headers["User-Agent"] = f"zenodo_dl/{ZENODO_DL_VERSION}"
        print_log("DEBUG", f"GET {url}")
        return self.session.get(url, headers=headers, stream=stream, allow_redirects=True)

    def _with_fallback(
        self,
        endpoints: Dict[RecordSurface, str],
        attempt: Callable[[RecordSurface, str], SurfaceAttempt],
        falls_through: Callable[[SurfaceAttempt], bool],
        **params,
    ) -> Tuple[Optional[SurfaceAttempt], List[SurfaceAttempt]]:
        """Tries each surface in SURFACE_ORDER until one succeeds or one fails without falling through."""
        attempts: List[SurfaceAttempt] = []
        for surface in SURFACE_ORDER:
            outcome = attempt(surface, self.url(endpoints[surface], **params))
            attempts.append(outcome)
            if outcome.ok:
                return outcome, attempts
            if not falls_through(outcome):
                break
            print_log("DEBUG", f"{outcome.describe()}, trying next surface")
        return None, attempts

    # --- Validation ---

    def validate(self, credential: Credential, record_id: int) -> ValidationResult:
        """Single probe of the deposit metadata endpoint. Only HTTP 200 is valid."""
        url = self.url(METADATA_ENDPOINTS[RecordSurface.OWNER], record_id=record_id)
        try:
            response = self._get(credential, url)
        except requests.exceptions.RequestException as e:
            return ValidationResult(False, 0, f"request failed: {e}")
        if response.status_code == 200:
            return ValidationResult(True, 200)
        return ValidationResult(False, response.status_code, _error_message(response))

    # --- Metadata ---

    def _attempt_metadata(self, credential: Credential, surface: RecordSurface, url: str) -> SurfaceAttempt:
        outcome = SurfaceAttempt(surface, url)
        try:
            response = self._get(credential, url)
        except requests.exceptions.RequestException as e:
            # No body at all counts as an empty answer
            outcome.not_found = True
            outcome.error = f"request failed: {e}"
            return outcome

        outcome.status = response.status_code
        if not (response.text or "").strip():
            outcome.not_found = True
            outcome.error = "empty response"
            return outcome

        try:
            payload = response.json()
        except ValueError:
            outcome.not_found = response.status_code == 404
            outcome.error = "response is not JSON"
            return outcome

        if response.status_code == 404 or (isinstance(payload, dict) and str(payload.get("status")) == "404"):
            outcome.not_found = True
            outcome.error = payload.get("message") if isinstance(payload, dict) else None
        elif response.ok and isinstance(payload, dict) and isinstance(payload.get("files"), list):
            outcome.ok = True
            outcome.payload = payload
        else:
            outcome.error = _error_message(response) or "no files collection in response"
        return outcome

    def fetch_metadata(self, credential: Credential, record_id: int) -> SurfaceAttempt:
        """Returns the successful attempt (with payload). Raises RecordNotFound."""
        success, attempts = self._with_fallback(
            METADATA_ENDPOINTS,
            lambda surface, url: self._attempt_metadata(credential, surface, url),
            lambda outcome: outcome.not_found,
            record_id=record_id,
        )
        if success is None:
            raise RecordNotFound(record_id, [a.as_tuple() for a in attempts])
        print_log("DEBUG", f"Record {record_id} served by the {success.surface.label} API")
        return success

    def list_files(self, credential: Credential, record_id: int) -> FileListing:
        """Fresh, sorted listing of the record's files. Never cached."""
        success = self.fetch_metadata(credential, record_id)
        return FileListing.from_files(record_id, success.surface, success.payload["files"])

    # --- Content ---

    def stream_to_file(self, credential: Credential, surface: RecordSurface, url: str, dest_path: str,
                       desc: str, require_ok: bool = True) -> SurfaceAttempt:
        """Streams a GET body to dest_path. With require_ok, non-2xx answers are not written."""
        outcome = SurfaceAttempt(surface, url)
        try:
            with self._get(credential, url, stream=True) as response:
                outcome.status = response.status_code
                if require_ok and not response.ok:
                    outcome.error = _error_message(response)
                    return outcome
                outcome.bytes_written = self._write_stream(response, dest_path, desc)
        except requests.exceptions.RequestException as e:
            outcome.error = f"request failed: {e}"
            return outcome
        except OSError as e:
            outcome.error = f"cannot write {dest_path}: {e}"
            return outcome
        outcome.ok = True
        return outcome

    def _write_stream(self, response, dest_path: str, desc: str) -> int:
        total = int(response.headers.get("Content-Length") or 0) or None
        written = 0
        with open(dest_path, "wb") as f, tqdm(total=total, unit='B', unit_scale=True, unit_divisor=1024,
                                              desc=desc, bar_format=TQDM_BAR_FORMAT, ncols=90, leave=False,
                                              disable=not self.show_progress) as pbar:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if not chunk:
                    continue
                f.write(chunk)
                written += len(chunk)
                pbar.update(len(chunk))
        return written

    def fetch_content(self, credential: Credential, record_id: int, filename: str, dest_path: str) -> ContentFetch:
        """Downloads one file, deposit API first, public API on any failure."""
        _, attempts = self._with_fallback(
            CONTENT_ENDPOINTS,
            lambda surface, url: self.stream_to_file(credential, surface, url, dest_path, desc=filename),
            lambda outcome: True,
            record_id=record_id,
            filename=filename,
        )
        return ContentFetch(filename, attempts)

    def fetch_archive(self, credential: Credential, record_id: int, dest_path: str) -> SurfaceAttempt:
        """Streams the record's files-archive whatever the status; the caller verifies the payload."""
        url = self.url(ARCHIVE_ENDPOINT, record_id=record_id)
        return self.stream_to_file(credential, RecordSurface.PUBLIC, url, dest_path,
                                   desc=f"zenodo_{record_id}.zip", require_ok=False)
