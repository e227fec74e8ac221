# -*- coding: utf-8 -*-
"""Exception hierarchy for zenodo_dl.

Credential-layer errors end the process (after the credential is cleared).
Operation-layer errors are reported and control returns to the menu.
"""
from typing import List, Optional, Tuple


class ZenodoDLError(Exception):
    """Base class for every error raised by zenodo_dl."""


class InvalidRecordId(ZenodoDLError, ValueError):
    def __init__(self, raw):
        super().__init__(f"Invalid record ID '{raw}': numbers only")
        self.raw = raw


# --- Credential layer ---

class CredentialError(ZenodoDLError):
    """Fatal for the invocation."""


class MissingCredential(CredentialError):
    def __init__(self):
        super().__init__("No token available (environment, stored token and prompt all empty)")


class InvalidCredential(CredentialError):
    def __init__(self, status: int, record_id: int, detail: Optional[str] = None):
        message = f"Token validation failed (HTTP {status}) for record {record_id} on the deposit API"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status = status
        self.record_id = record_id


class WrongPassphrase(CredentialError):
    def __init__(self, message: str = "Wrong passphrase"):
        super().__init__(message)


class TooManyAttempts(CredentialError):
    def __init__(self, attempts: int):
        super().__init__(f"Too many attempts ({attempts} wrong passphrases)")
        self.attempts = attempts


class CredentialStoreError(ZenodoDLError):
    """File or permission failure on a token file. Fatal for that operation only."""

    def __init__(self, path, reason):
        super().__init__(f"Token file '{path}': {reason}")
        self.path = path
        self.reason = reason


# --- Operation layer ---

class OperationError(ZenodoDLError):
    """Local to one menu operation."""


class RecordNotFound(OperationError):
    def __init__(self, record_id: int, attempts: List[Tuple[str, int, Optional[str]]]):
        tried = "; ".join(
            f"{surface} API: {'HTTP ' + str(status) if status else 'no response'}" + (f" ({error})" if error else "")
            for surface, status, error in attempts
        )
        super().__init__(f"Record {record_id} not found ({tried or 'no surface tried'})")
        self.record_id = record_id
        self.attempts = attempts


class DownloadVerificationFailed(OperationError):
    def __init__(self, path, status: int, payload: str):
        super().__init__(f"Archive download for '{path}' is not a ZIP archive (HTTP {status}): {payload}")
        self.path = path
        self.status = status
        self.payload = payload


class PartialBatchFailure(OperationError):
    def __init__(self, result):
        failed_names = ", ".join(name for name, _ in result.failed)
        super().__init__(
            f"{len(result.failed)} of {result.total} files failed to download: {failed_names}"
        )
        self.result = result


class NoMatch(OperationError):
    def __init__(self, selection: str):
        super().__init__(f"No match: {selection}")
        self.selection = selection


class ArchiveError(OperationError):
    pass
