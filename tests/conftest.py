import json

import pytest

from zenodo_dl.api import ZenodoClient
from zenodo_dl.credentials import Credential, CredentialStore

API_BASE = "https://zenodo.test/api"
ZIP_BYTES = b"PK\x05\x06" + b"\x00" * 18  # empty ZIP archive


class FakeResponse:
    """Just enough of requests.Response for the client."""

    def __init__(self, status_code=200, json_data=None, body=None, headers=None, fail_midstream=None):
        if body is None:
            body = json.dumps(json_data).encode("utf-8") if json_data is not None else b""
        self.status_code = status_code
        self.content = body
        self.headers = headers or {}
        self.fail_midstream = fail_midstream

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.text)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]
        if self.fail_midstream is not None:
            raise self.fail_midstream

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Replays canned responses by URL and records every request.

    A route may be a FakeResponse, an exception instance (raised), or a list
    consumed one item per request. Unrouted URLs answer HTTP 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, headers=None, stream=False, allow_redirects=True):
        self.calls.append({"url": url, "headers": dict(headers or {}), "stream": stream})
        handler = self.routes.get(url)
        if isinstance(handler, list):
            handler = handler.pop(0)
        if handler is None:
            return FakeResponse(404, {"status": 404, "message": "PID does not exist."})
        if isinstance(handler, Exception):
            raise handler
        return handler

    @property
    def urls(self):
        return [call["url"] for call in self.calls]


def owner_url(record_id, suffix=""):
    return f"{API_BASE}/deposit/depositions/{record_id}{suffix}"


def public_url(record_id, suffix=""):
    return f"{API_BASE}/records/{record_id}{suffix}"


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def client(session):
    return ZenodoClient(api_base=API_BASE, session=session, chunk_size=8, show_progress=False)


@pytest.fixture
def credential():
    with Credential("secret-token") as cred:
        yield cred


@pytest.fixture
def passphrases():
    """Scripted answers for passphrase prompts; records each prompt shown."""

    class Script:
        def __init__(self):
            self.answers = []
            self.prompts = []

        def __call__(self, prompt):
            self.prompts.append(prompt)
            return self.answers.pop(0)

    return Script()


@pytest.fixture
def store(tmp_path, passphrases):
    return CredentialStore(
        plaintext_path=str(tmp_path / ".zenodo_token"),
        encrypted_path=str(tmp_path / ".zenodo_token.enc"),
        ask_passphrase=passphrases,
        iterations=1000,
    )
