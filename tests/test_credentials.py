"""Tests for zenodo_dl.credentials: encryption, token stores and resolution order."""
import base64
import os
import stat

import pytest
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from zenodo_dl.api import ValidationResult
from zenodo_dl.credentials import (
    Credential,
    CredentialResolver,
    CredentialSource,
    SourceKind,
    decrypt_token,
    encrypt_token,
)
from zenodo_dl.errors import (
    CredentialStoreError,
    InvalidCredential,
    MissingCredential,
    TooManyAttempts,
    WrongPassphrase,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX file modes")


def openssl_blob(token, passphrase, salt=b"\x01\x02\x03\x04\x05\x06\x07\x08"):
    """What `echo token | openssl enc -aes-256-cbc -pbkdf2 -salt -base64` writes."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=48, salt=salt, iterations=10000)
    key_iv = kdf.derive(passphrase.encode("utf-8"))
    padder = padding.PKCS7(128).padder()
    padded = padder.update((token + "\n").encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key_iv[:32]), modes.CBC(key_iv[32:])).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    encoded = base64.b64encode(b"Salted__" + salt + ciphertext).decode("ascii")
    return "\n".join(encoded[i:i + 64] for i in range(0, len(encoded), 64)) + "\n"


def file_mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


class TestTokenEncryption:
    def test_round_trip(self):
        blob = encrypt_token("abc123XYZ", "correct horse", iterations=1000)
        assert decrypt_token(blob, "correct horse") == "abc123XYZ"

    def test_blob_is_base64_without_plaintext(self):
        blob = encrypt_token("abc123XYZ", "pw", iterations=1000)
        base64.b64decode(blob, validate=True)
        assert "abc123XYZ" not in blob

    def test_salt_makes_each_blob_unique(self):
        assert encrypt_token("tok", "pw", iterations=1000) != encrypt_token("tok", "pw", iterations=1000)

    def test_wrong_passphrase(self):
        blob = encrypt_token("abc123XYZ", "right", iterations=1000)
        with pytest.raises(WrongPassphrase):
            decrypt_token(blob, "wrong")

    def test_empty_passphrase_rejected(self):
        with pytest.raises(ValueError):
            encrypt_token("tok", "")

    def test_garbage_blob_is_not_a_wrong_passphrase(self):
        with pytest.raises(ValueError) as exc_info:
            decrypt_token(base64.b64encode(b"not a token blob").decode(), "pw")
        assert not isinstance(exc_info.value, WrongPassphrase)

    def test_reads_openssl_shell_tool_format(self):
        assert decrypt_token(openssl_blob("legacy-token", "pw"), "pw") == "legacy-token"

    def test_openssl_format_wrong_passphrase(self):
        with pytest.raises(WrongPassphrase):
            decrypt_token(openssl_blob("legacy-token", "pw"), "not-pw")


class TestCredential:
    def test_auth_header(self):
        assert Credential(" tok \n").auth_header() == {"Authorization": "Bearer tok"}

    def test_clear_zeroes_buffer(self):
        cred = Credential("tok")
        buffer = cred._buffer
        cred.clear()
        assert cred.cleared
        assert bytes(buffer) == b"\x00\x00\x00"
        with pytest.raises(MissingCredential):
            cred.reveal()

    def test_context_manager_clears_on_error(self):
        cred = Credential("tok")
        with pytest.raises(RuntimeError):
            with cred:
                raise RuntimeError("boom")
        assert cred.cleared

    def test_repr_hides_token(self):
        assert "tok" not in repr(Credential("tok"))


class TestCredentialStore:
    @posix_only
    def test_save_plaintext(self, store):
        path = store.save(Credential("tok"))
        assert path == store.plaintext_path
        assert open(path).read().strip() == "tok"
        assert file_mode(path) == 0o600
        assert not store.has_encrypted()

    @posix_only
    def test_existing_file_restricted_before_token_written(self, store, monkeypatch):
        with open(store.plaintext_path, "w") as f:
            f.write("old\n")
        os.chmod(store.plaintext_path, 0o644)
        seen = []
        real_fchmod = os.fchmod

        def recording_fchmod(fd, mode):
            seen.append((os.fstat(fd).st_size, mode))
            real_fchmod(fd, mode)

        monkeypatch.setattr(os, "fchmod", recording_fchmod)
        store.save(Credential("tok"))
        assert seen == [(0, 0o600)]
        assert file_mode(store.plaintext_path) == 0o600
        assert open(store.plaintext_path).read().strip() == "tok"

    @posix_only
    def test_save_encrypted(self, store, passphrases):
        path = store.save(Credential("tok"), "pw")
        assert path == store.encrypted_path
        assert "tok" not in open(path).read()
        assert file_mode(path) == 0o600
        assert not store.has_plaintext()

        passphrases.answers = ["pw"]
        credential, source = store.load()
        assert credential.reveal() == "tok"
        assert source == CredentialSource.encrypted_file(store.encrypted_path)

    def test_wrong_passphrase_reprompts(self, store, passphrases):
        store.save(Credential("tok"), "pw")
        passphrases.answers = ["nope", "still nope", "pw"]
        assert store.load_encrypted().reveal() == "tok"
        assert len(passphrases.prompts) == 3

    def test_three_wrong_passphrases(self, store, passphrases):
        store.save(Credential("tok"), "pw")
        passphrases.answers = ["a", "b", "c", "pw"]
        with pytest.raises(TooManyAttempts):
            store.load_encrypted()
        assert len(passphrases.prompts) == 3
        assert passphrases.answers == ["pw"]

    def test_openssl_blob_in_store(self, store, passphrases):
        with open(store.encrypted_path, "w") as f:
            f.write(openssl_blob("legacy-token", "pw"))
        passphrases.answers = ["pw"]
        assert store.load_encrypted().reveal() == "legacy-token"

    def test_corrupt_encrypted_file(self, store, passphrases):
        with open(store.encrypted_path, "w") as f:
            f.write("!!!not base64!!!")
        passphrases.answers = ["pw"]
        with pytest.raises(CredentialStoreError):
            store.load_encrypted()

    @posix_only
    def test_plaintext_permissions_fixed(self, store):
        with open(store.plaintext_path, "w") as f:
            f.write("tok\n")
        os.chmod(store.plaintext_path, 0o644)
        credential, source = store.load()
        assert credential.reveal() == "tok"
        assert source.kind is SourceKind.PLAINTEXT_FILE
        assert file_mode(store.plaintext_path) == 0o600

    def test_empty_plaintext_file(self, store):
        open(store.plaintext_path, "w").close()
        with pytest.raises(CredentialStoreError):
            store.load_plaintext()

    def test_encrypted_checked_before_plaintext(self, store, passphrases):
        store.save(Credential("plain"))
        store.save(Credential("secret"), "pw")
        passphrases.answers = ["pw"]
        credential, source = store.load()
        assert credential.reveal() == "secret"
        assert source.kind is SourceKind.ENCRYPTED_FILE

    def test_load_nothing(self, store):
        assert store.load() is None

    def test_remove_both(self, store):
        store.save(Credential("plain"))
        store.save(Credential("secret"), "pw")
        removed = store.remove()
        assert sorted(removed) == sorted([store.plaintext_path, store.encrypted_path])
        assert not store.has_plaintext() and not store.has_encrypted()

    def test_remove_none(self, store):
        assert store.remove() == []


class FakeValidator:
    def __init__(self, status=200):
        self.status = status
        self.calls = []

    def __call__(self, credential, record_id):
        self.calls.append((credential, record_id))
        return ValidationResult(self.status == 200, self.status)


def failing_prompt(prompt):
    raise AssertionError(f"unexpected prompt: {prompt}")


class TestCredentialResolver:
    def make(self, store, validator=None, environ=None, token="typed-token", save_choice="3",
             new_passphrases=None):
        answers = list(new_passphrases or [])
        return CredentialResolver(
            store,
            validator or FakeValidator(),
            environ=environ or {},
            ask_token=lambda prompt: token,
            ask_save_choice=lambda: save_choice,
            ask_new_passphrase=lambda prompt: answers.pop(0),
        )

    def test_environment_wins(self, store, passphrases):
        store.save(Credential("secret"), "pw")
        store.save(Credential("plain"))
        validator = FakeValidator()
        resolver = self.make(store, validator, environ={"ZENODO_TOKEN": "env-token"})
        resolver.ask_token = failing_prompt

        credential, source = resolver.resolve(42)
        assert credential.reveal() == "env-token"
        assert source.kind is SourceKind.ENVIRONMENT
        assert passphrases.prompts == []
        assert validator.calls == []

    def test_blank_environment_is_ignored(self, store):
        resolver = self.make(store, environ={"ZENODO_TOKEN": "  "}, save_choice="3")
        credential, source = resolver.resolve(42)
        assert source.kind is SourceKind.INTERACTIVE
        assert credential.reveal() == "typed-token"

    def test_encrypted_before_plaintext(self, store, passphrases):
        store.save(Credential("secret"), "pw")
        store.save(Credential("plain"))
        passphrases.answers = ["pw"]
        resolver = self.make(store)
        resolver.ask_token = failing_prompt

        credential, source = resolver.resolve(42)
        assert credential.reveal() == "secret"
        assert source.kind is SourceKind.ENCRYPTED_FILE

    def test_plaintext_before_prompt(self, store):
        store.save(Credential("plain"))
        validator = FakeValidator()
        resolver = self.make(store, validator)
        resolver.ask_token = failing_prompt

        credential, source = resolver.resolve(42)
        assert credential.reveal() == "plain"
        assert source.kind is SourceKind.PLAINTEXT_FILE
        assert validator.calls == []

    def test_stored_token_is_not_validated(self, store, passphrases):
        store.save(Credential("secret"), "pw")
        passphrases.answers = ["pw"]
        validator = FakeValidator(status=401)
        credential, _ = self.make(store, validator).resolve(42)
        assert credential.reveal() == "secret"
        assert validator.calls == []

    def test_prompted_token_validated_against_record(self, store):
        validator = FakeValidator()
        credential, source = self.make(store, validator, save_choice="3").resolve(42)
        assert source.kind is SourceKind.INTERACTIVE
        assert [record_id for _, record_id in validator.calls] == [42]
        assert not store.has_plaintext() and not store.has_encrypted()

    def test_empty_prompt(self, store):
        validator = FakeValidator()
        with pytest.raises(MissingCredential):
            self.make(store, validator, token="").resolve(42)
        assert validator.calls == []

    def test_invalid_token_not_saved_and_cleared(self, store):
        validator = FakeValidator(status=401)
        resolver = self.make(store, validator, save_choice="2")
        with pytest.raises(InvalidCredential) as exc_info:
            resolver.resolve(42)
        assert exc_info.value.status == 401
        assert "401" in str(exc_info.value)
        assert validator.calls[0][0].cleared
        assert not store.has_plaintext() and not store.has_encrypted()

    def test_save_back_plaintext(self, store):
        credential, _ = self.make(store, save_choice="2").resolve(42)
        assert open(store.plaintext_path).read().strip() == "typed-token"
        assert credential.reveal() == "typed-token"

    def test_save_back_encrypted_is_default(self, store, passphrases):
        resolver = self.make(store, save_choice="", new_passphrases=["a", "b", "", "", "pw", "pw"])
        resolver.resolve(42)
        assert store.has_encrypted()
        assert not store.has_plaintext()
        passphrases.answers = ["pw"]
        assert store.load_encrypted().reveal() == "typed-token"

    def test_unknown_save_choice_means_encrypted(self, store):
        self.make(store, save_choice="9", new_passphrases=["pw", "pw"]).resolve(42)
        assert store.has_encrypted()
