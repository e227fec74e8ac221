# -*- coding: utf-8 -*-
"""Token handling: the in-memory credential, the on-disk token stores and the
resolver that picks a token from environment, store or prompt."""
import base64
import binascii
import os
import stat
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from colorama import Fore, Style
from rich.console import Console

from .config import (
    AES_GCM_NONCE_SIZE,
    LEGACY_OPENSSL_ITERATIONS,
    LEGACY_OPENSSL_MAGIC,
    LEGACY_OPENSSL_SALT_SIZE,
    MAX_PASSPHRASE_ATTEMPTS,
    PBKDF2_ITERATIONS,
    PBKDF2_SALT_SIZE,
    TOKEN_ENV_VAR,
    TOKEN_FILE,
    TOKEN_FILE_ENC,
    TOKEN_FILE_MODE,
    TOKEN_SETTINGS_URL,
)
from .console import print_log, print_rule, prompt_hidden, prompt_user_input
from .errors import (
    CredentialStoreError,
    InvalidCredential,
    MissingCredential,
    TooManyAttempts,
    WrongPassphrase,
)

BLOB_MAGIC = b"ZDL1"
BLOB_HEADER_SIZE = len(BLOB_MAGIC) + 4  # magic + big-endian iteration count
AES_GCM_TAG_SIZE = 16


# --- Credential ---

class Credential:
    """Bearer token kept in a mutable buffer so it can be wiped.

    Use it as a context manager; the buffer is zeroed when the block exits,
    whether normally or through an exception.
    """

    def __init__(self, token: str):
        self._buffer = bytearray(token.strip().encode("utf-8"))

    @property
    def cleared(self) -> bool:
        return not self._buffer

    def reveal(self) -> str:
        if self.cleared:
            raise MissingCredential()
        return self._buffer.decode("utf-8")

    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.reveal()}"}

    def clear(self):
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer = bytearray()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.clear()
        return False

    def __repr__(self):
        return "<Credential cleared>" if self.cleared else "<Credential ****>"


class SourceKind(Enum):
    ENVIRONMENT = "environment"
    ENCRYPTED_FILE = "encrypted file"
    PLAINTEXT_FILE = "plaintext file"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class CredentialSource:
    kind: SourceKind
    path: Optional[str] = None

    @classmethod
    def environment(cls):
        return cls(SourceKind.ENVIRONMENT)

    @classmethod
    def encrypted_file(cls, path: str):
        return cls(SourceKind.ENCRYPTED_FILE, path)

    @classmethod
    def plaintext_file(cls, path: str):
        return cls(SourceKind.PLAINTEXT_FILE, path)

    @classmethod
    def interactive(cls):
        return cls(SourceKind.INTERACTIVE)

    def describe(self) -> str:
        if self.kind is SourceKind.ENVIRONMENT:
            return f"${TOKEN_ENV_VAR}"
        if self.path:
            return f"{self.kind.value} {self.path}"
        return self.kind.value


# --- Token Encryption ---

def _derive_key(passphrase: str, salt: bytes, iterations: int, length: int = 32) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=length, salt=salt, iterations=iterations)
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_token(token: str, passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Encrypts a token with AES-256-GCM under a PBKDF2-derived key.

    Blob layout (base64 of): magic | iterations | salt | nonce | ciphertext+tag.
    The magic and iteration count are bound in as associated data.
    """
    if not token:
        raise ValueError("Token cannot be empty")
    if not passphrase:
        raise ValueError("Passphrase cannot be empty")
    salt = os.urandom(PBKDF2_SALT_SIZE)
    nonce = os.urandom(AES_GCM_NONCE_SIZE)
    header = BLOB_MAGIC + struct.pack(">I", iterations)
    key = _derive_key(passphrase, salt, iterations)
    ciphertext = AESGCM(key).encrypt(nonce, token.encode("utf-8"), header)
    return base64.b64encode(header + salt + nonce + ciphertext).decode("ascii")


def decrypt_token(blob: str, passphrase: str) -> str:
    """Decrypts a stored token blob.

    Raises WrongPassphrase when the passphrase does not open the blob and
    ValueError when the blob itself is malformed.
    """
    try:
        raw = base64.b64decode(blob.strip())
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"not valid base64 ({e})") from e

    if raw.startswith(LEGACY_OPENSSL_MAGIC):
        return _decrypt_legacy_openssl(raw, passphrase)

    min_size = BLOB_HEADER_SIZE + PBKDF2_SALT_SIZE + AES_GCM_NONCE_SIZE + AES_GCM_TAG_SIZE
    if not raw.startswith(BLOB_MAGIC) or len(raw) <= min_size:
        raise ValueError("unrecognized encrypted token format")

    header = raw[:BLOB_HEADER_SIZE]
    (iterations,) = struct.unpack(">I", header[len(BLOB_MAGIC):])
    offset = BLOB_HEADER_SIZE
    salt = raw[offset:offset + PBKDF2_SALT_SIZE]
    offset += PBKDF2_SALT_SIZE
    nonce = raw[offset:offset + AES_GCM_NONCE_SIZE]
    ciphertext = raw[offset + AES_GCM_NONCE_SIZE:]

    key = _derive_key(passphrase, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, header)
    except InvalidTag:
        raise WrongPassphrase()
    return plaintext.decode("utf-8")


def _decrypt_legacy_openssl(raw: bytes, passphrase: str) -> str:
    """Reads `openssl enc -aes-256-cbc -pbkdf2 -salt -base64` output."""
    salt_end = len(LEGACY_OPENSSL_MAGIC) + LEGACY_OPENSSL_SALT_SIZE
    salt = raw[len(LEGACY_OPENSSL_MAGIC):salt_end]
    ciphertext = raw[salt_end:]
    if len(salt) != LEGACY_OPENSSL_SALT_SIZE or not ciphertext or len(ciphertext) % 16:
        raise ValueError("truncated openssl token blob")

    key_iv = _derive_key(passphrase, salt, LEGACY_OPENSSL_ITERATIONS, length=48)
    decryptor = Cipher(algorithms.AES(key_iv[:32]), modes.CBC(key_iv[32:])).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    try:
        data = unpadder.update(padded) + unpadder.finalize()
        token = data.decode("utf-8").strip()  # echo appended a newline
    except (ValueError, UnicodeDecodeError):
        raise WrongPassphrase()
    if not token:
        raise WrongPassphrase()
    return token


# --- Token Store ---

class CredentialStore:
    """Encrypted (~/.zenodo_token.enc) and plaintext (~/.zenodo_token) token files."""

    def __init__(
        self,
        plaintext_path: str = TOKEN_FILE,
        encrypted_path: str = TOKEN_FILE_ENC,
        ask_passphrase: Optional[Callable[[str], str]] = None,
        max_attempts: int = MAX_PASSPHRASE_ATTEMPTS,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        self.plaintext_path = plaintext_path
        self.encrypted_path = encrypted_path
        self.ask_passphrase = ask_passphrase or prompt_hidden
        self.max_attempts = max_attempts
        self.iterations = iterations

    def has_encrypted(self) -> bool:
        return os.path.isfile(self.encrypted_path)

    def has_plaintext(self) -> bool:
        return os.path.isfile(self.plaintext_path)

    def save(self, credential: Credential, passphrase: Optional[str] = None) -> str:
        """Writes the token encrypted when a passphrase is given, else plaintext. Returns the path."""
        if passphrase:
            blob = encrypt_token(credential.reveal(), passphrase, self.iterations)
            self._write_private(self.encrypted_path, blob)
            print_log("SUCCESS", f"Saved encrypted to {self.encrypted_path}")
            return self.encrypted_path
        self._write_private(self.plaintext_path, credential.reveal())
        print_log("SUCCESS", f"Saved to {self.plaintext_path} (plaintext, chmod 600)")
        return self.plaintext_path

    def load(self) -> Optional[Tuple[Credential, CredentialSource]]:
        """Loads from the encrypted store, else the plaintext store. None if neither exists."""
        if self.has_encrypted():
            print_log("INFO", "Found encrypted token")
            return self.load_encrypted(), CredentialSource.encrypted_file(self.encrypted_path)
        if self.has_plaintext():
            credential = self.load_plaintext()
            print_log("INFO", f"Using {self.plaintext_path}")
            return credential, CredentialSource.plaintext_file(self.plaintext_path)
        return None

    def load_encrypted(self) -> Credential:
        path = self.encrypted_path
        try:
            with open(path, "r", encoding="ascii") as f:
                blob = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialStoreError(path, f"cannot read ({e})") from e

        for attempt in range(1, self.max_attempts + 1):
            passphrase = self.ask_passphrase("Passphrase:")
            try:
                token = decrypt_token(blob, passphrase)
            except WrongPassphrase:
                print_log("WARN", f"Wrong passphrase ({attempt}/{self.max_attempts})")
                continue
            except ValueError as e:
                raise CredentialStoreError(path, f"unreadable encrypted token ({e})") from e
            print_log("SUCCESS", "Token decrypted")
            return Credential(token)

        print_log("ERROR", "Too many attempts")
        raise TooManyAttempts(self.max_attempts)

    def load_plaintext(self) -> Credential:
        path = self.plaintext_path
        try:
            mode = stat.S_IMODE(os.stat(path).st_mode)
            if mode & 0o077:
                print_log("WARN", f"Fixing permissions on {path} ({oct(mode)} -> {oct(TOKEN_FILE_MODE)})")
                os.chmod(path, TOKEN_FILE_MODE)
        except OSError as e:
            raise CredentialStoreError(path, f"cannot fix permissions ({e})") from e

        try:
            with open(path, "r", encoding="utf-8") as f:
                token = f.read().strip()
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialStoreError(path, f"cannot read ({e})") from e
        if not token:
            raise CredentialStoreError(path, "file is empty")
        return Credential(token)

    def remove(self) -> List[str]:
        """Deletes whichever token files exist. Returns the removed paths."""
        removed = []
        for path in (self.encrypted_path, self.plaintext_path):
            if not os.path.isfile(path):
                continue
            try:
                os.remove(path)
            except OSError as e:
                raise CredentialStoreError(path, f"cannot remove ({e})") from e
            print_log("SUCCESS", f"Removed {path}")
            removed.append(path)
        if not removed:
            print_log("INFO", "No stored token")
        return removed

    @staticmethod
    def _write_private(path: str, data: str):
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, TOKEN_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                # O_CREAT mode is ignored for existing files
                if hasattr(os, "fchmod"):
                    os.fchmod(f.fileno(), TOKEN_FILE_MODE)
                else:
                    os.chmod(path, TOKEN_FILE_MODE)
                f.write(data + "\n")
        except OSError as e:
            raise CredentialStoreError(path, f"cannot write ({e})") from e


# --- Resolver ---

def _ask_save_choice() -> str:
    print("  Save token?")
    print(f"    1) Encrypted (passphrase each use) {Fore.GREEN}<- recommended{Style.RESET_ALL}")
    print("    2) Plaintext (chmod 600)")
    print("    3) Don't save")
    print()
    return prompt_user_input(Console(), "Choice [1]: ")


class CredentialResolver:
    """Finds a token: $ZENODO_TOKEN, then encrypted file, then plaintext file, then prompt.

    `validate` is called only for prompted tokens, as validate(credential, record_id),
    and must return an object with `valid`, `status` and `error` attributes.
    """

    def __init__(
        self,
        store: CredentialStore,
        validate: Callable,
        environ: Optional[Mapping[str, str]] = None,
        ask_token: Optional[Callable[[str], str]] = None,
        ask_save_choice: Optional[Callable[[], str]] = None,
        ask_new_passphrase: Optional[Callable[[str], str]] = None,
    ):
        self.store = store
        self.validate = validate
        self.environ = os.environ if environ is None else environ
        self.ask_token = ask_token or prompt_hidden
        self.ask_save_choice = ask_save_choice or _ask_save_choice
        self.ask_new_passphrase = ask_new_passphrase or prompt_hidden

    def resolve(self, record_id: int) -> Tuple[Credential, CredentialSource]:
        env_token = (self.environ.get(TOKEN_ENV_VAR) or "").strip()
        if env_token:
            print_log("INFO", f"Using ${TOKEN_ENV_VAR}")
            return Credential(env_token), CredentialSource.environment()

        stored = self.store.load()
        if stored is not None:
            return stored

        return self._resolve_interactive(record_id), CredentialSource.interactive()

    def _resolve_interactive(self, record_id: int) -> Credential:
        print_rule("Token Required")
        print(f"  Get one: {TOKEN_SETTINGS_URL}")
        print(f"  Select {Style.BRIGHT}0{Style.RESET_ALL} from menu for detailed help.\n")

        token = (self.ask_token("Token (hidden):") or "").strip()
        if not token:
            print_log("ERROR", "No token")
            raise MissingCredential()

        credential = Credential(token)
        try:
            print_log("INFO", "Validating...")
            result = self.validate(credential, record_id)
            if not result.valid:
                print_log("ERROR", f"Failed (HTTP {result.status})")
                raise InvalidCredential(result.status, record_id, result.error)
            print_log("SUCCESS", "Valid")
            self._offer_save(credential)
        except BaseException:
            credential.clear()
            raise
        return credential

    def _offer_save(self, credential: Credential):
        choice = (self.ask_save_choice() or "1").strip()
        try:
            if choice == "2":
                self.store.save(credential)
            elif choice == "3":
                print_log("INFO", "Token not saved")
            else:
                self.store.save(credential, self._create_passphrase())
        except CredentialStoreError as e:
            print_log("ERROR", str(e))
            print_log("WARN", "Token not saved")

    def _create_passphrase(self) -> str:
        while True:
            first = self.ask_new_passphrase("Create passphrase:")
            second = self.ask_new_passphrase("Confirm passphrase:")
            if first != second:
                print_log("WARN", "Passphrases don't match")
            elif not first:
                print_log("WARN", "Passphrase cannot be empty")
            else:
                return first
