# -*- coding: utf-8 -*-
import os

from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.getcwd(), "config", "zenodo_dl.conf"))

# --- Default Configuration ---
ZENODO_DL_VERSION = "1.4.4"
API_BASE = os.environ.get("ZENODO_API_BASE", "https://zenodo.org/api").rstrip("/")
TOKEN_ENV_VAR = "ZENODO_TOKEN"
TOKEN_FILE = os.path.expanduser(os.environ.get("ZENODO_TOKEN_FILE", os.path.join("~", ".zenodo_token")))
TOKEN_FILE_ENC = os.path.expanduser(os.environ.get("ZENODO_TOKEN_FILE_ENC", os.path.join("~", ".zenodo_token.enc")))
DEFAULT_OUTPUT_DIR = "."
DOWNLOAD_CHUNK_SIZE = int(os.environ.get("ZENODO_DL_CHUNK_KB", 1024)) * 1024
DEBUG_ENABLED = bool(os.environ.get("ZENODO_DL_DEBUG"))

# --- Token Storage ---
MAX_PASSPHRASE_ATTEMPTS = 3
TOKEN_FILE_MODE = 0o600
PBKDF2_ITERATIONS = 390000
PBKDF2_SALT_SIZE = 16
AES_GCM_NONCE_SIZE = 12

# openssl enc -aes-256-cbc -pbkdf2 defaults, used by tokens saved with the shell tool
LEGACY_OPENSSL_MAGIC = b"Salted__"
LEGACY_OPENSSL_SALT_SIZE = 8
LEGACY_OPENSSL_ITERATIONS = 10000

TOKEN_SETTINGS_URL = "https://zenodo.org/account/settings/applications/"
