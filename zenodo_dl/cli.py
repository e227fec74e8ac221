# -*- coding: utf-8 -*-
import argparse
import sys
import time
import traceback
from typing import Callable, List, Optional

from colorama import Fore, Style
from rich.console import Console
from rich.table import Table

from .api import FileListing, ZenodoClient, parse_record_id
from .archive import extract_archive
from .config import DEFAULT_OUTPUT_DIR, TOKEN_ENV_VAR, TOKEN_SETTINGS_URL, ZENODO_DL_VERSION
from .console import format_bytes, format_duration, print_log, print_rule, prompt_user_confirm, prompt_user_input
from .credentials import Credential, CredentialResolver, CredentialSource, CredentialStore
from .download import DownloadEngine, select_files
from .errors import (
    CredentialError,
    CredentialStoreError,
    InvalidRecordId,
    OperationError,
    PartialBatchFailure,
)
from .paths import expand_path, path_fix_candidates

TOKEN_HELP = f"""
  {Style.BRIGHT}HOW TO GET A ZENODO TOKEN{Style.RESET_ALL}

  1. Log in:     https://zenodo.org/login
  2. Settings:   {TOKEN_SETTINGS_URL}
  3. Click:      + New token
  4. Scope:      deposit:read
  5. Create & copy immediately (shown only once)

  {Style.BRIGHT}STORAGE OPTIONS{Style.RESET_ALL}

  Tokens are looked up in this order:

    1. ${TOKEN_ENV_VAR} environment variable
    2. ~/.zenodo_token.enc (encrypted, passphrase required)
    3. ~/.zenodo_token (plaintext, chmod 600)
    4. Interactive prompt

  Encrypted storage uses AES-256-GCM with PBKDF2 key derivation.
  Tokens encrypted by the zenodo_dl.sh shell script are still readable.
"""


def ask_record_id(ask: Callable[[str], str]) -> int:
    """Prompts until a numeric record ID is entered."""
    print_rule("Zenodo Record ID")
    print("  Find the record ID in the Zenodo URL:\n")
    print(f"    https://zenodo.org/records/{Style.BRIGHT}1234567{Style.RESET_ALL}")
    print(f"    https://zenodo.org/uploads/{Style.BRIGHT}1234567{Style.RESET_ALL}  (drafts)\n")
    while True:
        raw = ask("Record ID: ").strip()
        try:
            return parse_record_id(raw)
        except InvalidRecordId:
            print_log("WARN", "Numbers only")


class ZenodoMenu:
    """Interactive menu for one process credential and a current record."""

    def __init__(
        self,
        record_id: int,
        credential: Credential,
        source: CredentialSource,
        client: ZenodoClient,
        store: CredentialStore,
        console: Optional[Console] = None,
        ask: Optional[Callable[[str], str]] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.record_id = record_id
        self.credential = credential
        self.source = source
        self.client = client
        self.engine = DownloadEngine(client)
        self.store = store
        self.console = console or Console()
        self.ask = ask or (lambda message: prompt_user_input(self.console, message))
        self.confirm = confirm or (lambda message: prompt_user_confirm(self.console, message, default_val=False))

    def run(self):
        actions = {
            "0": self.show_token_help,
            "1": self.list_files,
            "2": self.download_all,
            "3": self.download_specific,
            "4": self.extract,
            "t": self.remove_token,
            "r": self.change_record,
        }
        while True:
            self._print_menu()
            choice = self.ask("→ ").strip().lower()
            if choice == "q":
                print()
                return
            action = actions.get(choice)
            if action is None:
                print_log("WARN", "Invalid")
                continue
            try:
                action()
            except PartialBatchFailure as e:
                print_log("WARN", str(e))
            except (OperationError, CredentialStoreError) as e:
                print_log("ERROR", str(e))
            except OSError as e:
                print_log("ERROR", f"File system error: {e}")

    def _print_menu(self):
        print_rule(f"zenodo_dl {ZENODO_DL_VERSION} - Record {Style.BRIGHT}{self.record_id}{Style.RESET_ALL}")
        print("    0) Token help")
        print("    1) List files")
        print("    2) Download all")
        print("    3) Download specific")
        print("    4) Extract archive")
        print()
        print("    t) Remove token    r) Change record    q) Quit")
        print()

    # --- Prompts ---

    def _ask_path(self, message: str, default: str = DEFAULT_OUTPUT_DIR) -> str:
        path = expand_path(self.ask(f"{message} [{default}]: ") or default)
        candidates = path_fix_candidates(path)
        if not candidates:
            return path
        print_log("WARN", f"'{path}' requires root. Did you mean:")
        print(f"      1) {candidates[0]} (relative to current dir)")
        print(f"      2) {candidates[1]} (in home dir)")
        print("      3) Keep as-is")
        fix = self.ask("Choice [1]: ").strip() or "1"
        if fix == "1":
            return candidates[0]
        if fix == "2":
            return candidates[1]
        return path

    # --- Actions ---

    def show_token_help(self):
        print(TOKEN_HELP)
        print_log("INFO", f"Current token source: {self.source.describe()}")
        self.ask("Press Enter to continue...")

    def _render_listing(self, listing: FileListing, numbered: bool = False):
        table = Table(title=f"Record {listing.record_id} ({listing.surface.label} API)", show_header=True,
                      header_style="bold magenta", border_style="blue")
        if numbered:
            table.add_column("#", style="dim cyan", justify="right")
        table.add_column("Size (MB)", justify="right")
        table.add_column("File", style="yellow")
        for i, entry in enumerate(listing, start=1):
            row = [f"{entry.size_mb:.2f}", entry.name]
            if numbered:
                row.insert(0, str(i))
            table.add_row(*row)
        self.console.print(table)
        print_log("INFO", f"{len(listing)} files, {format_bytes(listing.total_bytes)} total")

    def list_files(self):
        listing = self.client.list_files(self.credential, self.record_id)
        self._render_listing(listing)

    def download_all(self):
        print("\n  1) ZIP (single file)")
        print("  2) Individual files\n")
        fmt = self.ask("Format [1]: ").strip() or "1"
        outdir = self._ask_path("Output dir")
        start = time.monotonic()

        if fmt == "1":
            outfile = self.engine.download_bundle(self.credential, self.record_id, outdir)
            print_log("INFO", f"Total time: {format_duration(time.monotonic() - start)}")
            if self.confirm("Extract?"):
                extract_archive(outfile, self._ask_path("Extract to"))
        else:
            self.engine.download_all_files(self.credential, self.record_id, outdir)
            print_log("INFO", f"Total time: {format_duration(time.monotonic() - start)}")

    def download_specific(self):
        listing = self.client.list_files(self.credential, self.record_id)
        self._render_listing(listing, numbered=True)
        selection = self.ask("File number(s) or pattern: ")
        outdir = self._ask_path("Output dir")
        entries = select_files(listing, selection)
        self.engine.download_files(self.credential, self.record_id, entries, outdir)

    def extract(self):
        archive = expand_path(self.ask("Archive path: "))
        extract_archive(archive, self._ask_path("Extract to"))

    def remove_token(self):
        self.store.remove()
        if self.source.path:
            print_log("INFO", "The token stays loaded until this session ends.")

    def change_record(self):
        self.record_id = ask_record_id(self.ask)
        print_log("INFO", f"Keeping token from {self.source.describe()}")


# --- Argument Parsing Setup ---

def setup_arg_parser():
    """Sets up the command-line argument parser with colored help."""
    parser = argparse.ArgumentParser(
        prog="zenodo-dl",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=f"""
{Style.BRIGHT}{Fore.CYAN}==== zenodo_dl: Download files from Zenodo records ===={Style.RESET_ALL}
Version: {Fore.YELLOW}{ZENODO_DL_VERSION}{Style.RESET_ALL}

Lists and downloads files of public, restricted and draft Zenodo records.
""",
        epilog=f"""
{Style.BRIGHT}{Fore.MAGENTA}------------------ EXAMPLES -----------------{Style.RESET_ALL}
$ {Fore.CYAN}zenodo-dl{Style.RESET_ALL}                          {Style.DIM}# Prompt for record ID{Style.RESET_ALL}
$ {Fore.CYAN}zenodo-dl{Style.RESET_ALL} {Fore.YELLOW}12345678{Style.RESET_ALL}                 {Style.DIM}# Use record ID directly{Style.RESET_ALL}
$ {Fore.GREEN}{TOKEN_ENV_VAR}=xyz{Style.RESET_ALL} {Fore.CYAN}zenodo-dl{Style.RESET_ALL} {Fore.YELLOW}12345678{Style.RESET_ALL}  {Style.DIM}# Pre-set token{Style.RESET_ALL}
$ {Fore.CYAN}zenodo-dl{Style.RESET_ALL} {Fore.RED}--uninstall{Style.RESET_ALL}              {Style.DIM}# Remove stored token(s){Style.RESET_ALL}

{Style.BRIGHT}{Fore.MAGENTA}--------------- TOKEN STORAGE ---------------{Style.RESET_ALL}
Tokens can be stored encrypted (AES-256, passphrase required each use)
or plaintext (chmod 600). Encrypted is the default.
Files: ~/.zenodo_token.enc (encrypted) or ~/.zenodo_token (plaintext)
"""
    )
    parser.add_argument("record_id", nargs="?", default=None, metavar="RECORD_ID",
                        help=f"Zenodo {Fore.YELLOW}record ID{Style.RESET_ALL} (prompted if omitted).")
    parser.add_argument("--uninstall", action="store_true", help=f"{Fore.RED}Remove stored token(s){Style.RESET_ALL} and exit.")
    parser.add_argument("--no-progress", action="store_true", help="Hide download progress bars.")
    parser.add_argument("--version", action="version", version=f"zenodo_dl {ZENODO_DL_VERSION}")
    return parser


def do_uninstall(store: CredentialStore) -> int:
    print()
    store.remove()
    print()
    print_log("INFO", "To fully remove, uninstall the package: pip uninstall zenodo-dl")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = setup_arg_parser()
    args = parser.parse_args(argv)
    store = CredentialStore()

    try:
        if args.uninstall:
            return do_uninstall(store)

        print(f"\n{Fore.GREEN}┌────────────────────────────────────────┐{Style.RESET_ALL}")
        print(f"{Fore.GREEN}│  zenodo_dl {ZENODO_DL_VERSION:<28}│{Style.RESET_ALL}")
        print(f"{Fore.GREEN}└────────────────────────────────────────┘{Style.RESET_ALL}")

        console = Console()
        ask = lambda message: prompt_user_input(console, message)
        record_id = parse_record_id(args.record_id) if args.record_id is not None else ask_record_id(ask)

        client = ZenodoClient(show_progress=not args.no_progress)
        resolver = CredentialResolver(store, client.validate)
        credential, source = resolver.resolve(record_id)
        with credential:
            ZenodoMenu(record_id, credential, source, client, store, console=console, ask=ask).run()
        return 0

    except (InvalidRecordId, CredentialError, CredentialStoreError) as e:
        print_log("ERROR", str(e))
        return 1
    except (KeyboardInterrupt, EOFError):
        print_log("WARN", "\nOperation cancelled by user.")
        return 130
    except Exception as main_exception:
        print_log("ERROR", f"Critical unexpected error: {main_exception}")
        print(f"{Fore.RED}{Style.BRIGHT}--- TRACEBACK ---{Style.RESET_ALL}")
        print(f"{Fore.RED}{traceback.format_exc()}{Style.RESET_ALL}")
        print(f"{Fore.RED}{Style.BRIGHT}-----------------{Style.RESET_ALL}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
