# -*- coding: utf-8 -*-
import datetime
import getpass
import platform
import shutil
import sys

import colorama
from colorama import Fore, Style
from rich.console import Console
from rich.prompt import Confirm

from .config import DEBUG_ENABLED

colorama.init(autoreset=True, strip=None if platform.system() == "Windows" else False)

INPUT_INDICATOR = f"{Fore.YELLOW}--> {Style.RESET_ALL}"

# --- Logging Helpers ---

def print_log(level, message):
    """Prints a formatted, colorized log line."""
    if level == "DEBUG" and not DEBUG_ENABLED:
        return
    timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]

    log_prefix_map = {
        "INFO":    f"{Fore.CYAN}[{timestamp}][INFO]{Style.RESET_ALL}",
        "WARN":    f"{Fore.YELLOW}{Style.BRIGHT}[{timestamp}][WARN]{Style.RESET_ALL}",
        "ERROR":   f"{Fore.RED}{Style.BRIGHT}[{timestamp}][ERROR]{Style.RESET_ALL}",
        "SUCCESS": f"{Fore.GREEN}{Style.BRIGHT}[{timestamp}][SUCCESS]{Style.RESET_ALL}",
        "STEP":    f"\n{Fore.MAGENTA}{Style.BRIGHT}>>> [{timestamp}] {message} <<<{Style.RESET_ALL}",
        "DEBUG":   f"{Fore.WHITE}[{timestamp}][DEBUG]{Style.RESET_ALL}",
        "INPUT":   f"{Fore.YELLOW}> [{timestamp}][INPUT]{Style.RESET_ALL} {message}",
    }
    prefix = log_prefix_map.get(level, f"[{timestamp}][{level}]")

    if level == "STEP":
        print(prefix)
    elif level == "INPUT":
        print(prefix, end="")
        sys.stdout.flush()
    else:
        stream = sys.stderr if level == "ERROR" else sys.stdout
        print(f"{prefix} {message}", file=stream)


def print_rule(title: str):
    """Prints a cyan section banner."""
    try:
        width = min(shutil.get_terminal_size().columns, 70)
    except OSError:
        width = 70
    print(f"\n{Fore.CYAN}{'━' * width}{Style.RESET_ALL}")
    print(f"{Fore.CYAN}  {title}{Style.RESET_ALL}")
    print(f"{Fore.CYAN}{'━' * width}{Style.RESET_ALL}\n")


# --- Prompt Helpers ---

def prompt_user_input(console: Console, prompt_message: str) -> str:
    """Reads a line through the rich console, behind the input indicator."""
    try:
        return console.input(f"{INPUT_INDICATOR}{prompt_message}")
    except (EOFError, KeyboardInterrupt):
        print()  # Move off the half-written prompt line
        raise


def prompt_user_confirm(console: Console, prompt_message: str, default_val: bool = False) -> bool:
    """Yes/no confirmation through rich Confirm."""
    try:
        return Confirm.ask(prompt=f"{INPUT_INDICATOR}{prompt_message}", default=default_val, console=console)
    except (EOFError, KeyboardInterrupt):
        print()
        raise


def prompt_hidden(prompt_message: str) -> str:
    """Hidden input for tokens and passphrases."""
    print_log("INPUT", f"{prompt_message}{Style.RESET_ALL} ")
    return getpass.getpass("")


# --- Formatting Helpers ---

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(size_bytes: int) -> str:
    """Binary-unit size for log lines, e.g. '1.50 MB'. Unknown or negative sizes read as 0 B."""
    size = float(size_bytes or 0)
    if size < 1024:
        return f"{max(int(size), 0)} B"
    for unit in SIZE_UNITS[1:]:
        size /= 1024
        if size < 1024 or unit == SIZE_UNITS[-1]:
            return f"{size:.2f} {unit}"


def format_duration(seconds: float) -> str:
    """Elapsed time as '4.2s', '3m 07s' or '1h 02m 09s'."""
    seconds = max(seconds, 0.0)
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"
