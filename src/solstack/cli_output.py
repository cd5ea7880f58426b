"""
Colored CLI output utilities for solstack.

Provides styled terminal output with colors, progress bars, and status indicators.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import sys

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm


# Initialize colorama for cross-platform support
colorama_init(autoreset=True)


class Colors:
    """Color constants for consistent styling."""

    HEADER = Fore.CYAN + Style.BRIGHT

    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    INFO = Fore.WHITE

    VALUE = Fore.YELLOW + Style.BRIGHT
    METRIC = Fore.MAGENTA
    PATH = Fore.CYAN

    PROGRESS = Fore.GREEN
    RESET = Style.RESET_ALL


class Symbols:
    """Unicode symbols for status indicators."""

    CHECK = "\u2714"  # ✔
    CROSS = "\u2718"  # ✘
    ARROW = "\u2192"  # →
    BULLET = "\u2022"  # •
    SUN = "\u2600"  # ☀

    @classmethod
    def use_ascii(cls):
        """Switch to ASCII-only fallbacks."""
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.SUN = "(*)"


def print_banner(version: str) -> None:
    """Print the solstack startup banner."""
    print(
        f"\n{Colors.HEADER}{Symbols.SUN}  solstack {version} | "
        f"Solar & Lunar Stacking Pipeline{Colors.RESET}"
    )


def print_header(text: str, width: int = 60) -> None:
    """Print a styled section header."""
    line = "=" * width
    print(f"\n{Colors.HEADER}{line}")
    print(f"  {text}")
    print(f"{line}{Colors.RESET}")


def print_success(text: str) -> None:
    """Print a success message."""
    print(f"{Colors.SUCCESS}{Symbols.CHECK} {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    """Print a warning message."""
    print(f"{Colors.WARNING}! {text}{Colors.RESET}")


def print_error(text: str) -> None:
    """Print an error message."""
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    """Print an info message."""
    print(f"{Colors.INFO}{Symbols.BULLET} {text}{Colors.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print a metric with value."""
    if unit:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET} {unit}")
    else:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}")


def print_path(label: str, path: str) -> None:
    """Print a file path."""
    print(f"  {Colors.INFO}{label}: {Colors.PATH}{path}{Colors.RESET}")


def print_rejections(tally: dict[str, int], total: int) -> None:
    """Print the per-reason rejection counts as a share of the capture."""
    if not tally:
        print(f"  {Colors.SUCCESS}{Symbols.CHECK} No frame rejected{Colors.RESET}")
        return
    width = max(len(reason) for reason in tally)
    for reason, count in sorted(tally.items(), key=lambda kv: (-kv[1], kv[0])):
        share = 100.0 * count / total if total else 0.0
        print(f"  {Colors.WARNING}{Symbols.CROSS} {reason:<{width}}{Colors.RESET} "
              f"{Colors.VALUE}{count:>6}{Colors.RESET} ({share:.1f}%)")


def print_outputs(outputs: dict[str, str]) -> None:
    """Print written files, image first."""
    for label in sorted(outputs, key=lambda k: (k != "image", k)):
        print(f"  {Colors.INFO}{Symbols.ARROW} {label}: {Colors.PATH}{outputs[label]}{Colors.RESET}")


def create_progress_bar(
    total: int,
    desc: str,
    unit: str = "frame",
    disable: bool = False,
) -> tqdm:
    """
    Create a styled progress bar.

    Parameters
    ----------
    total : int
        Total number of items.
    desc : str
        Description text.
    unit : str, default "frame"
        Unit name for items.
    disable : bool, default False
        Disable the progress bar.

    Returns
    -------
    tqdm
        Configured progress bar.
    """
    return tqdm(
        total=total,
        desc=f"{Colors.PROGRESS}{desc}{Colors.RESET}",
        unit=unit,
        bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        ncols=80,
        colour="green",
        leave=True,
        disable=disable,
    )


def setup_terminal() -> bool:
    """
    Switch to ASCII symbols on terminals without UTF-8 support.

    Returns
    -------
    bool
        True when unicode symbols are kept.
    """
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    unicode_ok = "utf" in encoding and os.environ.get("TERM") != "dumb"
    if not unicode_ok:
        Symbols.use_ascii()
    return unicode_ok
