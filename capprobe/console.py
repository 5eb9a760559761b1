from __future__ import annotations

import sys
from typing import Optional

from termcolor import colored
from tqdm import tqdm


class Console:
    """
    Coloured status lines in the `[+] / [-] / [*]` style.

    Lines go through `tqdm.write` so they do not tear an active progress bar.
    When a log file is attached the uncoloured text is appended to it as well,
    which is how the report bundle keeps its `_log.txt`.
    """

    def __init__(self, *, verbose: bool = False, log_path: Optional[str] = None) -> None:
        self.verbose = verbose
        self.log_path = log_path

    def attach_log(self, path: str) -> None:
        self.log_path = path

    def _emit(
        self,
        prefix: str,
        color: Optional[str],
        message: str,
        *,
        body_color: Optional[str] = None,
        stream=None,
    ) -> None:
        head = colored(prefix, color) if (prefix and color) else prefix
        body = colored(message, body_color) if body_color else message
        tqdm.write(f"{head}{body}", file=stream or sys.stdout)
        if self.log_path:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(f"{prefix}{message}\n")

    def line(self, message: str = "", color: Optional[str] = None) -> None:
        self._emit("", None, message, body_color=color)

    def success(self, message: str) -> None:
        self._emit("[+] ", "green", message)

    def info(self, message: str) -> None:
        self._emit("[*] ", "cyan", message)

    def step(self, message: str) -> None:
        self._emit("[STEP] ", "magenta", message)

    def warn(self, message: str) -> None:
        self._emit("[-] ", "yellow", message)

    def error(self, message: str) -> None:
        self._emit("[-] ", "red", message, stream=sys.stderr)

    def debug(self, message: str) -> None:
        if self.verbose:
            self._emit("    ", None, message)
