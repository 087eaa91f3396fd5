from __future__ import annotations

import logging
import os
import subprocess
from typing import List, Optional, Sequence, Union

from reckon.reckon_errors import CalcIOError

logger = logging.getLogger("reckon.file")
logger.addHandler(logging.NullHandler())

DEFAULT_EXTENSION = ".calc"


def _resolve_path(path: str, base_dir: Optional[str]) -> str:
    # Home directory
    if path.startswith("~"):
        return os.path.expanduser(path)
    if os.path.isabs(path):
        return os.path.normpath(path)
    # Default: relative to the including file's dir (or CWD)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


class FileHelper:
    """File and process access for $include, $load, $save and the read/write/exec builtins.

    Every failure surfaces as CalcIOError.
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir

    def resolve(self, path: str) -> str:
        resolved = _resolve_path(path, self.base_dir)
        # A script may be named without its extension.
        if not os.path.exists(resolved) and not os.path.splitext(resolved)[1]:
            candidate = resolved + DEFAULT_EXTENSION
            if os.path.exists(candidate):
                return candidate
        return resolved

    def get_file_contents(self, paths: Union[str, Sequence[str]]) -> str:
        """Read one file, or concatenate several in order."""
        if isinstance(paths, str):
            paths = [paths]
        parts: List[str] = []
        for p in paths:
            parts.append(self.read_raw_text(p))
        return "\n".join(parts)

    def read_raw_text(self, path: str, charset: Optional[str] = None) -> str:
        full = self.resolve(path)
        try:
            with open(full, "r", encoding=charset or "utf-8") as f:
                text = f.read()
        except (OSError, LookupError, UnicodeDecodeError) as e:
            raise CalcIOError(f"Cannot read '{path}': {e}")
        logger.debug("Read %d characters from %s", len(text), full)
        return text

    def write_raw_text(self, text: str, path: str, charset: Optional[str] = None) -> int:
        full = _resolve_path(path, self.base_dir)
        try:
            os.makedirs(os.path.dirname(full) or ".", exist_ok=True)
            data = text.encode(charset or "utf-8")
            with open(full, "wb") as f:
                f.write(data)
        except (OSError, LookupError, UnicodeEncodeError) as e:
            raise CalcIOError(f"Cannot write '{path}': {e}")
        logger.debug("Wrote %d bytes to %s", len(data), full)
        return len(data)

    def run_external_command(self, args: Sequence[str]) -> str:
        """Run a command and return its captured stdout."""
        if not args:
            raise CalcIOError("No command given")
        argv = [str(a) for a in args]
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, cwd=self.base_dir)
        except OSError as e:
            raise CalcIOError(f"Cannot run '{argv[0]}': {e}")
        if proc.returncode != 0:
            detail = proc.stderr.strip() or f"exit status {proc.returncode}"
            raise CalcIOError(f"Command '{argv[0]}' failed: {detail}")
        return proc.stdout
