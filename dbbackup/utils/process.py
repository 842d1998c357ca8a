"""Helpers shared by the stages that shell out to external tools."""

import os
import tempfile
from typing import IO


def stderr_file() -> IO[bytes]:
    """
    Anonymous file collecting child stderr.

    A file instead of a pipe so a chatty child can never block on a full
    pipe while the parent is waiting on another process in the chain.
    """
    return tempfile.TemporaryFile()


def read_stderr(errlog: IO[bytes], limit: int = 2000) -> str:
    """
    Return the tail of a stderr capture file as text.

    Args:
        errlog: File passed as stderr to one or more children
        limit: Maximum number of trailing bytes to return
    """
    errlog.flush()
    size = errlog.seek(0, os.SEEK_END)
    errlog.seek(max(0, size - limit))
    return errlog.read().decode('utf-8', errors='replace').strip()
