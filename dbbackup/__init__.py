import os
import logging
from typing import Optional


__version__ = '1.0.0'

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(log_file: Optional[str] = None, verbose: bool = False):
    """
    Configure application logging.

    Console output always; the run log under the backup root is opened in
    append mode and restricted to the owner.

    Args:
        log_file: Path of the run log (usually <backup root>/logfile.log)
        verbose: Log at DEBUG instead of INFO
    """
    log_level = logging.DEBUG if verbose else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers = [console_handler]

    # File handler
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        os.chmod(log_file, 0o600)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    # force=True so the scheduler and repeated CLI calls don't stack handlers
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger(__name__).debug(
        f"Logging configured (level: {logging.getLevelName(log_level)})"
    )
