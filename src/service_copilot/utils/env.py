"""Environment loading and logging setup for entry points."""

import logging
import os

from dotenv import load_dotenv


def load_env() -> None:
    """Load environment variables from a ``.env`` file if present.

    Also sets UTF-8 I/O defaults so emoji in assistant messages render on
    Windows terminals.
    """
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    os.environ.setdefault("PYTHONUTF8", "1")
    load_dotenv()


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI and server processes."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
