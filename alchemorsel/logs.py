import logging

from rich.logging import RichHandler


def configure_logging(level: str | int = "INFO") -> None:
    """Send log records through rich. For scripts, the library never calls it."""
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # The http clients are chatty at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
