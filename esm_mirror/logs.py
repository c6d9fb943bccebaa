import logging
from typing import Dict, Iterable, Optional, Tuple

from .errors import ConfigError

LOG_FORMAT = "%(levelname)s: %(message)s"

# category -> logger names it covers
CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "general": ("esm_mirror.cli", "esm_mirror.settings"),
    "network": ("esm_mirror.fetch",),
    "deps": ("esm_mirror.download", "esm_mirror.specifiers", "esm_mirror.paths", "esm_mirror.importmap"),
    "compile": ("esm_mirror.compiler",),
    "fs": ("esm_mirror.output",),
    "content": ("esm_mirror.content",),
}


class CategoryFilter(logging.Filter):
    """Pass records from the enabled categories; warnings always pass."""

    def __init__(self, categories: Iterable[str]):
        super().__init__()
        self.prefixes = tuple(name for c in categories for name in CATEGORIES[c])

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        if not record.name.startswith("esm_mirror"):
            return True
        return any(record.name == p or record.name.startswith(p + ".") for p in self.prefixes)


def parse_categories(value: Optional[str]) -> Optional[Tuple[str, ...]]:
    if not value:
        return None
    cats = tuple(c.strip() for c in value.split(",") if c.strip())
    unknown = [c for c in cats if c not in CATEGORIES]
    if unknown:
        raise ConfigError(
            f"unknown log categories: {', '.join(unknown)} (choose from {', '.join(CATEGORIES)})"
        )
    return cats


def setup_logging(level: str = "INFO", categories: Optional[Iterable[str]] = None) -> None:
    lvl = logging.getLevelName(level.upper())
    if not isinstance(lvl, int):
        raise ConfigError(f"unknown log level: {level}")
    logging.basicConfig(level=lvl, format=LOG_FORMAT, force=True)
    if categories:
        f = CategoryFilter(categories)
        for handler in logging.getLogger().handlers:
            handler.addFilter(f)
    # third-party chatter stays at warning unless debugging
    if lvl > logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
