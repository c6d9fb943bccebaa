"""Mirror an import map's ES modules into a self-contained local directory."""

from .compiler import CompileResult, LocalCompiler, TransformClient
from .download import DownloadCoordinator, MirrorResult
from .errors import (
    ConfigError,
    DownloadError,
    FetchError,
    InputError,
    MirrorError,
    RedirectError,
    TransformError,
    WriteError,
)
from .fetch import Fetcher
from .paths import normalize_module_path
from .settings import Settings
from .specifiers import extract_dependencies, rewrite_specifiers

__version__ = "0.1.0"

__all__ = [
    "CompileResult",
    "ConfigError",
    "DownloadCoordinator",
    "DownloadError",
    "FetchError",
    "Fetcher",
    "InputError",
    "LocalCompiler",
    "MirrorError",
    "MirrorResult",
    "RedirectError",
    "Settings",
    "TransformClient",
    "TransformError",
    "WriteError",
    "extract_dependencies",
    "normalize_module_path",
    "rewrite_specifiers",
]
