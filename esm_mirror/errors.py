from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union


class MirrorError(Exception):
    """Base class for every failure raised by esm_mirror."""


class InputError(MirrorError):
    pass


class ConfigError(MirrorError):
    def __init__(self, message: str, config_file: Optional[str] = None):
        self.config_file = config_file
        if config_file:
            message = f"{config_file}: {message}"
        super().__init__(message)


class FetchError(MirrorError):
    def __init__(self, url: str, message: str, status: Optional[int] = None, body: str = ""):
        self.url = url
        self.status = status
        self.body = body
        super().__init__(message)


class RedirectError(FetchError):
    pass


class WriteError(MirrorError):
    def __init__(self, path: Union[str, Path], message: str):
        self.path = Path(path)
        super().__init__(f"{message}: {path}")


class TransformError(MirrorError):
    def __init__(self, filename: str, message: str, status: Optional[int] = None):
        self.filename = filename
        self.status = status
        super().__init__(f"{filename}: {message}")


class DownloadError(MirrorError):
    """Raised once every download task has settled and at least one failed."""

    def __init__(
        self,
        failures: List[Tuple[str, BaseException]],
        module_map: Optional[Dict[str, str]] = None,
    ):
        self.failures = list(failures)
        self.module_map = dict(module_map or {})
        lines = [f"{len(self.failures)} module(s) failed to download:"]
        lines.extend(f"  {url}: {exc}" for url, exc in self.failures)
        super().__init__("\n".join(lines))

    @property
    def failed_urls(self) -> List[str]:
        return [url for url, _ in self.failures]
