import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import yaml

from .errors import ConfigError

# -------------------- Config --------------------

DEFAULT_CDN_URL = "https://esm.sh"

DEFAULT_HEADERS = {
    "User-Agent": "esm-mirror/0.1",
    "Accept": "application/javascript, text/javascript, */*;q=0.8",
}

CONFIG_GROUPS = ("general", "download", "compile", "output", "logging")


@dataclass
class Settings:
    out_dir: str = "dist"
    cdn_url: str = DEFAULT_CDN_URL
    base_path: str = ""
    deno_json: Optional[str] = None

    # Download
    workers: int = 5
    timeout: float = 30.0
    max_redirects: int = 10
    retries: int = 0
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"
    implied_submodules: bool = True

    # Scanning
    parse_js_ast: bool = False

    # Compile
    minify: bool = False
    target: str = "es2022"
    jsx_import_source: str = "react"
    source_maps: bool = False

    def __post_init__(self) -> None:
        self.base_path = normalize_base_path(self.base_path)
        self.cdn_url = self.cdn_url.rstrip("/")
        if urlparse(self.cdn_url).scheme not in {"http", "https"}:
            raise ConfigError(f"invalid CDN url: {self.cdn_url!r}")
        if self.workers < 1:
            raise ConfigError("workers must be at least 1")
        if self.max_redirects < 0:
            raise ConfigError("max_redirects cannot be negative")

    @property
    def cdn_host(self) -> str:
        return urlparse(self.cdn_url).netloc

    @property
    def transform_url(self) -> str:
        return f"{self.cdn_url}/transform"


def normalize_base_path(base_path: Optional[str]) -> str:
    p = (base_path or "").strip()
    if not p or p == "/":
        return ""
    if not p.startswith("/"):
        p = "/" + p
    return p.rstrip("/")


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    try:
        if suf in {".toml", ".tml"}:
            with open(p, "rb") as f:
                data = tomllib.load(f) or {}
        elif suf in {".yaml", ".yml"}:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        else:
            raise ConfigError("unsupported config format, use .toml or .yaml", path)
    except OSError as e:
        raise ConfigError(f"cannot read config: {e}", path) from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config: {e}", path) from e
    if not isinstance(data, dict):
        raise ConfigError("top-level config must be a mapping", path)
    return data


def flatten_config(cfg: Dict) -> Dict:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    flat = {k.replace("-", "_"): v for k, v in flat.items()}
    if "api_url" in flat:
        flat.setdefault("cdn_url", flat.pop("api_url"))
    return flat
