import json
import logging
import re
from pathlib import Path
from typing import Dict, Mapping, Union

from bs4 import BeautifulSoup, FeatureNotFound

from .errors import InputError

logger = logging.getLogger(__name__)

IMPLIED_SUBMODULES = (("react", "jsx-runtime"), ("react-dom", "client"))


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def find_import_map_tag(soup: BeautifulSoup):
    return soup.find("script", attrs={"type": "importmap"})


# -------------------- Loaders --------------------


def _imports_from(data, source: str) -> Dict[str, str]:
    if not isinstance(data, dict) or not isinstance(data.get("imports"), dict):
        raise InputError(f"{source} has no valid \"imports\" object")
    imports = data["imports"]
    for spec, url in imports.items():
        if not isinstance(url, str):
            raise InputError(f"{source}: import {spec!r} must map to a string URL")
    return dict(imports)


def load_html_import_map(html: str, source: str = "HTML") -> Dict[str, str]:
    tag = find_import_map_tag(bs4_parse(html))
    if tag is None:
        raise InputError(f"no <script type=\"importmap\"> found in {source}")
    try:
        data = json.loads(tag.string or "")
    except json.JSONDecodeError as e:
        raise InputError(f"malformed import map in {source}: {e}") from e
    imports = _imports_from(data, source)
    logger.debug("import map from %s: %s", source, imports)
    return imports


def load_deno_json(path: Union[str, Path]) -> Dict[str, str]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise InputError(f"cannot read {p}: {e}") from e
    except json.JSONDecodeError as e:
        raise InputError(f"malformed JSON in {p}: {e}") from e
    imports = _imports_from(data, str(p))
    logger.debug("import map from %s: %s", p, imports)
    return imports


# -------------------- Implied entries --------------------


def add_implied_submodules(imports: Mapping[str, str]) -> Dict[str, str]:
    """Add ``react/jsx-runtime`` and ``react-dom/client`` next to their packages.

    JSX compiled against React imports ``react/jsx-runtime`` even though
    apps rarely list it. Existing entries are never replaced.
    """
    out = dict(imports)
    for pkg, sub in IMPLIED_SUBMODULES:
        base_url = out.get(pkg)
        name = f"{pkg}/{sub}"
        if base_url is None or name in out:
            continue
        m = re.search(r"(?<=/)" + re.escape(pkg) + r"(?:@[^/?#]+)?(?=[/?#]|$)", base_url)
        if m is None:
            logger.debug("cannot derive %s from %s", name, base_url)
            continue
        url = base_url[: m.end()] + "/" + sub + base_url[m.end() :]
        out[name] = url
        logger.debug("added implied import %s -> %s", name, url)
    return out
