import json
import logging
import posixpath
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Set
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .errors import WriteError
from .importmap import bs4_parse, find_import_map_tag
from .paths import with_base_path

logger = logging.getLogger(__name__)

SOURCE_EXTS = {".ts", ".tsx", ".jsx"}
IMPORT_MAP_FILE = "importmap.json"


# -------------------- Import map --------------------


def local_import_map(module_map: Mapping[str, str], base_path: str = "") -> Dict[str, str]:
    return {spec: with_base_path(path, base_path) for spec, path in module_map.items()}


def write_import_map(module_map: Mapping[str, str], out_dir: Path, base_path: str = "") -> Path:
    path = Path(out_dir) / IMPORT_MAP_FILE
    data = {"imports": local_import_map(module_map, base_path)}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError as e:
        raise WriteError(path, f"cannot write import map ({e.strerror or e})") from e
    logger.info("wrote %s (%d entries)", path, len(data["imports"]))
    return path


# -------------------- Entry HTML --------------------


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="minimal")


def is_compile_script(tag) -> bool:
    src = tag.get("src")
    if not src or not tag.get("href"):
        return False
    p = urlparse(src)
    return bool(p.netloc) and p.path == "/x"


def compile_requests(html: str) -> List[str]:
    """``href`` of every ``<script src="https://<cdn>/x" href="...">`` tag."""
    soup = bs4_parse(html)
    hrefs = [tag["href"] for tag in soup.find_all("script") if is_compile_script(tag)]
    return list(dict.fromkeys(hrefs))


def compiled_script_src(compiled_rel: str, base_path: str = "") -> str:
    rel = compiled_rel[2:] if compiled_rel.startswith("./") else compiled_rel
    return f"{base_path}/{rel}" if base_path else f"./{rel}"


def patch_html(html: str, compiled: Mapping[str, str], base_path: str = "") -> str:
    """Point the entry HTML at the local import map and compiled scripts.

    ``compiled`` maps each compile-script ``href`` to the relative path of
    its compiled output.
    """
    soup = bs4_parse(html)
    im = find_import_map_tag(soup)
    if im is not None:
        src = f"{base_path}/{IMPORT_MAP_FILE}" if base_path else f"./{IMPORT_MAP_FILE}"
        im.replace_with(soup.new_tag("script", attrs={"type": "importmap", "src": src}))
    for tag in soup.find_all("script"):
        if not is_compile_script(tag):
            continue
        rel = compiled.get(tag["href"])
        if rel is None:
            logger.warning("no compiled output for %s, tag left unchanged", tag["href"])
            continue
        new_tag = soup.new_tag(
            "script", attrs={"type": "module", "src": compiled_script_src(rel, base_path)}
        )
        tag.replace_with(new_tag)
    return serialize_html(soup)


# -------------------- Project copy --------------------


def copy_project(src_dir: Path, out_dir: Path, exclude_dirs: Iterable[str] = ()) -> None:
    """Copy project assets, leaving out TS/JSX sources and mirror host dirs."""
    src_dir = Path(src_dir).resolve()
    out_dir = Path(out_dir).resolve()
    skip_names: Set[str] = set(exclude_dirs)

    def ignore(dirpath: str, names: List[str]) -> Set[str]:
        ignored: Set[str] = set()
        for name in names:
            full = Path(dirpath, name)
            if full.is_dir():
                if name in skip_names or full.resolve() == out_dir:
                    logger.debug("skip directory %s", full)
                    ignored.add(name)
            elif posixpath.splitext(name)[1].lower() in SOURCE_EXTS:
                ignored.add(name)
        return ignored

    logger.info("copying project %s -> %s", src_dir, out_dir)
    try:
        shutil.copytree(src_dir, out_dir, ignore=ignore, dirs_exist_ok=True)
    except OSError as e:
        raise WriteError(out_dir, f"cannot copy project ({e})") from e
