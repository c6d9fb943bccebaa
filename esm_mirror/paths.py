import logging
import re
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
JS_EXTS = (".js", ".mjs", ".cjs")


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "host"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def split_query(path: str) -> Tuple[str, str]:
    """Split ``/a/b?x=1`` into ``("/a/b", "?x=1")``; the query keeps its ``?``."""
    base, sep, query = path.partition("?")
    return base, (sep + query) if sep else ""


def has_js_ext(name: str) -> bool:
    return name.endswith(JS_EXTS)


# -------------------- Path normalize --------------------


def normalize_module_path(path: str) -> str:
    """Map a CDN module path to the local file it is mirrored to.

    ``/react-dom@19.0.0`` is a main module and becomes
    ``/react-dom@19.0.0/index.js``; ``/react-dom@19.0.0/client`` is a
    sub-module and becomes ``/react-dom@19.0.0/client.js``. Scoped packages
    count ``@scope/name`` as the package root. A trailing query string is
    kept as-is. Normalizing an already-normalized path returns it unchanged.
    """
    path, query = split_query(path)
    if not path.startswith("/"):
        path = "/" + path
    segs = path.split("/")
    last = segs[-1]

    scope_idx = next((i for i, s in enumerate(segs) if s.startswith("@")), -1)
    if scope_idx >= 0:
        if last == "":
            path = path + "index.js"
        elif has_js_ext(last) and scope_idx != len(segs) - 1:
            pass
        elif scope_idx >= len(segs) - 2:
            # nothing after @scope/name -> main module
            path = path + "/index.js"
        else:
            path = path + ".js"
        return path + query

    if last == "":
        return path + "index.js" + query
    if len(segs) <= 2:
        # "/react@19.0.0" or unpinned "/react"
        if not has_js_ext(last):
            path = path + "/index.js"
        return path + query
    if not has_js_ext(last):
        path = path + ".js"
    return path + query


# -------------------- Output layout --------------------


def host_segment(url: str) -> str:
    return sanitize_filename(urlparse(url).netloc)


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def module_path_of(url: str) -> str:
    """The URL path of ``url`` without its query, always starting with ``/``."""
    path = urlparse(url).path or "/"
    return path if path.startswith("/") else "/" + path


def local_url_path(url: str) -> str:
    """``https://cdn.example/react@19.0.0`` -> ``/cdn.example/react@19.0.0/index.js``."""
    return "/" + host_segment(url) + normalize_module_path(module_path_of(url))


def local_file_for_url(url: str, output_root: Path) -> Path:
    rel = local_url_path(url).lstrip("/")
    return output_root.joinpath(*rel.split("/"))


def mirror_prefix(host: str, base_path: str = "") -> str:
    return f"{base_path}/{host}"


def with_base_path(path: str, base_path: str) -> str:
    if base_path and path.startswith("/") and not path.startswith(base_path + "/"):
        return base_path + path
    return path


# -------------------- Relative resolution --------------------


def module_dir(normalized_path: str) -> str:
    """Directory of a normalized module path, with a trailing slash."""
    d = normalized_path.rsplit("/", 1)[0]
    return d + "/"


def resolve_relative(specifier: str, current_dir: str) -> Optional[str]:
    """Resolve ``./x`` / ``../x`` against ``current_dir``.

    Returns None when the specifier climbs above the mirror root.
    """
    stack = [s for s in current_dir.split("/") if s]
    parts = specifier.split("/")
    for i, part in enumerate(parts):
        if part == "." or (part == "" and i < len(parts) - 1):
            continue
        if part == "..":
            if not stack:
                logger.warning(
                    "relative import escapes mirror root: %s from %s", specifier, current_dir
                )
                return None
            stack.pop()
            continue
        stack.append(part)
    resolved = "/" + "/".join(s for s in stack if s)
    if specifier.endswith("/") and not resolved.endswith("/"):
        resolved += "/"
    return resolved
