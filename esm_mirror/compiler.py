import logging
import posixpath
import shutil
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import requests

from .errors import TransformError, WriteError
from .fetch import session_for
from .output import local_import_map
from .paths import mirror_prefix, sanitize_filename
from .settings import Settings
from .specifiers import (
    find_local_imports,
    patch_relative_imports,
    patch_source_extensions,
    rewrite_specifiers,
)

logger = logging.getLogger(__name__)

LANG_BY_EXT = {".ts": "ts", ".tsx": "tsx", ".jsx": "jsx", ".js": "js"}
COPY_EXTS = {".css", ".svg", ".json"}
GUESS_EXTS = (".tsx", ".ts", ".jsx", ".js")


# -------------------- Transform service --------------------


class TransformClient:
    """Client for the CDN's ``/transform`` endpoint."""

    def __init__(
        self,
        session: requests.Session,
        url: str,
        *,
        target: str = "es2022",
        minify: bool = False,
        jsx_import_source: str = "react",
        timeout: float = 30.0,
    ):
        self.session = session
        self.url = url
        self.target = target
        self.minify = minify
        self.jsx_import_source = jsx_import_source
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, session: Optional[requests.Session] = None
    ) -> "TransformClient":
        return cls(
            session or session_for(settings),
            settings.transform_url,
            target=settings.target,
            minify=settings.minify,
            jsx_import_source=settings.jsx_import_source,
            timeout=settings.timeout,
        )

    def transform(self, code: str, filename: str, import_map: Mapping[str, str]) -> Tuple[str, str]:
        ext = posixpath.splitext(filename)[1].lower()
        lang = LANG_BY_EXT.get(ext)
        if lang is None:
            raise TransformError(filename, f"unsupported file type {ext or '(none)'}")
        payload = {
            "code": code,
            "filename": filename,
            "lang": lang,
            "target": self.target,
            "importMap": {"imports": dict(import_map)},
            "minify": self.minify,
        }
        if lang in ("jsx", "tsx") and self.jsx_import_source:
            payload["jsxImportSource"] = self.jsx_import_source

        logger.debug("POST %s (%s, %s)", self.url, filename, lang)
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransformError(filename, f"transform request failed: {e}") from e
        if resp.status_code != 200:
            raise TransformError(
                filename, f"transform failed: HTTP {resp.status_code} - {resp.text.strip()[:500]}", resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise TransformError(filename, "transform returned invalid JSON") from e
        if not isinstance(data, dict) or not isinstance(data.get("code"), str):
            raise TransformError(filename, "transform response has no code")
        return data["code"], data.get("map") or ""


# -------------------- Local compiler --------------------


@dataclass
class CompileResult:
    compiled: List[str] = field(default_factory=list)
    copied: List[str] = field(default_factory=list)


def compiled_name(rel_path: str) -> str:
    return posixpath.splitext(rel_path)[0] + ".js"


class LocalCompiler:
    """Compile application sources breadth-first from their entry points.

    Each file is compiled once through the transform service; relative
    imports found in its source are queued. CSS, SVG and JSON files are
    copied verbatim. The first failure stops the pass.

    Absolute specifiers in compiled code point at the CDN host's mirror,
    except those already under a mirrored host (the import map values).
    """

    def __init__(
        self,
        client: TransformClient,
        output_root: Path,
        module_map: Mapping[str, str],
        *,
        cdn_host: str,
        base_path: str = "",
        source_maps: bool = False,
        hosts: Iterable[str] = (),
    ):
        self.client = client
        self.output_root = Path(output_root)
        self.module_map = module_map
        self.cdn_host = cdn_host
        self.base_path = base_path
        self.source_maps = source_maps
        self.mirrored_hosts: Set[str] = set(hosts) | {
            path.split("/")[1] for path in module_map.values() if path.count("/") > 1
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        module_map: Mapping[str, str],
        client: Optional[TransformClient] = None,
        hosts: Iterable[str] = (),
    ) -> "LocalCompiler":
        return cls(
            client or TransformClient.from_settings(settings),
            Path(settings.out_dir),
            module_map,
            cdn_host=settings.cdn_host,
            base_path=settings.base_path,
            source_maps=settings.source_maps,
            hosts=hosts,
        )

    def import_map(self) -> Dict[str, str]:
        return local_import_map(self.module_map, self.base_path)

    def compile(
        self, entry_path: Path, rel_path: Optional[str] = None, visited: Optional[Set[str]] = None
    ) -> CompileResult:
        """Compile ``entry_path`` and its local imports.

        Pass the same ``visited`` set to several calls to compile each shared
        file once.
        """
        entry_path = Path(entry_path)
        entry_rel = posixpath.normpath(rel_path or entry_path.name)
        # base_dir / entry_rel == entry_path
        depth = len(PurePosixPath(entry_rel).parts)
        base_dir = entry_path.parents[depth - 1] if depth <= len(entry_path.parents) else entry_path.parent
        result = CompileResult()
        visited = set() if visited is None else visited
        queue: Deque[str] = deque([entry_rel])

        while queue:
            rel = queue.popleft()
            if rel in visited:
                continue
            visited.add(rel)
            src = entry_path if rel == entry_rel else self._source_path(base_dir, rel)
            ext = posixpath.splitext(rel)[1].lower()

            if ext in COPY_EXTS:
                dest = self._out(rel)
                self._copy(src, dest)
                result.copied.append(rel)
                logger.debug("copied %s -> %s", src, dest)
                continue

            try:
                source = src.read_text(encoding="utf-8")
            except OSError as e:
                raise TransformError(rel, f"cannot read source {src}: {e}") from e
            code, source_map = self.client.transform(source, rel, self.import_map())
            deps, renames = self._local_deps(source, rel, base_dir)
            code = self.postprocess(code, renames)
            out_rel = compiled_name(rel)
            self._write(self._out(out_rel), code)
            if self.source_maps and source_map:
                self._write(self._out(out_rel + ".map"), source_map)
            result.compiled.append(out_rel)
            logger.info("compiled %s -> %s", rel, out_rel)

            for dep in deps:
                if dep not in visited:
                    queue.append(dep)
        return result

    def postprocess(self, code: str, renames: Optional[Mapping[str, str]] = None) -> str:
        prefix = mirror_prefix(sanitize_filename(self.cdn_host), self.base_path)
        keep = [mirror_prefix(h, self.base_path) for h in sorted(self.mirrored_hosts)]
        code = rewrite_specifiers(code, prefix, skip_prefixes=keep)
        return patch_source_extensions(patch_relative_imports(code, renames or {}))

    # -------------------- Helpers --------------------

    def _source_path(self, base_dir: Path, rel: str) -> Path:
        direct = base_dir / rel
        if direct.exists():
            return direct
        alt = base_dir.parent / rel
        if alt.exists():
            logger.debug("using fallback source %s", alt)
            return alt
        raise TransformError(rel, f"source file not found: {direct}")

    def _local_deps(self, source: str, rel: str, base_dir: Path) -> Tuple[List[str], Dict[str, str]]:
        """Relative imports of ``rel`` as project paths, plus specifier fixes.

        Extensionless imports resolved by trying source extensions are renamed to their
        compiled ``.js`` name.
        """
        deps: List[str] = []
        renames: Dict[str, str] = {}
        rel_dir = posixpath.dirname(rel)
        for imp in find_local_imports(source):
            dep = posixpath.normpath(posixpath.join(rel_dir, imp))
            if dep == ".." or dep.startswith("../"):
                logger.warning("import %s in %s leaves the project, skipped", imp, rel)
                continue
            if not posixpath.splitext(dep)[1]:
                found = self._guess_extension(dep, base_dir)
                if found != dep:
                    renames[imp] = imp + ".js"
                dep = found
            logger.debug("local dependency %s: %s -> %s", rel, imp, dep)
            deps.append(dep)
        return deps, renames

    def _guess_extension(self, dep: str, base_dir: Path) -> str:
        for ext in GUESS_EXTS:
            if (base_dir / (dep + ext)).exists() or (base_dir.parent / (dep + ext)).exists():
                return dep + ext
        return dep

    def _out(self, rel: str) -> Path:
        return self.output_root.joinpath(*rel.split("/"))

    def _write(self, dest: Path, text: str) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(text, encoding="utf-8")
        except OSError as e:
            raise WriteError(dest, f"cannot write compiled file ({e.strerror or e})") from e

    def _copy(self, src: Path, dest: Path) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        except OSError as e:
            raise WriteError(dest, f"cannot copy asset ({e.strerror or e})") from e
