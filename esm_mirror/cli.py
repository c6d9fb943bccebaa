import argparse
import logging
import posixpath
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set

from .compiler import LocalCompiler, TransformClient, compiled_name
from .download import DownloadCoordinator, MirrorResult
from .errors import InputError, MirrorError, WriteError
from .fetch import Fetcher
from .importmap import add_implied_submodules, load_deno_json, load_html_import_map
from .logs import parse_categories, setup_logging
from .output import compile_requests, copy_project, patch_html, write_import_map
from .paths import sanitize_filename
from .settings import DEFAULT_CDN_URL, Settings, flatten_config, load_config_file

logger = logging.getLogger(__name__)

SOURCE_ENTRY_EXTS = {".ts", ".tsx", ".jsx", ".js"}


# -------------------- Pipeline --------------------


def _load_imports(html_path: Optional[Path], settings: Settings) -> Dict[str, str]:
    if settings.deno_json:
        logger.info("import map from %s", settings.deno_json)
        imports = load_deno_json(settings.deno_json)
    elif html_path is None:
        raise InputError("no import map source, pass --deno-json")
    else:
        try:
            html = html_path.read_text(encoding="utf-8")
        except OSError as e:
            raise InputError(f"cannot read {html_path}: {e}") from e
        imports = load_html_import_map(html, str(html_path))
    if settings.implied_submodules:
        imports = add_implied_submodules(imports)
    return imports


def _compile_html_scripts(html_path: Path, src_dir: Path, compiler: LocalCompiler, settings: Settings) -> None:
    text = html_path.read_text(encoding="utf-8")
    hrefs = compile_requests(text)
    logger.info("found %d scripts to compile in %s", len(hrefs), html_path.name)
    compiled: Dict[str, str] = {}
    visited: Set[str] = set()
    for href in hrefs:
        rel = posixpath.normpath(href.lstrip("/"))
        src = src_dir / rel
        if not src.is_file():
            raise InputError(f"compile source not found: {src}")
        compiler.compile(src, rel, visited)
        compiled[href] = compiled_name(rel)
    try:
        html_path.write_text(patch_html(text, compiled, settings.base_path), encoding="utf-8")
    except OSError as e:
        raise WriteError(html_path, f"cannot write patched HTML ({e.strerror or e})") from e
    logger.info("patched %s", html_path)


def mirror_app(
    entry: str,
    settings: Settings,
    *,
    fetcher: Optional[Fetcher] = None,
    transform_client: Optional[TransformClient] = None,
) -> MirrorResult:
    """Mirror an app's import map and compile its sources into ``settings.out_dir``.

    ``entry`` is a project directory holding ``index.html``, an HTML file, or
    a single source file (which needs ``settings.deno_json``).
    """
    entry_path = Path(entry)
    if not entry_path.exists():
        raise InputError(f"entry not found: {entry}")

    html_path: Optional[Path] = None
    if entry_path.is_dir():
        html_path = entry_path / "index.html"
        if not html_path.is_file():
            raise InputError(f"no index.html in {entry_path}")
        kind = "dir"
    elif entry_path.suffix.lower() in SOURCE_ENTRY_EXTS:
        if not settings.deno_json:
            raise InputError(f"{entry_path.name} is a source file, pass --deno-json for its import map")
        kind = "source"
    else:
        html_path = entry_path
        kind = "html"

    imports = _load_imports(html_path, settings)

    out_dir = Path(settings.out_dir)
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteError(out_dir, f"cannot create output directory ({e.strerror or e})") from e
    coordinator = DownloadCoordinator.from_settings(settings, fetcher)
    result = coordinator.run(imports)

    if kind == "dir":
        exclude = set(result.hosts) | {sanitize_filename(settings.cdn_host)}
        copy_project(entry_path, out_dir, exclude)
    elif kind == "html":
        try:
            shutil.copy2(entry_path, out_dir / entry_path.name)
        except OSError as e:
            raise WriteError(out_dir / entry_path.name, f"cannot copy entry ({e.strerror or e})") from e

    write_import_map(result.module_map, out_dir, settings.base_path)

    compiler = LocalCompiler.from_settings(
        settings, result.module_map, transform_client, hosts=result.hosts
    )
    if kind == "source":
        compiler.compile(entry_path, entry_path.name)
    elif html_path is not None:
        _compile_html_scripts(out_dir / html_path.name, html_path.parent, compiler, settings)

    logger.info("done, %d modules mirrored to %s", len(result.downloaded), out_dir)
    return result


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="esm-mirror",
        description="Download an app's import map dependencies into a local directory.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("entry", help="project directory, HTML file, or source file")

    p.add_argument("--out-dir", type=str, default="dist", help="output directory")
    p.add_argument(
        "--api-url",
        "--cdn-url",
        dest="cdn_url",
        type=str,
        default=DEFAULT_CDN_URL,
        help="CDN base URL, also used for /transform",
    )
    p.add_argument(
        "--deno-json", type=str, default=None, help="deno.json to read the import map from"
    )
    p.add_argument(
        "--base-path", type=str, default="", help="URL prefix the app is served under"
    )

    # download
    p.add_argument("--workers", type=int, default=5, help="concurrent downloads")
    p.add_argument("--timeout", type=float, default=30.0, help="request timeout seconds")
    p.add_argument("--max-redirects", type=int, default=10, help="redirect hop limit")
    p.add_argument("--retries", type=int, default=0, help="retries on 429/5xx")
    p.add_argument(
        "--header",
        dest="extra_headers",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument(
        "--no-implied-submodules",
        action="store_true",
        help="do not add react/jsx-runtime and react-dom/client",
    )
    p.add_argument(
        "--parse-js-ast",
        action="store_true",
        help="locate imports with a JS parser (esprima) instead of patterns",
    )

    # compile
    p.add_argument("--minify", action="store_true", help="minify compiled code")
    p.add_argument("--target", type=str, default="es2022", help="transform target")
    p.add_argument(
        "--jsx-import-source", type=str, default="react", help="JSX import source"
    )
    p.add_argument(
        "--source-maps", action="store_true", help="write .js.map files for compiled code"
    )

    # logging
    p.add_argument("--log-level", type=str, default="info", help="debug|info|warning|error")
    p.add_argument(
        "--log-categories",
        type=str,
        default=None,
        help="comma list of general,network,deps,compile,fs,content",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        parser.set_defaults(**flatten_config(load_config_file(preliminary.config)))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        out_dir=args.out_dir,
        cdn_url=args.cdn_url,
        base_path=args.base_path,
        deno_json=args.deno_json,
        workers=args.workers,
        timeout=max(0.1, args.timeout),
        max_redirects=args.max_redirects,
        retries=max(0, args.retries),
        extra_headers=list(args.extra_headers or []),
        implied_submodules=getattr(args, "implied_submodules", True) and not args.no_implied_submodules,
        parse_js_ast=args.parse_js_ast,
        minify=args.minify,
        target=args.target,
        jsx_import_source=args.jsx_import_source,
        source_maps=args.source_maps,
    )


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
        setup_logging(
            "debug" if args.verbose else args.log_level,
            parse_categories(args.log_categories),
        )
        settings = settings_from_args(args)
        mirror_app(args.entry, settings)
    except MirrorError as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
