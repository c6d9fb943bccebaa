import logging
import re
from typing import Iterable, List, Mapping, Optional, Set, Tuple

import esprima

from .paths import (
    module_dir,
    module_path_of,
    normalize_module_path,
    origin_of,
    resolve_relative,
    split_query,
)

logger = logging.getLogger(__name__)

# import x from "s" / import x, {a} from "s" / import * as ns from "s" /
# export * from "s" / export * as ns from "s" / export {a} from "s" /
# import "s" / import("s")
IMPORT_EXPORT_RE = re.compile(
    r"(?<![\w$.])(?:"
    r"import\s*(?:[\w$]+\s*,?\s*)?(?:\*\s*as\s*[\w$]+|\{[^}]*\})?\s*from"
    r"|export\s*(?:\*(?:\s*as\s*[\w$]+)?|\{[^}]*\})\s*from"
    r"|import\s*\(?"
    r")\s*(?P<q>[\"'])(?P<spec>[^\"'\r\n]+)(?P=q)"
)

LOCAL_IMPORT_RE = re.compile(
    r"(?<![\w$.])(?:import|from)\s*\(?\s*(?P<q>[\"'])(?P<spec>\.\.?/[^\"'\r\n]+)(?P=q)"
)

SOURCE_EXT_IMPORT_RE = re.compile(
    r"(?P<head>(?<![\w$.])(?:import|from)\s*\(?\s*)(?P<q>[\"'])"
    r"(?P<path>\.\.?/[^\"'\r\n]+?)\.(?:tsx|ts|jsx)(?P=q)"
)

Span = Tuple[int, int, str]


def is_absolute(specifier: str) -> bool:
    return specifier.startswith("/") and not specifier.startswith("//")


def is_relative(specifier: str) -> bool:
    return specifier.startswith(("./", "../"))


# -------------------- Scanning --------------------


def _scan_regex(text: str) -> List[Span]:
    return [(m.start("spec"), m.end("spec"), m.group("spec")) for m in IMPORT_EXPORT_RE.finditer(text)]


def _scan_ast(text: str) -> Optional[List[Span]]:
    spans: List[Span] = []

    def add_literal(lit) -> None:
        if lit is None or getattr(lit, "type", None) != "Literal":
            return
        if not isinstance(getattr(lit, "value", None), str):
            return
        start, end = lit.range
        spans.append((start + 1, end - 1, text[start + 1 : end - 1]))

    def visit(node, metadata):
        t = getattr(node, "type", None)
        if t in ("ImportDeclaration", "ExportAllDeclaration", "ExportNamedDeclaration"):
            add_literal(getattr(node, "source", None))
        elif t == "CallExpression":
            callee = getattr(node, "callee", None)
            args = getattr(node, "arguments", None) or []
            if callee is not None and getattr(callee, "type", None) == "Import" and args:
                add_literal(args[0])
        return node

    try:
        esprima.parseModule(text, {"range": True}, visit)
    except Exception as e:
        logger.debug("module parse failed, using pattern scan: %s", e)
        return None
    spans.sort(key=lambda s: s[0])
    return spans


def scan_specifiers(text: str, use_ast: bool = False) -> List[Span]:
    """Locate import/export specifiers as ``(start, end, value)`` spans.

    Spans cover the text between the quotes. With ``use_ast`` the module is
    parsed with esprima; modules it cannot parse fall back to the pattern
    scan.
    """
    if use_ast:
        spans = _scan_ast(text)
        if spans is not None:
            return spans
    return _scan_regex(text)


# -------------------- Extraction --------------------


def extract_dependencies(text: str, module_url: str, use_ast: bool = False) -> List[str]:
    """Absolute URLs of the modules imported by the module at ``module_url``.

    Relative specifiers resolve against the directory of the module's
    mirrored path; bare specifiers are ignored. The list is deduplicated on
    the query-less path and keeps the first query seen.
    """
    origin = origin_of(module_url)
    current_dir = module_dir(normalize_module_path(module_path_of(module_url)))
    seen: Set[str] = set()
    deps: List[str] = []
    for _, _, spec in scan_specifiers(text, use_ast):
        path, query = split_query(spec)
        if is_relative(path):
            resolved = resolve_relative(path, current_dir)
            if resolved is None:
                continue
            logger.debug("resolved relative import %s -> %s", spec, resolved)
        elif is_absolute(path):
            resolved = path
        else:
            continue
        if resolved in seen:
            continue
        seen.add(resolved)
        deps.append(origin + resolved + query)
    return deps


# -------------------- Rewriters --------------------


def _apply(text: str, replacements: List[Span]) -> str:
    if not replacements:
        return text
    out = []
    last = len(text)
    for s, e, repl in sorted(replacements, key=lambda x: x[0], reverse=True):
        out.append(text[e:last])
        out.append(repl)
        last = s
    out.append(text[0:last])
    return "".join(reversed(out))


def rewrite_specifiers(
    text: str, prefix: str, use_ast: bool = False, skip_prefixes: Iterable[str] = ()
) -> str:
    """Point every absolute specifier in ``text`` at the local mirror.

    ``/react@19.0.0`` becomes ``<prefix>/react@19.0.0/index.js``. Specifiers
    already under ``prefix`` or one of ``skip_prefixes`` are left alone, so
    rewriting is idempotent.
    """
    skip = tuple(p + "/" for p in (prefix, *skip_prefixes))
    replacements: List[Span] = []
    for s, e, spec in scan_specifiers(text, use_ast):
        if not is_absolute(spec) or spec.startswith(skip):
            continue
        replacements.append((s, e, prefix + normalize_module_path(spec)))
    return _apply(text, replacements)


# -------------------- Application sources --------------------


def find_local_imports(source: str) -> List[str]:
    return list(dict.fromkeys(m.group("spec") for m in LOCAL_IMPORT_RE.finditer(source)))


def patch_source_extensions(code: str) -> str:
    """``./App.tsx`` -> ``./App.js`` for relative imports in compiled code."""
    return SOURCE_EXT_IMPORT_RE.sub(
        lambda m: f"{m.group('head')}{m.group('q')}{m.group('path')}.js{m.group('q')}", code
    )


def patch_relative_imports(code: str, renames: Mapping[str, str]) -> str:
    """Replace relative specifiers found in ``renames`` (``./App`` -> ``./App.js``)."""
    if not renames:
        return code
    spans = [
        (m.start("spec"), m.end("spec"), renames[m.group("spec")])
        for m in LOCAL_IMPORT_RE.finditer(code)
        if m.group("spec") in renames
    ]
    return _apply(code, spans)
