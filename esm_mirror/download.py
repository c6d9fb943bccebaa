import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from threading import Condition, Lock
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .errors import DownloadError, WriteError
from .fetch import Fetcher
from .paths import host_segment, local_file_for_url, local_url_path, mirror_prefix
from .settings import Settings
from .specifiers import extract_dependencies, rewrite_specifiers

logger = logging.getLogger(__name__)
content_logger = logging.getLogger("esm_mirror.content")

HEAD_BYTES = 200


@dataclass
class MirrorResult:
    module_map: Dict[str, str]
    downloaded: List[str] = field(default_factory=list)
    written: List[Path] = field(default_factory=list)
    hosts: Set[str] = field(default_factory=set)


class DownloadCoordinator:
    """Mirror a module graph into ``output_root``.

    Every mirrored file is fetched at most once: a URL is claimed in the
    downloaded set by its local path, under a lock, before its task is
    submitted. URLs that differ only in their query share one file, so only
    the first one seen is fetched. Tasks run on a fixed-size thread pool,
    which is also the admission gate for the recursive fan-out. The join is a
    counter of outstanding tasks that a parent increments before submitting
    each child, so it can only reach zero once the whole graph has settled.
    Failures are collected and raised together as a DownloadError after the
    join.
    """

    def __init__(
        self,
        output_root: Path,
        fetcher: Fetcher,
        *,
        workers: int = 5,
        base_path: str = "",
        parse_js_ast: bool = False,
    ):
        self.output_root = Path(output_root)
        self.fetcher = fetcher
        self.workers = max(1, workers)
        self.base_path = base_path
        self.parse_js_ast = parse_js_ast

        self._downloaded: Set[str] = set()
        self._downloaded_lock = Lock()
        self.module_map: Dict[str, str] = {}
        self._map_lock = Lock()

        self._completed: Set[str] = set()
        self._completed_keys: Set[str] = set()
        self._written: List[Path] = []
        self._aliases: List[Tuple[str, str]] = []
        self._failures: List[Tuple[str, BaseException]] = []
        self._failures_lock = Lock()

        self._pending = 0
        self._idle = Condition()
        self._pool: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, fetcher: Optional[Fetcher] = None
    ) -> "DownloadCoordinator":
        return cls(
            Path(settings.out_dir),
            fetcher or Fetcher.from_settings(settings),
            workers=settings.workers,
            base_path=settings.base_path,
            parse_js_ast=settings.parse_js_ast,
        )

    # -------------------- Public --------------------

    def run(self, imports: Mapping[str, str]) -> MirrorResult:
        logger.info("mirroring %d import map entries", len(imports))
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="esm-mirror") as pool:
            self._pool = pool
            try:
                for specifier, url in imports.items():
                    self.schedule(url, specifier)
                self._wait_idle()
            finally:
                self._pool = None

        with self._map_lock:
            # roots whose URL was claimed by another task first
            for specifier, url in self._aliases:
                key = local_url_path(url)
                if key in self._completed_keys and specifier not in self.module_map:
                    self.module_map[specifier] = key
            module_map = dict(self.module_map)
            written = list(self._written)
            completed = set(self._completed)

        if self._failures:
            logger.error("%d of %d modules failed", len(self._failures), len(self._downloaded))
            raise DownloadError(self._failures, module_map)

        logger.info("mirrored %d modules into %s", len(completed), self.output_root)
        return MirrorResult(
            module_map=module_map,
            downloaded=sorted(completed),
            written=written,
            hosts={host_segment(u) for u in completed},
        )

    def schedule(self, url: str, specifier: str = "") -> bool:
        key = local_url_path(url)
        with self._downloaded_lock:
            claimed = key not in self._downloaded
            if claimed:
                self._downloaded.add(key)
        if not claimed:
            logger.debug("already scheduled: %s (%s)", url, key)
            if specifier:
                with self._map_lock:
                    self._aliases.append((specifier, url))
            return False

        if self._pool is None:
            raise RuntimeError("schedule() called outside run()")
        with self._idle:
            self._pending += 1
        try:
            fut = self._pool.submit(self._download, url, specifier)
        except RuntimeError as e:
            self._record_failure(url, e)
            self._task_done()
            return False
        fut.add_done_callback(partial(self._settle, url))
        return True

    def local_path_for(self, url: str) -> Path:
        return local_file_for_url(url, self.output_root)

    # -------------------- Tasks --------------------

    def _download(self, url: str, specifier: str) -> None:
        local_path = self.local_path_for(url)
        logger.info("download %s -> %s", url, local_path)
        content = self.fetcher.fetch(url)

        text = content.decode("utf-8", errors="surrogateescape")
        prefix = mirror_prefix(host_segment(url), self.base_path)
        rewritten = rewrite_specifiers(text, prefix, self.parse_js_ast)
        if rewritten == text:
            content_logger.debug("unchanged module %s: %s", url, text[:HEAD_BYTES])

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            local_path.write_bytes(rewritten.encode("utf-8", errors="surrogateescape"))
        except OSError as e:
            raise WriteError(local_path, f"cannot write module ({e.strerror or e})") from e

        # discovery runs on the original text, rewriting changes the specifiers
        deps = extract_dependencies(text, url, self.parse_js_ast)
        if deps:
            logger.info("found %d dependencies in %s", len(deps), url)

        with self._map_lock:
            self._completed.add(url)
            self._completed_keys.add(local_url_path(url))
            self._written.append(local_path)
            if specifier:
                self.module_map[specifier] = local_url_path(url)

        for dep in deps:
            self.schedule(dep)

    def _settle(self, url: str, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.warning("failed %s: %s", url, exc)
            self._record_failure(url, exc)
        self._task_done()

    def _record_failure(self, url: str, exc: BaseException) -> None:
        with self._failures_lock:
            self._failures.append((url, exc))

    def _task_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _wait_idle(self) -> None:
        with self._idle:
            self._idle.wait_for(lambda: self._pending == 0)
