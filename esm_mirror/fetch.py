import logging
from typing import Dict, Iterable, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import FetchError, RedirectError
from .settings import DEFAULT_HEADERS, Settings

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}


# -------------------- Session --------------------


def build_session(
    headers: Optional[Dict[str, str]] = None, *, retries: int = 0, pool_size: int = 10
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        redirect=False,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD", "POST"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def apply_extra_headers(session: requests.Session, extra_headers: Iterable[str]) -> None:
    for h in extra_headers:
        if ":" not in h:
            logger.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


def session_for(settings: Settings) -> requests.Session:
    session = build_session(retries=settings.retries, pool_size=max(10, settings.workers * 2))
    apply_extra_headers(session, settings.extra_headers)
    return session


# -------------------- Fetcher --------------------


class Fetcher:
    """GET one URL and return its body, following redirects by hand."""

    def __init__(self, session: requests.Session, *, timeout: float = 30.0, max_redirects: int = 10):
        self.session = session
        self.timeout = timeout
        self.max_redirects = max_redirects

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "Fetcher":
        return cls(
            session or session_for(settings),
            timeout=settings.timeout,
            max_redirects=settings.max_redirects,
        )

    def fetch(self, url: str, _hops: int = 0) -> bytes:
        logger.debug("GET %s", url)
        try:
            resp = self.session.get(url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as e:
            raise FetchError(url, f"request failed: {e}") from e

        with resp:
            if resp.status_code in REDIRECT_STATUSES:
                location = resp.headers.get("Location")
                if not location:
                    raise RedirectError(url, f"HTTP {resp.status_code} without Location", status=resp.status_code)
                if _hops >= self.max_redirects:
                    raise RedirectError(
                        url, f"more than {self.max_redirects} redirects", status=resp.status_code
                    )
                target = urljoin(url, location)
                logger.debug("redirect %s -> %s", url, target)
                return self.fetch(target, _hops + 1)

            if not 200 <= resp.status_code < 300:
                body = resp.text
                msg = f"HTTP {resp.status_code}"
                if body.strip():
                    msg += f" - {body.strip()[:500]}"
                raise FetchError(url, msg, status=resp.status_code, body=body)
            content = resp.content

        logger.debug("fetched %s (%d bytes)", url, len(content))
        return content
