# transport.py
# Description: Shared, rate limited HTTP session used by the pixiv and FANBOX clients.
#
# Imports
import random
import threading
import time
from typing import Optional, Dict, Any, BinaryIO, Callable
#
# 3rd-party imports
import requests
from loguru import logger
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util import Retry
#
# Local Imports
from illust_archiver.app.core.config import ArchiverConfig, DEFAULT_USER_AGENT
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind, classify_status
#
#######################################################################################################################
#
# Functions:

DOWNLOAD_CHUNK_SIZE = 8192


class RateLimiter:
    """
    Enforces a minimum spacing between remote calls: ``delay_ms`` plus a uniform jitter of
    ``+/- jitter_ms``. Shared by every client using the same transport.
    """

    def __init__(self, delay_ms: int = 2500, jitter_ms: int = 500,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        if delay_ms < 0 or jitter_ms < 0:
            raise ValueError("delay_ms and jitter_ms must be non-negative")
        self.delay_ms = delay_ms
        self.jitter_ms = min(jitter_ms, delay_ms)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def next_interval(self) -> float:
        jitter = self._rng.uniform(-self.jitter_ms, self.jitter_ms) if self.jitter_ms else 0.0
        return (self.delay_ms + jitter) / 1000.0

    def wait(self) -> None:
        with self._lock:
            if self._last_call is not None:
                remaining = self.next_interval() - (self._clock() - self._last_call)
                if remaining > 0:
                    logger.trace(f"Rate limiter sleeping {remaining:.2f}s")
                    self._sleep(remaining)
            self._last_call = self._clock()


class HttpTransport:
    """Thin wrapper over ``requests.Session`` that maps every failure onto ``FetchError``."""

    def __init__(self, timeout: float = 30.0, rate_limiter: Optional[RateLimiter] = None,
                 user_agent: str = DEFAULT_USER_AGENT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter()
        if session is None:
            session = requests.Session()
            # connection-level retries only; status handling is left to the callers
            adapter = HTTPAdapter(max_retries=Retry(total=2, connect=2, read=0, status=0, backoff_factor=1))
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        session.headers.update({"User-Agent": user_agent})
        self.session = session

    @classmethod
    def from_config(cls, config: ArchiverConfig) -> "HttpTransport":
        return cls(
            timeout=config.request_timeout,
            rate_limiter=RateLimiter(config.request_delay_ms, config.request_jitter_ms),
            user_agent=config.user_agent,
        )

    def close(self) -> None:
        self.session.close()

    def _get(self, url: str, *, params=None, headers=None, stream: bool = False,
             entity_id: Optional[int] = None) -> requests.Response:
        self.rate_limiter.wait()
        logger.debug(f"GET {url} params={params}")
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout, stream=stream)
        except requests.Timeout as e:
            raise FetchError(f"Timed out requesting {url}", FetchErrorKind.TRANSIENT_NETWORK,
                             entity_id=entity_id) from e
        except requests.RequestException as e:
            raise FetchError(f"Request to {url} failed: {e}", FetchErrorKind.TRANSIENT_NETWORK,
                             entity_id=entity_id) from e
        if response.status_code >= 400:
            kind = classify_status(response.status_code)
            response.close()
            raise FetchError(f"HTTP {response.status_code} from {url}", kind, entity_id=entity_id,
                             status_code=response.status_code)
        return response

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None, entity_id: Optional[int] = None) -> Any:
        response = self._get(url, params=params, headers=headers, entity_id=entity_id)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Undecodable JSON from {url}", FetchErrorKind.MALFORMED, entity_id=entity_id,
                             status_code=response.status_code) from e

    def download(self, url: str, fileobj: BinaryIO, headers: Optional[Dict[str, str]] = None,
                 entity_id: Optional[int] = None, progress: bool = False) -> int:
        """Stream ``url`` into ``fileobj``; returns the number of bytes written."""
        response = self._get(url, headers=headers, stream=True, entity_id=entity_id)
        total_size = int(response.headers.get("content-length", 0) or 0)
        # content-length counts encoded bytes, iter_content yields decoded ones
        check_length = bool(total_size) and not response.headers.get("content-encoding")
        written = 0
        try:
            with tqdm(total=total_size, unit="B", unit_scale=True, desc=url.rsplit("/", 1)[-1],
                      disable=not progress, ascii=True, leave=False) as pbar:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:  # filter out keep-alive chunks
                        fileobj.write(chunk)
                        written += len(chunk)
                        pbar.update(len(chunk))
        except requests.RequestException as e:
            raise FetchError(f"Download of {url} interrupted: {e}", FetchErrorKind.TRANSIENT_NETWORK,
                             entity_id=entity_id) from e
        finally:
            response.close()
        if check_length and written != total_size:
            raise FetchError(f"Short download of {url}: {written} of {total_size} bytes",
                             FetchErrorKind.TRANSIENT_NETWORK, entity_id=entity_id)
        return written

#
# End of transport.py
#######################################################################################################################
