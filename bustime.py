# Arrival lookup for the CTA Bus Tracker: response classification, caches, orchestration.

from dataclasses import dataclass
import logging
import re
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import requests

log = logging.getLogger("bustime")

BUSTIME_BASE = "http://www.ctabustracker.com/bustime/api/v2/getpredictions"

FRESHNESS_WINDOW_SEC = 60
INVALID_STOP_PHRASE = "no data found for parameter"
ARRIVAL_SEPARATOR = "..."
RESULT_DELIMITER = "  -  "

NOT_A_VALID_STOP = "Not a valid stop id"
REQUEST_FAILED = "There was an error sending the request"
UNKNOWN_FORMAT = "Unknown response format"

Clock = Callable[[], float]


class UpstreamError(Exception):
    def __init__(self, message: str):
        super().__init__(message)


@dataclass(frozen=True)
class Predictions:
    stop_name: str
    arrival_summary: str


@dataclass(frozen=True)
class Message:
    text: str


@dataclass(frozen=True)
class Unrecognized:
    pass


ClassifiedResponse = Union[Predictions, Message, Unrecognized]


def contains_tags(xml: str, tag: str) -> bool:
    return f"<{tag}>" in xml and f"</{tag}>" in xml


def _tag_pattern(tag: str) -> "re.Pattern[str]":
    return re.compile(f"<{tag}>(.*?)</{tag}>")


_STOP_NAME = _tag_pattern("stpnm")
_PREDICTION = _tag_pattern("prdctdn")
_MESSAGE = _tag_pattern("msg")


def unescape(text: str) -> str:
    return text.replace("&amp;", "&")


def first_capture(pattern: "re.Pattern[str]", xml: str) -> str:
    match = pattern.search(xml)
    if match is None:
        return ""
    return match.group(1)


def arrival_summary(xml: str) -> str:
    # The API returns a varying number of <prdctdn> entries, each one a countdown.
    parts: List[str] = []
    for match in _PREDICTION.finditer(xml):
        parts.append(f"{match.group(1)}{ARRIVAL_SEPARATOR}")
    return "".join(parts)


def classify(xml: str) -> ClassifiedResponse:
    """Sort a getpredictions body into predictions, an API message, or neither.

    Detection is a plain substring check for the opening and closing tag, so a
    payload with a stray tag still classifies; missing inner text becomes "".
    """
    if contains_tags(xml, "prdctdn"):
        return Predictions(
            stop_name=unescape(first_capture(_STOP_NAME, xml)),
            arrival_summary=arrival_summary(xml),
        )
    if contains_tags(xml, "msg"):
        return Message(text=unescape(first_capture(_MESSAGE, xml)))
    return Unrecognized()


class StopBlocklist:
    def __init__(self) -> None:
        self._stop_ids: Set[str] = set()
        self._lock = threading.Lock()

    def mark_invalid(self, stop_id: str) -> None:
        with self._lock:
            self._stop_ids.add(stop_id)

    def is_known_invalid(self, stop_id: str) -> bool:
        with self._lock:
            return stop_id in self._stop_ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._stop_ids)


@dataclass
class CacheEntry:
    value: str
    recorded_at: float


class ArrivalCache:
    """Last known result per stop id. Entries are overwritten, never evicted."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def put(self, stop_id: str, value: str) -> None:
        # Clock is read under the lock so recorded_at never goes backwards for a stop.
        with self._lock:
            self._entries[stop_id] = CacheEntry(value=value, recorded_at=self._clock())

    def get_entry(self, stop_id: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(stop_id)

    def get(self, stop_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(stop_id)
        if entry is None:
            return None
        return entry.value

    def is_fresh(self, stop_id: str, window: float) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(stop_id)
        return entry is not None and now - entry.recorded_at < window

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BustimeClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = BUSTIME_BASE,
        timeout: Optional[Tuple[float, float]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch_predictions(self, stop_id: str) -> str:
        try:
            resp = self._session.get(
                self._base_url,
                params={"key": self._api_key, "stpid": stop_id},
                timeout=self._timeout,
            )
            # Upstream reports API errors inside a <msg> tag, so any status goes on to classify.
            return resp.text
        except requests.RequestException as exc:
            raise UpstreamError(f"Bus Tracker request failed for stop {stop_id}") from exc


class ArrivalLookup:
    def __init__(
        self,
        fetch: Callable[[str], str],
        cache: ArrivalCache,
        blocklist: StopBlocklist,
        freshness_window: float = FRESHNESS_WINDOW_SEC,
    ) -> None:
        self.fetch = fetch
        self.cache = cache
        self.blocklist = blocklist
        self.freshness_window = freshness_window

    def lookup(self, stop_id: str) -> str:
        """Return a displayable arrival string for stop_id.

        A fresh cache entry wins, then a known-invalid id; only then is the
        API called. Locks are never held across the fetch.
        """
        if self.cache.is_fresh(stop_id, self.freshness_window):
            cached = self.cache.get(stop_id)
            if cached is not None:
                log.debug("Cache hit for stop %s", stop_id)
                return cached

        if self.blocklist.is_known_invalid(stop_id):
            log.debug("Stop %s is known invalid", stop_id)
            return NOT_A_VALID_STOP

        try:
            xml = self.fetch(stop_id)
        except UpstreamError as exc:
            log.warning("Arrival fetch failed: %s", exc)
            return REQUEST_FAILED

        return self.handle_response(stop_id, classify(xml))

    def handle_response(self, stop_id: str, response: ClassifiedResponse) -> str:
        if isinstance(response, Predictions):
            # The delimiter must appear once, so it is collapsed inside the stop name.
            stop_name = response.stop_name.replace(RESULT_DELIMITER, " - ")
            result = f"{stop_name}{RESULT_DELIMITER}{response.arrival_summary}"
            self.cache.put(stop_id, result)
            return result

        if isinstance(response, Message):
            if INVALID_STOP_PHRASE in response.text.lower():
                log.info("Upstream reports stop %s does not exist", stop_id)
                self.blocklist.mark_invalid(stop_id)
                return NOT_A_VALID_STOP
            self.cache.put(stop_id, response.text)
            return response.text

        log.warning("Unrecognized response format for stop %s", stop_id)
        return UNKNOWN_FORMAT
