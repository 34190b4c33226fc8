"""member_etl.postal_lookup

Postal-code lookup against the zipcloud JSON API.

  - lookup(postal_code): 7-digit code -> prefecture + municipality (+ town)
  - search_postal_code(address): freeform address -> first matching code

The API answers HTTP 200 with a JSON body ``{"status", "message",
"results"}``; ``results`` is null when nothing matched.  API-level errors
(``status`` other than 200) and transport failures raise PostalLookupError.

RateLimiter keeps batch callers polite: one request in flight, a base delay
with jitter, and exponential backoff on failures.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from member_etl.normalize import (
    AddressSplit,
    normalize_postal_code,
    split_address,
    to_half_width,
    trim,
)

log = logging.getLogger(__name__)

ZIPCLOUD_SEARCH_URL = "https://zipcloud.ibsnet.co.jp/api/search"

PREFECTURES = (
    "北海道", "青森県", "岩手県", "宮城県", "秋田県", "山形県", "福島県",
    "茨城県", "栃木県", "群馬県", "埼玉県", "千葉県", "東京都", "神奈川県",
    "新潟県", "富山県", "石川県", "福井県", "山梨県", "長野県", "岐阜県",
    "静岡県", "愛知県", "三重県", "滋賀県", "京都府", "大阪府", "兵庫県",
    "奈良県", "和歌山県", "鳥取県", "島根県", "岡山県", "広島県", "山口県",
    "徳島県", "香川県", "愛媛県", "高知県", "福岡県", "佐賀県", "長崎県",
    "熊本県", "大分県", "宮崎県", "鹿児島県", "沖縄県",
)

_DIGIT_RE = re.compile(r"[0-9]")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PostalLookupError(Exception):
    """Raised when the lookup service cannot be reached or answers with an error."""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PostalAddress:
    postal_code: str
    prefecture: str
    municipality: str
    town: str = ""

    @property
    def municipality_and_below(self) -> str:
        return self.municipality + self.town

    def split(self, allow_loose: bool = True) -> AddressSplit:
        """Run the address splitter over the municipality-and-below value."""
        return split_address(self.municipality_and_below, allow_loose=allow_loose)

    @classmethod
    def from_result(cls, result: dict[str, Any]) -> PostalAddress:
        return cls(
            postal_code=str(result.get("zipcode") or ""),
            prefecture=str(result.get("address1") or ""),
            municipality=str(result.get("address2") or ""),
            town=str(result.get("address3") or ""),
        )


def strip_prefecture(address: str) -> str:
    """Drop a leading prefecture name, if any."""
    for pref in PREFECTURES:
        if address.startswith(pref):
            return address[len(pref):]
    return address


def search_query(address: str | None) -> str | None:
    """Return the address as sent to the search API, or None if unsearchable.

    The value is trimmed, converted to half width and stripped of its
    prefecture.  A remainder without any digit is too vague to search.
    """
    v = trim(address)
    if v is None:
        return None
    remainder = strip_prefecture(to_half_width(v))
    if not _DIGIT_RE.search(remainder):
        return None
    return remainder


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Polite single-thread rate limiter with jitter and exponential backoff."""

    base_delay: float = 1.0
    jitter: float = 0.5
    max_consecutive_failures: int = 5
    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self) -> None:
        """Block for base_delay * backoff_mult ± jitter seconds (never negative)."""
        if self.base_delay <= 0:
            return
        delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        time.sleep(max(0.0, delay))

    def on_success(self) -> None:
        self._consecutive_failures = 0
        self._backoff_mult = 1.0

    def on_failure(self, reason: str = "") -> bool:
        """Record a failure. Returns True if the safe-stop threshold is reached."""
        self._consecutive_failures += 1
        self._backoff_mult = min(self._backoff_mult * 2.0, 32.0)
        log.debug("lookup failure #%d (%s)", self._consecutive_failures, reason)
        return self._consecutive_failures >= self.max_consecutive_failures

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PostalLookupClient:
    """Thin requests-based client for the zipcloud search API."""

    def __init__(
        self,
        session: requests.Session | None = None,
        base_url: str = ZIPCLOUD_SEARCH_URL,
        timeout: int = 10,
    ) -> None:
        self._session = session or requests.Session()
        self._base_url = base_url
        self._timeout = timeout

    def lookup(self, postal_code: str | None) -> PostalAddress | None:
        """Return the address for a 7-digit postal code, or None.

        Input that does not reduce to 7 digits returns None without a request.
        """
        code = normalize_postal_code(postal_code)
        if code is None:
            return None
        results = self._search({"zipcode": code})
        if not results:
            return None
        return PostalAddress.from_result(results[0])

    def search_postal_code(self, address: str | None) -> str | None:
        """Return the first postal code matching a freeform address, or None.

        The prefecture prefix is dropped before searching.  An address without
        any digit is too vague to search and returns None without a request.
        """
        query = search_query(address)
        if query is None:
            return None
        results = self._search({"address": query})
        if not results:
            return None
        return normalize_postal_code(str(results[0].get("zipcode") or ""))

    def _search(self, params: dict[str, str]) -> list[dict[str, Any]]:
        try:
            resp = self._session.get(self._base_url, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise PostalLookupError(f"request failed: {exc}") from exc

        if resp.status_code != 200:
            raise PostalLookupError(f"HTTP {resp.status_code} from {self._base_url}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise PostalLookupError(f"non-JSON response: {exc}") from exc

        if not isinstance(data, dict):
            raise PostalLookupError("unexpected response shape")
        status = data.get("status")
        if status != 200:
            raise PostalLookupError(
                f"API status {status}: {data.get('message') or 'no message'}"
            )
        results = data.get("results") or []
        log.debug("postal search %s -> %d result(s)", params, len(results))
        return results
