"""
Market Data Module

Upstox REST client supplying daily bars, live prices and 1-minute candles,
plus the crossing-time lookup used to timestamp intraday level crosses.
All requests pass through an injectable RateLimiter.
"""

import json
import logging
import threading
import time
from collections import deque
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests

from swingtrack.config import IST
from swingtrack.errors import DataUnavailableError
from swingtrack.models import Bar

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window limiter: at most max_calls acquisitions per period seconds.

    The clock and sleep functions are injectable so tests can drive time
    deterministically.

    Examples:
        >>> limiter = RateLimiter(max_calls=8, period=1.0)
        >>> limiter.acquire()
    """

    def __init__(self, max_calls: int = 8, period: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period <= 0:
            raise ValueError("period must be positive")
        self.max_calls = max_calls
        self.period = period
        self.clock = clock
        self.sleep = sleep
        self._calls = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a call is allowed, then record it."""
        with self._lock:
            while True:
                now = self.clock()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                self.sleep(self._calls[0] + self.period - now)


def _parse_candle(row: Sequence[Any]) -> Dict[str, Any]:
    """Upstox candle row: [timestamp, open, high, low, close, volume, oi]."""
    return {
        'timestamp': datetime.fromisoformat(row[0]),
        'open': float(row[1]),
        'high': float(row[2]),
        'low': float(row[3]),
        'close': float(row[4]),
        'volume': float(row[5]) if len(row) > 5 and row[5] is not None else None,
    }


def find_cross_in_candles(candles: Sequence[Dict[str, Any]], level: float,
                          direction: str) -> Optional[Dict[str, Any]]:
    """
    Find the first candle that crossed a level.

    A candle crosses "above" when its high reaches the level and either it
    opened below the level or the previous candle closed below it ("below" is
    mirrored). Candles are scanned oldest first.

    Args:
        candles: Parsed candles, oldest first
        level: Price level
        direction: 'above' or 'below'

    Returns:
        Dict with cross_time (datetime) and cross_price, or None
    """
    if direction not in ('above', 'below'):
        raise ValueError(f"Unknown direction: {direction}")

    prev_close = None
    for candle in candles:
        if direction == 'above':
            reached = candle['high'] >= level
            from_side = candle['open'] < level or (prev_close is not None and prev_close < level)
            price = max(level, candle['open'])
        else:
            reached = candle['low'] <= level
            from_side = candle['open'] > level or (prev_close is not None and prev_close > level)
            price = min(level, candle['open'])

        if reached and from_side:
            return {'cross_time': candle['timestamp'], 'cross_price': price}
        prev_close = candle['close']

    return None


class UpstoxClient:
    """
    Upstox market data client.

    Handles credential loading, rate limiting and retry with exponential
    backoff. Authentication failures (401/403) are never retried.
    """

    BASE_URL = "https://api.upstox.com"

    def __init__(self, credentials_path: str = "upstox_cred.json",
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 10.0):
        """
        Args:
            credentials_path: JSON file with access_token (and optional api_key)
            rate_limiter: Shared limiter; a default 8 calls/second limiter
                is created when omitted
            timeout: Per-request timeout in seconds
        """
        self.credentials_path = credentials_path
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout = timeout
        self.access_token = None
        self.api_key = None
        self._load_credentials()

    def _load_credentials(self) -> None:
        """
        Raises:
            FileNotFoundError: If credentials file doesn't exist
            KeyError: If access_token is missing
            json.JSONDecodeError: If credentials file is not valid JSON
        """
        cred_file = Path(self.credentials_path)

        if not cred_file.exists():
            raise FileNotFoundError(f"Credentials file not found: {self.credentials_path}")

        with open(cred_file, 'r') as f:
            credentials = json.load(f)

        if 'access_token' not in credentials:
            raise KeyError("Missing 'access_token' in credentials file")

        self.access_token = credentials['access_token']
        self.api_key = credentials.get('api_key')

    def get_headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/json',
            'Authorization': f'Bearer {self.access_token}',
        }

    def _api_call_with_retry(self, func, max_retries: int = 3, initial_delay: float = 1.0):
        """
        Execute an API call with exponential backoff.

        429 responses honour Retry-After when present. 401 and 403 are raised
        immediately. Other HTTP and network errors back off 1s, 2s, 4s.

        Raises:
            requests.exceptions.RequestException: When all attempts fail
        """
        last_exception = None

        for attempt in range(max_retries):
            try:
                self.rate_limiter.acquire()
                return func()
            except requests.exceptions.HTTPError as e:
                last_exception = e
                status = e.response.status_code if e.response is not None else None

                if status in (401, 403):
                    raise

                delay = initial_delay * (2 ** attempt)
                if status == 429:
                    retry_after = e.response.headers.get('Retry-After')
                    if retry_after:
                        delay = float(retry_after)

                if attempt < max_retries - 1:
                    logger.warning("HTTP %s from Upstox, retrying in %.1fs", status, delay)
                    self.rate_limiter.sleep(delay)
            except requests.exceptions.RequestException as e:
                last_exception = e
                if attempt < max_retries - 1:
                    delay = initial_delay * (2 ** attempt)
                    logger.warning("Upstox request failed (%s), retrying in %.1fs", e, delay)
                    self.rate_limiter.sleep(delay)

        raise last_exception

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        def _make_request():
            response = requests.get(
                f"{self.BASE_URL}{path}",
                headers=self.get_headers(),
                params=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

        return self._api_call_with_retry(_make_request)

    def _candles(self, path: str) -> List[Dict[str, Any]]:
        payload = self._get(path)
        rows = (payload.get('data') or {}).get('candles') or []
        # Upstox returns newest first
        return sorted((_parse_candle(row) for row in rows), key=lambda c: c['timestamp'])

    def get_bars(self, instrument_key: str, from_date: date, to_date: date) -> List[Bar]:
        """
        Fetch daily bars between two dates (inclusive).

        Returns:
            Bars in ascending date order; empty if the range has no sessions
        """
        key = quote(instrument_key, safe='')
        path = f"/v3/historical-candle/{key}/days/1/{to_date.isoformat()}/{from_date.isoformat()}"
        bars = []
        for candle in self._candles(path):
            stamp = candle['timestamp']
            day = stamp.astimezone(IST).date() if stamp.tzinfo else stamp.date()
            bars.append(Bar(day, candle['open'], candle['high'], candle['low'],
                            candle['close'], candle['volume']))
        return bars

    def get_current_price(self, instrument_key: str) -> Optional[float]:
        """Last traded price, or None when the quote has no price."""
        payload = self._get("/v2/market-quote/ltp", params={'instrument_key': instrument_key})
        data = payload.get('data') or {}
        for quote_data in data.values():
            token = quote_data.get('instrument_token')
            if token in (None, instrument_key) and quote_data.get('last_price') is not None:
                return float(quote_data['last_price'])
        return None

    def get_intraday_candles(self, instrument_key: str, on_date: Optional[date] = None) -> List[Dict[str, Any]]:
        """
        Fetch 1-minute candles for one session, oldest first.

        The live intraday endpoint serves today's session; earlier dates come
        from the historical endpoint.
        """
        key = quote(instrument_key, safe='')
        today = datetime.now(IST).date()
        if on_date is None or on_date >= today:
            path = f"/v3/historical-candle/intraday/{key}/minutes/1"
        else:
            day = on_date.isoformat()
            path = f"/v3/historical-candle/{key}/minutes/1/{day}/{day}"
        return self._candles(path)

    def find_level_cross_time(self, instrument_key: str, level: float, direction: str,
                              on_or_before: date) -> Optional[Dict[str, Any]]:
        """
        Find when a level was first crossed during a session.

        Args:
            instrument_key: Upstox instrument key
            level: Price level
            direction: 'above' or 'below'
            on_or_before: Session date to scan

        Returns:
            Dict with cross_time (ISO string) and cross_price, or None if the
            session's candles never crossed the level

        Raises:
            DataUnavailableError: If the session has no candles
        """
        candles = self.get_intraday_candles(instrument_key, on_or_before)
        if not candles:
            raise DataUnavailableError(
                f"No 1-minute candles for {instrument_key} on {on_or_before.isoformat()}")

        cross = find_cross_in_candles(candles, level, direction)
        if cross is None:
            return None
        return {'cross_time': cross['cross_time'].isoformat(), 'cross_price': cross['cross_price']}
