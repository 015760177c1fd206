"""
Unit tests for the Upstox market data client and rate limiter.

HTTP calls are mocked with unittest.mock; the rate limiter is driven with a
fake clock so no test sleeps.
"""

import json
from datetime import date, datetime
from unittest.mock import Mock, patch

import pytest
import requests

from swingtrack.config import IST
from swingtrack.errors import DataUnavailableError
from swingtrack.market_data import RateLimiter, UpstoxClient, find_cross_in_candles
from swingtrack.models import Bar


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def ok_response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status = Mock()
    return response


def error_response(status, headers=None):
    response = Mock()
    response.status_code = status
    response.headers = headers or {}
    response.raise_for_status = Mock(side_effect=requests.exceptions.HTTPError(response=response))
    return response


def candle_payload(rows):
    return {'status': 'success', 'data': {'candles': rows}}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(tmp_path, clock):
    cred_file = tmp_path / "upstox_cred.json"
    cred_file.write_text(json.dumps({'access_token': 'test_token', 'api_key': 'test_key'}))
    limiter = RateLimiter(max_calls=8, period=1.0, clock=clock, sleep=clock.sleep)
    return UpstoxClient(credentials_path=str(cred_file), rate_limiter=limiter)


class TestRateLimiter:
    def test_allows_burst_up_to_limit(self, clock):
        limiter = RateLimiter(max_calls=3, period=1.0, clock=clock, sleep=clock.sleep)

        for _ in range(3):
            limiter.acquire()

        assert clock.sleeps == []

    def test_waits_for_window_to_slide(self, clock):
        limiter = RateLimiter(max_calls=2, period=1.0, clock=clock, sleep=clock.sleep)

        limiter.acquire()
        clock.now = 0.4
        limiter.acquire()
        limiter.acquire()

        assert clock.sleeps == [pytest.approx(0.6)]
        assert clock.now == pytest.approx(1.0)

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(max_calls=0)
        with pytest.raises(ValueError):
            RateLimiter(period=0)


class TestCredentials:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            UpstoxClient(credentials_path=str(tmp_path / "missing.json"))

    def test_missing_token(self, tmp_path):
        cred_file = tmp_path / "upstox_cred.json"
        cred_file.write_text(json.dumps({'api_key': 'test_key'}))

        with pytest.raises(KeyError, match='access_token'):
            UpstoxClient(credentials_path=str(cred_file))

    def test_headers(self, client):
        headers = client.get_headers()

        assert headers['Authorization'] == 'Bearer test_token'
        assert headers['Accept'] == 'application/json'


class TestGetBars:
    @patch('requests.get')
    def test_parses_and_sorts_daily_candles(self, mock_get, client):
        mock_get.return_value = ok_response(candle_payload([
            ["2024-12-24T00:00:00+05:30", 101.0, 103.0, 100.5, 102.5, 150000, 0],
            ["2024-12-23T00:00:00+05:30", 99.0, 101.5, 98.5, 101.0, 120000, 0],
        ]))

        bars = client.get_bars('NSE_EQ|INE000A01010', date(2024, 12, 23), date(2024, 12, 24))

        assert bars == [
            Bar(date(2024, 12, 23), 99.0, 101.5, 98.5, 101.0, 120000.0),
            Bar(date(2024, 12, 24), 101.0, 103.0, 100.5, 102.5, 150000.0),
        ]
        url = mock_get.call_args[0][0]
        assert url.endswith('/v3/historical-candle/NSE_EQ%7CINE000A01010/days/1/2024-12-24/2024-12-23')
        assert mock_get.call_args[1]['timeout'] == 10.0

    @patch('requests.get')
    def test_empty_range(self, mock_get, client):
        mock_get.return_value = ok_response(candle_payload([]))

        assert client.get_bars('NSE_EQ|X', date(2024, 12, 28), date(2024, 12, 29)) == []


class TestCurrentPrice:
    @patch('requests.get')
    def test_last_price(self, mock_get, client):
        mock_get.return_value = ok_response({'data': {
            'NSE_EQ:ACME': {'instrument_token': 'NSE_EQ|INE000A01010', 'last_price': 101.25},
        }})

        assert client.get_current_price('NSE_EQ|INE000A01010') == 101.25
        assert mock_get.call_args[1]['params'] == {'instrument_key': 'NSE_EQ|INE000A01010'}

    @patch('requests.get')
    def test_no_quote(self, mock_get, client):
        mock_get.return_value = ok_response({'data': {}})

        assert client.get_current_price('NSE_EQ|INE000A01010') is None


class TestRetry:
    @patch('requests.get')
    def test_auth_errors_not_retried(self, mock_get, client):
        mock_get.return_value = error_response(401)

        with pytest.raises(requests.exceptions.HTTPError):
            client.get_current_price('NSE_EQ|X')

        assert mock_get.call_count == 1

    @patch('requests.get')
    def test_backoff_on_network_errors(self, mock_get, client, clock):
        mock_get.side_effect = [
            requests.exceptions.ConnectionError('reset'),
            requests.exceptions.Timeout('slow'),
            ok_response({'data': {'k': {'last_price': 99.0}}}),
        ]

        assert client.get_current_price('NSE_EQ|X') == 99.0
        assert clock.sleeps == [1.0, 2.0]

    @patch('requests.get')
    def test_rate_limited_honours_retry_after(self, mock_get, client, clock):
        mock_get.side_effect = [
            error_response(429, {'Retry-After': '3'}),
            ok_response({'data': {'k': {'last_price': 99.0}}}),
        ]

        assert client.get_current_price('NSE_EQ|X') == 99.0
        assert clock.sleeps == [3.0]

    @patch('requests.get')
    def test_gives_up_after_three_attempts(self, mock_get, client):
        mock_get.side_effect = requests.exceptions.ConnectionError('down')

        with pytest.raises(requests.exceptions.ConnectionError):
            client.get_bars('NSE_EQ|X', date(2024, 12, 23), date(2024, 12, 24))

        assert mock_get.call_count == 3


class TestCrossingTime:
    candles = [
        ["2024-12-23T11:00:00+05:30", 99.9, 100.2, 99.85, 100.1, 5000, 0],
        ["2024-12-23T10:59:00+05:30", 99.8, 99.95, 99.7, 99.9, 4000, 0],
        ["2024-12-23T10:58:00+05:30", 99.6, 99.85, 99.5, 99.8, 3000, 0],
    ]

    @patch('requests.get')
    def test_first_cross_above(self, mock_get, client):
        mock_get.return_value = ok_response(candle_payload(self.candles))

        cross = client.find_level_cross_time('NSE_EQ|X', 100.0, 'above', date(2024, 12, 23))

        assert cross == {'cross_time': '2024-12-23T11:00:00+05:30', 'cross_price': 100.0}
        assert '/minutes/1/2024-12-23/2024-12-23' in mock_get.call_args[0][0]

    @patch('requests.get')
    def test_never_crossed(self, mock_get, client):
        mock_get.return_value = ok_response(candle_payload(self.candles))

        assert client.find_level_cross_time('NSE_EQ|X', 101.0, 'above', date(2024, 12, 23)) is None

    @patch('requests.get')
    def test_no_candles(self, mock_get, client):
        mock_get.return_value = ok_response(candle_payload([]))

        with pytest.raises(DataUnavailableError):
            client.find_level_cross_time('NSE_EQ|X', 100.0, 'above', date(2024, 12, 23))

    def test_cross_below_after_gap(self):
        candles = [
            {'timestamp': IST.localize(datetime(2024, 12, 23, 9, 15)), 'open': 101.0, 'high': 101.2,
             'low': 100.5, 'close': 100.8, 'volume': None},
            {'timestamp': IST.localize(datetime(2024, 12, 23, 9, 16)), 'open': 99.5, 'high': 99.9,
             'low': 99.2, 'close': 99.4, 'volume': None},
        ]

        cross = find_cross_in_candles(candles, 100.0, 'below')

        assert cross['cross_time'] == candles[1]['timestamp']
        assert cross['cross_price'] == 99.5

    def test_unknown_direction(self):
        with pytest.raises(ValueError):
            find_cross_in_candles([], 100.0, 'sideways')
