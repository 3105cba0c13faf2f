"""Tests for the shared HTTP helpers."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from common import http_client
from constants import Constants
from errors import NetworkError, SourceNotFound


def _response(status_code, text="", chunks=()):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.headers = {}
    response.iter_content.return_value = list(chunks)
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


@pytest.fixture(autouse=True)
def _fresh_cache():
    http_client.clear_cache()
    yield
    http_client.clear_cache()


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch('common.http_client.time.sleep') as mock_sleep:
        yield mock_sleep


class TestRobustGet:
    """Retries, caching and error mapping for GET."""

    @patch('common.http_client.requests.get')
    def test_retries_server_errors(self, mock_get, _no_sleep):
        """Test that a 503 followed by 200 succeeds."""
        mock_get.side_effect = [_response(503), _response(200, "ok")]

        status, _, text = http_client.robust_get("https://index.invalid/a")

        assert (status, text) == (200, "ok")
        assert mock_get.call_count == 2
        _no_sleep.assert_called_once_with(http_client.backoff_delay(0))

    @patch('common.http_client.requests.get')
    def test_retries_timeouts_then_gives_up(self, mock_get):
        """Test that persistent timeouts raise NetworkError."""
        mock_get.side_effect = requests.Timeout()

        with pytest.raises(NetworkError):
            http_client.robust_get("https://index.invalid/a")

        assert mock_get.call_count == Constants.HTTP_RETRY_MAX

    @patch('common.http_client.requests.get')
    def test_caches_successful_responses(self, mock_get):
        """Test that a second GET is served from the cache."""
        mock_get.return_value = _response(200, "cached")

        http_client.robust_get("https://index.invalid/a")
        http_client.robust_get("https://index.invalid/a")

        assert mock_get.call_count == 1

    @patch('common.http_client.requests.get')
    def test_get_text_maps_404(self, mock_get):
        """Test that 404 becomes SourceNotFound without retrying."""
        mock_get.return_value = _response(404)

        with pytest.raises(SourceNotFound):
            http_client.get_text("https://index.invalid/missing")

        assert mock_get.call_count == 1

    def test_backoff_is_exponential(self):
        assert http_client.backoff_delay(2) == 4 * http_client.backoff_delay(0)


class TestDownloadToFile:
    """Streaming downloads."""

    @patch('common.http_client.requests.get')
    def test_writes_chunks(self, mock_get, tmp_path):
        mock_get.return_value = _response(200, chunks=[b"ab", b"", b"cd"])
        dest = tmp_path / "out.tar.gz"

        size = http_client.download_to_file("https://files.invalid/a.tar.gz", str(dest))

        assert size == 4
        assert dest.read_bytes() == b"abcd"

    @patch('common.http_client.requests.get')
    def test_connection_errors_leave_no_partial_file(self, mock_get, tmp_path):
        mock_get.side_effect = requests.ConnectionError("reset")
        dest = tmp_path / "out.tar.gz"

        with pytest.raises(NetworkError):
            http_client.download_to_file("https://files.invalid/a.tar.gz", str(dest))

        assert not dest.exists()

    @patch('common.http_client.requests.get')
    def test_missing_archive(self, mock_get, tmp_path):
        mock_get.return_value = _response(404)

        with pytest.raises(SourceNotFound):
            http_client.download_to_file("https://files.invalid/a.tar.gz", str(tmp_path / "x"))
