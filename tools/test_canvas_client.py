#!/usr/bin/env python3
"""
Tests for the Canvas API client: auth, pagination, retries, cancellation
and byte retrieval.

Run with: pytest test_canvas_client.py -v
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from canvas_client import (
    BackoffStrategy,
    CanvasAPIError,
    CanvasClient,
    MirrorCancelled,
    MirrorConfig,
    ResolvedContent,
    parse_timestamp,
)

API = "https://canvas.example.edu/api/v1"


# ============ FIXTURES ============

@pytest.fixture
def config(tmp_path):
    return MirrorConfig(base_url=API + "/", api_token="test_token", output_dir=str(tmp_path), max_retries=3)


@pytest.fixture
def session():
    with patch('canvas_client.requests.Session') as mock_session_class:
        mock_session = MagicMock()
        mock_session.headers = {}
        mock_session_class.return_value = mock_session
        yield mock_session


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(config, session, sleeps):
    return CanvasClient(config, backoff=BackoffStrategy(sleep=sleeps.append))


def make_response(status=200, json_data=None, headers=None, chunks=None, text=""):
    response = Mock()
    response.status_code = status
    response.headers = headers or {}
    response.text = text
    response.json.return_value = json_data
    if chunks is not None:
        response.iter_content = lambda chunk_size: iter(chunks)
    return response


# ============ UNIT TESTS ============

class TestParseTimestamp:
    """Tests for Canvas timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_timestamp("2023-06-01T00:00:00Z") == datetime(2023, 6, 1, tzinfo=timezone.utc)

    def test_offset(self):
        assert parse_timestamp("2023-06-01T02:00:00+02:00") == datetime(2023, 6, 1, tzinfo=timezone.utc)

    def test_missing(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("last tuesday")


class TestAuth:
    """Every request carries the bearer token."""

    def test_sets_bearer_header(self, client, session):
        assert session.headers["Authorization"] == "Bearer test_token"
        assert session.headers["Accept"] == "application/json"

    def test_relative_paths_join_base_url(self, client, session):
        session.get.return_value = make_response(json_data={"id": 1})
        client.get_json("courses/1")
        assert session.get.call_args.args[0] == f"{API}/courses/1"

    def test_absolute_locators_are_used_as_is(self, client, session):
        session.get.return_value = make_response(json_data={})
        client.get_json("https://other.example.edu/api/v1/files/9")
        assert session.get.call_args.args[0] == "https://other.example.edu/api/v1/files/9"

    def test_requests_have_timeout(self, client, session):
        session.get.return_value = make_response(json_data={})
        client.get_json("courses/1")
        assert session.get.call_args.kwargs["timeout"] == (10.0, 60.0)


class TestPagination:
    """Tests for Link header pagination."""

    def test_follows_next_links(self, client, session):
        page1 = make_response(
            json_data=[{"id": 1, "name": "A"}],
            headers={"Link": f'<{API}/courses?page=2&per_page=100>; rel="next", <{API}/courses?page=1>; rel="first"'},
        )
        page2 = make_response(json_data=[{"id": 2, "name": "B"}], headers={"Link": f'<{API}/courses?page=1>; rel="first"'})
        session.get.side_effect = [page1, page2]

        courses = client.list_courses()

        assert [c.id for c in courses] == [1, 2]
        first, second = session.get.call_args_list
        assert first.kwargs["params"] == {"per_page": 100}
        assert second.args[0] == f"{API}/courses?page=2&per_page=100"
        assert second.kwargs["params"] is None

    def test_announcements_are_scoped_to_course(self, client, session):
        session.get.return_value = make_response(json_data=[])
        client.list_announcements(42)
        assert session.get.call_args.kwargs["params"]["context_codes[]"] == "course_42"

    def test_non_list_is_an_error(self, client, session):
        session.get.return_value = make_response(json_data={"errors": []})
        with pytest.raises(CanvasAPIError):
            client.list_files(1)

    def test_malformed_records_are_dropped(self, client, session):
        session.get.return_value = make_response(json_data=[
            {"id": 1, "folder_id": 7, "filename": "ok.pdf", "url": "u", "modified_at": "2023-01-01T00:00:00Z"},
            {"id": 2, "folder_id": 7, "filename": "bad.pdf", "url": "u", "modified_at": "not a date"},
            {"id": 3, "filename": "no-folder.pdf", "modified_at": "2023-01-01T00:00:00Z"},
        ])
        files = client.list_files(1)
        assert [f.filename for f in files] == ["ok.pdf"]


class TestRetry:
    """Tests for retry and backoff."""

    def test_retries_server_errors(self, client, session, sleeps):
        session.get.side_effect = [make_response(status=502), make_response(json_data={"ok": True})]

        assert client.get_json("courses/1") == {"ok": True}
        assert session.get.call_count == 2
        assert len(sleeps) == 1

    def test_retries_connection_errors(self, client, session):
        session.get.side_effect = [requests.exceptions.ConnectionError("reset"), make_response(json_data=[])]
        assert client.get_json("courses") == []

    def test_gives_up_after_max_retries(self, client, session):
        session.get.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(CanvasAPIError):
            client.get_json("courses/1")
        assert session.get.call_count == 3

    def test_client_errors_fail_immediately(self, client, session):
        session.get.return_value = make_response(status=404, text="not found")
        with pytest.raises(CanvasAPIError) as excinfo:
            client.get_json("courses/1/files")
        assert excinfo.value.status == 404
        assert session.get.call_count == 1

    def test_honours_retry_after(self, client, session, sleeps):
        session.get.side_effect = [
            make_response(status=429, headers={"Retry-After": "7"}),
            make_response(json_data={}),
        ]
        client.get_json("courses/1")
        assert sleeps == [7.0]

    def test_retry_after_as_http_date_uses_backoff(self, client, session, sleeps):
        session.get.side_effect = [
            make_response(status=429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}),
            make_response(json_data={}),
        ]
        client.get_json("courses/1")
        assert session.get.call_count == 2
        assert len(sleeps) == 1
        assert 1.0 <= sleeps[0] <= 1.5

    @pytest.mark.parametrize("error", [
        requests.exceptions.TooManyRedirects("Exceeded 30 redirects."),
        requests.exceptions.InvalidURL("bad url"),
    ])
    def test_other_request_errors_become_api_errors(self, client, session, error):
        session.get.side_effect = error
        with pytest.raises(CanvasAPIError) as excinfo:
            client.get_json("courses/1")
        assert excinfo.value.__cause__ is error
        assert session.get.call_count == 1

    def test_rate_limit_delay(self, config, session):
        waits = []
        client = CanvasClient(config, backoff=BackoffStrategy(rate_limit=0.25, sleep=waits.append))
        session.get.return_value = make_response(json_data={})
        client.get_json("courses/1")
        assert waits == [0.25]


class TestCancellation:
    """Tests for the cancellation token."""

    def test_cancelled_client_makes_no_requests(self, client, session):
        client.cancel()
        with pytest.raises(MirrorCancelled):
            client.get_json("courses")
        session.get.assert_not_called()

    def test_cancel_during_download_keeps_destination(self, client, session, tmp_path):
        dest = tmp_path / "f.bin"
        dest.write_bytes(b"previous")

        def chunks(chunk_size):
            yield b"abc"
            client.cancel()
            yield b"def"

        response = make_response()
        response.iter_content = chunks
        session.get.return_value = response

        with pytest.raises(MirrorCancelled):
            client.download("https://files.example.edu/1", dest)

        assert dest.read_bytes() == b"previous"
        assert not (tmp_path / "f.bin.part").exists()


class TestDownload:
    """Tests for byte retrieval."""

    def test_streams_to_destination(self, client, session, tmp_path):
        session.get.return_value = make_response(chunks=[b"PDF ", b"", b"content"])
        dest = tmp_path / "nested" / "dir" / "file.pdf"

        client.download("https://files.example.edu/1", dest)

        assert dest.read_bytes() == b"PDF content"
        assert session.get.call_args.kwargs["stream"] is True

    def test_broken_stream_leaves_no_partial_file(self, client, session, tmp_path):
        def chunks(chunk_size):
            yield b"abc"
            raise requests.exceptions.ChunkedEncodingError("connection dropped")

        response = make_response()
        response.iter_content = chunks
        session.get.return_value = response
        dest = tmp_path / "file.pdf"

        with pytest.raises(CanvasAPIError):
            client.download("https://files.example.edu/1", dest)

        assert list(tmp_path.iterdir()) == []


class TestResolve:
    """Tests for locator resolution."""

    def test_file_descriptor(self, client, session):
        session.get.return_value = make_response(json_data={
            "url": "https://files.example.edu/5", "filename": "notes.pdf", "modified_at": "2023-03-01T00:00:00Z",
        })
        content = client.resolve(f"{API}/courses/1/files/5")
        assert content.downloadable
        assert content.filename == "notes.pdf"

    def test_non_file_descriptor(self, client, session):
        session.get.return_value = make_response(json_data={"title": "Quiz 1", "html_url": "x"})
        assert client.resolve(f"{API}/courses/1/quizzes/5") == ResolvedContent(None, None, None)
