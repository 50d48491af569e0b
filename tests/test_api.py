"""
Unit tests for the kintone API module.

Tests the KintoneAPI class with a mocked requests session.
"""

import io
from unittest.mock import MagicMock, patch

import pytest
import requests

from kintone_backup.api.kintone_api import (
    APPS_PAGE_SIZE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_PAGE_SIZE,
    LOOKUP_BATCH_SIZE,
    AuthenticationError,
    KintoneAPI,
    KintoneAPIError,
    RateLimitError,
    format_query_timestamp,
    format_query_value,
)
from kintone_backup.api.retry import ApiStats, RetryPolicy
from kintone_backup.auth.credentials import API_TOKEN_HEADER, KintoneCredentials

BASE_URL = "https://example.cybozu.com/k/v1"


def make_response(status=200, json_data=None, headers=None):
    """Create a mock requests.Response."""
    response = MagicMock()
    response.status_code = status
    response.json.return_value = json_data if json_data is not None else {}
    response.headers = headers or {}
    response.reason = "Error" if status >= 400 else "OK"
    return response


def make_record(record_id, **fields):
    record = {"$id": {"type": "__ID__", "value": str(record_id)}}
    for code, value in fields.items():
        record[code] = {"type": "SINGLE_LINE_TEXT", "value": value}
    return record


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def api(session):
    """Create a KintoneAPI instance with a mocked session."""
    creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
    return KintoneAPI(creds, retry_policy=RetryPolicy(rng=lambda: 0.5), session=session)


class TestKintoneAPIInitialization:
    """Tests for KintoneAPI initialization."""

    def test_defaults(self, api):
        """Test default page, batch and lookup sizes."""
        assert api.page_size == DEFAULT_PAGE_SIZE == 500
        assert api.batch_size == DEFAULT_BATCH_SIZE == 100
        assert api.lookup_batch_size == LOOKUP_BATCH_SIZE == 50
        assert api.stats == ApiStats()

    def test_sizes_capped_at_service_limits(self):
        """Test that sizes above the service limits are capped."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, page_size=1000, batch_size=500, lookup_batch_size=80)

        assert api.page_size == 500
        assert api.batch_size == 100
        assert api.lookup_batch_size == 50

    def test_session_carries_auth_header(self):
        """Test that the lazily created session carries the API token."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds)

        assert api.session.headers[API_TOKEN_HEADER] == "token"
        assert api.session is api.session

    def test_session_without_credentials_raises(self):
        """Test that missing credentials raise AuthenticationError."""
        api = KintoneAPI(KintoneCredentials(domain="example.cybozu.com"))

        with pytest.raises(AuthenticationError, match="API token"):
            _ = api.session


class TestQueryFormatting:
    """Tests for query value helpers."""

    def test_timestamp_from_iso_string(self):
        """Test that ISO strings with offsets are converted to UTC."""
        assert format_query_timestamp("2024-01-20T19:30:00+09:00") == (
            "2024-01-20T10:30:00Z"
        )

    def test_timestamp_with_z_suffix(self):
        """Test that a trailing Z is accepted."""
        assert format_query_timestamp("2024-01-20T10:30:00Z") == "2024-01-20T10:30:00Z"

    def test_numeric_values_unquoted(self):
        """Test that numeric-looking keys are sent unquoted."""
        assert format_query_value("42") == "42"
        assert format_query_value(7) == "7"

    def test_text_values_quoted_and_escaped(self):
        """Test that other keys are quoted with quotes and backslashes escaped."""
        assert format_query_value("APP-1") == '"APP-1"'
        assert format_query_value('a"b\\c') == '"a\\"b\\\\c"'


class TestRequestAccounting:
    """Tests for request counters and caller-owned stats."""

    def test_simple_call_counts_one_request(self, api, session):
        """Test that get_app issues one request with the app id."""
        session.request.return_value = make_response(json_data={"name": "Orders"})

        result = api.get_app("42")

        assert result == {"name": "Orders"}
        session.request.assert_called_once_with(
            "GET",
            f"{BASE_URL}/app.json",
            params={"id": "42"},
            json=None,
            timeout=60.0,
            stream=False,
        )
        assert api.stats.api_request_count == 1
        assert api.stats.retry_count == 0

    def test_track_binds_and_resets_stats(self, api, session):
        """Test that track() counts into caller stats and resets on exit."""
        session.request.return_value = make_response(json_data={"name": "Orders"})
        stats = ApiStats()

        with api.track(stats):
            api.get_app("42")
            api.get_app("42")

        assert stats.api_request_count == 2
        assert api.stats.api_request_count == 0
        assert api.stats is not stats

    def test_track_resets_after_error(self, api, session):
        """Test that counters are reset even when the operation fails."""
        session.request.return_value = make_response(status=404)
        stats = ApiStats()

        with pytest.raises(KintoneAPIError):
            with api.track(stats):
                api.get_app("42")

        assert stats.api_request_count == 1
        assert api.stats.api_request_count == 0

    def test_get_stats_returns_snapshot(self, api):
        """Test that get_stats returns a copy."""
        api.stats.record_request(3)

        snapshot = api.get_stats()
        api.reset_counters()

        assert snapshot.api_request_count == 3
        assert api.stats.api_request_count == 0


class TestRetryBehavior:
    """Tests for retry with exponential backoff."""

    @patch("time.sleep")
    def test_server_error_is_retried(self, mock_sleep, api, session):
        """Test that a 503 is retried and the retry is counted."""
        session.request.side_effect = [
            make_response(status=503),
            make_response(json_data={"name": "Orders"}),
        ]

        result = api.get_app("42")

        assert result["name"] == "Orders"
        assert session.request.call_count == 2
        mock_sleep.assert_called_once_with(1.0)
        assert api.stats.api_request_count == 1
        assert api.stats.retry_count == 1

    @patch("time.sleep")
    def test_backoff_grows_between_retries(self, mock_sleep, api, session):
        """Test that consecutive retries wait 1s, 2s, 4s."""
        session.request.side_effect = [
            make_response(status=500),
            make_response(status=502),
            make_response(status=504),
            make_response(json_data={}),
        ]

        api.get_app("42")

        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0]
        assert api.stats.retry_count == 3

    @patch("time.sleep")
    def test_retry_after_header_is_honoured(self, mock_sleep, api, session):
        """Test that Retry-After on a 429 replaces the computed delay."""
        session.request.side_effect = [
            make_response(status=429, headers={"Retry-After": "3"}),
            make_response(json_data={}),
        ]

        api.get_app("42")

        mock_sleep.assert_called_once_with(3.0)

    @patch("time.sleep")
    def test_rate_limit_exhausts_retries(self, mock_sleep, session):
        """Test that a persistent 429 raises RateLimitError after all retries."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, retry_policy=RetryPolicy(max_retries=2), session=session)
        session.request.return_value = make_response(status=429)

        with pytest.raises(RateLimitError):
            api.get_app("42")

        assert session.request.call_count == 3
        assert api.stats.retry_count == 2
        assert api.stats.api_request_count == 1

    @patch("time.sleep")
    def test_network_error_is_retried(self, mock_sleep, api, session):
        """Test that connection errors are retried."""
        session.request.side_effect = [
            requests.ConnectionError("reset by peer"),
            requests.Timeout("timed out"),
            make_response(json_data={"name": "Orders"}),
        ]

        assert api.get_app("42")["name"] == "Orders"
        assert api.stats.retry_count == 2

    @patch("time.sleep")
    def test_network_error_exhausts_retries(self, mock_sleep, session):
        """Test that persistent network errors surface as KintoneAPIError."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, retry_policy=RetryPolicy(max_retries=1), session=session)
        session.request.side_effect = requests.ConnectionError("down")

        with pytest.raises(KintoneAPIError, match="after 1 retries"):
            api.get_app("42")

        assert session.request.call_count == 2

    @patch("time.sleep")
    def test_authentication_error_not_retried(self, mock_sleep, api, session):
        """Test that 401 raises AuthenticationError immediately."""
        session.request.return_value = make_response(
            status=401,
            json_data={"code": "CB_WA01", "message": "Password authentication failed"},
        )

        with pytest.raises(AuthenticationError) as exc_info:
            api.get_app("42")

        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "CB_WA01"
        assert session.request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("time.sleep")
    def test_client_error_not_retried(self, mock_sleep, api, session):
        """Test that other 4xx errors raise with the service error details."""
        session.request.return_value = make_response(
            status=400,
            json_data={
                "code": "GAIA_IQ11",
                "message": "Invalid query",
                "errors": {"query": {"messages": ["bad"]}},
            },
        )

        with pytest.raises(KintoneAPIError) as exc_info:
            api.get_app("42")

        assert exc_info.value.code == "GAIA_IQ11"
        assert "Invalid query" in str(exc_info.value)
        assert exc_info.value.errors == {"query": {"messages": ["bad"]}}
        mock_sleep.assert_not_called()


class TestAppOperations:
    """Tests for app listing and schema retrieval."""

    def test_list_apps_follows_offset_pagination(self, api, session):
        """Test that list_apps pages through apps.json until a short page."""
        full_page = [{"appId": str(i), "name": f"App {i}"} for i in range(APPS_PAGE_SIZE)]
        session.request.side_effect = [
            make_response(json_data={"apps": full_page}),
            make_response(json_data={"apps": [{"appId": "999", "name": "Last"}]}),
        ]

        apps = api.list_apps()

        assert len(apps) == APPS_PAGE_SIZE + 1
        offsets = [c.kwargs["params"]["offset"] for c in session.request.call_args_list]
        assert offsets == [0, APPS_PAGE_SIZE]
        assert api.stats.api_request_count == 2

    def test_get_field_schema_returns_properties(self, api, session):
        """Test that the form properties are returned."""
        properties = {"Title": {"type": "SINGLE_LINE_TEXT", "code": "Title"}}
        session.request.return_value = make_response(
            json_data={"properties": properties, "revision": "3"}
        )

        assert api.get_field_schema("42") == properties
        assert session.request.call_args.kwargs["params"] == {"app": "42"}

    def test_test_connection_reports_failure(self, api, session):
        """Test that test_connection returns False instead of raising."""
        session.request.return_value = make_response(status=401)

        ok, message = api.test_connection()

        assert ok is False
        assert "Connection failed" in message

    def test_test_connection_success(self, api, session):
        """Test that a reachable domain reports success."""
        session.request.return_value = make_response(json_data={"apps": []})

        assert api.test_connection() == (True, "Connection successful")


class TestRecordReads:
    """Tests for paginated record reads."""

    def test_get_all_records_paginates_by_id(self, session):
        """Test seek pagination on $id with one request per page."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, page_size=2, session=session)
        session.request.side_effect = [
            make_response(json_data={"records": [make_record(1), make_record(2)]}),
            make_response(json_data={"records": [make_record(5)]}),
        ]

        records = api.get_all_records("42")

        assert [r["$id"]["value"] for r in records] == ["1", "2", "5"]
        queries = [c.kwargs["params"]["query"] for c in session.request.call_args_list]
        assert queries == [
            "$id > 0 order by $id asc limit 2",
            "$id > 2 order by $id asc limit 2",
        ]
        assert api.stats.api_request_count == 2

    def test_get_all_records_with_projection(self, api, session):
        """Test that a field projection always includes $id."""
        session.request.return_value = make_response(json_data={"records": []})

        api.get_all_records("42", fields=["Title"])

        params = session.request.call_args.kwargs["params"]
        assert params["fields[0]"] == "Title"
        assert params["fields[1]"] == "$id"

    def test_get_changed_records_filters_on_updated_time(self, api, session):
        """Test that the differential condition excludes the baseline itself."""
        session.request.return_value = make_response(
            json_data={"records": [make_record(3)]}
        )

        records = api.get_changed_records("42", "2024-01-20T10:30:00+00:00")

        assert len(records) == 1
        query = session.request.call_args.kwargs["params"]["query"]
        assert query == (
            '(更新日時 > "2024-01-20T10:30:00Z") and $id > 0 '
            "order by $id asc limit 500"
        )

    def test_get_changed_records_custom_field(self, session):
        """Test that the updated-time field code is configurable."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, updated_time_field="Updated_datetime", session=session)
        session.request.return_value = make_response(json_data={"records": []})

        api.get_changed_records("42", "2024-01-20T10:30:00Z")

        query = session.request.call_args.kwargs["params"]["query"]
        assert query.startswith('(Updated_datetime > "2024-01-20T10:30:00Z")')


class TestRecordWrites:
    """Tests for batched adds and updates."""

    def test_batch_upsert_respects_batch_size(self, session):
        """Test that updates and inserts are split into bounded batches."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, batch_size=2, session=session)
        session.request.side_effect = [
            make_response(json_data={"records": []}),
            make_response(json_data={"records": []}),
            make_response(json_data={"ids": ["10", "11"]}),
            make_response(json_data={"ids": ["12"]}),
        ]
        updates = [{"id": str(i), "record": {}} for i in range(3)]
        inserts = [{"Title": {"value": f"t{i}"}} for i in range(3)]

        result = api.batch_upsert("42", updates=updates, inserts=inserts)

        assert result.updated_count == 3
        assert result.added_ids == ["10", "11", "12"]
        assert result.added_count == 3
        methods = [c.args[0] for c in session.request.call_args_list]
        assert methods == ["PUT", "PUT", "POST", "POST"]
        first_put = session.request.call_args_list[0].kwargs["json"]
        assert first_put == {"app": "42", "records": updates[:2]}
        assert api.stats.api_request_count == 4

    def test_failing_update_batch_reports_applied_count(self, session):
        """Test that a failing batch carries the count of earlier batches."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, batch_size=2, session=session)
        session.request.side_effect = [
            make_response(json_data={"records": []}),
            make_response(status=400, json_data={"code": "CB_VA01"}),
        ]
        updates = [{"id": str(i), "record": {}} for i in range(3)]

        with pytest.raises(KintoneAPIError) as exc_info:
            api.batch_upsert("42", updates=updates, inserts=[{"Title": {"value": "t"}}])

        partial = exc_info.value.partial_result
        assert partial.updated_count == 2
        assert partial.added_count == 0
        assert session.request.call_count == 2

    def test_failing_insert_batch_keeps_updates_and_ids(self, session):
        """Test that an insert failure reports updates and earlier inserts."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, batch_size=2, session=session)
        session.request.side_effect = [
            make_response(json_data={"records": []}),
            make_response(json_data={"ids": ["10", "11"]}),
            make_response(status=400, json_data={"code": "CB_VA01"}),
        ]
        inserts = [{"Title": {"value": f"t{i}"}} for i in range(3)]

        with pytest.raises(KintoneAPIError) as exc_info:
            api.batch_upsert("42", updates=[{"id": "1", "record": {}}], inserts=inserts)

        partial = exc_info.value.partial_result
        assert partial.updated_count == 1
        assert partial.added_ids == ["10", "11"]

    def test_batch_upsert_with_nothing_to_do(self, api, session):
        """Test that empty partitions issue no requests."""
        result = api.batch_upsert("42", updates=[], inserts=[])

        assert result.updated_count == 0
        assert result.added_count == 0
        session.request.assert_not_called()

    def test_add_record_returns_id(self, api, session):
        """Test that a single record add returns its id as a string."""
        session.request.return_value = make_response(json_data={"id": 77})

        assert api.add_record("42", {"Title": {"value": "x"}}) == "77"
        assert session.request.call_args.args[1] == f"{BASE_URL}/record.json"


class TestAttachments:
    """Tests for attachment downloads."""

    def test_download_streams_to_destination(self, api, session):
        """Test that file content is streamed and its size returned."""
        response = make_response()
        response.iter_content.return_value = [b"abc", b"", b"de"]
        session.request.return_value = response
        destination = io.BytesIO()

        written = api.download_attachment("key-1", destination)

        assert written == 5
        assert destination.getvalue() == b"abcde"
        kwargs = session.request.call_args.kwargs
        assert kwargs["params"] == {"fileKey": "key-1"}
        assert kwargs["stream"] is True
        response.close.assert_called_once()

    @patch("time.sleep")
    def test_failed_stream_closed_before_retry(self, mock_sleep, api, session):
        """Test that a streamed 503 response is released before the retry."""
        failed = make_response(status=503)
        response = make_response()
        response.iter_content.return_value = [b"abc"]

        def request(*args, **kwargs):
            if session.request.call_count == 1:
                return failed
            failed.close.assert_called_once()
            return response

        session.request.side_effect = request

        written = api.download_attachment("key-1", io.BytesIO())

        assert written == 3
        assert session.request.call_count == 2
        failed.close.assert_called_once()
        assert api.stats.retry_count == 1


class TestResolveLiveIdentifiers:
    """Tests for business-key resolution."""

    SCHEMA = {
        "properties": {
            "Title": {"type": "SINGLE_LINE_TEXT"},
            "RecordNo": {"type": "RECORD_NUMBER"},
        }
    }

    @staticmethod
    def lookup_response(pairs):
        return make_response(
            json_data={
                "records": [
                    {"RecordNo": {"value": key}, "$id": {"value": live_id}}
                    for key, live_id in pairs
                ]
            }
        )

    def test_resolves_in_chunks(self, session):
        """Test chunked IN queries and None for unresolved keys."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, lookup_batch_size=2, session=session)
        session.request.side_effect = [
            make_response(json_data=self.SCHEMA),
            self.lookup_response([("1", "101")]),
            self.lookup_response([("3", "103")]),
        ]

        mapping = api.resolve_live_identifiers("42", ["1", "2", "3"])

        assert mapping == {"1": "101", "2": None, "3": "103"}
        lookups = session.request.call_args_list[1:]
        assert lookups[0].kwargs["params"] == {
            "app": "42",
            "query": "RecordNo in (1,2) limit 500",
            "fields[0]": "RecordNo",
            "fields[1]": "$id",
        }
        assert lookups[1].kwargs["params"]["query"] == "RecordNo in (3) limit 500"

    def test_text_keys_are_quoted(self, api, session):
        """Test that non-numeric keys are quoted in the query."""
        session.request.side_effect = [
            make_response(json_data=self.SCHEMA),
            self.lookup_response([]),
        ]

        api.resolve_live_identifiers("42", ["ORD-1"])

        query = session.request.call_args.kwargs["params"]["query"]
        assert query == 'RecordNo in ("ORD-1") limit 500'

    def test_record_number_field_is_cached(self, api, session):
        """Test that the schema is fetched only once per app."""
        session.request.side_effect = [
            make_response(json_data=self.SCHEMA),
            self.lookup_response([]),
            self.lookup_response([]),
        ]

        api.resolve_live_identifiers("42", ["1"])
        api.resolve_live_identifiers("42", ["2"])

        assert session.request.call_count == 3

    @patch("time.sleep")
    def test_failing_chunk_is_skipped(self, mock_sleep, session):
        """Test that a failing chunk leaves its keys unresolved."""
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="token")
        api = KintoneAPI(creds, lookup_batch_size=1, session=session)
        session.request.side_effect = [
            make_response(json_data=self.SCHEMA),
            make_response(status=400, json_data={"message": "bad query"}),
            self.lookup_response([("2", "202")]),
        ]

        mapping = api.resolve_live_identifiers("42", ["1", "2"])

        assert mapping == {"1": None, "2": "202"}

    def test_app_without_record_number_field(self, api, session):
        """Test that nothing resolves when the app has no record number field."""
        session.request.return_value = make_response(
            json_data={"properties": {"Title": {"type": "SINGLE_LINE_TEXT"}}}
        )

        mapping = api.resolve_live_identifiers("42", ["1", "2"])

        assert mapping == {"1": None, "2": None}
        assert session.request.call_count == 1

    def test_empty_key_list(self, api, session):
        """Test that no request is made for an empty key list."""
        assert api.resolve_live_identifiers("42", []) == {}
        session.request.assert_not_called()


class TestAuditLog:
    """Tests for audit records."""

    def test_log_audit_wraps_values(self, api, session):
        """Test that audit fields are sent as {"value": ...} objects."""
        session.request.return_value = make_response(json_data={"id": "5"})

        record_id = api.log_audit("99", {"status": "success", "remarks": None})

        assert record_id == "5"
        body = session.request.call_args.kwargs["json"]
        assert body == {
            "app": "99",
            "record": {"status": {"value": "success"}, "remarks": {"value": ""}},
        }

    @patch("time.sleep")
    def test_log_audit_swallows_errors(self, mock_sleep, api, session):
        """Test that audit failures are logged and never raised."""
        session.request.return_value = make_response(status=403)

        assert api.log_audit("99", {"status": "success"}) is None
