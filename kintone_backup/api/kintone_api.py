"""
kintone REST API wrapper for backup and restore.

Provides a high-level interface to the kintone REST API for:
- Listing apps and reading app metadata and form field schemas
- Reading all records of an app with transparent seek pagination
- Reading only records changed since a timestamp
- Streaming attachment downloads
- Batched record inserts and updates
- Mapping business keys (record numbers) to live record ids
- Appending audit rows to a designated audit app
- Exponential backoff retry with request accounting
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Any

import requests

from kintone_backup import __version__
from kintone_backup.api.retry import ApiStats, RetryPolicy
from kintone_backup.auth.credentials import CredentialsError, KintoneCredentials

# Number of apps per page when listing apps (API max is 100)
APPS_PAGE_SIZE = 100

# Number of records per page when reading records (API max is 500)
DEFAULT_PAGE_SIZE = 500

# Maximum records per add/update call (API max is 100)
DEFAULT_BATCH_SIZE = 100

# Maximum business keys per "in (...)" lookup query
LOOKUP_BATCH_SIZE = 50

# Default field code of the "updated time" system field
DEFAULT_UPDATED_TIME_FIELD = "更新日時"

# HTTP timeout for a single request
DEFAULT_TIMEOUT = 60.0  # seconds

# Chunk size when streaming attachment downloads
DOWNLOAD_CHUNK_SIZE = 64 * 1024

RECORD_NUMBER_TYPE = "RECORD_NUMBER"

_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

logger = logging.getLogger(__name__)


class KintoneAPIError(Exception):
    """
    Raised when a kintone API operation fails.

    When a batched write fails partway, ``partial_result`` holds the
    UpsertResult of the batches that were applied before the failure.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        errors: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.errors = errors or {}
        self.partial_result: UpsertResult | None = None


class RateLimitError(KintoneAPIError):
    """Raised when rate limit is exceeded and retries are exhausted."""

    pass


class AuthenticationError(KintoneAPIError):
    """Raised when credentials are missing or rejected. Never retried."""

    pass


@dataclass
class UpsertResult:
    """Outcome of a batched update/insert call."""

    updated_count: int = 0
    added_ids: list[str] = field(default_factory=list)

    @property
    def added_count(self) -> int:
        return len(self.added_ids)


def format_query_timestamp(value: datetime | str) -> str:
    """
    Format a timestamp for use inside a kintone query condition.

    Naive datetimes are treated as UTC.

    Args:
        value: datetime or ISO-8601 string (a trailing "Z" is accepted)

    Returns:
        UTC timestamp formatted as "YYYY-MM-DDTHH:MM:SSZ"
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_query_value(value: Any) -> str:
    """
    Format a value for a kintone "in (...)" clause.

    Numeric-looking values are sent unquoted; everything else is quoted with
    backslashes and double quotes escaped.
    """
    text = str(value)
    if _NUMERIC_RE.match(text):
        return text
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _parse_retry_after(response: requests.Response) -> float | None:
    """Read a Retry-After header given in seconds."""
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        logger.debug(f"Ignoring non-numeric Retry-After header: {header}")
        return None


def _chunks(items: list[Any], size: int) -> Iterator[list[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class KintoneAPI:
    """
    kintone REST API wrapper for backup and restore operations.

    Every call goes through a single request method that applies the retry
    policy and updates the bound ApiStats counters: one request is counted
    per page, per batch and per simple call, and one retry per re-issued
    attempt.

    Attributes:
        credentials: Domain and authentication settings
        retry_policy: Backoff policy applied to every call
        stats: Counters for the current logical operation

    Usage:
        api = KintoneAPI(KintoneCredentials("example.cybozu.com", api_token="..."))

        # Read every record of an app
        records = api.get_all_records("42")

        # Read records changed since the last backup
        records = api.get_changed_records("42", "2024-01-20T10:30:00Z")

        # Count requests for one run with caller-owned counters
        stats = ApiStats()
        with api.track(stats):
            api.get_app("42")
        print(stats.api_request_count)
    """

    def __init__(
        self,
        credentials: KintoneCredentials,
        retry_policy: RetryPolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lookup_batch_size: int = LOOKUP_BATCH_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        updated_time_field: str = DEFAULT_UPDATED_TIME_FIELD,
        session: requests.Session | None = None,
    ):
        """
        Initialize the kintone API wrapper.

        Args:
            credentials: Domain and authentication settings
            retry_policy: Backoff policy (defaults to RetryPolicy())
            page_size: Records per page when reading (capped at 500)
            batch_size: Records per add/update call (capped at 100)
            lookup_batch_size: Business keys per lookup query (capped at 50)
            timeout: Per-request timeout in seconds
            updated_time_field: Field code of the updated-time system field
            session: Pre-built requests session (mainly for tests)
        """
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = min(page_size, DEFAULT_PAGE_SIZE)
        self.batch_size = min(batch_size, DEFAULT_BATCH_SIZE)
        self.lookup_batch_size = min(lookup_batch_size, LOOKUP_BATCH_SIZE)
        self.timeout = timeout
        self.updated_time_field = updated_time_field
        self.stats = ApiStats()
        self._session = session
        self._record_number_fields: dict[str, str | None] = {}

    @property
    def session(self) -> requests.Session:
        """
        Get or create the HTTP session carrying authentication headers.

        Raises:
            AuthenticationError: If credentials are incomplete
        """
        if self._session is None:
            try:
                headers = self.credentials.auth_headers()
            except CredentialsError as e:
                raise AuthenticationError(str(e)) from e
            session = requests.Session()
            session.headers.update(headers)
            session.headers["User-Agent"] = f"kintone-backup/{__version__}"
            self._session = session
            logger.debug(f"Created HTTP session for {self.credentials.base_url}")
        return self._session

    # =========================================================================
    # Request Accounting
    # =========================================================================

    @contextmanager
    def track(self, stats: ApiStats) -> Iterator[ApiStats]:
        """
        Bind caller-owned counters for the duration of one logical operation.

        On exit the client's counters are reset, so the next operation
        starts from zero while the caller keeps its own totals.
        """
        self.stats = stats
        try:
            yield stats
        finally:
            self.stats = ApiStats()

    def get_stats(self) -> ApiStats:
        """Return a snapshot of the current counters."""
        return ApiStats(**self.stats.to_dict())

    def reset_counters(self) -> None:
        self.stats.reset()

    # =========================================================================
    # Transport
    # =========================================================================

    def _url(self, path: str) -> str:
        return f"{self.credentials.base_url}/k/v1/{path}"

    def _error_from_response(
        self, response: requests.Response, operation_name: str
    ) -> KintoneAPIError:
        """Build an exception from a kintone error response body."""
        status = response.status_code
        code = None
        errors = None
        message = response.reason or ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            errors = body.get("errors")
            message = body.get("message") or message

        text = f"{operation_name} failed with status {status}"
        if code:
            text += f" [{code}]"
        if message:
            text += f": {message}"

        if status in (401, 403):
            return AuthenticationError(text, status, code, errors)
        if status == 429:
            return RateLimitError(text, status, code, errors)
        return KintoneAPIError(text, status, code, errors)

    def _wait_before_retry(
        self,
        operation_name: str,
        attempt: int,
        reason: str,
        retry_after: float | None = None,
    ) -> None:
        self.stats.record_retry()
        delay = self.retry_policy.next_delay(attempt, retry_after)
        logger.warning(
            f"{operation_name} {reason}, retrying in {delay:.1f}s "
            f"(retry {attempt}/{self.retry_policy.max_retries})"
        )
        time.sleep(delay)

    def _request(
        self,
        method: str,
        path: str,
        operation_name: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        stream: bool = False,
    ) -> requests.Response:
        """
        Issue one logical request with retry and backoff.

        Args:
            method: HTTP method
            path: Path below /k/v1/
            operation_name: Name for logging and error messages
            params: Query string parameters
            json_body: JSON request body
            stream: Whether to stream the response body

        Returns:
            Successful response

        Raises:
            AuthenticationError: On 401/403 (not retried)
            RateLimitError: If a 429 persists after all retries
            KintoneAPIError: For other failures, after retries where applicable
        """
        self.stats.record_request()
        url = self._url(path)
        attempt = 0

        while True:
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    timeout=self.timeout,
                    stream=stream,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.retry_policy.max_retries:
                    logger.error(f"{operation_name} network error: {e}")
                    raise KintoneAPIError(
                        f"{operation_name} failed after "
                        f"{self.retry_policy.max_retries} retries: {e}"
                    ) from e
                attempt += 1
                self._wait_before_retry(operation_name, attempt, "network error")
                continue

            status = response.status_code
            if status < 400:
                return response

            error = self._error_from_response(response, operation_name)
            # Releases the connection of a streamed response before retrying
            response.close()

            if isinstance(error, AuthenticationError):
                logger.error(str(error))
                raise error

            if not self.retry_policy.is_retryable_status(status):
                logger.error(str(error))
                raise error

            if attempt >= self.retry_policy.max_retries:
                logger.error(
                    f"{error} (gave up after {self.retry_policy.max_retries} retries)"
                )
                raise error

            attempt += 1
            retry_after = _parse_retry_after(response) if status == 429 else None
            reason = "rate limited" if status == 429 else f"server error ({status})"
            self._wait_before_retry(operation_name, attempt, reason, retry_after)

    def _get_json(
        self, path: str, operation_name: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        response = self._request("GET", path, operation_name, params=params)
        return response.json()

    # =========================================================================
    # Apps
    # =========================================================================

    def test_connection(self) -> tuple[bool, str]:
        """
        Check that the domain is reachable and the credentials are accepted.

        Returns:
            Tuple of (success, message)
        """
        try:
            self._get_json("apps.json", "test_connection", {"limit": 1})
            return True, "Connection successful"
        except (KintoneAPIError, requests.RequestException) as e:
            return False, f"Connection failed: {e}"

    def list_apps(self) -> list[dict[str, Any]]:
        """
        List every app visible to the credentials.

        Returns:
            List of app dictionaries as returned by the API
        """
        apps: list[dict[str, Any]] = []
        offset = 0

        while True:
            response = self._get_json(
                "apps.json",
                "list_apps",
                {"limit": APPS_PAGE_SIZE, "offset": offset},
            )
            page = response.get("apps", [])
            apps.extend(page)

            if len(page) < APPS_PAGE_SIZE:
                break
            offset += APPS_PAGE_SIZE

        logger.info(f"Listed {len(apps)} apps")
        return apps

    def get_app(self, app_id: str) -> dict[str, Any]:
        """
        Get app metadata (name, description, ...).

        Raises:
            KintoneAPIError: If the app does not exist or the request fails
        """
        logger.debug(f"Getting app: {app_id}")
        return self._get_json("app.json", f"get_app({app_id})", {"id": app_id})

    def get_field_schema(self, app_id: str) -> dict[str, Any]:
        """
        Get the form field properties of an app keyed by field code.
        """
        response = self._get_json(
            "app/form/fields.json", f"get_field_schema({app_id})", {"app": app_id}
        )
        return response.get("properties", {})

    # =========================================================================
    # Records
    # =========================================================================

    def get_all_records(
        self,
        app_id: str,
        fields: list[str] | None = None,
        condition: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read every record matching a condition, following pagination.

        Pages are fetched in ascending record id order using the record id
        as a seek key, so the result is ordered by record id.

        Args:
            app_id: App to read from
            fields: Optional field projection ($id is always included)
            condition: Optional kintone query condition

        Returns:
            List of raw record dictionaries
        """
        records: list[dict[str, Any]] = []
        last_id = 0

        projection: list[str] | None = None
        if fields:
            projection = list(fields)
            if "$id" not in projection:
                projection.append("$id")

        while True:
            clauses = [f"$id > {last_id}"]
            if condition:
                clauses.insert(0, f"({condition})")
            query = (
                f"{' and '.join(clauses)} order by $id asc limit {self.page_size}"
            )

            params: dict[str, Any] = {"app": app_id, "query": query}
            if projection:
                for index, code in enumerate(projection):
                    params[f"fields[{index}]"] = code

            response = self._get_json(
                "records.json", f"get_all_records({app_id})", params
            )
            page = response.get("records", [])
            records.extend(page)

            if len(page) < self.page_size:
                break
            last_id = int(page[-1]["$id"]["value"])

        logger.info(f"Read {len(records)} records from app {app_id}")
        return records

    def get_changed_records(
        self,
        app_id: str,
        since: datetime | str,
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read records whose updated time is strictly after a baseline.

        Args:
            app_id: App to read from
            since: Baseline timestamp (excluded)
            fields: Optional field projection

        Returns:
            List of raw record dictionaries
        """
        condition = f'{self.updated_time_field} > "{format_query_timestamp(since)}"'
        logger.debug(f"Reading changed records for app {app_id}: {condition}")
        return self.get_all_records(app_id, fields=fields, condition=condition)

    def add_record(self, app_id: str, record: dict[str, Any]) -> str:
        """Add a single record and return its new id."""
        response = self._request(
            "POST",
            "record.json",
            f"add_record({app_id})",
            json_body={"app": app_id, "record": record},
        )
        return str(response.json().get("id"))

    def add_records(self, app_id: str, records: list[dict[str, Any]]) -> list[str]:
        """
        Add records in batches of at most batch_size.

        Returns:
            Ids of the created records, in input order

        Raises:
            KintoneAPIError: On the first failing batch, with the ids added
                by earlier batches in ``partial_result``
        """
        ids: list[str] = []
        try:
            for batch in _chunks(records, self.batch_size):
                response = self._request(
                    "POST",
                    "records.json",
                    f"add_records({app_id})",
                    json_body={"app": app_id, "records": batch},
                )
                ids.extend(str(i) for i in response.json().get("ids", []))
        except KintoneAPIError as e:
            e.partial_result = UpsertResult(added_ids=ids)
            logger.error(
                f"Added {len(ids)} of {len(records)} records to app {app_id} "
                "before a batch failed"
            )
            raise
        logger.info(f"Added {len(ids)} records to app {app_id}")
        return ids

    def update_records(self, app_id: str, updates: list[dict[str, Any]]) -> int:
        """
        Update records by id in batches of at most batch_size.

        Args:
            app_id: App to update
            updates: Items of the form {"id": "<record id>", "record": {...}}

        Returns:
            Number of records updated

        Raises:
            KintoneAPIError: On the first failing batch, with the count
                updated by earlier batches in ``partial_result``
        """
        updated = 0
        try:
            for batch in _chunks(updates, self.batch_size):
                self._request(
                    "PUT",
                    "records.json",
                    f"update_records({app_id})",
                    json_body={"app": app_id, "records": batch},
                )
                updated += len(batch)
        except KintoneAPIError as e:
            e.partial_result = UpsertResult(updated_count=updated)
            logger.error(
                f"Updated {updated} of {len(updates)} records in app {app_id} "
                "before a batch failed"
            )
            raise
        logger.info(f"Updated {updated} records in app {app_id}")
        return updated

    def batch_upsert(
        self,
        app_id: str,
        updates: list[dict[str, Any]] | None = None,
        inserts: list[dict[str, Any]] | None = None,
    ) -> UpsertResult:
        """
        Apply updates and inserts in bounded batches.

        Updates are applied before inserts. The first failing batch raises
        KintoneAPIError; batches already applied stay applied and are
        reported in the error's ``partial_result``.
        """
        result = UpsertResult()
        try:
            if updates:
                result.updated_count = self.update_records(app_id, updates)
            if inserts:
                result.added_ids = self.add_records(app_id, inserts)
        except KintoneAPIError as e:
            applied = e.partial_result or UpsertResult()
            e.partial_result = UpsertResult(
                updated_count=result.updated_count + applied.updated_count,
                added_ids=result.added_ids + applied.added_ids,
            )
            raise
        return result

    # =========================================================================
    # Attachments
    # =========================================================================

    def download_attachment(self, file_key: str, destination: IO[bytes]) -> int:
        """
        Stream one attachment into a binary file object.

        Args:
            file_key: File key from a FILE field value
            destination: Writable binary file object

        Returns:
            Number of bytes written
        """
        response = self._request(
            "GET",
            "file.json",
            f"download_attachment({file_key})",
            params={"fileKey": file_key},
            stream=True,
        )
        written = 0
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    destination.write(chunk)
                    written += len(chunk)
        finally:
            response.close()
        return written

    # =========================================================================
    # Business Key Resolution
    # =========================================================================

    def get_record_number_field(self, app_id: str) -> str | None:
        """
        Find the field code of the app's record-number field (cached per app).

        Returns:
            Field code, or None if the app has no record-number field
        """
        if app_id in self._record_number_fields:
            return self._record_number_fields[app_id]

        field_code: str | None = None
        for code, prop in self.get_field_schema(app_id).items():
            if str(prop.get("type", "")).upper() == RECORD_NUMBER_TYPE:
                field_code = code
                break

        self._record_number_fields[app_id] = field_code
        logger.debug(f"Record number field for app {app_id}: {field_code}")
        return field_code

    def resolve_live_identifiers(
        self, app_id: str, business_keys: list[str]
    ) -> dict[str, str | None]:
        """
        Map business keys (record numbers) to live record ids.

        Keys are looked up in chunks of lookup_batch_size with an
        "in (...)" query. A failing chunk is logged and its keys stay
        unresolved.

        Args:
            app_id: App to search
            business_keys: Record-number values to resolve

        Returns:
            Mapping of every requested key to a live id, or None if unresolved
        """
        mapping: dict[str, str | None] = {str(key): None for key in business_keys}
        if not business_keys:
            return mapping

        field_code = self.get_record_number_field(app_id)
        if not field_code:
            logger.warning(f"App {app_id} has no record number field")
            return mapping

        keys = list(mapping)
        for index, chunk in enumerate(_chunks(keys, self.lookup_batch_size)):
            values = ",".join(format_query_value(key) for key in chunk)
            params = {
                "app": app_id,
                "query": f"{field_code} in ({values}) limit 500",
                "fields[0]": field_code,
                "fields[1]": "$id",
            }
            try:
                response = self._get_json(
                    "records.json", f"resolve_live_identifiers({app_id})", params
                )
            except KintoneAPIError as e:
                logger.error(f"Failed to resolve record ids (batch {index}): {e}")
                continue

            for record in response.get("records", []):
                key = (record.get(field_code) or {}).get("value")
                live_id = (record.get("$id") or {}).get("value")
                if key and live_id:
                    mapping[str(key)] = str(live_id)

        resolved = sum(1 for value in mapping.values() if value is not None)
        logger.info(f"Resolved {resolved}/{len(mapping)} record numbers in app {app_id}")
        return mapping

    # =========================================================================
    # Audit Log
    # =========================================================================

    def log_audit(self, audit_app_id: str, entry: dict[str, Any]) -> str | None:
        """
        Append one row to the audit app.

        Failures are logged and never raised.

        Args:
            audit_app_id: App that stores the audit trail
            entry: Plain field values keyed by field code

        Returns:
            Id of the audit record, or None if writing failed
        """
        record = {
            code: {"value": "" if value is None else value}
            for code, value in entry.items()
        }
        try:
            record_id = self.add_record(audit_app_id, record)
            logger.debug(f"Wrote audit record {record_id} to app {audit_app_id}")
            return record_id
        except Exception as e:
            logger.error(f"Failed to write audit record to app {audit_app_id}: {e}")
            return None
