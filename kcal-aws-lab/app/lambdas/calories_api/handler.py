# app/lambdas/calories_api/handler.py
import json
import logging
import math
import os
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

DEFAULT_API_URL = "https://api.airtable.com/v0"
DEFAULT_TIMEOUT = 10.0
CALORIES_FIELD = "Calories left today"

REQUIRED_ENV_VARS = ("AIRTABLE_API_KEY", "AIRTABLE_BASE_ID", "AIRTABLE_TABLE_NAME")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# encodeURIComponent leaves these unescaped on top of quote()'s own safe set
_FORMULA_SAFE = "!*'()"


# ---------------------------
# Errors
# ---------------------------

class ErrorKind(str, Enum):
    METHOD_NOT_ALLOWED = "method_not_allowed"
    CONFIGURATION = "configuration_error"
    UPSTREAM_TRANSPORT = "upstream_transport_error"
    UPSTREAM_STATUS = "upstream_status_error"
    UPSTREAM_FORMAT = "upstream_format_error"
    INTERNAL = "internal_error"


class CaloriesApiError(Exception):
    """Failure of one request, tagged with its taxonomy kind."""

    kind = ErrorKind.INTERNAL

    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


class MethodNotAllowed(CaloriesApiError):
    kind = ErrorKind.METHOD_NOT_ALLOWED


class ConfigurationError(CaloriesApiError):
    kind = ErrorKind.CONFIGURATION

    def __init__(self, details: str, missing=()):
        super().__init__(details)
        self.missing = tuple(missing)


class UpstreamTransportError(CaloriesApiError):
    kind = ErrorKind.UPSTREAM_TRANSPORT


class UpstreamStatusError(CaloriesApiError):
    kind = ErrorKind.UPSTREAM_STATUS

    def __init__(self, details: str, status_code: int):
        super().__init__(details)
        self.status_code = status_code


class UpstreamFormatError(CaloriesApiError):
    kind = ErrorKind.UPSTREAM_FORMAT


_UPSTREAM_KINDS = {
    ErrorKind.UPSTREAM_TRANSPORT,
    ErrorKind.UPSTREAM_STATUS,
    ErrorKind.UPSTREAM_FORMAT,
}


# ---------------------------
# Configuration
# ---------------------------

@dataclass(frozen=True)
class AirtableConfig:
    api_key: str
    base_id: str
    table_name: str
    api_url: str = DEFAULT_API_URL
    timeout: float = DEFAULT_TIMEOUT


def load_config(environ: Optional[Mapping[str, str]] = None) -> AirtableConfig:
    """Build the Airtable configuration from environment variables.

    Empty values count as missing. Raises ConfigurationError naming every
    missing variable so a single deploy fixes all of them.
    """
    if environ is None:
        environ = os.environ

    missing = [name for name in REQUIRED_ENV_VARS if not environ.get(name)]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}", missing=missing)

    raw_timeout = environ.get("AIRTABLE_TIMEOUT_SECONDS") or DEFAULT_TIMEOUT
    try:
        timeout = float(raw_timeout)
    except ValueError:
        raise ConfigurationError(f"Invalid AIRTABLE_TIMEOUT_SECONDS: {raw_timeout!r}")
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigurationError(f"Invalid AIRTABLE_TIMEOUT_SECONDS: {raw_timeout!r}")

    return AirtableConfig(
        api_key=environ["AIRTABLE_API_KEY"],
        base_id=environ["AIRTABLE_BASE_ID"],
        table_name=environ["AIRTABLE_TABLE_NAME"],
        api_url=(environ.get("AIRTABLE_API_URL") or DEFAULT_API_URL).rstrip("/"),
        timeout=timeout,
    )


# ---------------------------
# Upstream schema
# ---------------------------

class AirtableRecord(BaseModel):
    id: Optional[str] = None
    created_time: Optional[str] = Field(default=None, alias="createdTime")
    fields: Optional[Dict[str, Any]] = None


class AirtableRecordSet(BaseModel):
    # Only records[0] is ever read; later records are not validated.
    records: List[Any]

    def first_record(self) -> Optional[AirtableRecord]:
        if not self.records:
            return None
        try:
            return AirtableRecord.model_validate(self.records[0])
        except ValidationError as e:
            logger.info("Unreadable first record (%d error(s)), ignoring", e.error_count())
            return None


@dataclass(frozen=True)
class CalorieResult:
    calories_left_today: int
    date: str
    records_found: int

    def to_body(self) -> Dict[str, Any]:
        return {
            "caloriesLeftToday": self.calories_left_today,
            "date": self.date,
            "recordsFound": self.records_found,
        }


# ---------------------------
# Pipeline
# ---------------------------

def local_today() -> date:
    # Host-local calendar day, no UTC normalization.
    return date.today()


def format_date_key(day: date) -> str:
    return day.isoformat()


def build_filter_formula(date_key: str) -> str:
    return f"IS_SAME({{Date}}, '{date_key}', 'day')"


def build_airtable_url(config: AirtableConfig, date_key: str) -> str:
    formula = quote(build_filter_formula(date_key), safe=_FORMULA_SAFE)
    table = quote(config.table_name, safe="")
    return f"{config.api_url}/{config.base_id}/{table}?filterByFormula={formula}"


def fetch_records(config: AirtableConfig, url: str, session=None) -> AirtableRecordSet:
    """GET the filtered records and validate the body shape."""
    http = session or requests
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }
    try:
        resp = http.get(url, headers=headers, timeout=config.timeout)
    except requests.RequestException as e:
        raise UpstreamTransportError(f"Airtable request failed: {e}")

    if not 200 <= resp.status_code < 300:
        raise UpstreamStatusError(
            f"Airtable API request failed: {resp.status_code} {resp.reason}",
            status_code=resp.status_code,
        )

    try:
        payload = resp.json()
    except ValueError as e:
        raise UpstreamFormatError(f"Airtable returned invalid JSON: {e}")

    try:
        return AirtableRecordSet.model_validate(payload)
    except ValidationError as e:
        raise UpstreamFormatError(f"Invalid response format from Airtable API: {e.error_count()} error(s)")


def round_half_up(value: float) -> int:
    floor = math.floor(value)
    return floor + 1 if value - floor >= 0.5 else floor


def extract_calories_left(record_set: AirtableRecordSet) -> int:
    if not record_set.records:
        logger.info("No calorie data found for today, returning 0")
        return 0

    record = record_set.first_record()
    raw = (record.fields or {}).get(CALORIES_FIELD) if record is not None else None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
        logger.info("Invalid calorie data format (%r), returning 0", raw)
        return 0

    return -round_half_up(raw)


def get_calories_left_today(
    config: AirtableConfig,
    today: Optional[Callable[[], date]] = None,
    session=None,
) -> CalorieResult:
    date_key = format_date_key((today or local_today)())
    logger.info("Fetching calorie data for date: %s", date_key)

    url = build_airtable_url(config, date_key)
    logger.info("Airtable API URL: %s", url)

    record_set = fetch_records(config, url, session=session)
    logger.info("Found %d record(s) for %s", len(record_set.records), date_key)

    return CalorieResult(
        calories_left_today=extract_calories_left(record_set),
        date=date_key,
        records_found=len(record_set.records),
    )


# ---------------------------
# HTTP plumbing
# ---------------------------

def _resp(status: int, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if body is None:
        return {"statusCode": status, "headers": dict(CORS_HEADERS), "body": ""}
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS},
        "body": json.dumps(body),
    }


def _method(event: Dict[str, Any]) -> str:
    method = ((event.get("requestContext") or {}).get("http") or {}).get("method")
    return (method or event.get("httpMethod") or "GET").upper()


def error_response(error: Exception) -> Dict[str, Any]:
    kind = getattr(error, "kind", ErrorKind.INTERNAL)

    if kind is ErrorKind.METHOD_NOT_ALLOWED:
        return _resp(405, {"error": "Method not allowed", "details": "This endpoint only supports GET requests"})
    if kind is ErrorKind.CONFIGURATION:
        if getattr(error, "missing", ()):
            details = "Missing required environment variables"
        else:
            details = "Invalid environment variable value"
        return _resp(500, {"error": "Server configuration error", "details": details})
    if kind in _UPSTREAM_KINDS:
        return _resp(502, {"error": "External service error", "details": "Failed to fetch data from Airtable"})
    return _resp(500, {
        "error": "Internal server error",
        "details": "An unexpected error occurred while processing your request",
    })


def handle_request(
    event: Dict[str, Any],
    config: Optional[AirtableConfig] = None,
    today: Optional[Callable[[], date]] = None,
    session=None,
) -> Dict[str, Any]:
    try:
        method = _method(event)
        logger.info("%s %s", method, event.get("rawPath") or event.get("path", "/api/calories"))

        if method == "OPTIONS":
            return _resp(200, None)
        if method != "GET":
            raise MethodNotAllowed(f"{method} is not supported")
        if config is None:
            config = load_config()
        result = get_calories_left_today(config, today=today, session=session)
    except CaloriesApiError as e:
        logger.error("Request failed [%s]: %s", e.kind.value, e.details)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return error_response(e)

    return _resp(200, result.to_body())


def lambda_handler(event, context):
    """
    Calories API for HTTP API v2 (GET /api/calories).
    Returns today's "Calories left today" from Airtable, negated and rounded.
    """
    return handle_request(event or {})
