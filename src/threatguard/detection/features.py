"""Feature extraction: request descriptor -> strings and fixed-length vectors.

Two numeric schemas are exposed so any model backend can bind to them:

Exfiltration vector (``EXFILTRATION_FEATURES``, 16 slots)
    response MB, request MB, is GET, is POST, dump-style path token,
    bulk-style path token, data-file extension, ``limit`` hint, ``offset`` hint, SQL-ish query,
    accepts JSON, role factor, time-of-day risk, geo risk, historical
    threat score, URL depth.

Anomaly vector (``ANOMALY_FEATURES``, 20 slots)
    hour, weekday, day of month, method code, path length, header count,
    body length, query parameter count, authenticated, admin, JSON content
    type, accepts JSON, secure transport, has authorization, external
    address, geo risk, historical threat score, request rate, URL depth,
    has file extension.

Every slot is scaled to roughly [0, 1].
"""

from __future__ import annotations

import ipaddress
import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Protocol

from threatguard.detection.models import RequestDescriptor, RequestFeatures

EXFILTRATION_FEATURES: tuple[str, ...] = (
    "response_mb",
    "request_mb",
    "is_get",
    "is_post",
    "dump_path_token",
    "bulk_path_token",
    "data_file_extension",
    "limit_hint",
    "offset_hint",
    "sql_in_query",
    "accepts_json",
    "role_factor",
    "time_of_day_risk",
    "geo_risk",
    "historical_threat_score",
    "url_depth",
)
EXFILTRATION_VECTOR_LENGTH = len(EXFILTRATION_FEATURES)

ANOMALY_FEATURES: tuple[str, ...] = (
    "hour",
    "weekday",
    "day_of_month",
    "method_code",
    "path_length",
    "header_count",
    "body_length",
    "query_param_count",
    "authenticated",
    "admin",
    "json_content_type",
    "accepts_json",
    "secure",
    "has_authorization",
    "external_address",
    "geo_risk",
    "historical_threat_score",
    "request_rate",
    "url_depth",
    "has_file_extension",
)
ANOMALY_VECTOR_LENGTH = len(ANOMALY_FEATURES)

_DUMP_TOKEN_PATTERN = re.compile(r"export|download|backup|dump", re.IGNORECASE)
_BULK_TOKEN_PATTERN = re.compile(r"\b(?:all|full|complete|entire)\b", re.IGNORECASE)
_DATA_EXTENSION_PATTERN = re.compile(r"\.(?:csv|json|xml|sql|tar|zip)\b", re.IGNORECASE)
_SQLISH_PATTERN = re.compile(r"select.*from|\btable\b|\bdatabase\b", re.IGNORECASE)
_FILE_EXTENSION_PATTERN = re.compile(r"\.\w+$")


class GeoRiskProvider(Protocol):
    """Geographic risk lookup for a source address (0 = trusted, 1 = hostile)."""

    def geo_risk(self, source_id: str) -> float: ...


class StaticGeoRisk:
    """Placeholder provider returning a constant risk for every source."""

    def __init__(self, risk: float = 0.0) -> None:
        self._risk = min(1.0, max(0.0, risk))

    def geo_risk(self, source_id: str) -> float:
        return self._risk


@dataclass(frozen=True)
class VectorContext:
    """Cross-request signals folded into the numeric vectors."""

    historical_threat_score: float = 0.0
    request_rate: float = 0.0
    geo_risk: float = 0.0


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class FeatureExtractor:
    """Turn a :class:`RequestDescriptor` into :class:`RequestFeatures`."""

    def extract(
        self,
        request: RequestDescriptor,
        *,
        response_size: int | None = None,
        now: datetime | None = None,
    ) -> RequestFeatures:
        body_string = _serialize(request.body)
        request_size = request.content_length
        if request_size is None:
            request_size = len(body_string.encode("utf-8")) if body_string else 0
        return RequestFeatures(
            source_id=request.source,
            method=request.method.upper(),
            path=request.path,
            headers=MappingProxyType({str(k): str(v) for k, v in request.headers.items()}),
            query_params=MappingProxyType({str(k): str(v) for k, v in request.query.items()}),
            query_string=_serialize(dict(request.query)) if request.query else "",
            body_string=body_string,
            params_string=_serialize(dict(request.params)) if request.params else "",
            user_id=request.user_id,
            user_role=request.user_role,
            request_size=max(0, int(request_size)),
            response_size=response_size,
            secure=request.secure,
            timestamp=now or datetime.now(UTC),
        )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def pad_vector(values: Sequence[float], length: int) -> list[float]:
    """Pad with zeros or truncate *values* to exactly *length* slots."""
    vector = [float(v) for v in values[:length]]
    vector.extend(0.0 for _ in range(length - len(vector)))
    return vector


OFF_HOURS_RISK = 0.8


def time_of_day_risk(hour: int) -> float:
    """Highest during off-hours, lowest in business hours."""
    if is_off_hours(hour):
        return OFF_HOURS_RISK
    if 9 <= hour < 17:
        return 0.2
    return 0.5


def is_off_hours(hour: int) -> bool:
    """Before 06:00 or from 23:00."""
    return hour < 6 or hour > 22


def is_internal_address(source_id: str) -> bool:
    try:
        address = ipaddress.ip_address(source_id)
    except ValueError:
        return False
    return address.is_private or address.is_loopback


def url_depth(path: str) -> float:
    return len(path.split("/")) / 10


def _int_hint(params: Mapping[str, str], key: str) -> float:
    raw = params.get(key)
    if raw is None:
        return 0.0
    try:
        return min(1.0, max(0.0, int(raw) / 10000))
    except ValueError:
        return 0.0


# ---------------------------------------------------------------------------
# Vector builders
# ---------------------------------------------------------------------------


def exfiltration_vector(features: RequestFeatures, context: VectorContext) -> list[float]:
    """Build the 16-slot exfiltration vector (see module docstring)."""
    response_size = features.response_size or 0
    values = [
        response_size / 1_000_000,
        features.request_size / 1_000_000,
        1.0 if features.method == "GET" else 0.0,
        1.0 if features.method == "POST" else 0.0,
        1.0 if _DUMP_TOKEN_PATTERN.search(features.path) else 0.0,
        1.0 if _BULK_TOKEN_PATTERN.search(features.path) else 0.0,
        1.0 if _DATA_EXTENSION_PATTERN.search(features.path) else 0.0,
        _int_hint(features.query_params, "limit"),
        _int_hint(features.query_params, "offset"),
        1.0 if _SQLISH_PATTERN.search(features.query_string) else 0.0,
        1.0 if "application/json" in features.header("accept") else 0.0,
        0.5 if features.is_admin else 1.0,
        time_of_day_risk(features.timestamp.hour),
        context.geo_risk,
        context.historical_threat_score,
        url_depth(features.path),
    ]
    return pad_vector(values, EXFILTRATION_VECTOR_LENGTH)


def anomaly_vector(features: RequestFeatures, context: VectorContext) -> list[float]:
    """Build the 20-slot anomaly vector (see module docstring)."""
    ts = features.timestamp
    method_code = {"GET": 0.0, "POST": 0.5}.get(features.method, 1.0)
    values = [
        ts.hour / 24,
        ts.weekday() / 7,
        ts.day / 31,
        method_code,
        len(features.path) / 200,
        len(features.headers) / 20,
        len(features.body_string) / 1000,
        len(features.query_params) / 10,
        1.0 if features.is_authenticated else 0.0,
        1.0 if features.is_admin else 0.0,
        1.0 if "json" in features.header("content-type") else 0.0,
        1.0 if "json" in features.header("accept") else 0.0,
        1.0 if features.secure else 0.0,
        1.0 if features.header("authorization") else 0.0,
        0.0 if is_internal_address(features.source_id) else 1.0,
        context.geo_risk,
        context.historical_threat_score,
        context.request_rate,
        url_depth(features.path),
        1.0 if _FILE_EXTENSION_PATTERN.search(features.path) else 0.0,
    ]
    return pad_vector(values, ANOMALY_VECTOR_LENGTH)
