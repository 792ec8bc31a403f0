"""
Access log line parsing.

Supports the nginx combined format (optionally followed by request time,
upstream time and host tokens) and JSON lines as written by nginx
``log_format escape=json`` or ingress controllers.
"""
import hashlib
import ipaddress
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional
from urllib.parse import urlsplit

from accesslens.errors import ParseError
from accesslens.schemas import ParsedLogEntry
from accesslens.utils.timeutil import attach_local

logger = logging.getLogger(__name__)

# column ranges: status is a 32-bit INTEGER, byte counts a signed 64-bit BIGINT
MAX_STATUS = 999
MAX_BYTES = 2 ** 63 - 1

COMBINED_PATTERN = re.compile(
    r'^(?P<ip>\S+)\s+\S+\s+(?P<user>\S+)\s+\[(?P<time>[^\]]+)\]\s+'
    r'"(?P<request>[^"]*)"\s+(?P<status>\S+)\s+(?P<bytes>\S+)'
    r'(?:\s+"(?P<referer>[^"]*)"\s+"(?P<ua>[^"]*)")?'
    r'(?:\s+(?P<request_time>\S+))?(?:\s+(?P<upstream_time>\S+))?(?:\s+(?P<host>\S+))?'
)

NGINX_TIME = "%d/%b/%Y:%H:%M:%S %z"
NGINX_TIME_NAIVE = "%d/%b/%Y:%H:%M:%S"

JSON_ALIASES = {
    "time": ("time_local", "time", "@timestamp", "timestamp"),
    "remote_addr": ("remote_addr", "client_ip"),
    "forwarded": ("x_forwarded_for", "x_forwarded", "http_x_forwarded_for"),
    "request": ("request",),
    "method": ("request_method",),
    "uri": ("request_uri", "uri"),
    "protocol": ("server_protocol", "protocol"),
    "status": ("status", "status_code"),
    "bytes": ("body_bytes_sent", "bytes_sent", "bytes"),
    "referer": ("http_referer", "referer"),
    "user_agent": ("http_user_agent", "user_agent"),
    "request_time": ("request_time",),
    "upstream_time": ("upstream_response_time", "upstream_time"),
    "host": ("host", "server_name"),
    "remote_user": ("remote_user",),
}

STATIC_EXTENSIONS = (
    ".css", ".js", ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg",
    ".woff", ".woff2", ".ttf", ".eot", ".map",
)
HEALTH_PREFIXES = ("/health", "/ping", "/ready", "/live", "/metrics")

SEARCH_ENGINES = ("google", "baidu", "bing", "yahoo", "sogou", "360", "soso", "yandex", "duckduckgo")
SOCIAL_NETWORKS = (
    "facebook", "twitter", "linkedin", "weibo", "wechat", "qq",
    "instagram", "tiktok", "douyin", "reddit",
)


class ParseResult(NamedTuple):
    entries: List[ParsedLogEntry]
    dropped: int


# ============== Helpers ==============

def hash_key(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8", errors="replace")).hexdigest()


def normalize_url(uri: str) -> str:
    """Path without the query string."""
    if not uri:
        return ""
    try:
        return urlsplit(uri).path
    except ValueError:
        return uri


def extract_referer_domain(referer: str) -> str:
    if not referer or referer == "-":
        return ""
    try:
        return urlsplit(referer).netloc
    except ValueError:
        return ""


def classify_referer(referer: str) -> str:
    """direct, search, social or other."""
    if not referer or referer == "-":
        return "direct"
    domain = extract_referer_domain(referer).lower()
    if any(name in domain for name in SEARCH_ENGINES):
        return "search"
    if any(name in domain for name in SOCIAL_NETWORKS):
        return "social"
    return "other"


def is_page_view(uri: str, status: int) -> bool:
    """Whether a request counts as a page view."""
    if status < 200 or status >= 400:
        return False
    path = normalize_url(uri).lower()
    if path.endswith(STATIC_EXTENSIONS):
        return False
    if path.startswith("/api") or "/api/" in path:
        return False
    if path.startswith(HEALTH_PREFIXES):
        return False
    return True


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


def _dash(value: Optional[str]) -> str:
    if value is None or value == "-":
        return ""
    return value


def _to_int(value: Any, upper: int = MAX_BYTES) -> int:
    """Integer field value; anything unparsable or outside [0, upper] becomes 0."""
    if value is None or value == "-" or value == "":
        return 0
    try:
        number = int(value) if isinstance(value, str) and value.isdigit() else int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    if number < 0 or number > upper:
        return 0
    return number


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        # upstream times may list several hops: "0.010, 0.004"
        token = str(value).split(",")[0].strip()
        if token in ("", "-"):
            return 0.0
        try:
            number = float(token)
        except ValueError:
            return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _split_request(request: str):
    parts = request.split(" ", 2)
    method = parts[0] if parts and parts[0] else ""
    uri = parts[1] if len(parts) > 1 else ""
    protocol = parts[2] if len(parts) > 2 else ""
    return method, uri, protocol


def parse_time(value: Any) -> datetime:
    """Parse any supported log time into an aware datetime."""
    if isinstance(value, bool):
        raise ParseError(f"unsupported time value: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    text = str(value).strip()
    if not text:
        raise ParseError("empty time")

    try:
        return datetime.strptime(text, NGINX_TIME)
    except ValueError:
        pass
    try:
        return attach_local(datetime.strptime(text, NGINX_TIME_NAIVE))
    except ValueError:
        pass

    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
    if parsed is not None:
        return parsed if parsed.tzinfo is not None else attach_local(parsed)

    try:
        return _from_epoch(float(text))
    except ValueError:
        raise ParseError(f"unrecognised time format: {text[:40]}")


def _from_epoch(seconds: float) -> datetime:
    if seconds > 1e11:  # milliseconds
        seconds = seconds / 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ParseError(f"epoch out of range: {seconds}")


# ============== Parser ==============

class LineParser:
    """Turns raw access log lines into ParsedLogEntry objects."""

    def parse(self, line: str, fmt: str = "combined") -> ParsedLogEntry:
        line = line.strip()
        if not line:
            raise ParseError("empty line")
        if fmt == "json":
            return self._parse_json(line)
        # custom formats share the combined grammar
        return self._parse_combined(line)

    def parse_lines(self, lines: Iterable[str], fmt: str = "combined") -> ParseResult:
        entries = []
        dropped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(self.parse(line, fmt))
            except ParseError as e:
                dropped += 1
                logger.debug("Dropped line (%s): %s", e, e.line)
        if dropped:
            logger.info("Dropped %d malformed %s lines", dropped, fmt)
        return ParseResult(entries, dropped)

    def _parse_combined(self, line: str) -> ParsedLogEntry:
        match = COMBINED_PATTERN.match(line)
        if not match:
            raise ParseError("line does not match combined format", line)

        try:
            timestamp = parse_time(match.group("time"))
        except ParseError as e:
            raise ParseError(str(e), line)

        request = match.group("request")
        method, uri, protocol = _split_request(request)
        referer = _dash(match.group("referer"))
        host = _dash(match.group("host")) or extract_referer_domain(referer)

        return ParsedLogEntry(
            timestamp=timestamp,
            remote_addr=match.group("ip"),
            remote_user=_dash(match.group("user")),
            request=request,
            method=method,
            uri=uri,
            protocol=protocol,
            status=_to_int(match.group("status"), MAX_STATUS),
            body_bytes_sent=_to_int(match.group("bytes")),
            http_referer=referer,
            http_user_agent=_dash(match.group("ua")),
            request_time=_to_float(match.group("request_time")),
            upstream_time=_to_float(match.group("upstream_time")),
            host=host,
        )

    def _parse_json(self, line: str) -> ParsedLogEntry:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            raise ParseError("invalid JSON", line)
        if not isinstance(data, dict):
            raise ParseError("JSON line is not an object", line)

        raw_time = self._lookup(data, "time")
        if raw_time is None:
            raise ParseError("no time field", line)
        try:
            timestamp = parse_time(raw_time)
        except ParseError as e:
            raise ParseError(str(e), line)

        remote_addr = self._text(data, "remote_addr")
        forwarded = self._text(data, "forwarded")
        if forwarded and (not remote_addr or is_private_ip(remote_addr)):
            remote_addr = forwarded.split(",")[0].strip()

        request = self._text(data, "request")
        if request:
            method, uri, protocol = _split_request(request)
        else:
            method = self._text(data, "method")
            uri = self._text(data, "uri")
            protocol = self._text(data, "protocol")
            request = " ".join(p for p in (method, uri, protocol) if p)

        referer = self._text(data, "referer")
        host = self._text(data, "host") or extract_referer_domain(referer)

        return ParsedLogEntry(
            timestamp=timestamp,
            remote_addr=remote_addr,
            remote_user=self._text(data, "remote_user"),
            request=request,
            method=method,
            uri=uri,
            protocol=protocol,
            status=_to_int(self._lookup(data, "status"), MAX_STATUS),
            body_bytes_sent=_to_int(self._lookup(data, "bytes")),
            http_referer=referer,
            http_user_agent=self._text(data, "user_agent"),
            request_time=_to_float(self._lookup(data, "request_time")),
            upstream_time=_to_float(self._lookup(data, "upstream_time")),
            host=host,
            ingress_name=_dash(str(data.get("ingress_name") or "")),
            service_name=_dash(str(data.get("service_name") or "")),
            pod_name=_dash(str(data.get("pod_name") or "")),
        )

    @staticmethod
    def _lookup(data: Dict, field: str):
        for key in JSON_ALIASES[field]:
            value = data.get(key)
            if value is not None and value != "":
                return value
        return None

    def _text(self, data: Dict, field: str) -> str:
        value = self._lookup(data, field)
        if value is None:
            return ""
        return _dash(str(value))
