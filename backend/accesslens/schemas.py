from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime


# ============== Ingestion ==============

class ParsedLogEntry(BaseModel):
    """One accepted log line, before enrichment."""
    timestamp: datetime
    remote_addr: str = ""
    remote_user: str = ""
    request: str = ""
    method: str = ""
    uri: str = ""
    protocol: str = ""
    status: int = 0
    body_bytes_sent: int = 0
    http_referer: str = ""
    http_user_agent: str = ""
    request_time: float = 0.0
    upstream_time: float = 0.0
    host: str = ""
    ingress_name: str = ""
    service_name: str = ""
    pod_name: str = ""


class GeoInfo(BaseModel):
    country: str = ""
    province: str = ""
    city: str = ""
    isp: str = ""


class UAInfo(BaseModel):
    browser: str = "Unknown"
    browser_version: str = ""
    os: str = "Unknown"
    os_version: str = ""
    device_type: str = "desktop"
    is_bot: bool = False


class CollectResult(BaseModel):
    source_id: int
    status: str  # ok, busy, cancelled, error, skipped
    lines_read: int = 0
    entries_written: int = 0
    dropped: int = 0
    rotated: bool = False
    offset: int = 0
    error: str = ""


# ============== Sources ==============

class SourceCreate(BaseModel):
    name: str
    type: str = "host"
    description: str = ""
    log_path: str = ""
    log_format: str = "combined"
    cluster_id: Optional[int] = None
    namespace: str = ""
    ingress_name: str = ""
    pod_selector: str = ""
    container_name: str = ""
    log_format_config: Optional[str] = None
    geo_enabled: bool = True
    session_enabled: bool = False
    collect_interval: Optional[int] = None
    retention_days: Optional[int] = None
    status: int = 1


class SourceUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    log_path: Optional[str] = None
    log_format: Optional[str] = None
    namespace: Optional[str] = None
    ingress_name: Optional[str] = None
    pod_selector: Optional[str] = None
    container_name: Optional[str] = None
    log_format_config: Optional[str] = None
    geo_enabled: Optional[bool] = None
    session_enabled: Optional[bool] = None
    collect_interval: Optional[int] = None
    retention_days: Optional[int] = None
    status: Optional[int] = None


class SourceOut(BaseModel):
    id: int
    name: str
    type: str
    description: Optional[str] = ""
    status: int
    log_path: Optional[str] = ""
    log_format: Optional[str] = "combined"
    namespace: Optional[str] = ""
    ingress_name: Optional[str] = ""
    geo_enabled: bool = True
    collect_interval: int
    retention_days: int
    last_collect_at: Optional[datetime] = None
    last_collect_logs: int = 0
    last_error: Optional[str] = ""
    last_file_offset: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SourceList(BaseModel):
    total: int
    items: List[SourceOut]


# ============== Access log listing ==============

class AccessLogFilter(BaseModel):
    """Typed listing filter; every member is optional."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[int] = None
    method: Optional[str] = None
    host: Optional[str] = None
    remote_addr: Optional[str] = None  # substring
    uri: Optional[str] = None  # substring


class AccessLogView(BaseModel):
    id: int
    source_id: int
    timestamp: datetime
    remote_addr: str = ""
    method: str = ""
    uri: str = ""
    protocol: str = ""
    status: int = 0
    body_bytes_sent: int = 0
    http_referer: str = ""
    http_user_agent: str = ""
    request_time: float = 0.0
    host: str = ""
    country: str = ""
    province: str = ""
    city: str = ""
    browser: str = ""
    os: str = ""
    device_type: str = ""


class AccessLogPage(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[AccessLogView]


# ============== Analytics ==============

class MetricSet(BaseModel):
    pv: int = 0
    uv: int = 0
    ip_count: int = 0
    bandwidth: int = 0
    avg_response_time: float = 0.0
    error_rate: float = 0.0


class CoreMetrics(BaseModel):
    today: MetricSet
    yesterday: MetricSet
    yesterday_now: MetricSet
    predicted_today: MetricSet
    realtime_ops: float = 0.0
    peak_ops: float = 0.0
    tier: str = ""


class OverviewTrendPoint(BaseModel):
    time: str
    pv: int = 0
    uv: int = 0


class VisitorComparison(BaseModel):
    total_uv: int = 0
    new_visitors: int = 0
    returning_visitors: int = 0
    new_percent: float = 0.0
    returning_percent: float = 0.0


class PageItem(BaseModel):
    url: str
    pv: int = 0
    uv: int = 0


class RefererItem(BaseModel):
    domain: str
    type: str = ""
    visitors: int = 0
    requests: int = 0


class IPGeoItem(BaseModel):
    ip: str
    requests: int = 0
    country: str = ""
    province: str = ""
    city: str = ""
    isp: str = ""


class TimeSeriesPoint(BaseModel):
    time: str
    requests: int = 0
    pv: int = 0
    uv: int = 0
    bandwidth: int = 0
    avg_response_time: float = 0.0
    error_rate: float = 0.0


class NameValue(BaseModel):
    name: str
    value: int = 0
    percent: float = 0.0


class GeoStats(BaseModel):
    countries: List[NameValue] = Field(default_factory=list)
    provinces: List[NameValue] = Field(default_factory=list)
    cities: List[NameValue] = Field(default_factory=list)


class BrowserStats(BaseModel):
    browsers: List[NameValue] = Field(default_factory=list)
    operating_systems: List[NameValue] = Field(default_factory=list)


class DeviceStats(BaseModel):
    devices: List[NameValue] = Field(default_factory=list)


class BackfillResult(BaseModel):
    ips_updated: int = 0
    user_agents_updated: int = 0
    errors: int = 0
    details: Dict[str, int] = Field(default_factory=dict)
