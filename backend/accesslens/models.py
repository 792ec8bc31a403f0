from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Float, Index, Integer,
    SmallInteger, String, Text, UniqueConstraint,
)
from accesslens.database import Base
import datetime

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

SOURCE_TYPE_HOST = "host"
SOURCE_TYPE_K8S_INGRESS = "k8s_ingress"

LOG_FORMAT_COMBINED = "combined"
LOG_FORMAT_JSON = "json"
LOG_FORMAT_CUSTOM = "custom"


def _now():
    return datetime.datetime.now()


class Source(Base):
    """
    One monitored log origin.
    The last_file_* triple is the collection watermark, mutated only by the collector.
    """
    __tablename__ = "access_sources"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False, default=SOURCE_TYPE_HOST)
    description = Column(String(500), default="")
    status = Column(SmallInteger, default=1, index=True)  # 1 active, 0 paused

    # host sources
    log_path = Column(String(500), default="")
    log_format = Column(String(50), default=LOG_FORMAT_COMBINED)

    # k8s ingress sources
    cluster_id = Column(Integer, nullable=True, index=True)
    namespace = Column(String(100), default="")
    ingress_name = Column(String(100), default="")
    pod_selector = Column(String(200), default="")
    container_name = Column(String(100), default="")

    log_format_config = Column(Text, nullable=True)
    geo_enabled = Column(Boolean, default=True)
    session_enabled = Column(Boolean, default=False)

    collect_interval = Column(Integer, default=60)  # seconds
    retention_days = Column(Integer, default=30)

    last_collect_at = Column(DateTime, nullable=True)
    last_collect_logs = Column(BigInteger, default=0)
    last_error = Column(String(500), default="")

    last_file_size = Column(BigInteger, default=0)
    last_file_offset = Column(BigInteger, default=0)
    last_file_inode = Column(BigInteger, default=0)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)
    deleted_at = Column(DateTime, nullable=True, index=True)


# ============== Dimension tables ==============

class DimIP(Base):
    __tablename__ = "dim_ip"

    id = Column(BigIntPK, primary_key=True)
    ip_address = Column(String(50), unique=True, nullable=False)
    country = Column(String(50), default="")
    province = Column(String(50), default="")
    city = Column(String(50), default="")
    isp = Column(String(100), default="")
    is_bot = Column(Boolean, default=False)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now)


class DimURL(Base):
    __tablename__ = "dim_url"

    id = Column(BigIntPK, primary_key=True)
    url_hash = Column(String(64), unique=True, nullable=False)  # sha256(uri + host)
    url_path = Column(String(2000), default="")
    url_normalized = Column(String(500), default="", index=True)  # path without query
    host = Column(String(255), default="", index=True)
    created_at = Column(DateTime, default=_now)


class DimReferer(Base):
    __tablename__ = "dim_referer"

    id = Column(BigIntPK, primary_key=True)
    referer_hash = Column(String(64), unique=True, nullable=False)
    referer_url = Column(String(2000), default="")
    referer_domain = Column(String(255), default="", index=True)
    referer_type = Column(String(20), default="")  # direct, search, social, other
    created_at = Column(DateTime, default=_now)


class DimUserAgent(Base):
    __tablename__ = "dim_user_agent"

    id = Column(BigIntPK, primary_key=True)
    ua_hash = Column(String(64), unique=True, nullable=False)
    user_agent = Column(String(500), default="")
    browser = Column(String(50), default="", index=True)
    browser_version = Column(String(20), default="")
    os = Column(String(50), default="", index=True)
    os_version = Column(String(20), default="")
    device_type = Column(String(20), default="", index=True)  # desktop, mobile, tablet, bot
    is_bot = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=_now)


# ============== Fact table ==============

class FactAccessLog(Base):
    """One row per accepted request. Dimension keys are 0 when absent."""
    __tablename__ = "fact_access_logs"
    __table_args__ = (
        Index("idx_fact_source_time", "source_id", "timestamp"),
    )

    id = Column(BigIntPK, primary_key=True)
    source_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)

    ip_id = Column(BigInteger, default=0, index=True)
    url_id = Column(BigInteger, default=0, index=True)
    referer_id = Column(BigInteger, default=0, index=True)
    ua_id = Column(BigInteger, default=0, index=True)

    method = Column(String(20), default="", index=True)
    protocol = Column(String(50), default="")
    status = Column(Integer, default=0, index=True)
    body_bytes_sent = Column(BigInteger, default=0)
    request_time = Column(Float, default=0.0)
    upstream_time = Column(Float, default=0.0)

    ingress_name = Column(String(100), default="")
    service_name = Column(String(100), default="")
    pod_name = Column(String(100), default="")

    is_pv = Column(Boolean, default=True)
    session_id = Column(String(64), default="")
    created_at = Column(DateTime, default=_now)


# ============== Aggregate tables ==============

class AggHourly(Base):
    __tablename__ = "agg_hourly"
    __table_args__ = (
        UniqueConstraint("source_id", "hour", name="uq_agg_hourly_source_hour"),
    )

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, nullable=False)
    hour = Column(DateTime, nullable=False)

    total_requests = Column(BigInteger, default=0)
    pv_count = Column(BigInteger, default=0)
    unique_ips = Column(BigInteger, default=0)
    total_bandwidth = Column(BigInteger, default=0)
    avg_response_time = Column(Float, default=0.0)
    max_response_time = Column(Float, default=0.0)
    min_response_time = Column(Float, default=0.0)

    status_2xx = Column(BigInteger, default=0)
    status_3xx = Column(BigInteger, default=0)
    status_4xx = Column(BigInteger, default=0)
    status_5xx = Column(BigInteger, default=0)

    method_distribution = Column(Text, default="{}")


class AggDaily(Base):
    __tablename__ = "agg_daily"
    __table_args__ = (
        UniqueConstraint("source_id", "date", name="uq_agg_daily_source_date"),
    )

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)

    total_requests = Column(BigInteger, default=0)
    pv_count = Column(BigInteger, default=0)
    unique_ips = Column(BigInteger, default=0)
    total_bandwidth = Column(BigInteger, default=0)
    avg_response_time = Column(Float, default=0.0)
    max_response_time = Column(Float, default=0.0)
    min_response_time = Column(Float, default=0.0)

    status_2xx = Column(BigInteger, default=0)
    status_3xx = Column(BigInteger, default=0)
    status_4xx = Column(BigInteger, default=0)
    status_5xx = Column(BigInteger, default=0)

    # Top N blobs, JSON lists of {"name": ..., "value": ...}
    top_urls = Column(Text, default="[]")
    top_ips = Column(Text, default="[]")
    top_referers = Column(Text, default="[]")
    top_countries = Column(Text, default="[]")
    top_browsers = Column(Text, default="[]")
    top_devices = Column(Text, default="[]")

    hourly_traffic = Column(Text, default="[]")  # 24 request totals
    method_distribution = Column(Text, default="{}")


# ============== Legacy flat schema ==============

class AccessLog(Base):
    """Pre-dimensional wide row, still readable by every query."""
    __tablename__ = "access_logs"
    __table_args__ = (
        Index("idx_access_logs_source_time", "source_id", "timestamp"),
    )

    id = Column(BigIntPK, primary_key=True)
    source_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    remote_addr = Column(String(50), default="", index=True)
    remote_user = Column(String(100), default="")
    request = Column(String(2000), default="")
    method = Column(String(20), default="", index=True)
    uri = Column(String(1000), default="")
    protocol = Column(String(50), default="")
    status = Column(Integer, default=0, index=True)
    body_bytes_sent = Column(BigInteger, default=0)
    http_referer = Column(String(1000), default="")
    http_user_agent = Column(String(500), default="")
    request_time = Column(Float, default=0.0)
    upstream_time = Column(Float, default=0.0)
    host = Column(String(255), default="", index=True)

    country = Column(String(50), default="")
    province = Column(String(50), default="")
    city = Column(String(50), default="")
    isp = Column(String(100), default="")

    browser = Column(String(50), default="")
    browser_version = Column(String(20), default="")
    os = Column(String(50), default="")
    os_version = Column(String(20), default="")
    device_type = Column(String(20), default="")

    ingress_name = Column(String(100), default="")
    service_name = Column(String(100), default="")
    created_at = Column(DateTime, default=_now)


class LegacyHourlyStats(Base):
    __tablename__ = "legacy_hourly_stats"
    __table_args__ = (
        UniqueConstraint("source_id", "hour", name="uq_legacy_hourly_source_hour"),
    )

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, nullable=False)
    hour = Column(DateTime, nullable=False)
    total_requests = Column(BigInteger, default=0)
    unique_visitors = Column(BigInteger, default=0)
    total_bandwidth = Column(BigInteger, default=0)
    avg_response_time = Column(Float, default=0.0)
    status_2xx = Column(BigInteger, default=0)
    status_3xx = Column(BigInteger, default=0)
    status_4xx = Column(BigInteger, default=0)
    status_5xx = Column(BigInteger, default=0)


class LegacyDailyStats(Base):
    __tablename__ = "legacy_daily_stats"
    __table_args__ = (
        UniqueConstraint("source_id", "date", name="uq_legacy_daily_source_date"),
    )

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    total_requests = Column(BigInteger, default=0)
    unique_visitors = Column(BigInteger, default=0)
    total_bandwidth = Column(BigInteger, default=0)
    avg_response_time = Column(Float, default=0.0)
    status_2xx = Column(BigInteger, default=0)
    status_3xx = Column(BigInteger, default=0)
    status_4xx = Column(BigInteger, default=0)
    status_5xx = Column(BigInteger, default=0)

    top_uris = Column(Text, default="[]")
    top_ips = Column(Text, default="[]")
    top_referers = Column(Text, default="[]")
    top_user_agents = Column(Text, default="[]")


FACT_TABLES = ("fact_access_logs", "dim_ip")
LEGACY_TABLE = "access_logs"
