import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.orm import Session

from accesslens.config import settings
from accesslens.database import table_exists
from accesslens.errors import SourceNotFound
from accesslens.models import (
    AccessLog, AggDaily, AggHourly, FactAccessLog, LegacyDailyStats,
    LegacyHourlyStats, LOG_FORMAT_COMBINED, LOG_FORMAT_CUSTOM, LOG_FORMAT_JSON,
    Source, SOURCE_TYPE_HOST, SOURCE_TYPE_K8S_INGRESS,
)
from accesslens.schemas import SourceCreate, SourceUpdate

logger = logging.getLogger(__name__)

SOURCE_TYPES = (SOURCE_TYPE_HOST, SOURCE_TYPE_K8S_INGRESS)
LOG_FORMATS = (LOG_FORMAT_COMBINED, LOG_FORMAT_JSON, LOG_FORMAT_CUSTOM)

# every per-source table removed by the delete cascade
DEPENDENT_MODELS = (FactAccessLog, AccessLog, AggHourly, AggDaily, LegacyHourlyStats, LegacyDailyStats)


def _validate(source_type: str, log_format: str, log_path: str, namespace: str):
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"unknown source type: {source_type}")
    if log_format not in LOG_FORMATS:
        raise ValueError(f"unknown log format: {log_format}")
    if source_type == SOURCE_TYPE_HOST and not log_path:
        raise ValueError("host sources need a log_path")
    if source_type == SOURCE_TYPE_K8S_INGRESS and not namespace:
        raise ValueError("k8s_ingress sources need a namespace")


def create_source(db: Session, data: SourceCreate) -> Source:
    log_path = data.log_path
    if data.type == SOURCE_TYPE_HOST and not log_path:
        log_path = "/var/log/nginx/access.log"
    _validate(data.type, data.log_format, log_path, data.namespace)

    source = Source(
        name=data.name,
        type=data.type,
        description=data.description,
        status=data.status,
        log_path=log_path,
        log_format=data.log_format,
        cluster_id=data.cluster_id,
        namespace=data.namespace,
        ingress_name=data.ingress_name,
        pod_selector=data.pod_selector,
        container_name=data.container_name,
        log_format_config=data.log_format_config,
        geo_enabled=data.geo_enabled,
        session_enabled=data.session_enabled,
        collect_interval=data.collect_interval or settings.DEFAULT_COLLECT_INTERVAL,
        retention_days=data.retention_days or settings.DEFAULT_RETENTION_DAYS,
    )
    db.add(source)
    db.commit()
    db.refresh(source)
    logger.info("Created %s source %d (%s)", source.type, source.id, source.name)
    return source


def get_source(db: Session, source_id: int) -> Source:
    source = db.query(Source).filter(Source.id == source_id, Source.deleted_at.is_(None)).first()
    if source is None:
        raise SourceNotFound(source_id)
    return source


def list_sources(db: Session, page: int = 1, page_size: int = 20,
                 source_type: Optional[str] = None, status: Optional[int] = None) -> Tuple[int, List[Source]]:
    query = db.query(Source).filter(Source.deleted_at.is_(None))
    if source_type:
        query = query.filter(Source.type == source_type)
    if status is not None:
        query = query.filter(Source.status == status)
    total = query.count()
    page = max(page, 1)
    items = query.order_by(Source.id).offset((page - 1) * page_size).limit(page_size).all()
    return total, items


def list_active_sources(db: Session) -> List[Source]:
    return db.query(Source).filter(Source.deleted_at.is_(None), Source.status == 1).order_by(Source.id).all()


def update_source(db: Session, source_id: int, data: SourceUpdate) -> Source:
    source = get_source(db, source_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(source, field, value)
    try:
        _validate(source.type, source.log_format, source.log_path, source.namespace)
    except ValueError:
        db.rollback()
        raise
    db.commit()
    db.refresh(source)
    return source


def delete_source(db: Session, source_id: int) -> None:
    """Tombstone the source and drop all of its fact, legacy and aggregate rows."""
    source = get_source(db, source_id)
    removed = 0
    for model in DEPENDENT_MODELS:
        if not table_exists(db, model.__tablename__):
            continue
        removed += db.execute(delete(model).where(model.source_id == source_id)).rowcount or 0
    source.deleted_at = datetime.now()
    source.status = 0
    db.commit()
    logger.info("Deleted source %d, removed %d dependent rows", source_id, removed)

