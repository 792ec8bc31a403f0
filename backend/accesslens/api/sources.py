from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from accesslens import sources as source_service
from accesslens.api.deps import get_collector
from accesslens.collector import Collector
from accesslens.database import get_db
from accesslens.errors import SourceNotFound
from accesslens.facts import list_access_logs
from accesslens import schemas

router = APIRouter(prefix="/api/sources", tags=["sources"])


@router.post("/", response_model=schemas.SourceOut)
async def create_source(data: schemas.SourceCreate, db: Session = Depends(get_db)):
    try:
        return source_service.create_source(db, data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=schemas.SourceList)
async def list_sources(
    page: int = 1,
    page_size: int = 20,
    type: Optional[str] = None,
    status: Optional[int] = None,
    db: Session = Depends(get_db)
):
    total, items = source_service.list_sources(db, page, page_size, source_type=type, status=status)
    return {"total": total, "items": items}


@router.get("/{source_id}", response_model=schemas.SourceOut)
async def get_source(source_id: int, db: Session = Depends(get_db)):
    try:
        return source_service.get_source(db, source_id)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")


@router.put("/{source_id}", response_model=schemas.SourceOut)
async def update_source(source_id: int, data: schemas.SourceUpdate, db: Session = Depends(get_db)):
    try:
        return source_service.update_source(db, source_id, data)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{source_id}")
async def delete_source(source_id: int, db: Session = Depends(get_db)):
    try:
        source_service.delete_source(db, source_id)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    return {"message": "Source deleted", "id": source_id}


@router.post("/{source_id}/collect", response_model=schemas.CollectResult)
def collect_source(source_id: int, collector: Collector = Depends(get_collector)):
    """Run one collection cycle now."""
    try:
        return collector.collect(source_id)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")


@router.post("/{source_id}/ingest", response_model=schemas.CollectResult)
def ingest_file(source_id: int, file: UploadFile = File(...), collector: Collector = Depends(get_collector)):
    """Ingest an uploaded log file for a source without touching its watermark."""
    content = file.file.read().decode("utf-8", errors="replace")
    try:
        return collector.ingest_lines(source_id, content.splitlines())
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")


@router.get("/{source_id}/logs", response_model=schemas.AccessLogPage)
async def get_access_logs(
    source_id: int,
    page: int = 1,
    page_size: int = 50,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    status: Optional[int] = None,
    method: Optional[str] = None,
    host: Optional[str] = None,
    remote_addr: Optional[str] = None,
    uri: Optional[str] = None,
    db: Session = Depends(get_db)
):
    try:
        source_service.get_source(db, source_id)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")

    flt = schemas.AccessLogFilter(
        start_time=start_time, end_time=end_time, status=status, method=method,
        host=host, remote_addr=remote_addr, uri=uri,
    )
    return list_access_logs(db, source_id, flt, page, page_size)
