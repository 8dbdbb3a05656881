# Scan Store - persistence of completed scans (Procedural)
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import select, insert

from scan_server import config
from scan_server import logger
from scan_server.database import scans_table, get_connection
from scan_server.metric_validator import MetricSet
from scan_server.oracle_client import encode_frame


class ScanPersistenceError(Exception):
    """A scan row could not be written."""


def _row_to_record(row, include_image: bool = True) -> Dict:
    scan = dict(row._mapping)
    record = {
        "id": scan["id"],
        "user_id": scan["user_id"],
        "scan_date": scan["scan_date"].isoformat() if scan["scan_date"] else None,
        "frame_count": scan["frame_count"],
    }
    for name in config.ALL_METRICS:
        record[name] = scan[name]
    if include_image:
        record["center_image"] = scan["center_image"]
    return record


def save_scan(user_id: int, center_frame: Union[bytes, str, None], frame_count: int,
              metrics: MetricSet) -> Dict:
    """
    Persist a completed scan

    Args:
        user_id: Owner of the scan
        center_frame: First (center) frame, bytes or base64
        frame_count: Number of frames that were analyzed
        metrics: Validated metrics

    Returns:
        The stored scan record

    Raises:
        ScanPersistenceError: if the row could not be written or read back
    """
    conn = None
    try:
        conn = get_connection()
        insert_query = insert(scans_table).values(
            user_id=user_id,
            scan_date=datetime.utcnow(),
            center_image=encode_frame(center_frame),
            frame_count=frame_count,
            **metrics.to_dict()
        )
        result = conn.execute(insert_query)
        scan_id = result.inserted_primary_key[0]

        # Read back inside the insert transaction so a failure leaves no row
        row = conn.execute(select(scans_table).where(scans_table.c.id == scan_id)).first()
        if not row:
            raise ScanPersistenceError("Failed to retrieve scan after creation")

        record = _row_to_record(row)
        conn.commit()
        logger.log_db("Scan Saved", {
            "scan_id": scan_id,
            "user_id": user_id,
            "frames": frame_count,
            "water_retention": record["water_retention"],
            "inflammation_index": record["inflammation_index"]
        })
        return record

    except ScanPersistenceError as e:
        logger.log_error("Scan Save Failed", e, {"user_id": user_id})
        if conn:
            conn.rollback()
        raise
    except Exception as e:
        logger.log_error("Scan Save Failed", e, {"user_id": user_id})
        if conn:
            conn.rollback()
        raise ScanPersistenceError(str(e)) from e
    finally:
        if conn:
            conn.close()


def list_scans(user_id: int) -> List[Dict]:
    """All scans of a user, newest first"""
    conn = get_connection()
    try:
        query = select(scans_table).where(
            scans_table.c.user_id == user_id
        ).order_by(scans_table.c.scan_date.desc(), scans_table.c.id.desc())
        return [_row_to_record(row) for row in conn.execute(query).fetchall()]
    finally:
        conn.close()


def get_recent_scans(user_id: int, limit: int = 5) -> List[Dict]:
    """Most recent scans without images, newest first"""
    conn = get_connection()
    try:
        query = select(scans_table).where(
            scans_table.c.user_id == user_id
        ).order_by(scans_table.c.scan_date.desc(), scans_table.c.id.desc()).limit(limit)
        return [_row_to_record(row, include_image=False) for row in conn.execute(query).fetchall()]
    finally:
        conn.close()


def get_latest_scan(user_id: int) -> Optional[Dict]:
    scans = get_recent_scans(user_id, limit=1)
    return scans[0] if scans else None


def get_scan(user_id: int, scan_id: int) -> Optional[Dict]:
    """Single scan, only if it belongs to the user"""
    conn = get_connection()
    try:
        query = select(scans_table).where(
            (scans_table.c.id == scan_id) &
            (scans_table.c.user_id == user_id)
        )
        row = conn.execute(query).first()
        return _row_to_record(row) if row else None
    finally:
        conn.close()


def get_trends(user_id: int) -> List[Dict]:
    """Metric history for charting, oldest first"""
    conn = get_connection()
    try:
        columns = [scans_table.c.scan_date] + [scans_table.c[name] for name in config.ALL_METRICS]
        query = select(*columns).where(
            scans_table.c.user_id == user_id
        ).order_by(scans_table.c.scan_date.asc(), scans_table.c.id.asc())

        trends = []
        for row in conn.execute(query).fetchall():
            point = dict(row._mapping)
            point["scan_date"] = point["scan_date"].isoformat() if point["scan_date"] else None
            trends.append(point)
        return trends
    finally:
        conn.close()
