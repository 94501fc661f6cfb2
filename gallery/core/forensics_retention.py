"""Playback session retention.

Sessions older than the configured retention window are exported to a
gzipped CSV (so attribution evidence survives the purge) and then deleted.
Old exports are pruned by age and by count.
"""
from __future__ import annotations

import asyncio
import csv
import gzip
import hashlib
import io
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

SESSIONS = "playback_sessions"
EXPORTS = "forensics_exports"

CSV_COLUMNS = (
    "session_id",
    "played_at",
    "media_id",
    "user_id",
    "fingerprint_id",
    "token_sha256",
    "ip",
    "user_agent",
    "created_at",
)


def _iso(value) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return "" if value is None else str(value)


def build_sessions_csv(rows: Iterable[dict]) -> str:
    """CSV text (all fields quoted) for playback session documents."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for row in rows:
        writer.writerow([
            str(row.get("_id", "")),
            _iso(row.get("played_at")),
            row.get("media_id", ""),
            row.get("user_id", ""),
            row.get("fingerprint_id", ""),
            row.get("token_sha256", ""),
            row.get("ip", "") or "",
            row.get("user_agent", "") or "",
            _iso(row.get("created_at")),
        ])
    return buffer.getvalue()


def export_basename(now: datetime, cutoff: datetime) -> str:
    return f"playback_sessions_{now.strftime('%Y%m%d_%H%M%S')}_cutoff_{cutoff.strftime('%Y%m%d')}"


def write_export_file(root: str, csv_text: str, *, now: datetime, cutoff: datetime) -> dict:
    """Write ``<base>.csv.gz`` under *root* via a ``.tmp`` file and return the export record."""
    os.makedirs(root, exist_ok=True)
    base = export_basename(now, cutoff)
    file_path = os.path.join(root, f"{base}.csv.gz")
    tmp_path = file_path + ".tmp"

    data = csv_text.encode("utf-8")
    with open(tmp_path, "wb") as fh:
        fh.write(gzip.compress(data))
    os.replace(tmp_path, file_path)

    return {
        "filename": f"{base}.csv",
        "sha256": hashlib.sha256(data).hexdigest(),
        "file_path": file_path,
        "file_bytes": os.path.getsize(file_path),
        "created_at": now,
    }


def select_exports_to_prune(exports: list[dict], *, keep_days: int, max_keep: int, now: datetime) -> list[dict]:
    """Exports older than *keep_days* or beyond the newest *max_keep* (0 disables either rule)."""
    if keep_days <= 0 and max_keep <= 0:
        return []
    ordered = sorted(exports, key=lambda e: e["created_at"], reverse=True)
    doomed = {}
    if keep_days > 0:
        cutoff = now - timedelta(days=keep_days)
        for export in ordered:
            if export["created_at"] < cutoff:
                doomed[id(export)] = export
    if max_keep > 0:
        for export in ordered[max_keep:]:
            doomed[id(export)] = export
    return [e for e in ordered if id(e) in doomed]


async def export_sessions(db, cutoff: datetime, total: int, config, now: datetime) -> Optional[dict]:
    already = await db[EXPORTS].find_one({"cutoff_at": cutoff, "rows_count": {"$gt": 0}})
    if already:
        logger.info("Forensics export for cutoff %s already exists", cutoff.isoformat())
        return None

    rows = [doc async for doc in db[SESSIONS].find({"played_at": {"$lt": cutoff}}).sort("_id", 1)]
    csv_text = build_sessions_csv(rows)
    record = await asyncio.to_thread(write_export_file, config.export_root, csv_text, now=now, cutoff=cutoff)
    record.update({"cutoff_at": cutoff, "rows_count": total})
    await db[EXPORTS].insert_one(record)
    logger.info("Exported %s playback sessions to %s", total, record["file_path"])
    return record


async def prune_exports(db, config, now: datetime) -> int:
    exports = [doc async for doc in db[EXPORTS].find({})]
    doomed = select_exports_to_prune(
        exports,
        keep_days=config.forensics_export_retention_days,
        max_keep=config.forensics_export_max_keep,
        now=now,
    )
    for export in doomed:
        path = export.get("file_path")
        try:
            if path and os.path.isfile(path):
                os.remove(path)
        except OSError as exc:
            logger.warning("Failed to delete export file %s: %s", path, exc)
        await db[EXPORTS].delete_one({"_id": export["_id"]})
    return len(doomed)


async def run_retention_once(db, config, now: Optional[datetime] = None) -> dict:
    """Export then purge sessions past retention; prune old exports."""
    days = config.playback_session_retention_days
    summary = {"purged": 0, "exported": False, "pruned": 0}
    if days <= 0:
        return summary

    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    query = {"played_at": {"$lt": cutoff}}
    total = await db[SESSIONS].count_documents(query)
    if total <= 0:
        return summary

    if config.forensics_export_enabled:
        summary["exported"] = await export_sessions(db, cutoff, total, config, now) is not None

    result = await db[SESSIONS].delete_many(query)
    summary["purged"] = result.deleted_count
    summary["pruned"] = await prune_exports(db, config, now)
    logger.info("Forensics retention: purged=%s exported=%s pruned=%s", summary["purged"], summary["exported"], summary["pruned"])
    return summary


async def retention_loop(get_db, config, interval_seconds: int = 24 * 3600) -> None:
    logger.info("Starting forensics retention task: every %ss, keep %s days", interval_seconds, config.playback_session_retention_days)
    try:
        while True:
            try:
                await run_retention_once(await get_db(), config)
            except Exception as exc:
                logger.error("Forensics retention failed: %s: %s", type(exc).__name__, exc)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Forensics retention task cancelled")
        raise
