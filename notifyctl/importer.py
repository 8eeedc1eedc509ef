"""
Bulk import of notification rows.

Rows arrive already decoded (one dict per spreadsheet line). Each row is
probed for a phone and a name column; good rows become pending jobs sharing
one batch id and one due time, bad rows are reported without stopping the
batch.
"""

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .repository import enqueue_job, resolve_delay
from .utils import due_at_from, new_batch_id, parse_iso, utcnow

logger = logging.getLogger(__name__)

RECIPIENT_ALIASES = ("phone", "telefone", "celular", "whatsapp", "numero", "número", "to")
NAME_ALIASES = ("name", "nome", "paciente")

CSV_DELIMITERS = (",", ";", "\t")
PREVIEW_SIZE = 10
# row numbers are 1-based and the header occupies line 1
HEADER_OFFSET = 2


def extract_field(row: Mapping[str, Any], aliases: Sequence[str]) -> Optional[str]:
    """First non-empty value whose column name matches an alias (case-insensitive)."""
    by_key = {str(k).strip().lower(): v for k, v in row.items() if k is not None}
    for alias in aliases:
        value = by_key.get(alias)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def import_batch(
    conn,
    rows: Sequence[Mapping[str, Any]],
    delay_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    batch_id = new_batch_id(current)
    scheduled_for = due_at_from(current, resolve_delay(conn, delay_minutes))
    # every row shares the same due time
    batch_now = parse_iso(scheduled_for)

    inserted: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for idx, row in enumerate(rows):
        row_no = idx + HEADER_OFFSET
        if not isinstance(row, Mapping):
            errors.append({"row": row_no, "reason": "row is not an object", "data": row})
            continue

        recipient = extract_field(row, RECIPIENT_ALIASES)
        name = extract_field(row, NAME_ALIASES)
        if not recipient or not name:
            errors.append({"row": row_no, "reason": "missing phone or name", "data": dict(row)})
            continue

        try:
            job_id, due_at = enqueue_job(
                conn,
                recipient=recipient,
                display_name=name,
                delay_minutes=0,
                batch_id=batch_id,
                now=batch_now,
            )
        except (ValueError, RuntimeError) as e:
            errors.append({"row": row_no, "reason": str(e), "data": dict(row)})
            continue

        inserted.append({"id": job_id, "to": recipient, "name": name, "due_at": due_at})

    logger.info(
        f"Imported batch {batch_id}: {len(rows)} rows, "
        f"{len(inserted)} inserted, {len(errors)} errors"
    )
    return {
        "batch_id": batch_id,
        "total": len(rows),
        "inserted": len(inserted),
        "errors": len(errors),
        "scheduled_for": scheduled_for,
        "preview": inserted[:PREVIEW_SIZE],
        "error_details": errors,
    }


def read_rows(path) -> List[Dict[str, Any]]:
    """Decode a CSV or JSON file into row dicts. Raises ValueError when unreadable."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ValueError(f"Cannot read {p}: {e}")

    if p.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {p}: {e}")
        if not isinstance(data, list):
            raise ValueError("JSON import must be a list of objects.")
        return data

    if not text.strip():
        raise ValueError(f"{p} is empty.")
    lines = text.splitlines()
    # spreadsheet exports in pt_BR locales use ';'
    delimiter = max(CSV_DELIMITERS, key=lines[0].count)
    try:
        return [dict(r) for r in csv.DictReader(lines, delimiter=delimiter)]
    except csv.Error as e:
        raise ValueError(f"Invalid CSV in {p}: {e}")
