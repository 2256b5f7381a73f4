# llm_tracker/services/keyword_import.py

import csv
import io
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.services.validation import sanitize_input

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 5
MAX_KEYWORD_LENGTH = 100

TEMPLATE_CSV = (
    "keyword,priority\n"
    "SEO optimization,5\n"
    "brand monitoring,3\n"
    "keyword research,4\n"
    "competitor analysis,2\n"
)


def _parse_priority(raw: Optional[str]) -> int:
    try:
        value = int((raw or "").strip())
    except ValueError:
        return MIN_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, value))


def _entry(keyword: str, priority: int) -> Dict[str, object]:
    return {"keyword": keyword, "priority": priority, "status": "pending", "error": None}


def _entries_from_rows(rows: Iterable[List[str]]) -> List[Dict[str, object]]:
    entries = []
    for parts in rows:
        if not parts:
            continue
        keyword = sanitize_input(parts[0].replace('"', ""))
        if not keyword:
            continue
        priority = _parse_priority(parts[1] if len(parts) > 1 else None)
        entries.append(_entry(keyword, priority))
    return entries


def parse_keyword_lines(text: str) -> List[Dict[str, object]]:
    """
    One `keyword[,priority]` per line; blank lines ignored.
    """
    rows = [line.split(",") for line in (text or "").splitlines() if line.strip()]
    return _entries_from_rows(rows)


def parse_keyword_csv(content: str) -> List[Dict[str, object]]:
    """
    CSV with an optional `keyword,priority` header row.
    """
    lines = [line for line in (content or "").splitlines() if line.strip()]
    if lines and "keyword" in lines[0].lower():
        lines = lines[1:]
    return _entries_from_rows(csv.reader(lines))


def mark_duplicates(entries: List[Dict[str, object]], existing: Iterable[str]) -> List[Dict[str, object]]:
    """
    Flag entries that already exist on the project or repeat earlier in the
    same batch. Over-long keywords are flagged too.
    """
    seen = set(existing)
    for entry in entries:
        keyword = entry["keyword"]
        if len(keyword) > MAX_KEYWORD_LENGTH:
            entry["status"] = "error"
            entry["error"] = f"Keyword must be at most {MAX_KEYWORD_LENGTH} characters"
        elif keyword in seen:
            entry["status"] = "error"
            entry["error"] = "Keyword already exists"
        else:
            seen.add(keyword)
    return entries


def insert_keywords(db: Session, project: Project, entries: List[Dict[str, object]]) -> Dict[str, int]:
    """
    Insert every still-pending entry and mark it `success`.
    """
    success = 0
    for entry in entries:
        if entry["status"] != "pending":
            continue
        db.add(
            Keyword(
                project_id=project.id,
                keyword=entry["keyword"],
                priority=entry["priority"],
            )
        )
        entry["status"] = "success"
        success += 1

    db.flush()
    errors = sum(1 for e in entries if e["status"] == "error")
    logger.info(
        "Imported %d keywords into project %s (%d errors)",
        success, project.id, errors,
    )
    return {"success": success, "errors": errors}


def results_to_csv(entries: List[Dict[str, object]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["keyword", "priority", "status", "error"])
    for entry in entries:
        writer.writerow([
            entry.get("keyword", ""),
            entry.get("priority", MIN_PRIORITY),
            entry.get("status", "pending"),
            entry.get("error") or "",
        ])
    return buf.getvalue()
