# llm_tracker/services/tracking_report.py

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.models.report_models import Report, ApiResponse
from llm_tracker.services.brand_analysis import analyze_brand_mention
from llm_tracker.services.historical_tracking import record_snapshots

logger = logging.getLogger(__name__)

PROVIDER = "openai"


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def create_tracking_report(db: Session, project: Project, user_id: str) -> Report:
    report = Report(
        project_id=project.id,
        user_id=user_id,
        report_type="keyword_tracking",
        status="processing",
        report_metadata={
            "brand_name": project.brand_name,
            "competitors": list(project.competitors or []),
        },
        results={},
    )
    db.add(report)
    db.flush()
    return report


def summarize_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(results)
    mentioned = sum(1 for r in results if r.get("brand_mentioned"))
    average_confidence = (
        sum(r.get("confidence") or 0 for r in results) / total if total else 0.0
    )
    return {
        "total_keywords": total,
        "brand_mentioned": mentioned,
        "average_confidence": average_confidence,
    }


def _mention_record(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "keyword": result["keyword"],
        "brand_mentioned": result["brand_mentioned"],
        "position": result["position"],
        "confidence": result["confidence"],
        "context": result["context"],
        "competitors": result["competitors"],
    }


def run_keyword_tracking(
    db: Session,
    report: Report,
    project: Project,
    keywords: List[Keyword],
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    analyze: Callable[..., dict] = analyze_brand_mention,
) -> List[Dict[str, Any]]:
    """
    Analyse every keyword in turn, store raw answers and history, then
    finalise the report.

    A failing keyword is logged and skipped; the report only fails when no
    keyword could be analysed.
    """
    competitors = list(project.competitors or [])
    results: List[Dict[str, Any]] = []
    failed: List[Dict[str, str]] = []

    for kw in keywords:
        try:
            result = analyze(
                keyword=kw.keyword,
                brand_name=project.brand_name,
                competitors=competitors,
                model=model,
                api_key=api_key,
            )
        except Exception as e:
            logger.warning(
                "Error analyzing keyword %r for report %s: %s",
                kw.keyword, report.id, e,
            )
            failed.append({"keyword": kw.keyword, "error": str(e)})
            continue

        record = _mention_record(result)
        results.append(record)

        response = ApiResponse(
            report_id=report.id,
            provider=PROVIDER,
            keyword=kw.keyword,
            raw_response={"analysis": result.get("raw_response") or ""},
            response_metadata=record,
        )
        db.add(response)
        db.flush()

        record_snapshots(
            db,
            project,
            record,
            keyword_id=kw.id,
            report_id=report.id,
            api_response_id=response.id,
        )

    report.results = {
        "summary": summarize_results(results),
        "keywords": results,
        "failed_keywords": failed,
    }
    report.status = "failed" if (keywords and not results) else "completed"
    report.completed_at = datetime.utcnow()
    db.commit()

    logger.info(
        "Report %s finished: %d analysed, %d failed",
        report.id, len(results), len(failed),
    )
    return results


def summarize_competitors(results: List[Dict[str, Any]], brand_name: str) -> List[Dict[str, Any]]:
    """
    Rows for the competitor performance table.

    The target brand comes first and is counted over every result; each
    competitor is counted over the results that list it, ordered by
    mentions (most first). Positions that are missing or 0 are ignored.
    """
    if not results:
        return []

    def _row(name, mentions, total, positions, is_target):
        return {
            "brand": name,
            "is_target_brand": is_target,
            "mentions": mentions,
            "total_keywords": total,
            "coverage": _round_half_up(mentions / total * 100) if total else 0,
            "average_position": (
                _round_half_up(sum(positions) / len(positions)) if positions else None
            ),
            "best_position": min(positions) if positions else None,
        }

    brand_positions = [r["position"] for r in results if r.get("position")]
    rows = [
        _row(
            brand_name,
            sum(1 for r in results if r.get("brand_mentioned")),
            len(results),
            brand_positions,
            True,
        )
    ]

    stats: Dict[str, Dict[str, Any]] = {}
    for result in results:
        for comp in result.get("competitors") or []:
            if not comp.get("name"):
                continue
            entry = stats.setdefault(comp["name"], {"mentioned": 0, "total": 0, "positions": []})
            entry["total"] += 1
            if comp.get("mentioned"):
                entry["mentioned"] += 1
                if comp.get("position"):
                    entry["positions"].append(comp["position"])

    ordered = sorted(stats.items(), key=lambda item: item[1]["mentioned"], reverse=True)
    for name, entry in ordered:
        rows.append(_row(name, entry["mentioned"], entry["total"], entry["positions"], False))

    return rows


def competitor_matrix(results: List[Dict[str, Any]], brand_name: str) -> Dict[str, Any]:
    """
    Presence matrix: one row per keyword, one column per competitor that was
    mentioned at least once (in first-seen order).
    """
    columns: List[str] = []
    for result in results:
        for comp in result.get("competitors") or []:
            if comp.get("mentioned") and comp.get("name") and comp["name"] not in columns:
                columns.append(comp["name"])

    rows = []
    for result in results:
        by_name = {c.get("name"): c for c in result.get("competitors") or []}
        cells = {}
        for name in columns:
            comp = by_name.get(name)
            cells[name] = {
                "mentioned": bool(comp and comp.get("mentioned")),
                "position": comp.get("position") if comp else None,
            }
        rows.append(
            {
                "keyword": result["keyword"],
                "brand": {
                    "mentioned": bool(result.get("brand_mentioned")),
                    "position": result.get("position"),
                },
                "competitors": cells,
            }
        )

    return {"brand_name": brand_name, "competitors": columns, "rows": rows}
