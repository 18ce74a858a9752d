from datetime import date, datetime
from typing import Any, Dict, Optional
from vcheck.domain.models import utc_now
from vcheck.infrastructure.checker import MediaChecker
from vcheck.infrastructure.job_store import JobStore


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def report_filename(today: Optional[date] = None) -> str:
    return f"media-check-report-{(today or date.today()).isoformat()}.json"


def build_report(store: JobStore, checker: MediaChecker) -> Dict[str, Any]:
    """Full job history of every file plus aggregate counters, JSON-ready."""
    stats = store.get_job_stats().model_dump()
    stats["totalFiles"] = store.get_file_stats().total

    files = []
    for entry in store.get_all_files_with_jobs():
        files.append({
            "path": entry.file.path,
            "filename": entry.file.filename,
            "durationSeconds": entry.file.duration_seconds,
            "jobs": [
                {
                    "mode": job.mode.value,
                    "status": job.status.value,
                    "error": job.error_message,
                    "durationSeconds": job.duration_seconds,
                    "createdAt": _iso(job.created_at),
                    "completedAt": _iso(job.completed_at),
                }
                for job in entry.jobs
            ],
        })

    return {
        "generatedAt": utc_now().isoformat(),
        "stats": stats,
        "commands": checker.command_summary(),
        "files": files,
    }
