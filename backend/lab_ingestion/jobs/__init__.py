"""Background jobs for RQ workers."""

from lab_ingestion.jobs.lab_import import enqueue_lab_import, import_lab_results

__all__ = ["import_lab_results", "enqueue_lab_import"]
