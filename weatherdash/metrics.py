from prometheus_client import Counter, Gauge, Histogram

job_runs = Counter(
    "job_runs_total", "Scheduled job runs by job and outcome.", ["job", "outcome"]
)
job_duration = Histogram(
    "job_duration_seconds", "Wall time of scheduled job runs.", ["job"]
)
job_overlaps_skipped = Counter(
    "job_overlaps_skipped_total", "Job ticks skipped because the job was still running.", ["job"]
)
jobs_running = Gauge("jobs_running", "Job runs currently in flight.")
readings_stored = Counter("readings_stored_total", "Raw weather readings stored.")
readings_soft_deleted = Counter(
    "readings_soft_deleted_total", "Raw readings marked deleted by retention cleanup."
)
readings_purged = Counter(
    "readings_purged_total", "Soft-deleted raw readings permanently removed."
)
summaries_computed = Counter(
    "summaries_computed_total", "Dashboard summaries computed and upserted."
)
alerts_emitted = Counter("alerts_emitted_total", "Total alerts emitted.")
alerts_suppressed = Counter(
    "alerts_suppressed_total", "Alerts suppressed as duplicates inside the cooldown window."
)
notification_failures = Counter(
    "notification_failures_total", "Alert notifications that failed to deliver."
)
