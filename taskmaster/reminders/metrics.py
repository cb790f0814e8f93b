from prometheus_client import Counter


occurrences_expanded_total = Counter(
    "reminder_occurrences_expanded_total",
    "Total occurrences produced by recurrence expansion",
    ["cadence"],
)

scheduler_sweeps_total = Counter(
    "reminder_scheduler_sweeps_total",
    "Total periodic expansion sweeps",
)

jobs_scheduled_total = Counter(
    "reminder_jobs_scheduled_total",
    "Total delivery jobs scheduled",
)

jobs_deduplicated_total = Counter(
    "reminder_jobs_deduplicated_total",
    "Schedule requests that matched an already pending job",
)

jobs_cancelled_total = Counter(
    "reminder_jobs_cancelled_total",
    "Total pending delivery jobs cancelled",
)

jobs_failed_total = Counter(
    "reminder_jobs_failed_total",
    "Total delivery jobs whose handler raised",
)

reminders_dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total successful push dispatches",
)

reminders_dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total failed push dispatches",
)
