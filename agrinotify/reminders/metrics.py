from prometheus_client import Counter


scheduler_scans_total = Counter(
    "reminder_scheduler_scans_total",
    "Total due-scan cycles that ran (not throttled)",
)

scheduler_throttled_total = Counter(
    "reminder_scheduler_throttled_total",
    "Total due-scan invocations skipped by the throttle marker",
)

reminders_scheduled_total = Counter(
    "reminders_scheduled_total",
    "Total reminder occurrences persisted",
    ["source"],
)

reminders_dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total reminders marked sent",
)

reminders_dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total reminders marked failed",
    ["reason"],
)

endpoints_pruned_total = Counter(
    "push_endpoints_pruned_total",
    "Total push endpoints removed from the registry",
    ["reason"],
)

broadcast_runs_total = Counter(
    "alert_broadcast_runs_total",
    "Total fan-out alert runs",
    ["alert_class"],
)

broadcast_dispatch_total = Counter(
    "alert_broadcast_dispatch_total",
    "Total fan-out dispatch attempts",
    ["alert_class", "outcome"],
)
