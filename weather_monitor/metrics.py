from prometheus_client import Counter, Gauge

readings_ingested = Counter(
    "readings_ingested_total", "Total readings appended to city histories."
)
fetch_failures = Counter(
    "fetch_failures_total", "Total per-city fetch failures.", ["reason"]
)
poll_cycles = Counter("poll_cycles_total", "Total polling cycles executed.")
summary_recomputes = Counter(
    "summary_recomputes_total", "Total daily summary rebuilds."
)
alerts_emitted = Counter("alerts_emitted_total", "Total alerts emitted.", ["type"])
alert_log_size = Gauge("alert_log_size", "Alerts currently held in the alert log.")
unacknowledged_alerts = Gauge(
    "unacknowledged_alerts", "Alerts in the log not yet acknowledged."
)
