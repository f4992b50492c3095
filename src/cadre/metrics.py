from prometheus_client import Counter, Gauge, Histogram

metric_catalog_images = Gauge(
    "catalog_images", "Number of images in the current catalog snapshot"
)
metric_catalog_last_scan_timestamp = Gauge(
    "catalog_last_scan_timestamp",
    "Timestamp of the last completed catalog scan",
)
metric_scans_total = Counter(
    "catalog_scans_total", "Total number of catalog scans", ["result"]
)
metric_scan_duration_seconds = Histogram(
    "catalog_scan_duration_seconds", "Time it took to scan the photo directory"
)
metric_extraction_failures_total = Counter(
    "extraction_failures_total",
    "Total number of image files whose metadata could not be read",
)
metric_metadata_reused_total = Counter(
    "metadata_reused_total",
    "Total number of image files whose metadata was reused from the previous scan",
)
metric_watcher_events_total = Counter(
    "watcher_events_total", "Filesystem events that requested a rescan", ["outcome"]
)
metric_weather_fetches_total = Counter(
    "weather_fetches_total", "Remote weather API calls", ["result"]
)
metric_sync_downloads_total = Counter(
    "sync_downloads_total", "Files downloaded from the remote photo library"
)
