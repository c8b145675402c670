"""Prometheus metrics for the price tracker."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("price_tracker", "Price tracker application info")
app_info.info({"version": "0.1.0", "name": "price-tracker"})

# Cycle metrics
scrape_cycles_total = Counter(
    "scrape_cycles_total",
    "Total number of scrape cycles",
    ["status"],
)

scrape_cycle_duration_seconds = Histogram(
    "scrape_cycle_duration_seconds",
    "Wall time of a full scrape cycle",
    buckets=[10, 30, 60, 120, 300, 600, 1800, 3600, 7200],
)

scrape_last_cycle_timestamp = Gauge(
    "scrape_last_cycle_timestamp",
    "Timestamp of the last finished scrape cycle",
)

# Stage metrics
scrape_items_total = Counter(
    "scrape_items_total",
    "Units of work processed by a pipeline stage",
    ["stage", "status"],
)

pool_in_flight = Gauge(
    "pool_in_flight",
    "Units currently holding a pool permit",
    ["pool"],
)

# Catalog metrics
products_created_total = Counter(
    "products_created_total",
    "Products created on first sighting",
)

price_observations_total = Counter(
    "price_observations_total",
    "Price rows appended",
    ["store_id"],
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Notification deliveries",
    ["channel", "status"],
)


def record_cycle(status: str, duration_seconds: float) -> None:
    """Record a finished (or aborted) cycle."""
    scrape_cycles_total.labels(status=status).inc()
    scrape_cycle_duration_seconds.observe(duration_seconds)
    scrape_last_cycle_timestamp.set_to_current_time()


def record_item(stage: str, status: str) -> None:
    """Record one unit of work leaving a stage."""
    scrape_items_total.labels(stage=stage, status=status).inc()


def record_price_observation(store_id: int) -> None:
    price_observations_total.labels(store_id=str(store_id)).inc()


def record_notification(channel: str, status: str) -> None:
    notifications_total.labels(channel=channel, status=status).inc()
