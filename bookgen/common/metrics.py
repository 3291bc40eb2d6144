from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float("inf"))
)

GENERATION_TRANSITIONS = Counter(
    "generation_transitions_total", "Generation queue transitions", ["status"]
)
GENERATION_DURATION = Histogram(
    "generation_duration_seconds",
    "Wall time of one order item generation",
    ["outcome"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 90.0, 120.0, 180.0, float("inf"))
)
MONITOR_TICKS = Counter("order_monitor_ticks_total", "Order monitor ticks")
MONITOR_TICK_ERRORS = Counter("order_monitor_tick_errors_total", "Order monitor ticks that raised")
STORAGE_ALERTS = Counter(
    "storage_refresh_alerts_total", "Orders whose URL refresh failed past the alert threshold"
)
