import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

log = logging.getLogger("quotebridge.metrics")

# ----------------------------
# Prometheus metrics
# ----------------------------
DOCUMENTS_PUBLISHED = Counter(
    "quotebridge_documents_published_total",
    "Quote documents sent to the endpoint",
    ["dataset"],
)
RECORDS_DROPPED = Counter(
    "quotebridge_records_dropped_total",
    "Ticks or rows that were not published",
    ["reason"],
)
TRANSPORT_ERRORS = Counter(
    "quotebridge_transport_errors_total",
    "Endpoint session failures",
    ["operation"],
)
QUEUE_DEPTH = Gauge(
    "quotebridge_ingest_queue_depth",
    "Ticks waiting in the ingestion queue",
)
DATASETS_PUBLISHING = Gauge(
    "quotebridge_datasets_publishing",
    "Datasets with a granted publish permission",
)
PUBLISH_LATENCY = Histogram(
    "quotebridge_publish_latency_seconds",
    "Time spent normalizing and sending one record",
)


def start_metrics_server(port: int):
    if port <= 0:
        return
    start_http_server(port)
    log.info("Prometheus metrics exposed on :%d/metrics", port)
