"""OpenTelemetry instruments shared by the endpoint and the writer.

Only the API is used here; exporters and providers are wired by the
deployment. Without them every instrument is a no-op.
"""

import logging
from typing import Any, Mapping, Optional

from opentelemetry import metrics, trace


logger = logging.getLogger(__name__)

_METER_NAME = "nel_collector"

meter = metrics.get_meter(_METER_NAME)
tracer = trace.get_tracer(_METER_NAME)

# HTTP
requests = meter.create_counter(
    "nel_collector_requests",
    unit="1",
    description="The total number of received HTTP requests",
)
read_errors = meter.create_counter(
    "nel_collector_read_errors",
    unit="1",
    description="The number of HTTP requests that failed with read errors",
)
truncated_errors = meter.create_counter(
    "nel_collector_truncated_errors",
    unit="1",
    description="The number of HTTP requests rejected for being too large",
)
parse_errors = meter.create_counter(
    "nel_collector_parse_errors",
    unit="1",
    description="The number of HTTP requests that failed due to JSON parsing errors",
)
status_codes = meter.create_counter(
    "nel_collector_status_codes",
    unit="1",
    description="The number of each HTTP status code",
)
request_latency = meter.create_histogram(
    "nel_collector_request_latency_seconds",
    unit="s",
    description="Request latency",
)
request_bytes = meter.create_histogram(
    "nel_collector_request_size_bytes",
    unit="By",
    description="Request size",
)
request_entries = meter.create_histogram(
    "nel_collector_request_size_entries",
    unit="1",
    description="The number of records per request",
)

# Database
inserted_rows = meter.create_counter(
    "nel_collector_inserted_rows",
    unit="1",
    description="The number of rows inserted into the database",
)
db_errors = meter.create_counter(
    "nel_collector_db_errors",
    unit="1",
    description="The number of database errors",
)
db_marshal_errors = meter.create_counter(
    "nel_collector_db_marshal_errors",
    unit="1",
    description="The number of errors marshaling JSON columns for the database",
)
insert_latency = meter.create_histogram(
    "nel_collector_insert_latency_seconds",
    unit="s",
    description="Single INSERT latency",
)
transaction_latency = meter.create_histogram(
    "nel_collector_transaction_latency_seconds",
    unit="s",
    description="Whole transaction latency",
)


def count(counter: Any, amount: int = 1, attributes: Optional[Mapping[str, str]] = None) -> None:
    """Best-effort counter increment; never raises."""
    try:
        counter.add(amount, attributes=attributes)
    except Exception:
        logger.debug("Failed to record counter", exc_info=True)


def observe(histogram: Any, amount: float, attributes: Optional[Mapping[str, str]] = None) -> None:
    """Best-effort histogram sample; never raises."""
    try:
        histogram.record(amount, attributes=attributes)
    except Exception:
        logger.debug("Failed to record histogram sample", exc_info=True)
