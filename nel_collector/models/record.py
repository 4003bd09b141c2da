from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


# Destination table column order.
COLUMNS: Tuple[str, ...] = (
    "timestamp",
    "age",
    "type",
    "url",
    "hostname",
    "client_ip",
    "sampling_fraction",
    "elapsed_time",
    "phase",
    "body_type",
    "server_ip",
    "protocol",
    "referrer",
    "method",
    "status_code",
    "request_headers",
    "response_headers",
    "additional_body",
)

JSON_COLUMNS: Tuple[str, ...] = ("request_headers", "response_headers", "additional_body")


@dataclass
class NelRecord:
    """One normalized NEL report, ready to be stored as a table row.

    Most fields are hoisted out of the report's ``body``. ``body_type`` holds
    ``body.type`` and is unrelated to the outer report ``type``. Whatever the
    normalizer did not recognise stays in ``additional_body``.
    """

    timestamp: datetime
    age: int = 0
    type: str = ""
    url: str = ""
    hostname: str = ""
    client_ip: str = ""
    sampling_fraction: float = 0.0
    elapsed_time: float = 0.0
    phase: str = ""
    body_type: str = ""
    server_ip: str = ""
    protocol: str = ""
    referrer: str = ""  # NEL spelling, not the HTTP header's
    method: str = ""
    status_code: int = 0
    request_headers: Optional[Dict[str, Any]] = None
    response_headers: Optional[Dict[str, Any]] = None
    additional_body: Dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in COLUMNS}
