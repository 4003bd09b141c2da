from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class NelReport(BaseModel):
    """A NEL report as browsers POST it.

    Top-level fields are checked strictly; ``body`` is left open.
    """

    model_config = ConfigDict(
        strict=True,
        json_schema_extra={
            "example": {
                "age": 0,
                "type": "network-error",
                "url": "https://example.com/",
                "body": {
                    "sampling_fraction": 1.0,
                    "server_ip": "192.0.2.1",
                    "protocol": "http/1.1",
                    "method": "GET",
                    "request_headers": {},
                    "response_headers": {"ETag": ["01234abcd"]},
                    "status_code": 200,
                    "elapsed_time": 1392,
                    "phase": "application",
                    "type": "ok",
                },
            }
        },
    )

    # BIGINT column range.
    age: Optional[int] = Field(default=None, ge=-(2**63), le=2**63 - 1)
    type: Optional[str] = None
    url: Optional[str] = None
    body: Optional[Dict[str, Any]] = None
