import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler, SysLogHandler
from typing import List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from opentelemetry.trace import Status, StatusCode
from starlette.requests import ClientDisconnect

from nel_collector import telemetry
from nel_collector.config import Settings, load_settings
from nel_collector.crud.records import RecordWriter
from nel_collector.errors import ReportParseError, StoreWriteError
from nel_collector.models.record import NelRecord
from nel_collector.normalize import normalize

APP_NAME = "nel-collector"

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


logger = logging.getLogger(APP_NAME)


def _system_log_handler() -> logging.Handler:
    try:
        from systemd.journal import JournalHandler

        return JournalHandler(SYSLOG_IDENTIFIER=APP_NAME)
    except ImportError:  # pragma: no cover - fallback when systemd is unavailable
        pass
    try:
        return SysLogHandler(address="/dev/log")
    except OSError:
        return logging.StreamHandler()


def configure_logging(
    log_file: str, log_payloads: bool = False, target: logging.Logger = logger
) -> None:
    """Errors go to a rotating file; everything at the logger level goes to
    the journal (or syslog, or stderr). ``log_payloads`` enables DEBUG."""
    if target.handlers:
        return
    level = logging.DEBUG if log_payloads else logging.INFO
    target.setLevel(level)

    file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, delay=True)
    file_handler.setLevel(logging.ERROR)
    system_handler = _system_log_handler()
    system_handler.setLevel(level)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    for handler in (file_handler, system_handler):
        handler.setFormatter(formatter)
        target.addHandler(handler)


def _client_ip(req: Request, number_of_proxies: int) -> str:
    """Address of the client that sent the report.

    With ``number_of_proxies`` > 0 the N-th X-Forwarded-For entry from the
    end is trusted, provided the header lists at least N addresses. In every
    other case the directly connected peer is used.
    """
    if number_of_proxies > 0:
        xff = req.headers.get("x-forwarded-for")
        if xff:
            addresses = xff.split(",")
            if len(addresses) >= number_of_proxies:
                return addresses[len(addresses) - number_of_proxies].strip()
    return req.client.host if req.client else ""


async def _read_body(req: Request, limit: int) -> bytes:
    """Read at most about ``limit`` bytes; stops as soon as the limit is hit."""
    body = bytearray()
    async for chunk in req.stream():
        body.extend(chunk)
        if len(body) >= limit:
            break
    return bytes(body)


class NelHandler:
    """Serves NEL POSTs: read, parse, enrich, write."""

    def __init__(self, settings: Settings, hostname: Optional[str] = None) -> None:
        self.settings = settings
        self.hostname = hostname if hostname is not None else socket.gethostname()

    def enrich(self, records: List[NelRecord], req: Request) -> List[NelRecord]:
        client_ip = _client_ip(req, self.settings.number_of_proxies)
        for record in records:
            record.client_ip = client_ip
            record.hostname = self.hostname
            # Unknown body fields are dropped unless explicitly allowed.
            if not self.settings.allow_additional_body:
                record.additional_body = {}
        return records

    async def __call__(self, req: Request, writer: RecordWriter) -> Response:
        start = time.perf_counter()
        telemetry.count(telemetry.requests)

        with telemetry.tracer.start_as_current_span("nel.ingest") as span:
            span.add_event("Received request")

            def fail(status: int, msg: str, err: Optional[BaseException] = None) -> Response:
                if err is not None:
                    span.record_exception(err)
                span.set_status(Status(StatusCode.ERROR, msg))
                telemetry.count(telemetry.status_codes, attributes={"status_code": str(status)})
                telemetry.observe(telemetry.request_latency, time.perf_counter() - start)
                return PlainTextResponse(msg + "\n", status_code=status)

            if req.method != "POST":
                return fail(405, "POST required")

            limit = self.settings.maximum_bytes
            try:
                body = await asyncio.wait_for(
                    _read_body(req, limit), timeout=self.settings.read_timeout
                )
            except (ClientDisconnect, asyncio.TimeoutError) as exc:
                telemetry.count(telemetry.read_errors)
                logger.info("Unable to read request body: %s", type(exc).__name__)
                return fail(400, "Read error", exc)

            telemetry.observe(telemetry.request_bytes, len(body))

            if len(body) >= limit:
                telemetry.count(telemetry.truncated_errors)
                logger.info("Message truncated at %d bytes", len(body))
                return fail(413, "Too big")

            try:
                records = normalize(body)
            except ReportParseError as exc:
                telemetry.count(telemetry.parse_errors)
                logger.info("Unable to parse JSON: %s", exc)
                if self.settings.log_payloads:
                    logger.debug("Unparseable payload: %r", body)
                return fail(400, "Parse Error", exc)

            self.enrich(records, req)

            telemetry.observe(telemetry.request_entries, len(records))
            span.add_event(f"Writing {len(records)} records to DB")

            try:
                await asyncio.wait_for(writer.write(records), timeout=self.settings.write_timeout)
            except (StoreWriteError, asyncio.TimeoutError) as exc:
                logger.error("Unable to write to DB: %s", str(exc) or type(exc).__name__)
                return fail(500, "DB Error", exc)

            span.set_status(Status(StatusCode.OK))
            telemetry.count(telemetry.status_codes, attributes={"status_code": "200"})
            telemetry.observe(telemetry.request_latency, time.perf_counter() - start)
            return PlainTextResponse("OK\n")


def create_app(settings: Optional[Settings] = None, writer: Optional[RecordWriter] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_file, settings.log_payloads)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.writer is None:
            app.state.writer = RecordWriter.from_settings(settings)
        await app.state.writer.connect()
        try:
            yield
        finally:
            await app.state.writer.close()

    app = FastAPI(title=APP_NAME, lifespan=lifespan)
    app.state.settings = settings
    app.state.writer = writer
    handler = NelHandler(settings)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.api_route(settings.path, methods=_ALL_METHODS, include_in_schema=False)
    async def collect(request: Request) -> Response:
        return await handler(request, app.state.writer)

    return app


app = create_app()
