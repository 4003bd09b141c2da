import json
import logging
import time
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from nel_collector import telemetry
from nel_collector.config import Settings
from nel_collector.errors import SerializationError, StoreConnectError, StoreWriteError
from nel_collector.models.record import JSON_COLUMNS, NelRecord


logger = logging.getLogger(__name__)


def records_table(name: str, metadata: Optional[MetaData] = None) -> Table:
    """Describe the destination table. ``schema.table`` names pick a schema."""
    schema, _, table_name = name.rpartition(".")
    return Table(
        table_name,
        metadata if metadata is not None else MetaData(),
        Column("timestamp", DateTime(timezone=True)),
        Column("age", BigInteger),
        Column("type", String(255)),
        Column("url", Text),
        Column("hostname", String(255)),
        Column("client_ip", String(64)),
        Column("sampling_fraction", Float),
        Column("elapsed_time", Float),
        Column("phase", String(64)),
        Column("body_type", String(255)),
        Column("server_ip", String(64)),
        Column("protocol", String(64)),
        Column("referrer", Text),
        Column("method", String(32)),
        Column("status_code", Integer),
        Column("request_headers", Text),
        Column("response_headers", Text),
        Column("additional_body", Text),
        schema=schema or None,
    )


def _serialize(record: NelRecord, index: int) -> Dict[str, Any]:
    row = record.as_row()
    for column in JSON_COLUMNS:
        try:
            row[column] = json.dumps(
                row[column], separators=(",", ":"), ensure_ascii=False, allow_nan=False
            )
        except (TypeError, ValueError, RecursionError) as exc:
            raise SerializationError(
                f"Unable to marshal {column} of record {index}", index=index, column=column
            ) from exc
    return row


class RecordWriter:
    """Writes batches of NelRecords to one table, one transaction per batch."""

    def __init__(
        self,
        table_name: str,
        url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        if not table_name:
            raise RuntimeError("NEL_DB_TABLE is required")
        if url is None and engine is None:
            raise RuntimeError("either a database URL or an engine is required")
        self.table = records_table(table_name)
        self._url = url
        self._engine = engine
        self._insert = insert(self.table)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecordWriter":
        return cls(settings.db_table, url=settings.database_url())

    async def connect(self) -> None:
        """Create the engine if needed and check that the database answers."""
        try:
            if self._engine is None:
                self._engine = create_async_engine(
                    self._url, pool_pre_ping=True, hide_parameters=True
                )
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            raise StoreConnectError(f"Unable to connect to database: {exc}") from exc
        logger.info("Connected to database, writing to table %s", self.table.fullname)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def write(self, records: Sequence[NelRecord]) -> None:
        """Insert ``records`` atomically, in order.

        Raises :class:`SerializationError` or :class:`StoreWriteError`; in
        both cases the transaction was rolled back and no row was stored.
        """
        if not records:
            return
        if self._engine is None:
            raise StoreWriteError("Writer is not connected", phase="begin")

        tx_start = time.perf_counter()
        phase = "begin"
        index: Optional[int] = None
        try:
            async with self._engine.begin() as conn:
                phase = "insert"
                for index, record in enumerate(records):
                    insert_start = time.perf_counter()
                    row = _serialize(record, index)
                    await conn.execute(self._insert, row)
                    # Counted before commit; a failed commit leaves this high.
                    telemetry.count(telemetry.inserted_rows)
                    telemetry.observe(telemetry.insert_latency, time.perf_counter() - insert_start)
                phase, index = "commit", None
        except SerializationError as exc:
            telemetry.count(telemetry.db_marshal_errors)
            logger.error("%s: %s", exc, type(exc.__cause__).__name__)
            raise
        except (SQLAlchemyError, OSError, OverflowError, ValueError) as exc:
            # Drivers raise OverflowError/ValueError for out-of-range parameters.
            telemetry.count(telemetry.db_errors)
            where = f" at record {index}" if index is not None else ""
            logger.error("Database %s failed%s: %s", phase, where, exc)
            raise StoreWriteError(f"Unable to {phase}{where}: {exc}", phase=phase, index=index) from exc

        telemetry.observe(telemetry.transaction_latency, time.perf_counter() - tx_start)
        logger.debug("Committed %d records", len(records))
