import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import MetaData, func, select
from sqlalchemy.ext.asyncio import create_async_engine

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from nel_collector import telemetry
from nel_collector.crud.records import RecordWriter, records_table
from nel_collector.errors import SerializationError, StoreConnectError, StoreWriteError
from nel_collector.models.record import COLUMNS, NelRecord


TABLE = "nel_reports"


def _sample_record(**overrides: object) -> NelRecord:
    data = {
        "timestamp": datetime(2025, 9, 16, 12, tzinfo=timezone.utc),
        "age": 0,
        "type": "network-error",
        "url": "https://example.com/",
        "hostname": "collector-1",
        "client_ip": "198.51.100.7",
        "sampling_fraction": 1.0,
        "elapsed_time": 1392.0,
        "phase": "application",
        "body_type": "ok",
        "server_ip": "192.0.2.1",
        "protocol": "http/1.1",
        "method": "GET",
        "status_code": 200,
        "request_headers": {},
        "response_headers": {"ETag": ["01234abcd"]},
        "additional_body": {},
    }
    data.update(overrides)
    return NelRecord(**data)


async def _engine_with_table(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'nel.db'}")
    metadata = MetaData()
    table = records_table(TABLE, metadata)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, table


async def _rows(engine, table):
    async with engine.connect() as conn:
        result = await conn.execute(select(table))
        return [dict(row._mapping) for row in result]


async def _count(engine, table):
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(table))).scalar_one()


def test_records_table_has_every_column():
    table = records_table(TABLE)

    assert tuple(table.columns.keys()) == COLUMNS
    assert table.schema is None


def test_records_table_accepts_schema_prefix():
    table = records_table("analytics.nel_reports")

    assert table.name == "nel_reports"
    assert table.schema == "analytics"


def test_writer_requires_table_name():
    with pytest.raises(RuntimeError):
        RecordWriter("", url="sqlite+aiosqlite://")


def test_write_commits_all_rows_in_order(tmp_path):
    async def scenario():
        engine, table = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        records = [
            _sample_record(url="https://a.example/"),
            _sample_record(url="https://b.example/", additional_body={"x": [1, "two"]}),
            _sample_record(url="https://c.example/", request_headers=None),
        ]
        await writer.write(records)
        rows = await _rows(engine, table)
        await engine.dispose()
        return rows

    rows = asyncio.run(scenario())

    assert [row["url"] for row in rows] == [
        "https://a.example/",
        "https://b.example/",
        "https://c.example/",
    ]
    assert rows[0]["status_code"] == 200
    assert rows[0]["body_type"] == "ok"
    assert json.loads(rows[0]["response_headers"]) == {"ETag": ["01234abcd"]}
    assert rows[0]["additional_body"] == "{}"
    assert json.loads(rows[1]["additional_body"]) == {"x": [1, "two"]}
    assert rows[2]["request_headers"] == "null"


@pytest.mark.parametrize("bad_index", [1, 2])
def test_serialization_failure_rolls_back_whole_batch(tmp_path, bad_index):
    async def scenario():
        engine, table = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        records = [_sample_record() for _ in range(3)]
        records[bad_index].additional_body = {"unencodable": object()}
        with pytest.raises(SerializationError) as exc_info:
            await writer.write(records)
        committed = await _count(engine, table)
        await engine.dispose()
        return exc_info.value, committed

    error, committed = asyncio.run(scenario())

    assert committed == 0
    assert error.index == bad_index
    assert error.column == "additional_body"
    assert isinstance(error.__cause__, TypeError)


def test_non_finite_float_in_json_column_is_a_serialization_error(tmp_path):
    async def scenario():
        engine, table = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        records = [_sample_record(request_headers={"x": float("nan")})]
        with pytest.raises(SerializationError) as exc_info:
            await writer.write(records)
        await engine.dispose()
        return exc_info.value

    error = asyncio.run(scenario())

    assert error.column == "request_headers"
    assert error.phase == "serialize"


def test_missing_table_raises_store_write_error(tmp_path):
    async def scenario():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        writer = RecordWriter(TABLE, engine=engine)
        with pytest.raises(StoreWriteError) as exc_info:
            await writer.write([_sample_record()])
        await engine.dispose()
        return exc_info.value

    error = asyncio.run(scenario())

    assert error.phase == "insert"
    assert error.index == 0
    assert error.__cause__ is not None


def test_empty_batch_does_not_open_transaction():
    engine = MagicMock()
    writer = RecordWriter(TABLE, engine=engine)

    asyncio.run(writer.write([]))

    engine.begin.assert_not_called()


def test_write_before_connect_fails():
    writer = RecordWriter(TABLE, url="sqlite+aiosqlite://")

    with pytest.raises(StoreWriteError) as exc_info:
        asyncio.run(writer.write([_sample_record()]))

    assert exc_info.value.phase == "begin"


def test_connect_pings_injected_engine(tmp_path):
    async def scenario():
        engine, _ = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        await writer.connect()
        await writer.close()

    asyncio.run(scenario())


def test_connect_with_unknown_driver_raises():
    writer = RecordWriter(TABLE, url="nosuchdriver://localhost/nel")

    with pytest.raises(StoreConnectError):
        asyncio.run(writer.connect())


def test_inserted_rows_are_counted(tmp_path, monkeypatch):
    inserted = MagicMock()
    tx_latency = MagicMock()
    monkeypatch.setattr(telemetry, "inserted_rows", inserted)
    monkeypatch.setattr(telemetry, "transaction_latency", tx_latency)

    async def scenario():
        engine, _ = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        await writer.write([_sample_record(), _sample_record()])
        await engine.dispose()

    asyncio.run(scenario())

    assert inserted.add.call_count == 2
    tx_latency.record.assert_called_once()


def test_broken_metrics_do_not_affect_writes(tmp_path, monkeypatch):
    broken = MagicMock()
    broken.add.side_effect = RuntimeError("exporter down")
    monkeypatch.setattr(telemetry, "inserted_rows", broken)

    async def scenario():
        engine, table = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        await writer.write([_sample_record()])
        committed = await _count(engine, table)
        await engine.dispose()
        return committed

    assert asyncio.run(scenario()) == 1


def test_serialization_failure_is_logged_without_payload(tmp_path, caplog):
    async def scenario():
        engine, _ = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        record = _sample_record(additional_body={"secret-token": object()})
        with pytest.raises(SerializationError):
            await writer.write([record])
        await engine.dispose()

    with caplog.at_level("ERROR", logger="nel_collector.crud.records"):
        asyncio.run(scenario())

    assert any("additional_body" in message for message in caplog.messages)
    assert not any("secret-token" in message for message in caplog.messages)


def test_driver_overflow_is_wrapped_and_rolled_back(tmp_path, monkeypatch):
    db_errors = MagicMock()
    monkeypatch.setattr(telemetry, "db_errors", db_errors)

    async def scenario():
        engine, table = await _engine_with_table(tmp_path)
        writer = RecordWriter(TABLE, engine=engine)
        records = [_sample_record(), _sample_record(status_code=10**30)]
        with pytest.raises(StoreWriteError) as exc_info:
            await writer.write(records)
        committed = await _count(engine, table)
        await engine.dispose()
        return exc_info.value, committed

    error, committed = asyncio.run(scenario())

    assert committed == 0
    assert error.phase == "insert"
    assert error.index == 1
    assert error.__cause__ is not None
    db_errors.add.assert_called_once()
