import pytest
from sqlalchemy import text

from jig_indexer.database import Database, LedgerPersistenceError


@pytest.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await database.connect()
    await database.create_tables()
    yield database
    await database.disconnect()


async def test_ledger_document_is_overwritten(database):
    assert await database.load_ledger("rexxie") is None

    await database.save_ledger("rexxie", {"nfts": {"1": {"owner": "1Alice"}}, "queue": []})
    await database.save_ledger("rexxie", {"nfts": {"1": {"owner": "1Bob"}, "2": {}}, "queue": ["t"]})

    document = await database.load_ledger("rexxie")
    assert document["nfts"]["1"]["owner"] == "1Bob"
    assert document["queue"] == ["t"]


async def test_delete_ledger(database):
    await database.save_ledger("rexxie", {"nfts": {}})

    assert await database.delete_ledger("rexxie")
    assert not await database.delete_ledger("rexxie")
    assert await database.load_ledger("rexxie") is None


async def test_spend_map_is_written_once(database):
    first = {"address": "1Alice", "spends": {"a:0": "b"}, "tx_count": 2}
    second = {"address": "1Alice", "spends": {}, "tx_count": 9}

    assert await database.save_spend_map("1Alice", first)
    assert not await database.save_spend_map("1Alice", second)

    assert (await database.load_spend_map("1Alice"))["spends"] == {"a:0": "b"}
    maps = await database.list_spend_maps()
    assert [(m["address"], m["tx_count"]) for m in maps] == [("1Alice", 2)]
    assert await database.load_spend_map("1Bob") is None


def test_postgres_url_uses_async_driver():
    database = Database("postgresql://user:pw@localhost/ledger")

    assert database.database_url.startswith("postgresql+asyncpg://")


async def test_failed_ledger_write_raises_persistence_error(database):
    async with database.engine.begin() as conn:
        await conn.execute(text("DROP TABLE ledger_documents"))

    with pytest.raises(LedgerPersistenceError):
        await database.save_ledger("rexxie", {"nfts": {}})
