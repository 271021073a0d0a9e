import pytest

from claimgraph.errors import RowConflictError, RowNotFoundError, TransactionError
from claimgraph.rowstore import Contains, Equal, MemoryRowStore, RowQuery, strip_transport_fields


@pytest.fixture
def rows():
    return MemoryRowStore({"claims": {"subject": "entities"}})


class TestCrud:
    """Plain row operations outside transactions."""

    @pytest.mark.asyncio
    async def test_create_get_update_delete(self, rows):
        created = await rows.create_row("entities", {"label": "Paris"}, permissions=['update("team:t")'])
        fetched = await rows.get_row("entities", created.id)
        assert fetched.data == {"label": "Paris"}
        assert fetched.permissions == ['update("team:t")']

        merged = await rows.update_row("entities", created.id, {"description": "capital"})
        assert merged.data == {"label": "Paris", "description": "capital"}
        assert merged.updated_at > merged.created_at

        replaced = await rows.update_row("entities", created.id, {"label": "Lyon"}, replace=True)
        assert replaced.data == {"label": "Lyon"}
        assert replaced.permissions == ['update("team:t")']

        await rows.delete_row("entities", created.id)
        with pytest.raises(RowNotFoundError):
            await rows.get_row("entities", created.id)

    @pytest.mark.asyncio
    async def test_explicit_id_conflict(self, rows):
        await rows.create_row("entities", {"label": "a"}, row_id="e1")
        with pytest.raises(RowConflictError):
            await rows.create_row("entities", {"label": "b"}, row_id="e1")

    @pytest.mark.asyncio
    async def test_missing_rows(self, rows):
        with pytest.raises(RowNotFoundError):
            await rows.update_row("entities", "nope", {"label": "x"})
        with pytest.raises(RowNotFoundError):
            await rows.delete_row("entities", "nope")

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, rows):
        created = await rows.create_row("entities", {"aliases": ["a"]})
        created.data["aliases"].append("b")
        assert (await rows.get_row("entities", created.id)).data == {"aliases": ["a"]}


class TestQueries:
    """Filters, ordering, pagination and relation expansion."""

    @pytest.mark.asyncio
    async def test_filters(self, rows):
        await rows.create_row("entities", {"label": "Paris", "aliases": ["City of Light"]}, row_id="p")
        await rows.create_row("entities", {"label": "Lyon", "aliases": []}, row_id="l")
        await rows.create_row("entities", {"label": "Marseille", "description": "port"}, row_id="m")

        eq = await rows.list_rows("entities", RowQuery().where_equal("label", "Lyon"))
        assert [r.id for r in eq.rows] == ["l"]

        substring = await rows.list_rows("entities", RowQuery().where_contains("label", "ar"))
        assert {r.id for r in substring.rows} == {"p", "m"}

        membership = await rows.list_rows("entities", RowQuery().where_contains("aliases", "City of Light"))
        assert [r.id for r in membership.rows] == ["p"]

        either = await rows.list_rows(
            "entities", RowQuery().where_any(Equal("label", "Lyon"), Contains("description", "port"))
        )
        assert {r.id for r in either.rows} == {"l", "m"}

        many = await rows.list_rows("entities", RowQuery().where_equal("label", ["Lyon", "Paris"]))
        assert {r.id for r in many.rows} == {"l", "p"}

    @pytest.mark.asyncio
    async def test_order_and_pagination(self, rows):
        for i in range(5):
            await rows.create_row("entities", {"label": f"e{i}"}, row_id=f"e{i}")

        newest = await rows.list_rows("entities", RowQuery().order_desc("$createdAt").limit(2))
        assert [r.id for r in newest.rows] == ["e4", "e3"]
        assert newest.total == 5

        page = await rows.list_rows("entities", RowQuery().order_asc("label").limit(2).offset(2))
        assert [r.id for r in page.rows] == ["e2", "e3"]

        everything = await rows.list_all("entities", RowQuery().order_asc("$id"), page_size=2)
        assert [r.id for r in everything] == ["e0", "e1", "e2", "e3", "e4"]

    @pytest.mark.asyncio
    async def test_relation_expansion_and_projection(self, rows):
        await rows.create_row("entities", {"label": "Paris"}, row_id="p")
        await rows.create_row("claims", {"subject": "p", "datatype": "string"}, row_id="c1")
        await rows.create_row("claims", {"subject": "gone", "datatype": "string"}, row_id="c2")

        out = await rows.list_rows("claims", RowQuery().select("*", "subject.*").order_asc("$id"))
        assert out.rows[0].expanded["subject"].data["label"] == "Paris"
        assert out.rows[1].expanded["subject"] is None

        slim = await rows.get_row("claims", "c1", select=("subject",))
        assert slim.data == {"subject": "p"}

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError):
            RowQuery().limit(-1)


class TestTransactions:
    """Staged writes become visible only on commit."""

    @pytest.mark.asyncio
    async def test_commit(self, rows):
        tx = await rows.create_transaction()
        row = await rows.create_row("entities", {"label": "staged"}, transaction_id=tx)
        assert (await rows.get_row("entities", row.id, transaction_id=tx)).data == {"label": "staged"}
        with pytest.raises(RowNotFoundError):
            await rows.get_row("entities", row.id)

        await rows.update_transaction(tx, commit=True)
        assert (await rows.get_row("entities", row.id)).data == {"label": "staged"}

    @pytest.mark.asyncio
    async def test_rollback_discards_deletes_and_writes(self, rows):
        keep = await rows.create_row("entities", {"label": "keep"})
        tx = await rows.create_transaction()
        await rows.delete_row("entities", keep.id, transaction_id=tx)
        await rows.create_row("entities", {"label": "temp"}, transaction_id=tx)
        assert (await rows.list_rows("entities", transaction_id=tx)).total == 1
        assert (await rows.list_rows("entities", RowQuery().where_equal("label", "temp"), transaction_id=tx)).total == 1

        await rows.update_transaction(tx, rollback=True)
        assert rows.count("entities") == 1
        assert (await rows.get_row("entities", keep.id)).data == {"label": "keep"}

    @pytest.mark.asyncio
    async def test_closed_or_unknown_transaction(self, rows):
        tx = await rows.create_transaction()
        await rows.update_transaction(tx, commit=True)
        with pytest.raises(TransactionError):
            await rows.create_row("entities", {}, transaction_id=tx)
        with pytest.raises(TransactionError):
            await rows.update_transaction(tx, rollback=True)
        with pytest.raises(TransactionError):
            await rows.update_transaction("bogus", commit=True, rollback=True)

    @pytest.mark.asyncio
    async def test_savepoint_undoes_only_its_block(self, rows):
        tx = await rows.create_transaction()
        await rows.create_row("entities", {"label": "kept"}, row_id="a", transaction_id=tx)
        with pytest.raises(RuntimeError):
            async with rows.savepoint(tx):
                await rows.create_row("entities", {"label": "dropped"}, row_id="b", transaction_id=tx)
                await rows.delete_row("entities", "a", transaction_id=tx)
                raise RuntimeError("item failed")
        async with rows.savepoint(tx):
            await rows.create_row("entities", {"label": "later"}, row_id="c", transaction_id=tx)

        await rows.update_transaction(tx, commit=True)
        page = await rows.list_rows("entities", RowQuery().order_asc("$id"))
        assert [r.id for r in page.rows] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_savepoint_needs_open_transaction(self, rows):
        with pytest.raises(TransactionError):
            async with rows.savepoint("bogus"):
                pass


class TestSnapshots:
    def test_strip_transport_fields(self):
        data = {"$id": "x", "$createdAt": "now", "$permissions": [], "label": "Paris", "aliases": ["a"]}
        out = strip_transport_fields(data)
        assert out == {"label": "Paris", "aliases": ["a"]}
        out["aliases"].append("b")
        assert data["aliases"] == ["a"]
        assert strip_transport_fields(None) is None
