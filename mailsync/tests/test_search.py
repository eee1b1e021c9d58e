"""
Unit tests for ranked, faceted search over the header cache.
"""

from datetime import datetime, timedelta

import pytest

from mailsync.core.database import HEADERS_COLLECTION, SEARCH_HISTORY_COLLECTION
from mailsync.models.schemas import SearchFilters
from mailsync.services.search import SearchIndexer, score_document, tokenize_query
from mailsync.tests.fakes import insert_password_account

NOW = datetime(2024, 6, 30, 12, 0, 0)


def header(uid, **fields):
    doc = {
        "account_id": "acc-1",
        "folder": "INBOX",
        "uid": uid,
        "subject": f"Message {uid}",
        "from_address": "alice@example.com",
        "from_name": "Alice",
        "to_addresses": ["bob@example.com"],
        "cc_addresses": [],
        "snippet": "",
        "body_text": None,
        "body_compressed": None,
        "date": NOW - timedelta(days=uid),
        "has_attachments": False,
        "is_read": False,
        "is_starred": False,
    }
    doc.update(fields)
    return doc


async def seed(db, *docs):
    await db[HEADERS_COLLECTION].insert_many(list(docs))


class TestScoring:
    """Tests for term weighting."""

    def test_tokenize(self):
        assert tokenize_query("  Invoice   MARCH ") == ["invoice", "march"]
        assert tokenize_query("") == []

    def test_subject_outweighs_body(self):
        subject_hit = score_document({"subject": "Invoice due"}, ["invoice"])
        body_hit = score_document({"body_text": "the invoice is attached"}, ["invoice"])
        assert subject_hit == 4
        assert body_hit == 1


class TestSearch:
    """Tests for SearchIndexer.search."""

    @pytest.mark.asyncio
    async def test_empty_query_orders_by_date(self, db):
        await seed(db, header(3), header(1), header(2))

        response = await SearchIndexer(db).search(SearchFilters())

        assert [r["uid"] for r in response.results] == [1, 2, 3]
        assert response.total == 3
        assert "body_compressed" not in response.results[0]
        assert isinstance(response.results[0]["id"], str)

    @pytest.mark.asyncio
    async def test_subject_match_ranks_above_body_match(self, db):
        await seed(
            db,
            header(1, subject="Lunch", body_text="about the invoice"),
            header(2, subject="Invoice for March"),
            header(3, subject="Unrelated"),
        )

        response = await SearchIndexer(db).search(SearchFilters(query="invoice"))

        assert [r["uid"] for r in response.results] == [2, 1]
        assert response.results[0]["score"] > response.results[1]["score"]
        assert "body_text" not in response.results[0]

    @pytest.mark.asyncio
    async def test_all_terms_must_match(self, db):
        await seed(db, header(1, subject="Invoice March"), header(2, subject="Invoice April"))

        response = await SearchIndexer(db).search(SearchFilters(query="invoice march"))

        assert [r["uid"] for r in response.results] == [1]

    @pytest.mark.asyncio
    async def test_regex_characters_are_literal(self, db):
        await seed(db, header(1, subject="Price (USD)"), header(2, subject="Price USD"))

        response = await SearchIndexer(db).search(SearchFilters(query="(usd)"))

        assert [r["uid"] for r in response.results] == [1]

    @pytest.mark.asyncio
    async def test_structured_filters(self, db):
        await seed(
            db,
            header(1, from_address="carol@corp.com", has_attachments=True, is_read=False),
            header(2, from_address="carol@corp.com", has_attachments=True, is_read=True),
            header(3, from_address="dave@corp.com", has_attachments=True, is_read=False),
            header(4, from_address="carol@corp.com", folder="SENT", has_attachments=True),
        )
        filters = SearchFilters(from_address="CAROL", has_attachments=True, is_unread=True, folder="INBOX")

        response = await SearchIndexer(db).search(filters)

        assert [r["uid"] for r in response.results] == [1]

    @pytest.mark.asyncio
    async def test_date_range_and_recipient(self, db):
        await seed(
            db,
            header(1, to_addresses=["team@corp.com"]),
            header(5, to_addresses=["team@corp.com"]),
            header(10, to_addresses=["team@corp.com"]),
        )
        filters = SearchFilters(
            to_address="team@",
            date_from=NOW - timedelta(days=6),
            date_to=NOW - timedelta(days=2),
        )

        response = await SearchIndexer(db).search(filters)

        assert [r["uid"] for r in response.results] == [5]

    @pytest.mark.asyncio
    async def test_pagination_keeps_total_and_facets(self, db):
        await seed(db, *[header(uid) for uid in range(1, 8)])

        response = await SearchIndexer(db).search(SearchFilters(limit=3, offset=3))

        assert [r["uid"] for r in response.results] == [4, 5, 6]
        assert response.total == 7
        assert response.facets.folders[0].count == 7

    @pytest.mark.asyncio
    async def test_ranked_pagination(self, db):
        await seed(db, *[header(uid, subject="invoice " * (10 - uid)) for uid in range(1, 8)])

        response = await SearchIndexer(db).search(SearchFilters(query="invoice", limit=2, offset=2))

        assert [r["uid"] for r in response.results] == [3, 4]
        assert response.total == 7

    @pytest.mark.asyncio
    async def test_free_text_never_loads_compressed_bodies(self, db):
        await seed(
            db,
            header(1, subject="Invoice", body_compressed=b"zipped"),
            header(2, body_text="invoice attached", body_compressed=b"zipped"),
        )
        indexer = SearchIndexer(db)
        real_find = indexer.headers.find
        projections = []

        def recording_find(query, projection=None, *args, **kwargs):
            projections.append(projection)
            return real_find(query, projection, *args, **kwargs)

        indexer.headers.find = recording_find
        response = await indexer.search(SearchFilters(query="invoice"))

        assert [r["uid"] for r in response.results] == [1, 2]
        assert projections
        for projection in projections:
            assert projection is not None
            assert projection.get("body_compressed", 0) == 0

    @pytest.mark.asyncio
    async def test_user_scope(self, db, vault):
        mine = await insert_password_account(db, vault, user_id="u1")
        other = await insert_password_account(db, vault, user_id="u2", email="other@example.com")
        await seed(db, header(1, account_id=mine.id), header(2, account_id=other.id))
        indexer = SearchIndexer(db)

        response = await indexer.search(SearchFilters(user_id="u1"))
        assert [r["uid"] for r in response.results] == [1]

        foreign = await indexer.search(SearchFilters(user_id="u1", account_id=other.id))
        assert foreign.total == 0

        nobody = await indexer.search(SearchFilters(user_id="u3"))
        assert nobody.results == []


class TestFacets:
    """Tests for SearchIndexer.compute_facets."""

    @pytest.mark.asyncio
    async def test_facets(self, db):
        await seed(
            db,
            header(1, folder="INBOX", account_id="a"),
            header(2, folder="INBOX", account_id="b"),
            header(3, folder="SENT", account_id="a"),
            header(60, folder="SENT", account_id="a"),
        )

        facets = await SearchIndexer(db).compute_facets({}, now=NOW)

        assert {(b.value, b.count) for b in facets.folders} == {("INBOX", 2), ("SENT", 2)}
        assert facets.accounts[0].value == "a"
        assert facets.accounts[0].count == 3
        assert [b.value for b in facets.dates] == ["2024-06-27", "2024-06-28", "2024-06-29"]

    @pytest.mark.asyncio
    async def test_facets_follow_query(self, db):
        await seed(
            db,
            header(1, folder="INBOX", account_id="a"),
            header(2, folder="SENT", account_id="a"),
            header(3, folder="SENT", account_id="b"),
        )

        facets = await SearchIndexer(db).compute_facets({"account_id": "a"}, now=NOW)

        assert {(b.value, b.count) for b in facets.folders} == {("INBOX", 1), ("SENT", 1)}
        assert [(b.value, b.count) for b in facets.accounts] == [("a", 2)]
        assert [b.value for b in facets.dates] == ["2024-06-28", "2024-06-29"]


class TestSuggestionsAndHistory:
    """Tests for suggestions and popular searches."""

    @pytest.mark.asyncio
    async def test_suggestions(self, db):
        await seed(
            db,
            header(1, from_address="alice@example.com", subject="Alpha release"),
            header(2, from_address="alex@example.com", subject="Budget"),
            header(3, from_address="bob@example.com", subject="alpha notes"),
        )
        indexer = SearchIndexer(db)

        suggestions = await indexer.get_suggestions("al")

        assert suggestions[:2] == ["alex@example.com", "alice@example.com"]
        assert "Alpha release" in suggestions
        assert "alpha notes" in suggestions
        assert await indexer.get_suggestions("a") == []

    @pytest.mark.asyncio
    async def test_popular_searches(self, db):
        indexer = SearchIndexer(db)
        for query in ["Invoice", "invoice ", "report", "", "invoice"]:
            await indexer.log_search("u1", query, 3)
        await indexer.log_search("u2", "report", 1)

        popular = await indexer.get_popular_searches("u1")

        assert popular[0] == {"query": "invoice", "count": 3}
        assert popular[1] == {"query": "report", "count": 1}
        assert await db[SEARCH_HISTORY_COLLECTION].count_documents({"user_id": "u1"}) == 4
