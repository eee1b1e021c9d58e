"""
Search Indexer

Ranked and faceted search over the live header cache. Mongo narrows the
candidates with case-insensitive regex filters and computes facets with
$group aggregations; free-text ranking scores only the weighted fields so
compressed bodies never leave the database.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from mailsync.core.database import HEADERS_COLLECTION, SEARCH_HISTORY_COLLECTION
from mailsync.models.schemas import FacetBucket, SearchFacets, SearchFilters, SearchResponse
from mailsync.services.accounts import AccountStore

logger = logging.getLogger(__name__)

# Field weights for free-text relevance
FIELD_WEIGHTS = {
    "subject": 4,
    "from_address": 3,
    "from_name": 3,
    "snippet": 2,
    "body_text": 1,
}

DATE_FACET_DAYS = 30
POPULAR_SEARCH_DAYS = 30
MIN_SUGGESTION_PREFIX = 2

RESULT_PROJECTION = {"body_compressed": 0, "body_text": 0}
SCORING_PROJECTION = {"date": 1, **{field_name: 1 for field_name in FIELD_WEIGHTS}}


def _contains(value: str) -> dict:
    return {"$regex": re.escape(value), "$options": "i"}


def tokenize_query(query: str) -> List[str]:
    return [term for term in re.split(r"\s+", query.strip().lower()) if term]


def score_document(doc: dict, terms: List[str]) -> int:
    """Sum of field weight times term occurrences."""
    score = 0
    for field_name, weight in FIELD_WEIGHTS.items():
        value = (doc.get(field_name) or "").lower()
        if not value:
            continue
        for term in terms:
            score += weight * value.count(term)
    return score


def _date_key(doc: dict) -> datetime:
    return doc.get("date") or datetime.min


def _serialize(doc: dict) -> Dict[str, Any]:
    result = {k: v for k, v in doc.items() if k not in RESULT_PROJECTION}
    result["id"] = str(result.pop("_id"))
    return result


class SearchIndexer:
    """Search, suggestions and search history over the header cache."""

    def __init__(self, db: AsyncIOMotorDatabase, accounts: Optional[AccountStore] = None):
        self.headers = db[HEADERS_COLLECTION]
        self.history = db[SEARCH_HISTORY_COLLECTION]
        self.accounts = accounts or AccountStore(db)

    async def _account_scope(self, filters: SearchFilters) -> Optional[dict]:
        """Account constraint, or None when the user owns no matching account."""
        if filters.user_id is None:
            return {"account_id": filters.account_id} if filters.account_id else {}

        owned = [a.id for a in await self.accounts.list_for_user(filters.user_id, active_only=False)]
        if filters.account_id:
            return {"account_id": filters.account_id} if filters.account_id in owned else None
        return {"account_id": {"$in": owned}} if owned else None

    async def build_query(self, filters: SearchFilters) -> Optional[dict]:
        """Translate filters into a Mongo query. All conditions are ANDed."""
        scope = await self._account_scope(filters)
        if scope is None:
            return None

        clauses: List[dict] = [scope] if scope else []
        if filters.folder:
            clauses.append({"folder": filters.folder})
        if filters.from_address:
            clauses.append({"$or": [
                {"from_address": _contains(filters.from_address)},
                {"from_name": _contains(filters.from_address)},
            ]})
        if filters.to_address:
            clauses.append({"$or": [
                {"to_addresses": _contains(filters.to_address)},
                {"cc_addresses": _contains(filters.to_address)},
            ]})
        if filters.subject:
            clauses.append({"subject": _contains(filters.subject)})
        if filters.has_attachments is not None:
            clauses.append({"has_attachments": filters.has_attachments})
        if filters.is_unread is not None:
            clauses.append({"is_read": not filters.is_unread})
        if filters.is_starred is not None:
            clauses.append({"is_starred": filters.is_starred})
        if filters.date_from or filters.date_to:
            date_range = {}
            if filters.date_from:
                date_range["$gte"] = filters.date_from
            if filters.date_to:
                date_range["$lte"] = filters.date_to
            clauses.append({"date": date_range})

        for term in tokenize_query(filters.query):
            clauses.append({"$or": [{field_name: _contains(term)} for field_name in FIELD_WEIGHTS]})

        if not clauses:
            return {}
        return clauses[0] if len(clauses) == 1 else {"$and": clauses}

    async def search(self, filters: SearchFilters) -> SearchResponse:
        """
        Run a search.

        With a free-text query results are ranked by weighted term
        occurrences (subject, sender, snippet, cached body), ties broken by
        date. Without one they are ordered by date descending and paged by
        Mongo. Facets always cover the full matching set.
        """
        query = await self.build_query(filters)
        if query is None:
            return SearchResponse(results=[], total=0, facets=SearchFacets())

        terms = tokenize_query(filters.query)
        total = await self.headers.count_documents(query)
        if terms:
            page = await self._ranked_page(query, terms, filters.offset, filters.limit)
        else:
            cursor = (
                self.headers.find(query, RESULT_PROJECTION)
                .sort([("date", DESCENDING), ("_id", DESCENDING)])
                .skip(filters.offset)
                .limit(filters.limit)
            )
            page = [doc async for doc in cursor]

        return SearchResponse(
            results=[_serialize(doc) for doc in page],
            total=total,
            facets=await self.compute_facets(query),
        )

    async def _ranked_page(self, query: dict, terms: List[str], offset: int, limit: int) -> List[dict]:
        """Score every match on the weighted fields only, then load the requested page."""
        scored = []
        async for doc in self.headers.find(query, SCORING_PROJECTION):
            scored.append((score_document(doc, terms), _date_key(doc), doc["_id"]))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)

        page = scored[offset:offset + limit]
        if not page:
            return []

        cursor = self.headers.find({"_id": {"$in": [doc_id for _, _, doc_id in page]}}, RESULT_PROJECTION)
        docs = {doc["_id"]: doc async for doc in cursor}
        ordered = []
        for score, _, doc_id in page:
            doc = docs.get(doc_id)
            if doc is not None:
                doc["score"] = score
                ordered.append(doc)
        return ordered

    async def _group_counts(self, query: dict, field_path: str) -> List[FacetBucket]:
        pipeline = [
            {"$match": query},
            {"$group": {"_id": field_path, "count": {"$sum": 1}}},
        ]
        rows = await self.headers.aggregate(pipeline).to_list(length=None)
        rows = [row for row in rows if row["_id"] is not None]
        rows.sort(key=lambda row: (-row["count"], str(row["_id"])))
        return [FacetBucket(value=str(row["_id"]), count=row["count"]) for row in rows]

    async def compute_facets(self, query: dict, now: Optional[datetime] = None) -> SearchFacets:
        """Folder, account and last-30-day breakdowns of everything `query` matches."""
        now = now or datetime.utcnow()
        since = (now - timedelta(days=DATE_FACET_DAYS - 1)).replace(hour=0, minute=0, second=0, microsecond=0)
        recent = {"date": {"$gte": since}}

        pipeline = [
            {"$match": {"$and": [query, recent]} if query else recent},
            {"$group": {
                "_id": {"year": {"$year": "$date"}, "month": {"$month": "$date"}, "day": {"$dayOfMonth": "$date"}},
                "count": {"$sum": 1},
            }},
        ]
        rows = await self.headers.aggregate(pipeline).to_list(length=None)
        days = sorted(
            (f"{row['_id']['year']:04d}-{row['_id']['month']:02d}-{row['_id']['day']:02d}", row["count"])
            for row in rows
        )

        return SearchFacets(
            folders=await self._group_counts(query, "$folder"),
            accounts=await self._group_counts(query, "$account_id"),
            dates=[FacetBucket(value=day, count=count) for day, count in days],
        )

    async def get_suggestions(self, prefix: str, user_id: Optional[str] = None, limit: int = 10) -> List[str]:
        """Distinct senders, subjects and recipients starting with `prefix`."""
        prefix = prefix.strip()
        if len(prefix) < MIN_SUGGESTION_PREFIX:
            return []

        scope: dict = {}
        if user_id is not None:
            owned = [a.id for a in await self.accounts.list_for_user(user_id, active_only=False)]
            if not owned:
                return []
            scope = {"account_id": {"$in": owned}}

        pattern = {"$regex": "^" + re.escape(prefix), "$options": "i"}
        lowered = prefix.lower()
        suggestions: List[str] = []
        seen = set()

        for field_name in ("from_address", "subject", "to_addresses"):
            values = await self.headers.distinct(field_name, {**scope, field_name: pattern})
            for value in sorted(v for v in values if isinstance(v, str)):
                if not value.lower().startswith(lowered) or value.lower() in seen:
                    continue
                seen.add(value.lower())
                suggestions.append(value)
                if len(suggestions) >= limit:
                    return suggestions

        return suggestions

    async def log_search(self, user_id: Optional[str], query: str, result_count: int) -> None:
        normalized = query.strip().lower()
        if not normalized:
            return
        await self.history.insert_one({
            "user_id": user_id,
            "query": normalized,
            "result_count": result_count,
            "searched_at": datetime.utcnow(),
        })

    async def get_popular_searches(self, user_id: Optional[str], limit: int = 5) -> List[Dict[str, Any]]:
        """Most frequent queries of the last 30 days."""
        pipeline = [
            {"$match": {
                "user_id": user_id,
                "searched_at": {"$gte": datetime.utcnow() - timedelta(days=POPULAR_SEARCH_DAYS)},
            }},
            {"$group": {"_id": "$query", "count": {"$sum": 1}, "last_searched": {"$max": "$searched_at"}}},
            {"$sort": {"count": DESCENDING, "last_searched": DESCENDING}},
            {"$limit": limit},
        ]
        results = await self.history.aggregate(pipeline).to_list(length=limit)
        return [{"query": r["_id"], "count": r["count"]} for r in results]
