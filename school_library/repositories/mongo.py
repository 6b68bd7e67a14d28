# school_library/repositories/mongo.py
import re
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

import motor.motor_asyncio
from beanie import Document, PydanticObjectId
from bson import ObjectId
from loguru import logger
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from school_library.core.exceptions import ConcurrencyConflictError, InvalidStateError
from school_library.core.utils import is_valid_object_id
from school_library.db.documents import (
    BookDocument, BorrowRecordDocument, MemberDocument, SequenceCounter
)
from school_library.models.book import Book
from school_library.models.borrow_record import BorrowRecord
from school_library.models.enum import BookStatus, BorrowStatus, MemberRole, MemberStatus, OPEN_BORROW_STATUSES
from school_library.models.filters import BookFilter, BorrowFilter, MemberFilter, StatisticsFilter
from school_library.models.member import Member
from school_library.models.report import (
    BorrowStatistics, MemberStatistics, OverdueSummary, StatusHistoryEntry
)
from school_library.repositories.base import (
    BookRepository, BorrowRepository, MemberRepository, SequenceRepository, UnitOfWork
)

ModelT = TypeVar("ModelT", bound=BaseModel)

MS_PER_DAY = 24 * 60 * 60 * 1000
OPEN_STATUS_VALUES = [s.value for s in OPEN_BORROW_STATUSES]


# --- Conversion helpers ---
def _oid(value: Optional[str]) -> Optional[ObjectId]:
    return ObjectId(value) if is_valid_object_id(value) else None


def _raw_to_model(model_cls: Type[ModelT], raw: Optional[dict]) -> Optional[ModelT]:
    if raw is None:
        return None
    data = dict(raw)
    data["id"] = str(data.pop("_id"))
    data.pop("revision_id", None)
    return model_cls.model_validate(data)


def _document_to_model(model_cls: Type[ModelT], doc: Document) -> ModelT:
    data = doc.model_dump(exclude={"id", "revision_id"})
    data["id"] = str(doc.id)
    return model_cls.model_validate(data)


def _encode(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _icontains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


def _iexact(text: str) -> dict:
    return {"$regex": f"^{re.escape(text)}$", "$options": "i"}


class _MongoRepository:
    document: Type[Document]
    model: Type[BaseModel]

    @property
    def collection(self) -> motor.motor_asyncio.AsyncIOMotorCollection:
        return self.document.get_motor_collection()

    async def get(self, entity_id: str, session=None):
        oid = _oid(entity_id)
        if oid is None:
            return None
        raw = await self.collection.find_one({"_id": oid}, session=session)
        return _raw_to_model(self.model, raw)

    async def insert(self, entity, session=None):
        doc = self.document(id=PydanticObjectId(entity.id), **entity.model_dump(exclude={"id"}))
        try:
            await doc.insert(session=session)
        except DuplicateKeyError as e:
            logger.warning(f"Duplicate key inserting into {self.document.Settings.name}: {e.details}")
            raise InvalidStateError(f"A {self.model.__name__.lower()} with the same unique key already exists.") from e
        return entity

    async def update(self, entity_id, fields, expected_version=None, session=None):
        oid = _oid(entity_id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid}
        if expected_version is not None:
            query["version"] = expected_version
        raw = await self.collection.find_one_and_update(
            query,
            {"$set": _encode(fields), "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return _raw_to_model(self.model, raw)

    async def delete(self, entity_id: str, session=None) -> bool:
        oid = _oid(entity_id)
        if oid is None:
            return False
        result = await self.collection.delete_one({"_id": oid}, session=session)
        return result.deleted_count == 1

    async def _guarded_update(self, query: dict, update: dict, session=None) -> bool:
        result = await self.collection.update_one(query, update, session=session)
        return result.matched_count == 1


class MongoBookRepository(_MongoRepository, BookRepository):
    document = BookDocument
    model = Book

    async def get_by_isbn(self, isbn: str, session=None) -> Optional[Book]:
        raw = await self.collection.find_one({"isbn": isbn}, session=session)
        return _raw_to_model(Book, raw)

    async def take_copy(self, book_id: str, now: datetime, session=None) -> bool:
        oid = _oid(book_id)
        if oid is None:
            return False
        return await self._guarded_update(
            {"_id": oid, "available_copies": {"$gt": 0}, "status": BookStatus.AVAILABLE.value},
            {"$inc": {"available_copies": -1, "borrow_count": 1, "version": 1}, "$set": {"updated_at": now}},
            session=session,
        )

    async def return_copy(self, book_id: str, now: datetime, session=None) -> bool:
        oid = _oid(book_id)
        if oid is None:
            return False
        return await self._guarded_update(
            {"_id": oid, "$expr": {"$lt": ["$available_copies", "$total_copies"]}},
            {"$inc": {"available_copies": 1, "version": 1}, "$set": {"updated_at": now}},
            session=session,
        )

    def _query(self, f: BookFilter) -> dict:
        query: Dict[str, Any] = {}
        if f.search:
            pattern = _icontains(f.search)
            query["$or"] = [{"title": pattern}, {"authors": pattern}, {"isbn": pattern}]
        if f.category: query["category"] = _iexact(f.category)
        if f.language: query["language"] = _iexact(f.language)
        if f.status: query["status"] = f.status.value
        if f.school_id: query["school_id"] = f.school_id
        if f.author: query["authors"] = _icontains(f.author)
        if f.available_only:
            query["available_copies"] = {"$gt": 0}
            query["status"] = BookStatus.AVAILABLE.value
        return query

    async def find(self, book_filter: BookFilter) -> List[Book]:
        docs = await BookDocument.find(
            self._query(book_filter), skip=book_filter.skip, limit=book_filter.limit,
            sort=[("created_at", DESCENDING)]
        ).to_list()
        return [_document_to_model(Book, d) for d in docs]

    async def count(self, book_filter: BookFilter) -> int:
        return await BookDocument.find(self._query(book_filter)).count()

    async def most_borrowed(self, limit: int) -> List[Book]:
        docs = await BookDocument.find({}, limit=limit, sort=[("borrow_count", DESCENDING)]).to_list()
        return [_document_to_model(Book, d) for d in docs]


class MongoMemberRepository(_MongoRepository, MemberRepository):
    document = MemberDocument
    model = Member

    async def get_by_user_id(self, user_id: str, session=None) -> Optional[Member]:
        raw = await self.collection.find_one({"user_id": user_id}, session=session)
        return _raw_to_model(Member, raw)

    async def claim_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        oid = _oid(member_id)
        if oid is None:
            return False
        return await self._guarded_update(
            {
                "_id": oid,
                "status": MemberStatus.ACTIVE.value,
                "$expr": {"$lt": ["$current_borrow_count", "$max_borrow_limit"]},
            },
            {"$inc": {"current_borrow_count": 1, "total_borrow_count": 1, "version": 1},
             "$set": {"updated_at": now}},
            session=session,
        )

    async def release_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        oid = _oid(member_id)
        if oid is None:
            return False
        return await self._guarded_update(
            {"_id": oid, "current_borrow_count": {"$gt": 0}},
            {"$inc": {"current_borrow_count": -1, "version": 1}, "$set": {"updated_at": now}},
            session=session,
        )

    async def add_fine(self, member_id, amount, now, overdue_events=0, session=None) -> bool:
        oid = _oid(member_id)
        if oid is None:
            return False
        return await self._guarded_update(
            {"_id": oid},
            {"$inc": {"fine_amount": amount, "overdue_count": overdue_events, "version": 1},
             "$set": {"updated_at": now}},
            session=session,
        )

    def _query(self, f: MemberFilter) -> dict:
        query: Dict[str, Any] = {}
        if f.role: query["role"] = f.role.value
        if f.status: query["status"] = f.status.value
        if f.school_id: query["school_id"] = f.school_id
        if f.class_or_dept: query["class_or_dept"] = _icontains(f.class_or_dept)
        if f.search:
            pattern = _icontains(f.search)
            query["$or"] = [{"first_name": pattern}, {"last_name": pattern},
                            {"member_code": pattern}, {"email": pattern}]
        if f.has_fines: query["fine_amount"] = {"$gt": 0}
        if f.has_overdue: query["overdue_count"] = {"$gt": 0}
        return query

    async def find(self, member_filter: MemberFilter) -> List[Member]:
        if member_filter.has_fines:
            sort = [("fine_amount", DESCENDING)]
        elif member_filter.has_overdue:
            sort = [("overdue_count", DESCENDING)]
        else:
            sort = [("created_at", DESCENDING)]
        docs = await MemberDocument.find(
            self._query(member_filter), skip=member_filter.skip, limit=member_filter.limit, sort=sort
        ).to_list()
        return [_document_to_model(Member, d) for d in docs]

    async def count(self, member_filter: MemberFilter) -> int:
        return await MemberDocument.find(self._query(member_filter)).count()

    async def statistics(self, school_id: Optional[str] = None) -> MemberStatistics:
        def count_if(field: str, value: Enum) -> dict:
            return {"$sum": {"$cond": [{"$eq": [f"${field}", value.value]}, 1, 0]}}

        pipeline = [
            {"$match": {"school_id": school_id} if school_id else {}},
            {"$group": {
                "_id": None,
                "total_members": {"$sum": 1},
                "active_members": count_if("status", MemberStatus.ACTIVE),
                "inactive_members": count_if("status", MemberStatus.INACTIVE),
                "suspended_members": count_if("status", MemberStatus.SUSPENDED),
                "students": count_if("role", MemberRole.STUDENT),
                "teachers": count_if("role", MemberRole.TEACHER),
                "staff": count_if("role", MemberRole.STAFF),
                "librarians": count_if("role", MemberRole.LIBRARIAN),
                "total_fines": {"$sum": "$fine_amount"},
                "total_borrows": {"$sum": "$total_borrow_count"},
            }},
        ]
        result = await self.collection.aggregate(pipeline).to_list(length=1)
        if not result:
            return MemberStatistics()
        row = result[0]
        row.pop("_id", None)
        return MemberStatistics.model_validate(row)


class MongoBorrowRepository(_MongoRepository, BorrowRepository):
    document = BorrowRecordDocument
    model = BorrowRecord

    def _query(self, f: BorrowFilter, now: datetime) -> dict:
        query: Dict[str, Any] = {}
        if f.overdue_only:
            query["due_date"] = {"$lt": now}
            query["status"] = {"$in": OPEN_STATUS_VALUES}
        elif f.status:
            query["status"] = f.status.value
        if f.member_id: query["member_id"] = f.member_id
        if f.book_id: query["book_id"] = f.book_id
        if f.school_id: query["school_id"] = f.school_id
        date_filter = {}
        if f.date_from: date_filter["$gte"] = f.date_from
        if f.date_to: date_filter["$lte"] = f.date_to
        if date_filter: query["borrow_date"] = date_filter
        return query

    async def find(self, borrow_filter: BorrowFilter, now: datetime) -> List[BorrowRecord]:
        docs = await BorrowRecordDocument.find(
            self._query(borrow_filter, now), skip=borrow_filter.skip, limit=borrow_filter.limit,
            sort=[("borrow_date", DESCENDING)]
        ).to_list()
        return [_document_to_model(BorrowRecord, d) for d in docs]

    async def count(self, borrow_filter: BorrowFilter, now: datetime) -> int:
        return await BorrowRecordDocument.find(self._query(borrow_filter, now)).count()

    async def find_due_for_sweep(self, now: datetime) -> List[BorrowRecord]:
        docs = await BorrowRecordDocument.find(
            {"status": BorrowStatus.ISSUED.value, "due_date": {"$lt": now}},
            sort=[("due_date", ASCENDING)]
        ).to_list()
        return [_document_to_model(BorrowRecord, d) for d in docs]

    async def find_overdue(self, now: datetime, school_id: Optional[str] = None) -> List[BorrowRecord]:
        query: Dict[str, Any] = {"status": {"$in": OPEN_STATUS_VALUES}, "due_date": {"$lt": now}}
        if school_id:
            query["school_id"] = school_id
        docs = await BorrowRecordDocument.find(query, sort=[("due_date", ASCENDING)]).to_list()
        return [_document_to_model(BorrowRecord, d) for d in docs]

    async def find_by_status(self, status: BorrowStatus) -> List[BorrowRecord]:
        docs = await BorrowRecordDocument.find({"status": status.value}).to_list()
        return [_document_to_model(BorrowRecord, d) for d in docs]

    async def statistics(self, stats_filter: StatisticsFilter) -> BorrowStatistics:
        match: Dict[str, Any] = {}
        if stats_filter.school_id:
            match["school_id"] = stats_filter.school_id
        date_filter = {}
        if stats_filter.date_from: date_filter["$gte"] = stats_filter.date_from
        if stats_filter.date_to: date_filter["$lte"] = stats_filter.date_to
        if date_filter:
            match["borrow_date"] = date_filter

        def count_if(status: BorrowStatus) -> dict:
            return {"$sum": {"$cond": [{"$eq": ["$status", status.value]}, 1, 0]}}

        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": None,
                "total_borrows": {"$sum": 1},
                "total_returns": count_if(BorrowStatus.RETURNED),
                "total_overdue": count_if(BorrowStatus.OVERDUE),
                "total_lost": count_if(BorrowStatus.LOST),
                "total_damaged": count_if(BorrowStatus.DAMAGED),
                "total_fines": {"$sum": "$fine_amount"},
                # $avg skips the nulls produced for non-returned records
                "average_borrow_ms": {"$avg": {"$cond": [
                    {"$eq": ["$status", BorrowStatus.RETURNED.value]},
                    {"$subtract": ["$return_date", "$borrow_date"]},
                    None,
                ]}},
            }},
        ]
        result = await self.collection.aggregate(pipeline).to_list(length=1)
        if not result:
            return BorrowStatistics()
        row = result[0]
        average_ms = row.pop("average_borrow_ms", None)
        row.pop("_id", None)
        row["total_fines"] = round(row.get("total_fines", 0) or 0, 2)
        row["average_borrow_duration_days"] = round(average_ms / MS_PER_DAY, 2) if average_ms is not None else None
        return BorrowStatistics.model_validate(row)

    async def member_history(self, member_id: str) -> List[StatusHistoryEntry]:
        pipeline = [
            {"$match": {"member_id": member_id}},
            {"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "total_fines": {"$sum": "$fine_amount"},
                "average_days_overdue": {"$avg": "$days_overdue"},
            }},
            {"$sort": {"_id": 1}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        return [
            StatusHistoryEntry(
                status=row["_id"],
                count=row["count"],
                total_fines=round(row.get("total_fines") or 0, 2),
                average_days_overdue=row.get("average_days_overdue") or 0.0,
            )
            for row in rows
        ]

    async def overdue_summary(self, due_from: datetime, due_to: datetime) -> OverdueSummary:
        pipeline = [
            {"$match": {"status": BorrowStatus.OVERDUE.value, "due_date": {"$gte": due_from, "$lt": due_to}}},
            {"$group": {
                "_id": None,
                "total_overdue": {"$sum": 1},
                "total_fines": {"$sum": "$fine_amount"},
                "average_days_overdue": {"$avg": "$days_overdue"},
                "max_days_overdue": {"$max": "$days_overdue"},
            }},
        ]
        result = await self.collection.aggregate(pipeline).to_list(length=1)
        if not result:
            return OverdueSummary()
        row = result[0]
        row.pop("_id", None)
        return OverdueSummary.model_validate(row)


class MongoSequenceRepository(SequenceRepository):
    async def next_value(self, sequence_name: str, session=None) -> int:
        """Atomically increments and returns the named counter, creating it on first use."""
        updated_doc = await SequenceCounter.get_motor_collection().find_one_and_update(
            {"_id": sequence_name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        logger.debug(f"Next sequence value for '{sequence_name}': {updated_doc['value']}")
        return updated_doc["value"]


class MongoUnitOfWork(UnitOfWork):
    """Multi-document transactions need a replica set (or mongos)."""

    def __init__(self, client: motor.motor_asyncio.AsyncIOMotorClient):
        self._client = client
        self.books = MongoBookRepository()
        self.members = MongoMemberRepository()
        self.borrows = MongoBorrowRepository()
        self.sequences = MongoSequenceRepository()

    @asynccontextmanager
    async def transaction(self):
        async with await self._client.start_session() as session:
            try:
                async with session.start_transaction():
                    yield session
            except PyMongoError as e:
                if e.has_error_label("TransientTransactionError"):
                    logger.warning(f"Transaction aborted by a concurrent write: {e}")
                    raise ConcurrencyConflictError(
                        "The record was modified by another operation. Please retry."
                    ) from e
                raise

    async def ping(self) -> bool:
        await self._client.admin.command("ping")
        return True

    async def close(self) -> None:
        self._client.close()
