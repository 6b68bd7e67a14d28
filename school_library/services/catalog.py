# school_library/services/catalog.py
from typing import List

from loguru import logger

from school_library.core.clock import Clock
from school_library.core.exceptions import ConcurrencyConflictError, InvalidStateError, NotFoundError
from school_library.core.utils import new_object_id
from school_library.models.book import Book, BookPage
from school_library.models.enum import BookStatus
from school_library.models.filters import BookFilter
from school_library.repositories.base import UnitOfWork


class CatalogService:
    """Book inventory. Copy counters change here only through total_copies edits."""

    def __init__(self, uow: UnitOfWork, clock: Clock):
        self.uow = uow
        self.clock = clock

    async def get_book(self, book_id: str, session=None) -> Book:
        book = await self.uow.books.get(book_id, session=session)
        if not book:
            logger.info(f"Book lookup failed for ID '{book_id}'.")
            raise NotFoundError(f"Book with ID '{book_id}' not found.")
        return book

    async def create_book(self, data: Book.Create) -> Book:
        now = self.clock.now()
        async with self.uow.transaction() as session:
            if data.isbn and await self.uow.books.get_by_isbn(data.isbn, session=session):
                raise InvalidStateError(f"Book with ISBN '{data.isbn}' already exists.")
            book = Book(
                id=new_object_id(),
                **data.model_dump(),
                available_copies=data.total_copies,
                created_at=now,
                updated_at=now,
            )
            await self.uow.books.insert(book, session=session)
        logger.info(f"Book '{book.title}' ({book.id}) added with {book.total_copies} copies.")
        return book

    async def list_books(self, book_filter: BookFilter) -> BookPage:
        items = await self.uow.books.find(book_filter)
        total = await self.uow.books.count(book_filter)
        return BookPage(items=items, total=total, skip=book_filter.skip, limit=book_filter.limit)

    async def most_borrowed(self, limit: int = 10) -> List[Book]:
        return await self.uow.books.most_borrowed(limit)

    async def update_book(self, book_id: str, data: Book.Update) -> Book:
        """
        Update catalog metadata. Changing total_copies keeps the number of
        borrowed copies constant and may not drop below it.
        """
        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            return await self.get_book(book_id)

        async with self.uow.transaction() as session:
            book = await self.get_book(book_id, session=session)

            new_isbn = update_data.get("isbn")
            if new_isbn and new_isbn != book.isbn and await self.uow.books.get_by_isbn(new_isbn, session=session):
                raise InvalidStateError(f"Book with ISBN '{new_isbn}' already exists.")

            if update_data.get("total_copies") is not None:
                borrowed = book.borrowed_copies
                if update_data["total_copies"] < borrowed:
                    raise InvalidStateError(
                        f"Cannot reduce total copies below {borrowed} (currently borrowed)."
                    )
                update_data["available_copies"] = update_data["total_copies"] - borrowed

            update_data["updated_at"] = self.clock.now()
            updated = await self.uow.books.update(
                book_id, update_data, expected_version=book.version, session=session
            )
            if not updated:
                raise ConcurrencyConflictError(f"Book '{book_id}' was modified concurrently. Please retry.")
        logger.info(f"Book '{book_id}' updated: {sorted(update_data)}.")
        return updated

    async def update_book_status(self, book_id: str, status: BookStatus) -> Book:
        """Librarian-set flag. Not derived from the copy counters."""
        async with self.uow.transaction() as session:
            book = await self.get_book(book_id, session=session)
            if book.status == status:
                raise InvalidStateError(f"Book is already {status.value}.")
            updated = await self.uow.books.update(
                book_id, {"status": status, "updated_at": self.clock.now()},
                expected_version=book.version, session=session
            )
            if not updated:
                raise ConcurrencyConflictError(f"Book '{book_id}' was modified concurrently. Please retry.")
        logger.info(f"Book '{book_id}' status set to {status.value}.")
        return updated

    async def delete_book(self, book_id: str) -> None:
        async with self.uow.transaction() as session:
            book = await self.get_book(book_id, session=session)
            if book.total_copies > book.available_copies:
                raise InvalidStateError("Cannot delete book with borrowed copies.")
            await self.uow.books.delete(book_id, session=session)
        logger.info(f"Book '{book_id}' deleted.")
