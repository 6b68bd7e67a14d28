# school_library/api/v1/endpoints/books.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, Response, status

from school_library.api.deps import get_catalog_service
from school_library.core.rate_limiter import limiter
from school_library.models.book import Book, BookPage
from school_library.models.enum import BookStatus
from school_library.models.filters import MAX_PAGE_SIZE, BookFilter
from school_library.services.catalog import CatalogService

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Books"]
)


@router.post("", response_model=Book, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_book(
    request: Request,
    book_in: Book.Create = Body(...),
    service: CatalogService = Depends(get_catalog_service),
):
    """Add a title to the catalog. All copies start on the shelf."""
    logger.info(f"Creating book '{book_in.title}' with {book_in.total_copies} copies.")
    return await service.create_book(book_in)


@router.get("", response_model=BookPage)
@limiter.limit("60/minute")
async def list_books(
    request: Request,
    search: Optional[str] = Query(None, description="Title, author or ISBN"),
    category: Optional[str] = Query(None),
    language: Optional[str] = Query(None),
    book_status: Optional[BookStatus] = Query(None, alias="status"),
    school_id: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    available_only: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(25, ge=1, le=MAX_PAGE_SIZE),
    service: CatalogService = Depends(get_catalog_service),
):
    book_filter = BookFilter(
        search=search, category=category, language=language, status=book_status,
        school_id=school_id, author=author, available_only=available_only,
        skip=skip, limit=limit,
    )
    return await service.list_books(book_filter)


@router.get("/most-borrowed", response_model=List[Book])
@limiter.limit("60/minute")
async def most_borrowed_books(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.most_borrowed(limit)


@router.get("/{book_id}", response_model=Book)
@limiter.limit("60/minute")
async def get_book(
    request: Request,
    book_id: str = Path(..., description="Book ID"),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.get_book(book_id)


@router.patch("/{book_id}", response_model=Book)
@limiter.limit("30/minute")
async def update_book(
    request: Request,
    book_id: str = Path(...),
    book_update: Book.Update = Body(...),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.update_book(book_id, book_update)


@router.put("/{book_id}/status", response_model=Book)
@limiter.limit("30/minute")
async def update_book_status(
    request: Request,
    book_id: str = Path(...),
    status_update: Book.StatusUpdate = Body(...),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.update_book_status(book_id, status_update.status)


@router.delete("/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
async def delete_book(
    request: Request,
    book_id: str = Path(...),
    service: CatalogService = Depends(get_catalog_service),
):
    await service.delete_book(book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
