# school_library/api/v1/api.py
from fastapi import APIRouter

from school_library.api.v1.endpoints import books, borrowings, members, reports

api_router_v1 = APIRouter(prefix="/api/v1")

api_router_v1.include_router(books.router, prefix="/books")
api_router_v1.include_router(members.router, prefix="/members")
api_router_v1.include_router(borrowings.router, prefix="/borrowings")
api_router_v1.include_router(reports.router)
