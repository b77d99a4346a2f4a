import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from book import Book, BookStatus
from config import settings
from errors import ErrorKind, LibraryError
from library import Library
from loan import Loan
from user import User, UserRole

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

library: Optional[Library] = None


def get_library() -> Library:
    """Dependency returning the process-wide Library, created on first use."""
    global library
    if library is None:
        library = Library()
    return library


@asynccontextmanager
async def lifespan(app: FastAPI):
    lib = get_library()
    logger.info(f"Library API started with database {lib.db.db_file}")
    try:
        yield
    finally:
        lib.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    # Lending state changes on every write; never let clients cache it
    if request.url.path.startswith(("/books", "/users", "/loans")):
        response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error mapping ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.kind is ErrorKind.INTERNAL:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
        detail = "Internal server error."
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"detail": "Invalid request."})
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    detail = f"Invalid value for {location}: {first.get('msg')}" if location else f"Invalid request: {first.get('msg')}"
    return JSONResponse(status_code=400, content={"detail": detail})


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookModel(CamelModel):
    id: int
    title: str
    author: str
    isbn: str
    published_date: Optional[date] = None
    status: BookStatus

    @classmethod
    def from_book(cls, book: Book) -> "BookModel":
        return cls(id=book.id, title=book.title, author=book.author, isbn=book.isbn,
                   published_date=book.published_date, status=book.status)


class BookCreateModel(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    published_date: Optional[date] = None
    status: BookStatus = BookStatus.AVAILABLE


class BookUpdateModel(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    published_date: Optional[date] = None
    status: Optional[BookStatus] = None


class BookStatusModel(CamelModel):
    status: str = Field(description="AVAILABLE or BORROWED")


class UserModel(CamelModel):
    id: int
    name: str
    email: str
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> "UserModel":
        return cls(id=user.id, name=user.name, email=user.email, role=user.role)


class UserCreateModel(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: UserRole = UserRole.USER


class UserUpdateModel(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None


class LoanModel(CamelModel):
    id: int
    user_id: int
    book_id: int
    loan_date: date
    return_date: Optional[date] = None
    active: bool

    @classmethod
    def from_loan(cls, loan: Loan) -> "LoanModel":
        return cls(id=loan.id, user_id=loan.user_id, book_id=loan.book_id, loan_date=loan.loan_date,
                   return_date=loan.return_date, active=loan.is_active)


class LoanCreateModel(CamelModel):
    user_id: int
    book_id: int
    loan_date: Optional[date] = None
    return_date: Optional[date] = None


class LoanUpdateModel(CamelModel):
    user_id: Optional[int] = None
    book_id: Optional[int] = None
    loan_date: Optional[date] = None
    return_date: Optional[date] = None


class LoanReturnModel(CamelModel):
    return_date: Optional[date] = None


class StatsModel(CamelModel):
    total_books: int
    available_books: int
    total_users: int
    active_loans: int


# --- Health & stats ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health endpoint: a quick database ping plus the app version."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "db": library.db.ping(),
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_library_stats(library: Library = Depends(get_library)):
    """Basic counts over the catalog, the membership and the open loans."""
    return StatsModel(**library.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    title: Optional[str] = Query(None, description="Substring of the title"),
    author: Optional[str] = Query(None, description="Substring of the author"),
    isbn: Optional[str] = Query(None, description="Exact 13-digit ISBN"),
    library: Library = Depends(get_library),
):
    """List books, optionally filtered by title/author, or look one up by ISBN."""
    if isbn is not None:
        return [BookModel.from_book(library.find_book_by_isbn(isbn))]
    return [BookModel.from_book(b) for b in library.list_books(title=title, author=author)]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return BookModel.from_book(library.get_book(book_id))


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(payload.title, payload.author, payload.isbn,
                            published_date=payload.published_date, status=payload.status)
    return BookModel.from_book(book)


@app.patch("/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, update: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(book_id, title=update.title, author=update.author, isbn=update.isbn,
                               published_date=update.published_date, status=update.status)
    return BookModel.from_book(book)


@app.patch("/books/{book_id}/status", response_model=BookModel)
def update_book_status(book_id: int, payload: BookStatusModel, library: Library = Depends(get_library)):
    """Administrative status override. Does not create or close loans."""
    return BookModel.from_book(library.set_book_status(book_id, payload.status))


@app.delete("/books/{book_id}", status_code=204)
def delete_book(book_id: int, library: Library = Depends(get_library)):
    library.remove_book(book_id)
    return Response(status_code=204)


# --- Users ---
@app.get("/users", response_model=List[UserModel])
def get_users(email: Optional[str] = Query(None), library: Library = Depends(get_library)):
    if email is not None:
        return [UserModel.from_user(library.find_user_by_email(email))]
    return [UserModel.from_user(u) for u in library.list_users()]


@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: int, library: Library = Depends(get_library)):
    return UserModel.from_user(library.get_user(user_id))


@app.post("/users", response_model=UserModel, status_code=201)
def register_user(payload: UserCreateModel, library: Library = Depends(get_library)):
    return UserModel.from_user(library.register_user(payload.name, payload.email, role=payload.role))


@app.patch("/users/{user_id}", response_model=UserModel)
def update_user(user_id: int, update: UserUpdateModel, library: Library = Depends(get_library)):
    user = library.update_user(user_id, name=update.name, email=update.email, role=update.role)
    return UserModel.from_user(user)


@app.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: int, library: Library = Depends(get_library)):
    library.remove_user(user_id)
    return Response(status_code=204)


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201)
def issue_loan(payload: LoanCreateModel, library: Library = Depends(get_library)):
    """Lend a book. 409 when the book is already out."""
    loan = library.loans.issue_loan(payload.user_id, payload.book_id,
                                    loan_date=payload.loan_date, return_date=payload.return_date)
    return LoanModel.from_loan(loan)


@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    user_id: Optional[int] = Query(None, alias="userId"),
    book_id: Optional[int] = Query(None, alias="bookId"),
    active: bool = Query(False, description="Only loans that have not been returned"),
    library: Library = Depends(get_library),
):
    loans = library.loans.list_loans(user_id=user_id, book_id=book_id, active_only=active)
    return [LoanModel.from_loan(l) for l in loans]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, library: Library = Depends(get_library)):
    return LoanModel.from_loan(library.loans.get_loan(loan_id))


@app.patch("/loans/{loan_id}", response_model=LoanModel)
def update_loan(loan_id: int, update: LoanUpdateModel, library: Library = Depends(get_library)):
    loan = library.loans.update_loan(loan_id, user_id=update.user_id, book_id=update.book_id,
                                     loan_date=update.loan_date, return_date=update.return_date)
    return LoanModel.from_loan(loan)


@app.post("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, payload: Optional[LoanReturnModel] = None,
                library: Library = Depends(get_library)):
    """Return a borrowed book. The body is optional; the return date defaults to today."""
    return_date = payload.return_date if payload is not None else None
    return LoanModel.from_loan(library.loans.return_loan(loan_id, return_date=return_date))


@app.delete("/loans/{loan_id}", status_code=204)
def delete_loan(loan_id: int, library: Library = Depends(get_library)):
    library.loans.delete_loan(loan_id)
    return Response(status_code=204)
