import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date

import pytest

from book import BookStatus
from conftest import TODAY
from errors import ConflictError, InvalidInputError, NotFoundError


def _status(lib, book_id):
    return lib.catalog.get_by_id(book_id).status


def _assert_status_matches_loans(lib):
    # A book is BORROWED exactly when an active loan references it
    active_books = {l.book_id for l in lib.ledger.list(active_only=True)}
    for b in lib.catalog.list():
        assert (b.status is BookStatus.BORROWED) == (b.id in active_books), b


# ---------------- Issue ----------------

def test_issue_loan_marks_book_borrowed(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)

    assert loan.id is not None
    assert loan.is_active
    assert loan.loan_date == TODAY
    assert _status(lib, book.id) is BookStatus.BORROWED
    assert lib.ledger.count_active() == 1
    _assert_status_matches_loans(lib)


def test_issue_loan_with_explicit_date(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-10")
    assert loan.loan_date == date(2025, 1, 10)


def test_issue_on_borrowed_book_conflicts(lib, book, member):
    other = lib.register_user("Bob Smith", "bob@example.com")
    lib.loans.issue_loan(member.id, book.id)

    with pytest.raises(ConflictError, match=f"Book with ID {book.id} is not available."):
        lib.loans.issue_loan(other.id, book.id)

    assert len(lib.ledger.list(book_id=book.id)) == 1
    _assert_status_matches_loans(lib)


def test_issue_on_missing_book_is_not_found(lib, member):
    with pytest.raises(NotFoundError, match="Book with ID 99 not found."):
        lib.loans.issue_loan(member.id, 99)
    assert lib.ledger.list() == []


def test_issue_for_missing_user_leaves_book_untouched(lib, book):
    with pytest.raises(NotFoundError, match="User with ID 42 not found."):
        lib.loans.issue_loan(42, book.id)
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    assert lib.ledger.list() == []


@pytest.mark.parametrize("user_id, book_id, field", [
    (0, 1, "user_id"),
    (-1, 1, "user_id"),
    (1, 0, "book_id"),
    (True, 1, "user_id"),
])
def test_issue_rejects_bad_ids(lib, user_id, book_id, field):
    with pytest.raises(InvalidInputError) as exc_info:
        lib.loans.issue_loan(user_id, book_id)
    assert exc_info.value.field == field


def test_issue_rejects_return_before_loan_date(lib, book, member):
    with pytest.raises(InvalidInputError, match="Return date cannot be before the loan date."):
        lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-10", return_date="2025-01-05")

    assert lib.ledger.list() == []
    assert _status(lib, book.id) is BookStatus.AVAILABLE


def test_issue_rejects_malformed_date(lib, book, member):
    with pytest.raises(InvalidInputError) as exc_info:
        lib.loans.issue_loan(member.id, book.id, loan_date="10/01/2025")
    assert exc_info.value.field == "loan_date"


def test_issue_pre_closed_loan_keeps_book_available(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-01", return_date="2025-01-08")

    assert not loan.is_active
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    # The book can still be lent afterwards
    lib.loans.issue_loan(member.id, book.id)
    _assert_status_matches_loans(lib)


def test_issue_pre_closed_loan_on_borrowed_book_conflicts(lib, book, member):
    lib.loans.issue_loan(member.id, book.id)
    with pytest.raises(ConflictError):
        lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-01", return_date="2025-01-08")
    assert len(lib.ledger.list()) == 1


# ---------------- Return ----------------

def test_issue_then_return_restores_availability(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-05-01")
    returned = lib.loans.return_loan(loan.id)

    assert returned.return_date == TODAY
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    loans = lib.ledger.list(book_id=book.id)
    assert len(loans) == 1 and not loans[0].is_active
    _assert_status_matches_loans(lib)


def test_return_twice_conflicts(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    lib.loans.return_loan(loan.id)

    with pytest.raises(ConflictError, match=f"Loan with ID {loan.id} has already been returned."):
        lib.loans.return_loan(loan.id)
    assert _status(lib, book.id) is BookStatus.AVAILABLE


def test_return_missing_loan_is_not_found(lib):
    with pytest.raises(NotFoundError, match="Loan with ID 5 not found."):
        lib.loans.return_loan(5)


def test_return_before_loan_date_is_invalid(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-05-10")
    with pytest.raises(InvalidInputError):
        lib.loans.return_loan(loan.id, return_date="2025-05-01")
    assert lib.loans.get_loan(loan.id).is_active
    assert _status(lib, book.id) is BookStatus.BORROWED


def test_return_heals_book_status_divergence(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    # Administrative override left the book AVAILABLE under an active loan
    lib.set_book_status(book.id, "AVAILABLE")

    lib.loans.return_loan(loan.id, return_date="2025-06-01")
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    assert lib.ledger.count_active() == 0


# ---------------- Concurrency ----------------

def _race(lib, book_id, user_ids):
    barrier = threading.Barrier(len(user_ids))

    def attempt(user_id):
        barrier.wait()
        try:
            return lib.loans.issue_loan(user_id, book_id)
        except ConflictError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(user_ids)) as pool:
        return list(pool.map(attempt, user_ids))


def test_two_simultaneous_issues_one_wins(lib, book, member):
    other = lib.register_user("Bob Smith", "bob@example.com")

    results = _race(lib, book.id, [member.id, other.id])

    winners = [r for r in results if not isinstance(r, ConflictError)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert len(lib.ledger.list(book_id=book.id, active_only=True)) == 1
    _assert_status_matches_loans(lib)


def test_many_simultaneous_issues_keep_one_active_loan(lib, book):
    users = [lib.register_user(f"Reader {i}", f"reader{i}@example.com") for i in range(8)]

    results = _race(lib, book.id, [u.id for u in users])

    assert sum(1 for r in results if not isinstance(r, ConflictError)) == 1
    assert len(lib.ledger.list(active_only=True)) == 1
    assert _status(lib, book.id) is BookStatus.BORROWED


def test_simultaneous_returns_one_wins(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    barrier = threading.Barrier(2)

    def attempt(_):
        barrier.wait()
        try:
            return lib.loans.return_loan(loan.id)
        except ConflictError as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(attempt, range(2)))

    assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
    assert _status(lib, book.id) is BookStatus.AVAILABLE


# ---------------- Administration ----------------

def test_list_loans_filters(lib, book, member):
    second = lib.add_book("1984", "George Orwell", "9780451524935", published_date="1949-06-08")
    first = lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-01")
    lib.loans.return_loan(first.id, return_date="2025-01-15")
    active = lib.loans.issue_loan(member.id, second.id)

    assert [l.id for l in lib.loans.list_loans()] == [first.id, active.id]
    assert [l.id for l in lib.loans.list_loans(active_only=True)] == [active.id]
    assert [l.id for l in lib.loans.list_loans(book_id=book.id)] == [first.id]
    assert [l.id for l in lib.loans.list_loans(user_id=member.id)] == [first.id, active.id]
    with pytest.raises(InvalidInputError):
        lib.loans.list_loans(user_id=0)


def test_get_loan(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    assert lib.loans.get_loan(loan.id).book_id == book.id
    with pytest.raises(NotFoundError):
        lib.loans.get_loan(loan.id + 1)
    with pytest.raises(InvalidInputError):
        lib.loans.get_loan(-1)


def test_update_loan_corrects_dates_on_returned_loan(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-01")
    lib.loans.return_loan(loan.id, return_date="2025-01-20")

    updated = lib.loans.update_loan(loan.id, loan_date="2025-01-02", return_date="2025-01-18")
    assert updated.loan_date == date(2025, 1, 2)
    assert updated.return_date == date(2025, 1, 18)
    assert lib.loans.get_loan(loan.id).return_date == date(2025, 1, 18)


def test_update_loan_cannot_close_active_loan(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    with pytest.raises(InvalidInputError):
        lib.loans.update_loan(loan.id, return_date="2025-06-01")
    assert lib.loans.get_loan(loan.id).is_active
    assert _status(lib, book.id) is BookStatus.BORROWED


def test_update_loan_rejects_inverted_dates(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id, loan_date="2025-01-01")
    lib.loans.return_loan(loan.id, return_date="2025-01-10")
    with pytest.raises(InvalidInputError):
        lib.loans.update_loan(loan.id, loan_date="2025-02-01")


def test_update_loan_requires_existing_references(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    with pytest.raises(NotFoundError, match="User with ID 77 not found."):
        lib.loans.update_loan(loan.id, user_id=77)
    with pytest.raises(NotFoundError, match="Book with ID 88 not found."):
        lib.loans.update_loan(loan.id, book_id=88)
    with pytest.raises(NotFoundError):
        lib.loans.update_loan(999, user_id=member.id)


def test_update_loan_reassigns_user(lib, book, member):
    other = lib.register_user("Bob Smith", "bob@example.com")
    loan = lib.loans.issue_loan(member.id, book.id)
    assert lib.loans.update_loan(loan.id, user_id=other.id).user_id == other.id


def test_update_loan_repoint_to_lent_book_conflicts(lib, book, member):
    second = lib.add_book("1984", "George Orwell", "9780451524935", published_date="1949-06-08")
    lib.loans.issue_loan(member.id, book.id)
    loan = lib.loans.issue_loan(member.id, second.id)

    with pytest.raises(ConflictError):
        lib.loans.update_loan(loan.id, book_id=book.id)
    assert lib.loans.get_loan(loan.id).book_id == second.id


def test_delete_loan_leaves_book_status(lib, book, member):
    loan = lib.loans.issue_loan(member.id, book.id)
    lib.loans.delete_loan(loan.id)

    assert lib.ledger.list() == []
    assert _status(lib, book.id) is BookStatus.BORROWED
    with pytest.raises(NotFoundError):
        lib.loans.delete_loan(loan.id)


# ---------------- Interleavings ----------------

def _run_in_background(fn, outcome):
    """Start ``fn`` on another thread and give it a moment to reach the write lock."""
    def target():
        try:
            outcome.append(fn())
        except Exception as e:  # surfaced through ``outcome`` and asserted by the test
            outcome.append(e)

    thread = threading.Thread(target=target)
    thread.start()
    thread.join(timeout=0.3)
    return thread


def test_return_during_update_is_not_overwritten(lib, book, member, monkeypatch):
    other = lib.register_user("Bob Smith", "bob@example.com")
    loan = lib.loans.issue_loan(member.id, book.id)

    lookup = lib.members.get_by_id
    outcome, threads = [], []

    def lookup_while_returning(*args, **kwargs):
        if not threads:
            threads.append(_run_in_background(lambda: lib.loans.return_loan(loan.id), outcome))
        return lookup(*args, **kwargs)

    monkeypatch.setattr(lib.members, "get_by_id", lookup_while_returning)
    lib.loans.update_loan(loan.id, user_id=other.id)
    threads[0].join()

    assert not isinstance(outcome[0], Exception), outcome
    stored = lib.loans.get_loan(loan.id)
    assert not stored.is_active
    assert stored.user_id == other.id
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    _assert_status_matches_loans(lib)
    # The book is lendable again
    lib.loans.issue_loan(member.id, book.id)


def test_return_follows_loan_repointed_before_it_runs(lib, book, member, monkeypatch):
    second = lib.add_book("1984", "George Orwell", "9780451524935", published_date="1949-06-08")
    loan = lib.loans.issue_loan(member.id, book.id)

    transaction = lib.db.transaction
    fired = []

    @contextmanager
    def repoint_first():
        if not fired:
            fired.append(True)
            # Clerical correction: the loan was really for the second book
            lib.loans.update_loan(loan.id, book_id=second.id)
            lib.set_book_status(book.id, BookStatus.AVAILABLE)
            lib.set_book_status(second.id, BookStatus.BORROWED)
        with transaction() as conn:
            yield conn

    monkeypatch.setattr(lib.db, "transaction", repoint_first)
    returned = lib.loans.return_loan(loan.id)

    assert returned.book_id == second.id
    assert _status(lib, second.id) is BookStatus.AVAILABLE
    assert _status(lib, book.id) is BookStatus.AVAILABLE
    _assert_status_matches_loans(lib)


def test_user_removed_during_issue_waits_for_it(lib, book, member, monkeypatch):
    lookup = lib.members.get_by_id
    outcome, threads = [], []

    def lookup_while_removing(*args, **kwargs):
        if not threads:
            threads.append(_run_in_background(lambda: lib.remove_user(member.id), outcome))
        return lookup(*args, **kwargs)

    monkeypatch.setattr(lib.members, "get_by_id", lookup_while_removing)
    loan = lib.loans.issue_loan(member.id, book.id)
    threads[0].join()

    assert loan.id is not None
    assert not isinstance(outcome[0], Exception), outcome
    # The removal ran after the issue committed and took the loan with it
    assert lib.ledger.list() == []
    assert _status(lib, book.id) is BookStatus.AVAILABLE
