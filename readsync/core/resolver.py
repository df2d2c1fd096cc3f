"""Book identity resolution.

Strategies in precedence order, first hit wins:
1. cache hit by content hash carrying a remote id
2. cached ISBN -> catalog ISBN search (ISBN-13 preferred), exact ISBN only
3. remote hash lookup
4. fuzzy title search -> ranked candidates for a human to confirm

Steps 2 and 3 need the network. Every hit is written back to the cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from readsync.core.errors import Result, SyncErrorKind
from readsync.core.identity_cache import IdentityCache, IdentityCacheEntry, synthetic_locator
from readsync.providers.catalog import RemoteBook, RemoteClient

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 5


class MatchMethod(str, Enum):
    """How a book got its remote id."""

    CACHE = "cache"
    ISBN = "isbn"
    HASH = "hash"
    TITLE = "title"
    MANUAL = "manual"


@dataclass
class Resolution:
    book_id: int
    method: MatchMethod
    book: RemoteBook | None = None

    @property
    def exact(self) -> bool:
        """Hash and ISBN matches may be accepted without asking the user."""
        return self.method in (MatchMethod.CACHE, MatchMethod.ISBN, MatchMethod.HASH)


def isbn_matches(book: RemoteBook, isbn10: str | None, isbn13: str | None) -> bool:
    return bool((isbn13 and book.isbn13 == isbn13) or (isbn10 and book.isbn10 == isbn10))


def rank_candidates(books: list[RemoteBook], limit: int = MAX_CANDIDATES) -> list[RemoteBook]:
    """Highest matchScore first; books without a score keep server order after scored ones."""
    ranked = sorted(books, key=lambda b: -(b.match_score if b.match_score is not None else float("-inf")))
    return ranked[:limit]


class IdentityResolver:
    """Resolves a content hash to a remote book id using the cache and the catalog."""

    def __init__(self, cache: IdentityCache, client: RemoteClient) -> None:
        self.cache = cache
        self.client = client

    def resolve_cached(
        self,
        content_hash: str | None,
        isbn10: str | None = None,
        isbn13: str | None = None,
        locator: str | None = None,
    ) -> Resolution | None:
        """Cache-only lookup (hash, then ISBN, then locator). Never touches the network."""
        entry = self.cache.get_by_hash(content_hash) if content_hash else None
        if entry and entry.resolved:
            return Resolution(entry.remote_book_id, MatchMethod.CACHE)

        if entry:
            isbn10 = isbn10 or entry.isbn10
            isbn13 = isbn13 or entry.isbn13
        if isbn10 or isbn13:
            by_isbn = self.cache.find_by_isbn(isbn10=isbn10, isbn13=isbn13)
            if by_isbn:
                return Resolution(by_isbn.remote_book_id, MatchMethod.ISBN)

        if locator:
            by_locator = self.cache.get_by_locator(locator)
            if by_locator and by_locator.resolved:
                return Resolution(by_locator.remote_book_id, MatchMethod.CACHE)
        return None

    def resolve(self, content_hash: str, online: bool, locator: str | None = None) -> Result[Resolution]:
        """Run the cascade up to the remote hash lookup.

        Returns:
            Result with the Resolution, or an OFFLINE/NOT_FOUND/... error
        """
        entry = self.cache.get_by_hash(content_hash)
        if entry and entry.resolved:
            return Result.success(Resolution(entry.remote_book_id, MatchMethod.CACHE))

        if not online:
            cached = self.resolve_cached(content_hash, locator=locator)
            if cached:
                return Result.success(cached)
            return Result.fail(SyncErrorKind.OFFLINE, "Offline, remote lookup skipped")

        if entry and (entry.isbn13 or entry.isbn10):
            by_isbn = self._resolve_by_isbn(content_hash, entry, locator)
            if by_isbn.ok or by_isbn.kind == SyncErrorKind.OFFLINE:
                return by_isbn

        result = self.client.get_book_by_hash(content_hash)
        if not result.ok:
            logger.info(f"Hash lookup for {content_hash} failed: {result.error.message}")
            return result
        book = result.value
        self.accept(content_hash, book, MatchMethod.HASH, locator=locator)
        return Result.success(Resolution(book.id, MatchMethod.HASH, book))

    def _resolve_by_isbn(
        self,
        content_hash: str,
        entry: IdentityCacheEntry,
        locator: str | None,
    ) -> Result[Resolution]:
        isbn = entry.isbn13 or entry.isbn10
        result = self.client.search_books(isbn=isbn)
        if not result.ok:
            return result
        for book in result.value:
            if isbn_matches(book, entry.isbn10, entry.isbn13):
                logger.info(f"ISBN {isbn} resolved {content_hash} to book {book.id}")
                self.accept(content_hash, book, MatchMethod.ISBN, locator=locator)
                return Result.success(Resolution(book.id, MatchMethod.ISBN, book))
        return Result.fail(SyncErrorKind.NOT_FOUND, f"No exact match for ISBN {isbn}")

    def search_by_isbn(self, isbn10: str | None, isbn13: str | None) -> Result[RemoteBook]:
        """Catalog ISBN search returning only an exact ISBN match."""
        isbn = isbn13 or isbn10
        if not isbn:
            return Result.fail(SyncErrorKind.NOT_FOUND, "No ISBN")
        result = self.client.search_books(isbn=isbn)
        if not result.ok:
            return result
        for book in result.value:
            if isbn_matches(book, isbn10, isbn13):
                return Result.success(book)
        return Result.fail(SyncErrorKind.NOT_FOUND, f"No exact match for ISBN {isbn}")

    def search_candidates(self, title: str, limit: int = MAX_CANDIDATES) -> Result[list[RemoteBook]]:
        """Ranked title-search candidates. These always need confirmation."""
        if not title or not title.strip():
            return Result.success([])
        result = self.client.search_books(title=title.strip())
        if not result.ok:
            return result
        return Result.success(rank_candidates(result.value, limit))

    def accept(
        self,
        content_hash: str | None,
        book: RemoteBook,
        method: MatchMethod,
        locator: str | None = None,
    ) -> Resolution:
        """Record a match: backfill the cache and append to match history."""
        if not locator and content_hash:
            existing = self.cache.get_by_hash(content_hash)
            locator = existing.locator if existing else synthetic_locator(content_hash)
        if locator:
            self.cache.save(
                IdentityCacheEntry(
                    locator=locator,
                    content_hash=content_hash,
                    remote_book_id=book.id,
                    title=book.title,
                    author=book.author,
                    isbn10=book.isbn10,
                    isbn13=book.isbn13,
                )
            )
        if content_hash:
            self.cache.set_remote_id(content_hash, book.id)
        self.cache.record_match(
            content_hash,
            book.id,
            method.value,
            confidence=book.match_score,
            title=book.title,
            author=book.author,
        )
        return Resolution(book.id, method, book)
