"""Collections, taxonomies and pagination for kiln.

Everything here is pure: built from the filtered page list, no I/O, and
deterministic for a given input.

Key classes:
- PageCollection: Ordered, queryable sequence of pages.
- TaxonomyCollection: Terms of one taxonomy mapped to page collections.
- TaxonomyIndex: Taxonomy name mapped to its TaxonomyCollection.
- Pager: One page of a paginated collection.
- SiteIndex: Site-wide collections, sections, types and lookups.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any

from .content import ContentPage
from .extractors import normalize_term

_PAGE_ATTRIBUTES = {
    "title",
    "slug",
    "url_path",
    "output_path",
    "relative_path",
    "section",
    "type",
    "draft",
    "date",
    "weight",
}

_OPERATORS = (
    "=",
    "==",
    "eq",
    "!=",
    "<>",
    "ne",
    ">",
    ">=",
    "<",
    "<=",
    "in",
    "not in",
    "intersect",
    "like",
)


def page_sort_key(page: ContentPage) -> tuple:
    """Deterministic page order: weight, then newest date, then path.

    Pages without a weight sort after weighted pages and undated pages sort
    after dated ones.
    """
    weight = page.weight if page.weight is not None else 0
    if page.date is not None:
        age = -(page.date - datetime.min).total_seconds()
    else:
        age = 0.0
    return (page.weight is None, weight, page.date is None, age, page.relative_path)


def resolve_value(page: ContentPage, key: str) -> Any:
    """Resolve a query key against a page.

    Page attributes win, ``meta.`` keys read metadata, taxonomy names return
    term tuples and anything else falls back to metadata lookup.
    """
    if key in _PAGE_ATTRIBUTES:
        return getattr(page, key)
    if key.startswith("meta."):
        return page.get(key[len("meta.") :])
    if key in page.taxonomies:
        return page.terms(key)
    return page.get(key)


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator in ("=", "==", "eq"):
        return actual == expected
    if operator in ("!=", "<>", "ne"):
        return actual != expected
    if operator in (">", ">=", "<", "<="):
        if actual is None or expected is None:
            return False
        try:
            if operator == ">":
                return actual > expected
            if operator == ">=":
                return actual >= expected
            if operator == "<":
                return actual < expected
            return actual <= expected
        except TypeError:
            return False
    if operator == "in":
        return actual in _as_list(expected)
    if operator == "not in":
        return actual not in _as_list(expected)
    if operator == "intersect":
        return bool(set(_as_list(actual)) & set(_as_list(expected)))
    if operator == "like":
        if actual is None:
            return False
        pattern = str(expected).lower()
        if "*" not in pattern and "?" not in pattern:
            pattern = f"*{pattern}*"
        return fnmatchcase(str(actual).lower(), pattern)
    raise ValueError(f"Unknown operator '{operator}'. Allowed: {', '.join(_OPERATORS)}")


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


class PageCollection(Sequence[ContentPage]):
    """Ordered sequence of pages with query helpers for templates and code."""

    def __init__(self, pages: Iterable[ContentPage] = ()):
        self._pages = list(pages)

    def __iter__(self) -> Iterator[ContentPage]:
        return iter(self._pages)

    def __len__(self) -> int:
        return len(self._pages)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return PageCollection(self._pages[item])
        return self._pages[item]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PageCollection):
            return self._pages == other._pages
        return NotImplemented

    def all(self) -> list[ContentPage]:
        return list(self._pages)

    def count(self) -> int:  # type: ignore[override]
        return len(self._pages)

    def is_empty(self) -> bool:
        return not self._pages

    def first(self) -> ContentPage | None:
        return self._pages[0] if self._pages else None

    def last(self) -> ContentPage | None:
        return self._pages[-1] if self._pages else None

    def take(self, count: int) -> PageCollection:
        return PageCollection(self._pages[: max(count, 0)])

    def slice(self, offset: int, length: int | None = None) -> PageCollection:
        end = None if length is None else offset + length
        return PageCollection(self._pages[offset:end])

    def reverse(self) -> PageCollection:
        return PageCollection(reversed(self._pages))

    def filter(self, predicate: Callable[[ContentPage], bool]) -> PageCollection:
        return PageCollection(p for p in self._pages if predicate(p))

    def where(self, key: str, operator: Any = "=", value: Any = None) -> PageCollection:
        """Filter pages by comparing a resolved value.

        ``where("section", "blog")`` is shorthand for the ``=`` operator.

        Args:
            key: Page attribute, taxonomy name or (dotted) metadata key.
            operator: One of ``= == eq != <> ne > >= < <= in``, ``not in``,
                ``intersect`` or ``like``.
            value: Value to compare against.

        Returns:
            A new PageCollection with the matching pages.
        """
        if value is None and operator not in _OPERATORS:
            operator, value = "=", operator
        operator = str(operator).lower()
        if operator not in _OPERATORS:
            raise ValueError(
                f"Unknown operator '{operator}'. Allowed: {', '.join(_OPERATORS)}"
            )
        return PageCollection(
            p for p in self._pages if _compare(resolve_value(p, key), operator, value)
        )

    def where_type(self, name: str) -> PageCollection:
        return PageCollection(p for p in self._pages if p.type == name)

    def by(self, key: str, direction: str = "asc") -> PageCollection:
        """Sort by a resolved value; pages without a value always sort last."""
        present = [p for p in self._pages if resolve_value(p, key) is not None]
        missing = [p for p in self._pages if resolve_value(p, key) is None]
        ordered = sorted(
            present,
            key=lambda p: _sortable(resolve_value(p, key)),
            reverse=direction.lower() == "desc",
        )
        return PageCollection(ordered + missing)

    def by_date(self, direction: str = "desc") -> PageCollection:
        return self.by("date", direction)

    def by_title(self, direction: str = "asc") -> PageCollection:
        return PageCollection(
            sorted(
                self._pages,
                key=lambda p: p.title.lower(),
                reverse=direction.lower() == "desc",
            )
        )

    def group_by(self, key: str) -> dict[Any, PageCollection]:
        groups: dict[Any, list[ContentPage]] = {}
        for page in self._pages:
            value = resolve_value(page, key)
            if isinstance(value, (list, tuple)):
                for item in value:
                    groups.setdefault(item, []).append(page)
            else:
                groups.setdefault(value, []).append(page)
        return {k: PageCollection(v) for k, v in groups.items()}

    def group_by_date(self, fmt: str = "%Y") -> dict[str, PageCollection]:
        groups: dict[str, list[ContentPage]] = {}
        for page in self._pages:
            if page.date is None:
                continue
            groups.setdefault(page.date.strftime(fmt), []).append(page)
        return {k: PageCollection(v) for k, v in groups.items()}

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"PageCollection({len(self._pages)} pages)"


def _sortable(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return value


class TaxonomyCollection(Mapping[str, PageCollection]):
    """Mapping of term to PageCollection for one taxonomy, terms sorted."""

    def __init__(self, name: str, mapping: Mapping[str, Iterable[ContentPage]]):
        self.name = name
        self._mapping = {k: PageCollection(mapping[k]) for k in sorted(mapping)}

    def __getitem__(self, key: str) -> PageCollection:
        return self._mapping[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._mapping)

    def __len__(self) -> int:
        return len(self._mapping)

    def terms(self) -> list[str]:
        return list(self._mapping)

    def term(self, term: str) -> PageCollection:
        """Pages carrying ``term`` (normalized); empty for unknown terms."""
        return self._mapping.get(normalize_term(term), PageCollection())

    def has_term(self, term: str) -> bool:
        return normalize_term(term) in self._mapping

    def count(self, term: str) -> int:
        return len(self.term(term))

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"TaxonomyCollection({self.name!r}, {len(self._mapping)} terms)"


class TaxonomyIndex(Mapping[str, TaxonomyCollection]):
    """Taxonomy name to TaxonomyCollection, built from ordered pages."""

    def __init__(self, pages: Iterable[ContentPage], taxonomies: Iterable[str]):
        names = list(taxonomies)
        buckets: dict[str, dict[str, list[ContentPage]]] = {name: {} for name in names}
        for page in pages:
            for name in names:
                for term in page.terms(name):
                    buckets[name].setdefault(term, []).append(page)
        self._taxonomies = {
            name: TaxonomyCollection(name, terms) for name, terms in buckets.items()
        }

    def __getitem__(self, key: str) -> TaxonomyCollection:
        return self._taxonomies[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._taxonomies)

    def __len__(self) -> int:
        return len(self._taxonomies)

    def taxonomy(self, name: str) -> TaxonomyCollection:
        return self._taxonomies.get(name) or TaxonomyCollection(name, {})


def _normalize_base(base_path: str) -> str:
    stripped = base_path.strip("/")
    return f"/{stripped}/" if stripped else "/"


class Pager:
    """One page of a paginated collection.

    Attributes:
        collection: The full collection being paginated.
        page_size: Items per page.
        base_path: URL of page 1.
        path_segment: URL segment placed before page numbers.
    """

    def __init__(
        self,
        collection: Sequence[ContentPage],
        page_size: int = 10,
        page_number: int = 1,
        base_path: str = "/",
        path_segment: str = "page",
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.collection = (
            collection if isinstance(collection, PageCollection) else PageCollection(collection)
        )
        self.page_size = page_size
        self.base_path = _normalize_base(base_path)
        self.path_segment = path_segment.strip("/") or "page"
        self.total_pages = max(1, math.ceil(len(self.collection) / page_size))
        self.number = min(max(page_number, 1), self.total_pages)

    @property
    def pages(self) -> PageCollection:
        start = (self.number - 1) * self.page_size
        return self.collection.slice(start, self.page_size)

    @property
    def total_items(self) -> int:
        return len(self.collection)

    @property
    def is_first(self) -> bool:
        return self.number == 1

    @property
    def is_last(self) -> bool:
        return self.number == self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.number > 1

    @property
    def has_next(self) -> bool:
        return self.number < self.total_pages

    @property
    def url(self) -> str:
        return self.url_for(self.number)

    @property
    def prev_url(self) -> str | None:
        return self.url_for(self.number - 1) if self.has_prev else None

    @property
    def next_url(self) -> str | None:
        return self.url_for(self.number + 1) if self.has_next else None

    @property
    def first_url(self) -> str:
        return self.url_for(1)

    @property
    def last_url(self) -> str:
        return self.url_for(self.total_pages)

    def url_for(self, number: int) -> str:
        """URL of page ``number``; page 1 is the base path itself."""
        if number <= 1:
            return self.base_path
        return f"{self.base_path}{self.path_segment}/{number}/"

    def numbers(self) -> list[int]:
        return list(range(1, self.total_pages + 1))

    def pagers(self) -> list[Pager]:
        """Every pager of the same collection, in page order."""
        return [
            Pager(self.collection, self.page_size, n, self.base_path, self.path_segment)
            for n in self.numbers()
        ]

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"Pager({self.number}/{self.total_pages}, {self.base_path!r})"


class SiteIndex:
    """Site-wide collections, sections, content types and taxonomies.

    Attributes:
        taxonomies: The TaxonomyIndex built from the pages.
    """

    def __init__(self, pages: Iterable[ContentPage], taxonomies: Iterable[str] = ("tags",)):
        ordered = sorted(pages, key=page_sort_key)
        self._all = PageCollection(ordered)
        self._sections: dict[str, list[ContentPage]] = {}
        self._types: dict[str, list[ContentPage]] = {}
        for page in ordered:
            self._sections.setdefault(page.section, []).append(page)
            if page.type:
                self._types.setdefault(page.type, []).append(page)
        self.taxonomies = TaxonomyIndex(ordered, taxonomies)
        self._by_slug = {p.slug: p for p in ordered}
        self._by_url = {p.url_path: p for p in ordered}
        self._by_relative = {p.relative_path: p for p in ordered}

    def all(self) -> PageCollection:
        return self._all

    def section(self, name: str) -> PageCollection:
        return PageCollection(self._sections.get(name, []))

    def sections(self) -> list[str]:
        """Non-root section names, ordered by section index weight then name."""

        def key(name: str) -> tuple:
            index = self.section_index(name)
            weight = index.weight if index is not None else None
            return (weight is None, weight or 0, name)

        return sorted((name for name in self._sections if name), key=key)

    def section_index(self, name: str) -> ContentPage | None:
        for page in self._sections.get(name, []):
            if page.is_index and page.directory == name:
                return page
        return None

    def type(self, name: str) -> PageCollection:
        return PageCollection(self._types.get(name, []))

    def taxonomy(self, name: str) -> TaxonomyCollection:
        return self.taxonomies.taxonomy(name)

    def by_slug(self, slug: str) -> ContentPage | None:
        return self._by_slug.get(slug.strip("/") or "index")

    def by_url(self, url_path: str) -> ContentPage | None:
        return self._by_url.get(_normalize_base(url_path))

    def by_relative_path(self, relative_path: str) -> ContentPage | None:
        return self._by_relative.get(relative_path)

    def previous(self, page: ContentPage) -> ContentPage | None:
        return _neighbour(self._all, page, -1)

    def next(self, page: ContentPage) -> ContentPage | None:
        return _neighbour(self._all, page, 1)

    def previous_in_section(self, page: ContentPage) -> ContentPage | None:
        return _neighbour(self.section(page.section), page, -1)

    def next_in_section(self, page: ContentPage) -> ContentPage | None:
        return _neighbour(self.section(page.section), page, 1)

    def paginate(
        self,
        collection: Sequence[ContentPage],
        page_size: int = 10,
        page_number: int = 1,
        base_path: str = "/",
        path_segment: str = "page",
    ) -> Pager:
        return Pager(collection, page_size, page_number, base_path, path_segment)

    def pagers(
        self,
        collection: Sequence[ContentPage],
        page_size: int = 10,
        base_path: str = "/",
        path_segment: str = "page",
    ) -> list[Pager]:
        return Pager(collection, page_size, 1, base_path, path_segment).pagers()


def _neighbour(
    collection: PageCollection, page: ContentPage, offset: int
) -> ContentPage | None:
    pages = collection.all()
    for index, candidate in enumerate(pages):
        if candidate.relative_path == page.relative_path:
            target = index + offset
            if 0 <= target < len(pages):
                return pages[target]
            return None
    return None
