"""
Pagination over Bitbucket list endpoints.

Bitbucket list responses carry ``size``, ``page``, ``pagelen``, ``next``,
``previous`` and ``values``. The first request asks for ``page`` and
``pagelen`` explicitly; later requests follow the server's ``next`` link
verbatim.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from bt.core.cancellation import CancellationToken
from bt.core.decoding import decode_into
from bt.core.exceptions import UnknownAPIError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PAGELEN = 50
MAX_PAGELEN = 100


@dataclass
class PageOptions:
    """Where to start, how big each page is, and how many items in total."""

    page: int = 1
    pagelen: int = DEFAULT_PAGELEN
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError(f"page must be at least 1, got {self.page}")
        if not 1 <= self.pagelen <= MAX_PAGELEN:
            raise ValidationError(f"pagelen must be between 1 and {MAX_PAGELEN}, got {self.pagelen}")
        if self.limit is not None and self.limit < 1:
            raise ValidationError(f"limit must be at least 1, got {self.limit}")


@dataclass
class Page:
    """
    One page of results.

    ``size`` is the number of values in this page, after truncation to the
    limit. ``total_size`` is the server's total item count when it reports one.
    """

    size: int
    page: int
    pagelen: int
    values: list[Any] = field(default_factory=list)
    next: str | None = None
    previous: str | None = None
    has_next: bool = False
    total_size: int | None = None


class Paginator:
    """
    Walks a list endpoint one page at a time.

    A paginator holds traversal state and is meant for one caller; create one
    per traversal rather than sharing it between threads.
    """

    def __init__(
        self,
        executor,
        endpoint: str,
        options: PageOptions | None = None,
        params: dict[str, Any] | None = None,
    ) -> None:
        self.executor = executor
        self.endpoint = endpoint
        self.options = options or PageOptions()
        self.params = dict(params or {})
        self.reset()

    def reset(self) -> None:
        """Start over from the configured first page."""
        self._started = False
        self._next_url: str | None = None
        self._fetched = 0
        self._last_page: Page | None = None

    @property
    def fetched(self) -> int:
        """Number of values returned so far."""
        return self._fetched

    @property
    def last_page(self) -> Page | None:
        return self._last_page

    def _limit_reached(self) -> bool:
        return self.options.limit is not None and self._fetched >= self.options.limit

    def has_next_page(self) -> bool:
        if self._limit_reached():
            return False
        if not self._started:
            return True
        return self._next_url is not None

    def next_page(self, token: CancellationToken | None = None) -> Page | None:
        """
        Fetch the next page.

        Returns:
            The page, or None once the results or the limit are exhausted

        Raises:
            UnknownAPIError: If the response is not a JSON object
            BitbucketError: If the request fails
        """
        if not self.has_next_page():
            return None

        if self._started:
            response = self.executor.execute("GET", self._next_url, token=token)
        else:
            params = {**self.params, "page": self.options.page, "pagelen": self.options.pagelen}
            response = self.executor.execute("GET", self.endpoint, params=params, token=token)

        try:
            data = response.json()
        except ValueError as e:
            raise UnknownAPIError(
                "Failed to decode paginated response", status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise UnknownAPIError("Paginated response is not an object", status_code=response.status_code)

        values = data.get("values") or []
        if self.options.limit is not None:
            values = values[: self.options.limit - self._fetched]

        self._started = True
        self._fetched += len(values)
        self._next_url = data.get("next") or None

        page = Page(
            size=len(values),
            page=data.get("page", self.options.page),
            pagelen=data.get("pagelen", self.options.pagelen),
            values=values,
            next=self._next_url,
            previous=data.get("previous"),
            total_size=data.get("size"),
        )
        page.has_next = self.has_next_page()
        self._last_page = page
        logger.debug("Fetched page %s of %s with %d values", page.page, self.endpoint, page.size)
        return page

    def iter_values(self, token: CancellationToken | None = None, into: type | None = None) -> Iterator[Any]:
        """
        Yield every value across pages, fetching lazily.

        Args:
            token: Cancellation token for each page request
            into: Optional type each value is decoded into, via ``from_dict``
                or keyword construction
        """
        while self.has_next_page():
            page = self.next_page(token)
            if page is None:
                return
            for value in page.values:
                yield value if into is None else decode_into(value, into)

    def fetch_all(self, token: CancellationToken | None = None, into: type | None = None) -> list[Any]:
        """Fetch every remaining page and return all values, optionally decoded into ``into``."""
        return list(self.iter_values(token, into=into))
