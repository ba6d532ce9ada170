"""
auth/headers.py -- Response header accumulator threaded through the auth calls.

Several steps of one request may each want to emit headers: session lookup
may clear a dead cookie, renewal refreshes the live one, a route may add
Cache-Control. ResponseHeaders collects them in order and resolves collisions:

  - ordinary headers: the last value for a name wins (case-insensitive)
  - Set-Cookie: cookies are independent by cookie name, so setting cookie
    "a" never drops cookie "b", while a later value for "a" replaces the
    earlier one

apply() copies the result onto a Starlette/FastAPI response.
"""

from __future__ import annotations

from collections.abc import Iterator

_SET_COOKIE = "set-cookie"


def _cookie_name(value: str) -> str:
    return value.split("=", 1)[0].strip()


class ResponseHeaders:
    """Ordered multimap of response headers with cookie-aware merging."""

    def __init__(self, items: list[tuple[str, str]] | None = None) -> None:
        self._items: list[tuple[str, str]] = []
        for name, value in items or []:
            self.set(name, value)

    def set(self, name: str, value: str) -> ResponseHeaders:
        key = name.lower()
        if key == _SET_COOKIE:
            cookie = _cookie_name(value)
            self._items = [
                (n, v) for n, v in self._items if not (n.lower() == _SET_COOKIE and _cookie_name(v) == cookie)
            ]
        else:
            self._items = [(n, v) for n, v in self._items if n.lower() != key]
        self._items.append((name, value))
        return self

    def set_cookie(self, value: str) -> ResponseHeaders:
        return self.set("Set-Cookie", value)

    def merge(self, *others: ResponseHeaders | None) -> ResponseHeaders:
        """Fold other accumulators into this one, in order. Returns self."""
        for other in others:
            if other is None:
                continue
            for name, value in other:
                self.set(name, value)
        return self

    def get(self, name: str) -> str | None:
        values = self.get_all(name)
        return values[-1] if values else None

    def get_all(self, name: str) -> list[str]:
        key = name.lower()
        return [v for n, v in self._items if n.lower() == key]

    def apply(self, response) -> None:
        """Write every header onto a Starlette response. Set-Cookie values are appended."""
        for name, value in self._items:
            if name.lower() == _SET_COOKIE:
                response.headers.append(name, value)
            else:
                response.headers[name] = value

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __repr__(self) -> str:
        return f"ResponseHeaders({self._items!r})"
