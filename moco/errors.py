"""Field validation errors and the aggregate error raised by admission checks."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable

GROUP = "moco.cybozu.com"

REQUIRED = "Required value"
INVALID = "Invalid value"
FORBIDDEN = "Forbidden"
INTERNAL = "Internal error"
NOT_SUPPORTED = "Unsupported value"

_VALUELESS_KINDS = frozenset({REQUIRED, FORBIDDEN, INTERNAL})


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


@dataclass(frozen=True)
class FieldError:
    """A problem with one field of an object, located by its path."""

    kind: str
    field: str
    bad_value: Any = None
    detail: str = ""

    def _body(self) -> str:
        if self.kind in _VALUELESS_KINDS:
            text = self.kind
        else:
            text = f"{self.kind}: {_format_value(self.bad_value)}"
        if self.detail:
            text += f": {self.detail}"
        return text

    def __str__(self) -> str:
        return f"{self.field}: {self._body()}"


class InvalidError(Exception):
    """Raised when an object fails validation; holds every field error found."""

    def __init__(
        self,
        kind: str,
        name: str,
        errors: Iterable[FieldError],
        group: str = GROUP,
    ) -> None:
        self.kind = kind
        self.name = name
        self.group = group
        self.errors = list(errors)
        super().__init__(str(self))

    def _aggregate(self) -> str:
        messages = list(dict.fromkeys(str(err) for err in self.errors))
        if len(messages) == 1:
            return messages[0]
        return "[" + ", ".join(messages) + "]"

    def __str__(self) -> str:
        qualified = f"{self.kind}.{self.group}" if self.group else self.kind
        return f"{qualified} {json.dumps(self.name, ensure_ascii=False)} is invalid: {self._aggregate()}"