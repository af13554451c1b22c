"""Scoped shutdown of collaborators that collects close errors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Tuple

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ResourceGuard:
    """Close every registered resource on exit and keep the failures.

    Close errors never mask the error that ended the ``with`` block; they are
    logged and exposed through :attr:`errors` for the caller to report.
    """

    resources: List[Tuple[str, Any]] = field(default_factory=list)
    errors: List[Tuple[str, Exception]] = field(default_factory=list)

    def register(self, name: str, resource: Any) -> Any:
        if resource is not None:
            self.resources.append((name, resource))
        return resource

    def close_all(self) -> List[Tuple[str, Exception]]:
        while self.resources:
            name, resource = self.resources.pop()
            closer = getattr(resource, "close", None)
            if not callable(closer):
                continue
            try:
                closer()
            except Exception as error:  # noqa: BLE001 - collected and reported below
                LOGGER.warning("Failed to close %s: %s", name, error)
                self.errors.append((name, error))
        return list(self.errors)

    def __enter__(self) -> "ResourceGuard":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close_all()


__all__ = ["ResourceGuard"]
