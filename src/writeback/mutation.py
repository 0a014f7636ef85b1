"""Mutations: named, ordered changes applied to a cached entity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class Mutation:
    """A caller-supplied change to one entity.

    ``apply`` modifies the value in place and its return value is ignored,
    unless ``replaces`` is set: then whatever it returns becomes the new
    value (for immutable values). ``description`` doubles as the commit
    message and, when ``record_history`` is set, as the history line added
    to the value.
    Mutations with ``retryable=False`` are dropped if their write conflicts.
    """

    apply: Callable[[Any], Any]
    description: str
    record_history: bool = False
    retryable: bool = True
    replaces: bool = False


def add_history(value: Any, description: str) -> None:
    """Default history hook: ``value.add_history(description)``."""
    value.add_history(description)
