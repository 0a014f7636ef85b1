"""Domain codecs: turn entity values into document bytes and back."""

from __future__ import annotations

from typing import Any, Callable, Generic, Protocol, TypeVar, runtime_checkable

V = TypeVar("V")


class CodecError(Exception):
    """Raised when a value cannot be encoded or a document cannot be decoded."""


@runtime_checkable
class Codec(Protocol[V]):
    def encode(self, value: V) -> bytes: ...

    def decode(self, data: bytes) -> V: ...


class JsonCodec(Generic[V]):
    """Codec for values that serialize themselves to a JSON string.

    Any exception from the dump/load callables is re-raised as CodecError
    so callers only need to handle one failure type.
    """

    def __init__(
        self,
        dumps: Callable[[V], str],
        loads: Callable[[str], V],
        encoding: str = "utf-8",
    ) -> None:
        self._dumps = dumps
        self._loads = loads
        self._encoding = encoding

    @classmethod
    def for_type(cls, value_type: Any) -> JsonCodec[Any]:
        """Build a codec from a type exposing ``to_json()`` / ``from_json()``."""
        return cls(lambda v: v.to_json(), value_type.from_json)

    def encode(self, value: V) -> bytes:
        try:
            return self._dumps(value).encode(self._encoding)
        except Exception as exc:
            raise CodecError(f"Unable to encode {type(value).__name__}: {exc}") from exc

    def decode(self, data: bytes) -> V:
        try:
            return self._loads(data.decode(self._encoding))
        except Exception as exc:
            raise CodecError(f"Unable to decode document: {exc}") from exc
