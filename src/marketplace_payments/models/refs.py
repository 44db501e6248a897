"""
References that are either a bare id or an already-loaded record.

A booking points at its service, customer and provider by id. Views that
need the records resolve them explicitly instead of checking at every use
site whether a field happens to be populated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar, Union

from ..errors import NotFoundError

T = TypeVar("T")


@dataclass(frozen=True)
class IdRef:
    id: str


@dataclass(frozen=True)
class Resolved(Generic[T]):
    id: str
    value: T


Ref = Union[IdRef, Resolved[T]]


def ref_id(ref: Ref) -> str:
    return ref.id


async def resolve(
    ref: Ref,
    loader: Callable[[str], Awaitable[Optional[T]]],
    label: str = "Record",
) -> Resolved[T]:
    if isinstance(ref, Resolved):
        return ref
    value = await loader(ref.id)
    if value is None:
        raise NotFoundError(f"{label} not found", details={"id": ref.id})
    return Resolved(id=ref.id, value=value)
