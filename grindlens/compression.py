from __future__ import annotations

from typing import Any, Callable, Generic, List, Optional, Tuple, TypeVar

from .model import ProfileData, TraceFile, TraceFunction, TraceObject

T = TypeVar("T")

# initial alias table sizes; tables double on demand
OBJECT_ALIASES = 100
FILE_ALIASES = 1000
FUNCTION_ALIASES = 10000


def split_compressed(name: str) -> Tuple[Optional[int], Optional[str]]:
    """
    Split a possibly compressed name.

    "(N) Name" -> (N, "Name")   defines alias N
    "(N)"      -> (N, None)     references alias N
    "Name"     -> (None, "Name")

    Raises ValueError when the text starts like an alias but has no closing
    parenthesis after the digits.
    """
    name = name.strip()
    if len(name) < 2 or name[0] != "(" or not name[1].isdigit():
        return None, name
    p = name.find(")")
    if p < 2 or not name[1:p].isdigit():
        raise ValueError(f"invalid compressed name '{name}'")
    rest = name[p + 1:].strip()
    return int(name[1:p]), (rest or None)


class AliasTable(Generic[T]):
    """Sparse index -> entity table for one import."""

    def __init__(self, kind: str, size: int) -> None:
        self.kind = kind
        self._slots: List[Optional[T]] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def define(self, index: int, entity: T) -> None:
        if index >= len(self._slots):
            grown = max(index * 2, index + 1)
            self._slots.extend([None] * (grown - len(self._slots)))
        self._slots[index] = entity

    def lookup(self, index: int) -> Optional[T]:
        if index >= len(self._slots):
            return None
        return self._slots[index]


class CompressionResolver:
    """Resolves object/file/function names of one import, honoring "(N)" aliases."""

    def __init__(self, data: ProfileData, warn: Callable[[str], None]) -> None:
        self.data = data
        self.warn = warn
        self.objects: AliasTable[TraceObject] = AliasTable("object", OBJECT_ALIASES)
        self.files: AliasTable[TraceFile] = AliasTable("file", FILE_ALIASES)
        self.functions: AliasTable[TraceFunction] = AliasTable("function", FUNCTION_ALIASES)

    def _resolve(self, table: AliasTable[Any], name: str, make: Callable[[str], Any]) -> Tuple[Any, bool]:
        """Returns (entity or None, whether `name` was an alias reference)."""
        try:
            index, literal = split_compressed(name)
        except ValueError:
            self.warn(f"invalid compressed format for {table.kind} '{name.strip()}'")
            return None, False
        if index is None:
            return make(literal), False
        if literal is not None:
            entity = make(literal)
            table.define(index, entity)
            return entity, False
        if index >= len(table):
            self.warn(f"invalid compressed {table.kind} index {index}, size {len(table)}")
            return None, True
        entity = table.lookup(index)
        if entity is None:
            self.warn(f"invalid compressed {table.kind} index {index} without definition")
        return entity, True

    def resolve_object(self, name: str) -> Optional[TraceObject]:
        return self._resolve(self.objects, name, self.data.object)[0]

    def resolve_file(self, name: str) -> Optional[TraceFile]:
        return self._resolve(self.files, name, self.data.file)[0]

    def resolve_function(self, name: str, file: Optional[TraceFile],
                         obj: Optional[TraceObject]) -> Optional[TraceFunction]:
        fn, referenced = self._resolve(self.functions, name, lambda n: self.data.function(n, file, obj))
        if fn is None or not referenced or obj is None or fn.object_id == obj.id:
            return fn

        bound = self.data.objects[fn.object_id]
        if bound.is_sentinel and not obj.is_sentinel:
            if not self.data.rebind_object(fn, obj):
                self.warn(f"cannot move function '{fn.name}' to object '{obj.name}'")
        else:
            # the first binding wins
            self.warn(f"object mismatch for function '{fn.name}': found '{bound.name}', given '{obj.name}'")
        return fn
