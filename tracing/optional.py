"""
Tri-state optional values for nullable wire fields.

Every structured field that goes to the remote API (input, output, metadata,
usage, error_info) has three meanings that must not collapse into one:

  absent   → the key is left out of the payload (server keeps what it has)
  null     → the key is sent as a literal null (server clears the field)
  present  → the key is sent with the contained value

Public call sites use the UNSET sentinel as the keyword default, so that
`span.end(input=None)` means "send null" while `span.end()` sends nothing.
"""
import dataclasses
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from core.errors import EncodingInvariantError


class _Unset:
    _instance: "_Unset | None" = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

# internal marker for "no content"; never visible outside this module
_MISSING = object()


class FieldState(str, Enum):
    ABSENT = "absent"
    NULL = "null"
    PRESENT = "present"


class TriState:
    """One optional field: absent, explicit null, or present with a value."""

    __slots__ = ("_state", "_value")

    def __init__(self):
        self._state = FieldState.ABSENT
        self._value: Any = _MISSING

    # ── constructors ───────────────────────────────────────────────
    @classmethod
    def absent(cls) -> "TriState":
        return cls()

    @classmethod
    def null(cls) -> "TriState":
        t = cls()
        t.set_null()
        return t

    @classmethod
    def of(cls, value: Any) -> "TriState":
        t = cls()
        t.set(value)
        return t

    @classmethod
    def from_arg(cls, arg: Any) -> "TriState":
        """Map a keyword argument: UNSET → absent, None → null, else present."""
        if isinstance(arg, TriState):
            return arg.copy()
        if arg is UNSET:
            return cls.absent()
        if arg is None:
            return cls.null()
        return cls.of(arg)

    # ── mutators ───────────────────────────────────────────────────
    def set(self, value: Any) -> None:
        """
        Store a present value. None, empty raw JSON and values with no JSON
        form (NaN, infinity, circular references) are rejected.
        """
        if value is None or value is UNSET:
            raise ValueError("present value must not be None; use set_null() for an explicit null")
        if isinstance(value, (bytes, bytearray)):
            value = _parse_raw_json(bytes(value))
        else:
            to_jsonable(value)
        self._state = FieldState.PRESENT
        self._value = value

    def set_null(self) -> None:
        self._state = FieldState.NULL
        self._value = _MISSING

    def unset(self) -> None:
        self._state = FieldState.ABSENT
        self._value = _MISSING

    # ── queries ────────────────────────────────────────────────────
    @property
    def state(self) -> FieldState:
        return self._state

    def is_set(self) -> bool:
        """True for null and present: the key will appear on the wire."""
        return self._state is not FieldState.ABSENT

    def is_null(self) -> bool:
        return self._state is FieldState.NULL

    def is_present(self) -> bool:
        return self._state is FieldState.PRESENT

    def value(self) -> Any:
        """The contained value; None for explicit null. Raises for absent."""
        if self._state is FieldState.ABSENT:
            raise ValueError("value() called on an absent field")
        if self._state is FieldState.NULL:
            return None
        return self._value

    def get(self, default: Any = None) -> Any:
        return self._value if self._state is FieldState.PRESENT else default

    def copy(self) -> "TriState":
        t = TriState()
        t._state = self._state
        t._value = self._value
        return t

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TriState):
            return NotImplemented
        return self._state is other._state and (
            self._state is not FieldState.PRESENT or self._value == other._value
        )

    def __repr__(self) -> str:
        if self._state is FieldState.PRESENT:
            return f"TriState.of({self._value!r})"
        return f"TriState.{self._state.value}()"


# ── wire codec ─────────────────────────────────────────────────────
def encode_into(payload: dict[str, Any], key: str, field: TriState) -> None:
    """Write one tri-state field into a JSON payload dict."""
    state = field.state
    if state is FieldState.ABSENT:
        return
    if state is FieldState.NULL:
        payload[key] = None
        return
    if field._value is _MISSING:
        raise EncodingInvariantError(f"field '{key}' is present but carries no content")
    payload[key] = to_jsonable(field._value)


def decode_from(payload: dict[str, Any], key: str) -> TriState:
    """Read one tri-state field back from a decoded JSON payload."""
    if key not in payload:
        return TriState.absent()
    value = payload[key]
    if value is None:
        return TriState.null()
    return TriState.of(value)


def to_jsonable(value: Any) -> Any:
    """
    Convert a caller-supplied value into plain JSON types. Raises ValueError
    for NaN or infinite floats, which have no JSON form.
    """
    return json.loads(json.dumps(value, default=_json_default, allow_nan=False))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def _parse_raw_json(raw: bytes) -> Any:
    if not raw.strip():
        raise ValueError("raw JSON value is empty; use set_null() for an explicit null")
    try:
        value = json.loads(raw, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise ValueError(f"raw value is not valid JSON: {e}") from None
    if value is None:
        raise ValueError("raw JSON 'null' is not a present value; use set_null()")
    return value


def _reject_constant(name: str) -> Any:
    raise ValueError(f"raw JSON contains {name}, which is not valid JSON")
