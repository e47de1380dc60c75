"""
Step parameters: a flat map of scalars, declared per step via `SupportedParameter` and
validated before the step does anything else. Coercion is pydantic's lax mode, with
`D.HH:MM:SS` durations parsed up front
"""

import functools
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Type

from pydantic import ConfigDict, TypeAdapter, ValidationError

from stepengine.low.core import ConfigurationError

_timespan = re.compile(r"^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{1,2}):(?P<seconds>\d{1,2}(?:\.\d+)?)$")
_seconds = re.compile(r"^\d+(?:\.\d+)?$")
_list_separators = re.compile(r"[,;]")


@dataclass(frozen=True)
class SupportedParameter:
    name: str
    type: Type
    required: bool = False


@functools.lru_cache
def adapter_of(type_: Type) -> TypeAdapter:
    if type_ is str:
        return TypeAdapter(str, config=ConfigDict(coerce_numbers_to_str=True))
    return TypeAdapter(type_)


def parse_timedelta(value: Any) -> timedelta:
    """Accepts a timedelta, a number of seconds, `HH:MM:SS`, `D.HH:MM:SS` or an ISO 8601 duration"""
    if isinstance(value, bool):
        raise ValueError(f"not a duration: {value!r}")
    if isinstance(value, str):
        raw = value.strip()
        if (m := _timespan.match(raw)) is not None:
            return timedelta(
                days=int(m.group("days") or 0),
                hours=int(m.group("hours")),
                minutes=int(m.group("minutes")),
                seconds=float(m.group("seconds")),
            )
        if _seconds.match(raw):
            return timedelta(seconds=float(raw))
        value = raw
    return adapter_of(timedelta).validate_python(value)


def convert(value: Any, type_: Type) -> Any:
    """Raises ValueError (pydantic's ValidationError included) on an unconvertible value"""
    if type_ is timedelta:
        return parse_timedelta(value)
    return adapter_of(type_).validate_python(value)


def split_list(value: str) -> list[str]:
    """For the `a,b;c` style multi-valued parameters"""
    return [e.strip() for e in _list_separators.split(value) if e.strip()]


def _reason(e: ValueError) -> str:
    if isinstance(e, ValidationError):
        return "; ".join(error["msg"] for error in e.errors())
    return str(e)


class StepParameters:
    """Case-insensitive, typed read access over the raw parameter map"""

    def __init__(self, raw: dict[str, Any], supported: Iterable[SupportedParameter]) -> None:
        self.raw = {k.lower(): v for k, v in raw.items()}
        self.supported = {p.name.lower(): p for p in supported}

    def __contains__(self, name: str) -> bool:
        value = self.raw.get(name.lower())
        return value is not None and not (isinstance(value, str) and not value.strip())

    def validate(self) -> None:
        """Raises ConfigurationError on a missing required or an unconvertible declared parameter"""
        missing = [p.name for p in self.supported.values() if p.required and p.name not in self]
        if missing:
            raise ConfigurationError(f"required parameters missing: {', '.join(missing)}")
        for key, parameter in self.supported.items():
            if parameter.name in self:
                try:
                    convert(self.raw[key], parameter.type)
                except ValueError as e:
                    raise ConfigurationError(f"parameter {parameter.name} is invalid: {_reason(e)}")

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self:
            return default
        value = self.raw[name.lower()]
        if (parameter := self.supported.get(name.lower())) is not None:
            return convert(value, parameter.type)
        return value

    def require(self, name: str) -> Any:
        if name not in self:
            raise ConfigurationError(f"required parameter {name} missing")
        return self.get(name)
