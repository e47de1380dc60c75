import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Callable,
    Generic,
    Iterable,
    NoReturn,
    Optional,
    Sequence,
    TypeVar,
    cast,
)

from pydantic import BaseModel
from typing_extensions import Self

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


def maybe_head(v: Iterable[T]) -> Optional[T]:
    try:
        return next(iter(v))
    except StopIteration:
        return None


def assert_never(v: Any) -> NoReturn:
    """For exhaustive enum checks etc"""
    raise TypeError(v)


class Either(Generic[T]):
    """Lookup outcome which is either a value or an error message. Absence is not exceptional
    until the caller says so via `get_or_raise`"""

    def __init__(self, t: Optional[T] = None, e: Optional[str] = None):
        self.t = t
        self.e = e

    @classmethod
    def ok(cls, t: T) -> Self:
        return cls(t=t)

    @classmethod
    def error(cls, e: str) -> Self:
        return cls(e=e)

    def is_ok(self) -> bool:
        return not self.e

    def get_or_raise(self, raiser: Optional[Callable[[str], BaseException]] = None) -> T:
        if self.e:
            if not raiser:
                raise ValueError(self.e)
            else:
                raise raiser(self.e)
        else:
            return cast(T, self.t)

    def chain(self, f: Callable[[T], "Either[U]"]) -> "Either[U]":
        if self.e:
            return Either.error(self.e)
        else:
            return f(cast(T, self.t))


B = TypeVar("B", bound=BaseModel)


def pyd_replace(model: B, **kwargs) -> B:
    """Like dataclasses.replace but for pydantic"""
    return model.model_copy(update=kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pick_uniform(options: Sequence[T], rng: random.Random) -> T:
    """A single option is taken as is, otherwise one is picked uniformly at random"""
    if not options:
        raise ValueError("nothing to pick from")
    if len(options) == 1:
        return options[0]
    return rng.choice(list(options))


def retry_linear(
    fn: Callable[[], T],
    retries: int,
    delay: timedelta,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Calls `fn`, and upon any `retry_on` exception sleeps for `attempt * delay` and calls again,
    at most `retries` times. The last exception propagates"""
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt > retries:
                raise
            logger.debug(f"attempt {attempt} of {retries} retries after {repr(e)}")
            sleep(attempt * delay.total_seconds())
