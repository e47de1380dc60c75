"""
Durable per-step state. The only memory a step has across ticks lives here, the engine
does load, mutate, save once per tick, with last writer wins
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Type, TypeVar, runtime_checkable

import orjson
from pydantic import BaseModel

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class StateKey:
    experiment_id: str
    step_id: str
    scope: str = "state"  # a step keeps its state and its last result side by side

    def __str__(self) -> str:
        return f"{self.experiment_id}/{self.step_id}/{self.scope}"

    def sibling(self, scope: str) -> "StateKey":
        return StateKey(self.experiment_id, self.step_id, scope)


def ser_state(value: BaseModel) -> bytes:
    return orjson.dumps(value.model_dump(mode="json"))


def des_state(raw: bytes, model: Type[M]) -> M:
    return model.model_validate(orjson.loads(raw))


@runtime_checkable
class StateStore(Protocol):
    def get_state(self, key: StateKey, model: Type[M]) -> M | None:
        raise NotImplementedError

    def save_state(self, key: StateKey, value: BaseModel) -> None:
        raise NotImplementedError

    def delete_state(self, key: StateKey) -> None:
        raise NotImplementedError


class InMemoryStateStore:
    def __init__(self) -> None:
        self.blobs: dict[StateKey, bytes] = {}

    def get_state(self, key: StateKey, model: Type[M]) -> M | None:
        if (raw := self.blobs.get(key)) is None:
            return None
        return des_state(raw, model)

    def save_state(self, key: StateKey, value: BaseModel) -> None:
        self.blobs[key] = ser_state(value)

    def delete_state(self, key: StateKey) -> None:
        self.blobs.pop(key, None)


class FileStateStore:
    """One json file per key, under `root/experiment_id/step_id/scope.json`"""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _path(self, key: StateKey) -> Path:
        for part in (key.experiment_id, key.step_id, key.scope):
            if not part or os.sep in part or part in (".", ".."):
                raise ValueError(f"invalid state key component: {part!r}")
        return self.root / key.experiment_id / key.step_id / f"{key.scope}.json"

    def get_state(self, key: StateKey, model: Type[M]) -> M | None:
        path = self._path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        return des_state(raw, model)

    def save_state(self, key: StateKey, value: BaseModel) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(ser_state(value))
        os.replace(tmp, path)
        logger.debug(f"saved state {key}")

    def delete_state(self, key: StateKey) -> None:
        self._path(key).unlink(missing_ok=True)
