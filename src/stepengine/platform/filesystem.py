import glob
import os
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class FileSystem(Protocol):
    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def glob(self, pattern: str) -> list[str]:
        raise NotImplementedError

    def write_text(self, path: str, content: str) -> None:
        raise NotImplementedError


class LocalFileSystem:
    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def glob(self, pattern: str) -> list[str]:
        return sorted(glob.glob(pattern, recursive=True))

    def write_text(self, path: str, content: str) -> None:
        Path(path).write_text(content, encoding="utf-8")
