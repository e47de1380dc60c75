"""
Resolving secret references in step parameters, and keeping the resolved values out of logs
"""

import logging
import os
import re
import threading
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

SECRET_SCHEME = "secret://"

# key=value pairs whose key looks like it holds a credential. Unquoted values may contain spaces
# and run until the next separator or command line flag
_secret_pairs = re.compile(
    r"(?P<key>[\w.\-]*(?:SharedAccessKey|AccountKey|AccessKey|Password|Pwd|Secret|Token|InstrumentationKey|ConnectionString)[\w.\-]*)"
    r"(?P<sep>\s*[=:]\s*)"
    r"(?P<value>\"[^\"]*\"|'[^']*'|[^;,\"'\n]+?(?=\s+--?\w|[;,\"'\n]|$))",
    re.IGNORECASE,
)
_mask = "***"


def obscure_secrets(text: str) -> str:
    """Replaces values of credential-looking `key=value` pairs with a mask"""
    return _secret_pairs.sub(lambda m: f"{m.group('key')}{m.group('sep')}{_mask}", text)


@runtime_checkable
class SecretResolver(Protocol):
    def is_secret_reference(self, value: str) -> bool:
        raise NotImplementedError

    def resolve_secret(self, reference: str, cancellation: threading.Event) -> str:
        raise NotImplementedError


class EnvironmentSecretResolver:
    """Resolves `secret://NAME` from the environment variable NAME"""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self.environ = os.environ if environ is None else environ

    def is_secret_reference(self, value: str) -> bool:
        return value.startswith(SECRET_SCHEME)

    def resolve_secret(self, reference: str, cancellation: threading.Event) -> str:
        name = reference[len(SECRET_SCHEME):]
        if not name:
            raise ValueError(f"empty secret reference: {reference}")
        if (value := self.environ.get(name)) is None:
            raise KeyError(f"secret {name} is not defined")
        logger.debug(f"resolved secret {name}")
        return value
