import logging
from typing import Any

from stepengine.platform.secrets import obscure_secrets

logger = logging.getLogger(__name__)


class TelemetryContext:
    """Property bag accumulated during a tick and logged at its end"""

    def __init__(self, name: str, properties: dict[str, Any] | None = None) -> None:
        self.name = name
        self.properties: dict[str, Any] = dict(properties or {})

    def add(self, key: str, value: Any) -> "TelemetryContext":
        self.properties[key] = value
        return self

    def render(self) -> str:
        return obscure_secrets(", ".join(f"{k}={v}" for k, v in self.properties.items()))

    def emit(self, level: int = logging.INFO) -> None:
        logger.log(level, f"{self.name}: {self.render()}")
