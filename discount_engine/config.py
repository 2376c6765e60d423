import os
from dataclasses import dataclass

_PREFIX = "DISCOUNT_ENGINE_"


def _env(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default)


@dataclass(frozen=True)
class EngineConfig:
    # Logging
    LOG_LEVEL: str = _env("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = _env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rejection messages
    CURRENCY_SYMBOL: str = _env("CURRENCY_SYMBOL", "₹")

    # Server
    HOST: str = _env("HOST", "127.0.0.1")
    PORT: int = int(_env("PORT", "8000"))

config = EngineConfig()
