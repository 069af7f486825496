import math
import time
from typing import Any, Optional, Set

from pydantic import BaseModel


def now_ms() -> int:
    return int(time.time() * 1000)


def js_round(value: float) -> int:
    """Round half up, the way browser clients round scores."""
    return int(math.floor(value + 0.5))


def strip_unset(value: Any) -> Any:
    """Drop None-valued keys recursively so only defined fields reach the store."""
    if isinstance(value, dict):
        return {k: strip_unset(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [strip_unset(v) for v in value]
    return value


def to_store(model: BaseModel, exclude: Optional[Set[str]] = None) -> dict:
    return strip_unset(model.model_dump(by_alias=True, exclude=exclude))
