from __future__ import annotations

import logging
from typing import Any

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


def safe_encode(x: Any) -> Any:
    """
    JSON-encodes arbitrary objects safely (FastAPI encoder).
    Anything the encoder can't handle is reduced to its string form.
    """
    try:
        return jsonable_encoder(x)
    except (TypeError, ValueError) as e:
        logger.debug(f"Falling back to str() for {type(x).__name__}: {e}")
        return str(x)
