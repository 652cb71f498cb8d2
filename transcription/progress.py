"""Progress reporting to caller-supplied callbacks."""

import inspect
import logging
from typing import Optional

from .models import ProgressCallback

logger = logging.getLogger(__name__)


async def report_progress(callback: Optional[ProgressCallback], stage: str, percent: float) -> None:
    """
    Call a sync or async progress callback with (stage, percent).

    Failures inside the callback are logged and never affect the run.
    """
    if callback is None:
        return
    percent = max(0.0, min(100.0, float(percent)))
    try:
        result = callback(stage, percent)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Progress callback failed at '{stage}': {e}")
