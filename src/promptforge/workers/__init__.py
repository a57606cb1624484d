"""Background workers for periodic maintenance tasks."""

from promptforge.workers.reference_refresh_worker import (
    refresh_once,
    run_reference_refresh_worker,
)

__all__ = [
    "refresh_once",
    "run_reference_refresh_worker",
]
