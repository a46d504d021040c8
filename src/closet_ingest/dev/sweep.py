"""CLI to run the reconciliation sweeper on demand."""

from __future__ import annotations

import typer

from closet_ingest.config import load_settings
from closet_ingest.runtime import build_runtime
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    full_reset: bool = typer.Option(
        False,
        "--full-reset",
        help="Delete every staging object and every non-completed item, regardless of age.",
    ),
    threshold_hours: float | None = typer.Option(
        None,
        "--threshold-hours",
        help="Age after which staged objects count as stale; defaults to sweeper.stale_after_seconds.",
    ),
) -> None:
    """Delete stale staging objects, abandoned processed items, and orphaned images."""

    settings = load_settings()
    # The sweeper never publishes work, so skip broker setup.
    settings.queues.backend = "memory"
    runtime = build_runtime(settings)
    stale_after = threshold_hours * 3600.0 if threshold_hours is not None else None

    with runtime.repository() as repository:
        sweeper = runtime.sweeper(repository, stale_after_seconds=stale_after)
        report = sweeper.full_reset() if full_reset else sweeper.sweep()

    LOGGER.info("sweep_cli_complete", extra={"full_reset": full_reset, **report.to_dict()})
    typer.echo(report.summary())


if __name__ == "__main__":
    typer.run(main)
