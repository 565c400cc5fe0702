"""Render the search command and resource descriptor for one job."""

from __future__ import annotations

import shlex

from create3_race.config import WorkloadSettings
from create3_race.race.models import Workload


def build_workload(*, pattern: str, deployer: str, settings: WorkloadSettings) -> Workload:
    """Build the workload every worker of a race executes."""

    return Workload(
        argv=render_command(
            command_template=settings.command_template,
            pattern=pattern,
            deployer=deployer,
        ),
        image_hash=settings.image_hash,
        rent_hours=settings.rent_hours,
        timeout_seconds=settings.attempt_timeout_seconds,
    )


def render_command(*, command_template: str, pattern: str, deployer: str) -> tuple[str, ...]:
    stripped = command_template.strip()
    if not stripped:
        raise ValueError("Command template is empty.")
    for placeholder in ("{pattern}", "{deployer}"):
        if placeholder not in stripped:
            raise ValueError(f"Command template must include {placeholder}.")

    try:
        rendered = stripped.format(
            pattern=shlex.quote(pattern),
            deployer=shlex.quote(deployer),
        )
    except KeyError as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Command template rendered empty command.")
    return tuple(argv)
