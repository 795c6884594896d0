from pathlib import Path

import typer

from batchkeeper.status import ProcessingType


def processing_type_callback(ctx: typer.Context, value: str):
    if ctx.resilient_parsing:
        return
    if value not in ProcessingType.__members__.values():
        raise typer.BadParameter(
            message=f"'{value}' is not a valid processing type, supported types are: {', '.join(ProcessingType.__members__.values())}",
            param_hint="--type, -t",
        )
    return value


def env_file_callback(ctx: typer.Context, value: Path | None):
    if ctx.resilient_parsing or value is None:
        return value
    if not value.exists():
        raise typer.BadParameter(
            message=f"file at path: '{value.as_posix()}' does not exist",
        )
    return value
