"""
``flask registry`` commands for operators.
"""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Optional

import click
from flask import current_app
from flask.cli import AppGroup

from registry_app.models import Person, db
from registry_app.services import get_blob_store

from .bulk import BulkUploadService
from .errors import ReconcileError
from .export import export_csv, write_export
from .principal import Principal, Role
from .rollback import RollbackCoordinator
from .snapshot import verify_person_history

registry_cli = AppGroup("registry", help="Person registry maintenance commands.")

DEFAULT_CLI_PRINCIPAL = "cli"


def _principal(principal_id: str) -> Principal:
    return Principal(id=principal_id, role=Role.ADMIN)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise click.ClickException(f"Unable to read {path}: {exc}") from exc


def _abort(exc: ReconcileError) -> click.ClickException:
    current_app.logger.warning("Registry command failed", extra={"error_kind": exc.kind.value})
    message = f"[{exc.kind.value}] {exc.message}"
    if exc.identifiers:
        message = f"{message}\n{json.dumps(exc.identifiers, indent=2, sort_keys=True, default=str)}"
    return click.ClickException(message)


@registry_cli.command("init-db")
def init_db_command():
    """Create all registry tables."""
    db.create_all()
    click.echo("Registry tables created.")


@registry_cli.command("simulate")
@click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--principal", "principal_id", default=DEFAULT_CLI_PRINCIPAL, show_default=True)
def simulate_command(file_path: Path, principal_id: str):
    """Print the diff a snapshot would produce without applying it."""
    service = BulkUploadService()
    try:
        summary = service.simulate(_read_file(file_path), _principal(principal_id), filename=file_path.name)
    except ReconcileError as exc:
        db.session.rollback()
        raise _abort(exc) from exc
    _echo_json(summary)


@registry_cli.command("apply")
@click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--comment", default=None)
@click.option("--date-released", "date_released", default=None, help="Release date of the snapshot (YYYY-MM-DD).")
@click.option("--principal", "principal_id", default=DEFAULT_CLI_PRINCIPAL, show_default=True)
def apply_command(file_path: Path, comment: Optional[str], date_released: Optional[str], principal_id: str):
    """Apply a snapshot as one BULK_UPLOAD change source."""
    released: date | None = None
    if date_released:
        try:
            released = date.fromisoformat(date_released)
        except ValueError as exc:
            raise click.BadParameter("must be YYYY-MM-DD", param_hint="--date-released") from exc

    service = BulkUploadService(blob_store=get_blob_store(current_app))
    try:
        result = service.apply(
            _read_file(file_path),
            _principal(principal_id),
            filename=file_path.name,
            content_type="text/csv",
            comment=comment,
            date_released=released,
        )
    except ReconcileError as exc:
        db.session.rollback()
        raise _abort(exc) from exc
    _echo_json(result.to_dict())


@registry_cli.command("rollback")
@click.argument("change_source_id", type=int)
@click.option("--force", is_flag=True, help="Roll back even when later changes touched the same persons.")
@click.option("--principal", "principal_id", default=DEFAULT_CLI_PRINCIPAL, show_default=True)
def rollback_command(change_source_id: int, force: bool, principal_id: str):
    """Revert a bulk upload with compensating versions."""
    coordinator = RollbackCoordinator()
    try:
        result = coordinator.rollback(change_source_id, _principal(principal_id), force=force)
    except ReconcileError as exc:
        db.session.rollback()
        raise _abort(exc) from exc
    _echo_json(result.to_dict())


@registry_cli.command("export")
@click.option("--output", "output_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
def export_command(output_path: Optional[Path]):
    """Write the current-state CSV export to a file or stdout."""
    if output_path is None:
        click.echo(export_csv(), nl=False)
        return
    with output_path.open("w", encoding="utf-8", newline="") as handle:
        count = write_export(handle)
    click.echo(f"Exported {count} person(s) to {output_path}", err=True)


@registry_cli.command("verify-history")
@click.option("--person-id", "person_id", type=int, default=None)
def verify_history_command(person_id: Optional[int]):
    """Replay version histories and report persons whose current state diverges."""
    query = db.session.query(Person).order_by(Person.id)
    if person_id is not None:
        query = query.filter(Person.id == person_id)

    checked = 0
    divergent = 0
    for person in query.all():
        checked += 1
        issues = verify_person_history(db.session, person)
        if not issues:
            continue
        divergent += 1
        click.echo(f"Person {person.id} ({person.external_id}):")
        for issue in issues:
            click.echo(f"  - {issue}")

    if person_id is not None and checked == 0:
        raise click.ClickException(f"Person {person_id} not found.")
    click.echo(f"Checked {checked} person(s); {divergent} divergent.")
    if divergent:
        click.get_current_context().exit(1)
