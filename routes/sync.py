"""Catalog reconciliation, library summary and bulk job endpoints."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, jsonify, request

from catalog.reconciler import import_catalog, sync_catalog
from catalog.snapshot import validate_snapshot
from catalog.stats import summarize_library
from jobs.enrichment import start_job
from jobs.manager import JOB_TYPE_CATALOG
from routes.api_utils import handle_api_errors, json_body

sync_blueprint = Blueprint("sync", __name__)

_context: dict[str, Any] = {}


def configure(context: Mapping[str, Any]) -> None:
    """Provide shared state required by the sync endpoints."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"sync routes missing context value: {key}")
    return _context[key]


@sync_blueprint.route('/api/sync/catalog/import', methods=['POST'])
@handle_api_errors
def api_catalog_import():
    snapshot = validate_snapshot(json_body())
    conn = _ctx('get_db')()

    def runner(update_progress):
        return import_catalog(
            conn,
            snapshot,
            db_lock=_ctx('db_lock'),
            threshold=_ctx('match_threshold'),
            update_progress=update_progress,
        )

    result = _ctx('job_registry').run(
        JOB_TYPE_CATALOG,
        runner,
        total=len(snapshot.games),
        description=f'Importing {snapshot.platform} catalog',
    )
    return jsonify(result)


@sync_blueprint.route('/api/sync/catalog/sync', methods=['POST'])
@handle_api_errors
def api_catalog_sync():
    snapshot = validate_snapshot(json_body())
    conn = _ctx('get_db')()
    result = _ctx('job_registry').run(
        JOB_TYPE_CATALOG,
        lambda update_progress: sync_catalog(conn, snapshot, db_lock=_ctx('db_lock')),
        total=len(snapshot.games),
        description=f'Syncing {snapshot.platform} catalog',
    )
    return jsonify(result)


@sync_blueprint.route('/api/sync/status')
@handle_api_errors
def api_sync_status():
    with _ctx('db_lock'):
        summary = summarize_library(_ctx('get_db')())
    summary['steamConfigured'] = bool(_ctx('steam_configured')())
    return jsonify(summary)


def _quick_flag() -> bool | None:
    """Read ``quick`` from the query string or an optional JSON body."""

    raw = request.args.get('quick')
    if raw is None:
        raw = json_body(required=False).get('quick')
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


@sync_blueprint.route('/api/sync/jobs/<job_type>', methods=['POST'])
@handle_api_errors
def api_start_job(job_type: str):
    started = start_job(
        _ctx('job_registry'),
        job_type,
        clients=_ctx('clients'),
        db_lock=_ctx('db_lock'),
        get_db=_ctx('get_job_db'),
        quick=_quick_flag(),
    )
    return jsonify(started), 202


@sync_blueprint.route('/api/sync/jobs/<job_type>')
@handle_api_errors
def api_job_status(job_type: str):
    return jsonify(_ctx('job_registry').status(job_type))


__all__ = ["configure", "sync_blueprint"]
