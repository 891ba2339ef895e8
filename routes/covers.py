"""Cover replacement and cover history endpoints."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, jsonify

from covers.service import fix_multiple_covers, fix_single_cover
from errors import ValidationError
from helpers import coerce_int
from routes.api_utils import handle_api_errors, json_body

covers_blueprint = Blueprint("covers", __name__)

_context: dict[str, Any] = {}


def configure(context: Mapping[str, Any]) -> None:
    """Provide shared state required by the cover endpoints."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"covers routes missing context value: {key}")
    return _context[key]


def _service_kwargs() -> dict[str, Any]:
    return {
        'db_lock': _ctx('db_lock'),
        'get_db': _ctx('get_db'),
        'steamgriddb': _ctx('clients').steamgriddb,
        'history': _ctx('cover_history'),
        'covers_dir': _ctx('covers_dir'),
    }


@covers_blueprint.route('/api/covers/<int:game_id>/fix', methods=['POST'])
@handle_api_errors
def api_fix_cover(game_id: int):
    payload = json_body(required=False)
    search_term = payload.get('searchTerm')
    if search_term is not None and not isinstance(search_term, str):
        raise ValidationError('searchTerm must be a string')
    result = fix_single_cover(game_id, search_term=search_term, **_service_kwargs())
    return jsonify(result)


@covers_blueprint.route('/api/covers/fix-batch', methods=['POST'])
@handle_api_errors
def api_fix_covers_batch():
    raw_ids = json_body().get('gameIds')
    if not isinstance(raw_ids, list) or not raw_ids:
        raise ValidationError('gameIds must be a non-empty array')
    game_ids = [coerce_int(value) for value in raw_ids]
    if any(game_id is None for game_id in game_ids):
        raise ValidationError('gameIds must contain only integers')
    return jsonify(fix_multiple_covers(game_ids, **_service_kwargs()))


@covers_blueprint.route('/api/covers/history')
@handle_api_errors
def api_cover_history():
    return jsonify(_ctx('cover_history').load())


@covers_blueprint.route('/api/covers/history', methods=['DELETE'])
@handle_api_errors
def api_clear_cover_history():
    _ctx('cover_history').clear_all()
    return jsonify({'cleared': 'all'})


@covers_blueprint.route('/api/covers/history/<int:game_id>', methods=['DELETE'])
@handle_api_errors
def api_clear_game_cover_history(game_id: int):
    removed = _ctx('cover_history').clear(game_id)
    return jsonify({'cleared': game_id, 'removed': removed})


__all__ = ["configure", "covers_blueprint"]
