"""Per-game API routes."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, jsonify

from db import repository
from errors import NotFoundError
from jobs.enrichment import refresh_game_rating
from routes.api_utils import handle_api_errors

games_blueprint = Blueprint("games", __name__)

_context: dict[str, Any] = {}


def configure(context: Mapping[str, Any]) -> None:
    """Provide shared state required by the game endpoints."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"games routes missing context value: {key}")
    return _context[key]


@games_blueprint.route('/api/games/<int:game_id>')
@handle_api_errors
def api_game(game_id: int):
    with _ctx('db_lock'):
        conn = _ctx('get_db')()
        game = repository.get_game(conn, game_id)
        if game is None:
            raise NotFoundError('Game not found')
        game['platforms'] = repository.list_platform_links(conn, game_id)
    return jsonify(game)


@games_blueprint.route('/api/games/<int:game_id>/refresh-rating', methods=['POST'])
@handle_api_errors
def api_refresh_rating(game_id: int):
    data = refresh_game_rating(
        game_id,
        db_lock=_ctx('db_lock'),
        get_db=_ctx('get_db'),
        steam=_ctx('clients').steam,
    )
    return jsonify({'success': True, 'data': data})


__all__ = ["configure", "games_blueprint"]
