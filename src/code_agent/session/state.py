"""State layer helpers: splitting deltas by scope and merging layers."""

from typing import Any, Dict, Optional, Tuple

APP_PREFIX = "app:"
USER_PREFIX = "user:"
TEMP_PREFIX = "temp:"


def trim_temp_delta(delta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop transient ``temp:`` keys so they never reach storage."""
    if not delta:
        return {}
    return {key: value for key, value in delta.items() if not key.startswith(TEMP_PREFIX)}


def extract_state_deltas(
    delta: Optional[Dict[str, Any]],
) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """
    Split a delta into (app, user, session) parts.

    Prefixes are stripped from app and user keys; ``temp:`` keys are dropped.
    """
    app_delta: Dict[str, Any] = {}
    user_delta: Dict[str, Any] = {}
    session_delta: Dict[str, Any] = {}

    for key, value in trim_temp_delta(delta).items():
        if key.startswith(APP_PREFIX):
            app_delta[key[len(APP_PREFIX):]] = value
        elif key.startswith(USER_PREFIX):
            user_delta[key[len(USER_PREFIX):]] = value
        else:
            session_delta[key] = value

    return app_delta, user_delta, session_delta


def merge_states(
    app_state: Optional[Dict[str, Any]],
    user_state: Optional[Dict[str, Any]],
    session_state: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Overlay app, then user, then session state; later layers win."""
    merged: Dict[str, Any] = {}
    merged.update(app_state or {})
    merged.update(user_state or {})
    merged.update(session_state or {})
    return merged


def apply_delta(state: Optional[Dict[str, Any]], delta: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``state`` with ``delta`` applied."""
    updated = dict(state or {})
    updated.update(delta)
    return updated
