"""Session routes.

Provides REST API endpoints for session inspection and monitoring:
- List persisted sessions with their live state
- Inspect a monitored session's state history
- Start/stop monitoring and trigger on-demand detection
- Clean up stale entries
"""

import logging
import math
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from worktree_sessions.exceptions import (
    AlreadyMonitoringError,
    DetectionError,
    ExternalCommandError,
    SessionNotFoundError,
    StatePersistenceError,
)
from worktree_sessions.models.session import PersistedSession
from worktree_sessions.services.naming import validate_session_id
from worktree_sessions.services.process_monitor import ProcessMonitor
from worktree_sessions.services.state_store import SessionStateStore

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__)


def _get_store() -> SessionStateStore:
    return current_app.extensions["state_store"]


def _get_monitor() -> ProcessMonitor:
    return current_app.extensions["process_monitor"]


def _session_to_dict(session: PersistedSession, monitor: ProcessMonitor) -> dict:
    data = session.model_dump(mode="json")
    data["monitored"] = monitor.is_monitoring(session.id)
    if data["monitored"]:
        try:
            data["state"] = monitor.get_process_state(session.id).value
        except SessionNotFoundError:
            data["monitored"] = False
    if not data["monitored"]:
        data["state"] = session.last_state.value
    return data


@sessions_bp.route("/sessions", methods=["GET"])
def list_sessions():
    """List persisted sessions.

    Query params:
        project: Only sessions of this project.
        worktree: Only sessions of this worktree.

    Returns:
        JSON object with a "sessions" list.
    """
    store = _get_store()
    monitor = _get_monitor()

    project = request.args.get("project")
    worktree = request.args.get("worktree")
    if project:
        sessions = store.get_sessions_by_project(project)
    elif worktree:
        sessions = store.get_sessions_by_worktree(worktree)
    else:
        sessions = store.list_sessions()

    if project and worktree:
        sessions = [s for s in sessions if s.worktree == worktree]

    logger.debug(f"[API] GET /sessions - returning {len(sessions)} sessions")
    return jsonify({"sessions": [_session_to_dict(s, monitor) for s in sessions]})


@sessions_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    """Get one persisted session."""
    try:
        session = _get_store().get_session(session_id)
    except SessionNotFoundError:
        return jsonify({"error": "Session not found"}), 404
    return jsonify(_session_to_dict(session, _get_monitor()))


@sessions_bp.route("/sessions/<session_id>/state", methods=["GET"])
def get_session_state(session_id: str):
    """Get the live state, PID and transition history of a monitored session."""
    monitor = _get_monitor()
    try:
        state = monitor.get_process_state(session_id)
        pid = monitor.get_process_pid(session_id)
        history = monitor.get_state_history(session_id)
        last_change = monitor.get_last_state_change(session_id)
    except SessionNotFoundError:
        return jsonify({"error": "Session is not being monitored"}), 404

    return jsonify(
        {
            "session_id": session_id,
            "state": state.value,
            "pid": pid,
            "last_state_change": last_change.isoformat(),
            "history": [change.to_dict() for change in history],
        }
    )


@sessions_bp.route("/sessions/<session_id>/monitor", methods=["POST"])
def start_monitoring(session_id: str):
    """Start monitoring a session."""
    if not validate_session_id(session_id):
        return jsonify({"error": "Invalid session ID"}), 400

    try:
        _get_monitor().start_monitoring(session_id)
    except AlreadyMonitoringError:
        return jsonify({"error": "Session is already being monitored"}), 409
    except ExternalCommandError as e:
        logger.warning(f"[API] Could not start monitoring {session_id}: {e}")
        return jsonify({"error": str(e)}), 502

    return jsonify({"success": True, "session_id": session_id}), 201


@sessions_bp.route("/sessions/<session_id>/monitor", methods=["DELETE"])
def stop_monitoring(session_id: str):
    """Stop monitoring a session."""
    try:
        _get_monitor().stop_monitoring(session_id)
    except SessionNotFoundError:
        return jsonify({"error": "Session is not being monitored"}), 404
    return jsonify({"success": True, "session_id": session_id})


@sessions_bp.route("/sessions/<session_id>/detect", methods=["POST"])
def detect_state(session_id: str):
    """Run state detection for a monitored session right away."""
    try:
        changed, state = _get_monitor().detect_state_change(session_id)
    except SessionNotFoundError:
        return jsonify({"error": "Session is not being monitored"}), 404
    except DetectionError as e:
        return jsonify({"error": str(e)}), 502

    return jsonify({"session_id": session_id, "changed": changed, "state": state.value})


@sessions_bp.route("/sessions/cleanup", methods=["POST"])
def cleanup_sessions():
    """Remove stale entries.

    Body:
        max_age_hours: Entries not accessed for this many hours are checked.
            Defaults to the configured cleanup age.
    """
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    config = current_app.extensions.get("config")
    default_hours = config.tmux.cleanup_age_hours if config else 24

    try:
        max_age_hours = float(payload.get("max_age_hours", default_hours))
    except (TypeError, ValueError):
        return jsonify({"error": "max_age_hours must be a number"}), 400
    if not math.isfinite(max_age_hours) or max_age_hours < 0:
        return jsonify({"error": "max_age_hours must be a finite, non-negative number"}), 400

    try:
        max_age = timedelta(hours=max_age_hours)
    except OverflowError:
        return jsonify({"error": "max_age_hours is too large"}), 400

    try:
        removed = _get_store().cleanup_stale_entries(max_age)
    except StatePersistenceError as e:
        return jsonify({"error": str(e)}), 500

    return jsonify({"removed": removed})
