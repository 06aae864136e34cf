"""Flask application factory.

Wires the services together:

- ConfigService: Configuration loading and migration
- TmuxBackend: Output capture, PID resolution, existence checks
- SessionStateStore: Persisted session records
- ProcessMonitor: Per-session state polling

Usage:
    from worktree_sessions.app import create_app
    app = create_app()
    app.run(port=5050)
"""

import logging
from datetime import timedelta
from pathlib import Path

from flask import Flask, jsonify

from worktree_sessions import __version__
from worktree_sessions.backends.tmux import TmuxBackend
from worktree_sessions.models import AppConfig
from worktree_sessions.routes import register_blueprints
from worktree_sessions.services import ConfigService, ProcessMonitor, load_state

logger = logging.getLogger(__name__)


def create_app(config_path: str = "config.yaml", backend=None) -> Flask:
    """Create and configure the Flask application.

    Args:
        config_path: Path to the configuration file.
        backend: Session backend. Defaults to a TmuxBackend.

    Returns:
        Configured Flask application.
    """
    config_service = ConfigService(config_path)
    config = config_service.get_config()

    app = Flask(__name__)
    app.config["TESTING"] = False

    app.extensions["config"] = config
    app.extensions["config_service"] = config_service

    _init_services(app, config, backend)
    register_blueprints(app)

    @app.route("/health")
    def health():
        monitor = app.extensions["process_monitor"]
        return jsonify(
            {
                "status": "ok",
                "version": __version__,
                "monitored": len(monitor.monitored_sessions()),
            }
        )

    return app


def _init_services(app: Flask, config: AppConfig, backend=None) -> None:
    """Initialize all services and wire them together.

    Args:
        app: Flask application.
        config: Application configuration.
        backend: Session backend, or None for tmux.
    """
    if backend is None:
        backend = TmuxBackend(timeout=config.tmux.command_timeout)
    app.extensions["session_backend"] = backend

    state_file = Path(config.tmux.state_file).expanduser()
    state_store = load_state(state_file, backend=backend)
    app.extensions["state_store"] = state_store

    process_monitor = ProcessMonitor(
        backend=backend,
        poll_interval=config.tmux.monitor_interval,
        state_store=state_store,
        probe_timeout=config.tmux.command_timeout,
    )
    app.extensions["process_monitor"] = process_monitor

    logger.info(f"Services initialized (state file: {state_file})")


def run_startup_cleanup(app: Flask) -> int:
    """Remove stale session entries if auto cleanup is enabled.

    Returns:
        Number of entries removed.
    """
    config = app.extensions["config"]
    if not config.tmux.auto_cleanup:
        return 0

    store = app.extensions["state_store"]
    removed = store.cleanup_stale_entries(timedelta(hours=config.tmux.cleanup_age_hours))
    logger.info(f"Startup cleanup removed {removed} stale sessions")
    return removed


def main():
    """Run the Flask application."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = create_app()
    config = app.extensions["config"]
    logging.getLogger().setLevel(config.log_level)

    run_startup_cleanup(app)

    logger.info(f"Starting worktree session monitor on port {config.port}")
    try:
        app.run(host="127.0.0.1", port=config.port, debug=config.debug, threaded=True)
    finally:
        app.extensions["process_monitor"].shutdown(timeout=config.tmux.monitor_interval)


if __name__ == "__main__":
    main()
