import logging

from flask import Flask, jsonify

from .api import register_api
from .config import load_config
from .errors import CommandError, PanelError
from .schema import ensure_schema
from .services import Panel

logger = logging.getLogger(__name__)


def create_app(config=None, panel=None):
    """Build the API application. Tests pass their own config or a prepared Panel."""
    config = config or (panel.config if panel else load_config())
    panel = panel or Panel(config)
    ensure_schema(panel.db)

    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False
    app.config['JWT_SECRET'] = config.jwt_secret
    app.extensions['hostpanel'] = panel

    register_api(app)

    # ============== Error Handlers ==============

    @app.errorhandler(PanelError)
    def panel_error(e):
        if isinstance(e, CommandError):
            logger.error(f"Command failed: {e.message}")
        return jsonify({'success': False, 'error': e.message}), e.status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({'success': False, 'error': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    if config.simulate:
        logger.info(f"Simulate mode: system paths under {config.simulate_base_path}")
    return app


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    config = load_config()
    app = create_app(config)
    app.run(host='0.0.0.0', port=config.port, threaded=True)


if __name__ == '__main__':
    main()
