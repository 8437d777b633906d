from flask import Flask, jsonify

from indexer import STOPPED


def create_app(indexer):
    """Progress endpoints for a running Indexer. No ledger data is served."""
    app = Flask(__name__)

    @app.route('/api/status')
    def status_api():
        return jsonify(indexer.status())

    @app.route('/api/health')
    def health_api():
        status = indexer.status()
        if status['state'] == STOPPED and status['error']:
            return jsonify({'ok': False, 'error': status['error']}), 503
        return jsonify({'ok': True, 'state': status['state']})

    return app
