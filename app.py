import atexit

from flask import Flask, jsonify, request
from flask_cors import CORS

from api.routes import bp as api_bp
from services.market import QuoteService
from utils.cache import FreshnessCache
from utils.config import Settings, read_settings
from utils.logger import setup_logging
from utils.sweeper import CacheSweeper


def create_app(settings: Settings | None = None, quote_service: QuoteService | None = None):
    settings = settings or read_settings()
    setup_logging(settings.LOG_LEVEL)

    app = Flask(__name__)
    CORS(app)

    cache = quote_service.cache if quote_service else FreshnessCache(settings.cache_config())
    service = quote_service or QuoteService(cache, max_staleness=settings.CACHE_MAX_STALENESS_S)
    sweeper = CacheSweeper(cache, interval=settings.CACHE_SWEEP_INTERVAL_S)

    app.extensions['freshness_cache'] = cache
    app.extensions['quote_service'] = service
    app.extensions['cache_sweeper'] = sweeper
    app.register_blueprint(api_bp)

    if settings.CACHE_SWEEP_ENABLED:
        sweeper.start()
        atexit.register(sweeper.stop)

    # Return JSON for API errors so the frontend never sees HTML
    @app.errorhandler(400)
    def handle_400(e):
        if request.path.startswith('/api/'):
            return jsonify(error=str(e)), 400
        return e, 400

    @app.errorhandler(404)
    def handle_404(e):
        if request.path.startswith('/api/'):
            return jsonify(error="Not found"), 404
        return e, 404

    @app.errorhandler(500)
    def handle_500(e):
        if request.path.startswith('/api/'):
            return jsonify(error="Internal server error"), 500
        return e, 500

    return app


if __name__ == '__main__':
    create_app().run(host='127.0.0.1', port=5000, debug=True)
