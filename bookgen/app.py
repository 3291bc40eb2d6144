import logging
import time
from typing import Optional

from quart import Quart, jsonify, request
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from .artifacts.controller import bp as artifacts_bp
from .artifacts.store import LocalArtifactStore
from .common.config import settings
from .common.database import init_db
from .common.errors import BookGenError
from .common.metrics import REQUEST_COUNT, REQUEST_LATENCY
from .common.redis_client import close_redis
from .generation.controller import bp as generation_bp
from .generation.processor import GenerationProcessor
from .generation.provider import GenerationProvider, get_provider
from .monitor.controller import bp as monitor_bp
from .monitor.service import OrderMonitor
from .orders.controller import bp as orders_bp
from .realtime.controller import bp as realtime_bp


log = logging.getLogger(__name__)

# Route prefixes collapsed into one metrics label
_ENDPOINT_GROUPS = ("/orders/", "/books/", "/generation/", "/uploads/", "/api/pdf-info/", "/api/pdf/")


def _metrics_endpoint(path: str) -> str:
    for prefix in _ENDPOINT_GROUPS:
        if path.startswith(prefix):
            return prefix + "*"
    return path


def create_app(
    provider: Optional[GenerationProvider] = None,
    store: Optional[LocalArtifactStore] = None,
    monitor: Optional[OrderMonitor] = None,
    auto_start_monitor: Optional[bool] = None,
) -> Quart:
    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.MAX_PDF_SIZE + 1024 * 1024

    if store is None:
        store = LocalArtifactStore(settings.STORAGE_DIR, settings.BASE_URL, settings.SIGNING_SECRET)
    if provider is None:
        provider = get_provider()
    if monitor is None:
        monitor = OrderMonitor(GenerationProcessor(provider, store), store)
    if auto_start_monitor is None:
        auto_start_monitor = settings.AUTO_START_MONITOR

    app.extensions["artifact_store"] = store
    app.extensions["generation_provider"] = provider
    app.extensions["order_monitor"] = monitor

    # Blueprints
    app.register_blueprint(orders_bp)
    app.register_blueprint(generation_bp)
    app.register_blueprint(artifacts_bp)
    app.register_blueprint(monitor_bp)
    app.register_blueprint(realtime_bp)

    @app.errorhandler(BookGenError)
    async def handle_bookgen_error(error: BookGenError):
        if error.status_code >= 500:
            log.error("%s %s failed | %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.before_request
    async def before_request():
        request._start_time = time.time()

    @app.after_request
    async def after_request(response):
        try:
            if hasattr(request, "_start_time"):
                duration = time.time() - request._start_time
                endpoint = _metrics_endpoint(request.path)
                REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=str(response.status_code)
                ).inc()
        except Exception as e:
            log.error(f"Error recording metrics: {e}")
        return response

    @app.after_request
    async def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = (
            "Origin, X-Requested-With, Content-Type, Accept, Authorization"
        )
        return response

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return jsonify({
            "status": "healthy",
            "message": "API is running",
            "orderMonitor": {"enabled": auto_start_monitor, "running": monitor.running},
        })

    @app.before_serving
    async def startup():
        logging.basicConfig(level=logging.INFO)
        log.info("Initializing database...")
        await init_db()
        log.info("Database ready.")
        if auto_start_monitor:
            log.info("Auto-starting order monitor...")
            await monitor.start()
        else:
            log.info("Order monitor auto-start disabled")

    @app.after_serving
    async def shutdown():
        # Monitor first: nothing new may start once the server is going down
        await monitor.stop()
        await monitor.drain(settings.SHUTDOWN_GRACE)
        await provider.close()
        await close_redis()
        log.info("Shutdown complete.")

    return app
