"""Flask application factory for the agent gateway web surface."""

import asyncio
import logging
import queue
import threading
from concurrent.futures import Future

from flask import Flask, jsonify
from flask_cors import CORS

from gateway.chat_loop import ChatLoop
from gateway.config import GatewayConfig
from gateway.context import GatewayContext
from gateway.events import ChatEvent
from gateway.schema import ModelConfig

logger = logging.getLogger(__name__)


class AsyncRunner:
    """A dedicated event loop on a daemon thread, fed from Flask workers."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="gateway-loop", daemon=True)
        self._thread.start()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro, timeout: float | None = None):
        return self.submit(coro).result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


def create_app(config: GatewayConfig, context: GatewayContext | None = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    CORS(app)

    runner = AsyncRunner()
    context = context or GatewayContext(config)

    app.config["gateway_config"] = config
    app.config["gateway_context"] = context
    app.config["runner"] = runner
    app.config["sessions"] = {}  # session_id -> SessionState

    start = runner.submit(context.start())
    start.add_done_callback(_log_start_failure)

    from web.routes.chat import chat_bp
    from web.routes.mcp import mcp_bp
    from web.routes.metrics import metrics_bp
    from web.routes.models import models_bp
    from web.routes.sandbox import sandbox_bp

    app.register_blueprint(chat_bp, url_prefix="/api")
    app.register_blueprint(mcp_bp, url_prefix="/api")
    app.register_blueprint(models_bp, url_prefix="/api")
    app.register_blueprint(sandbox_bp, url_prefix="/api")
    app.register_blueprint(metrics_bp, url_prefix="/api")

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok"})

    return app


def _log_start_failure(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Gateway startup checks failed: %s", error)


class SessionState:
    """Holds the state for one chat session."""

    def __init__(self, context: GatewayContext, runner: AsyncRunner, model: ModelConfig,
                 session_id: str | None = None, system_prompt: str = ""):
        self.context = context
        self.runner = runner
        self.session = context.create_session(model, session_id=session_id, system_prompt=system_prompt)
        self.loop = ChatLoop(context)
        self.stream_queue: queue.Queue = queue.Queue()
        self.is_running = False
        self.final_response: str | None = None

    @property
    def id(self) -> str:
        return self.session.id

    async def _emit(self, event: ChatEvent) -> None:
        """Push chat events to the queue for SSE consumption."""
        self.stream_queue.put(event.to_dict())

    def send_message(self, message: str) -> Future:
        """Run one turn on the gateway loop; events land in stream_queue."""
        self.is_running = True
        self.final_response = None
        return self.runner.submit(self._run_turn(message))

    async def _run_turn(self, message: str) -> None:
        try:
            result = await self.loop.run_turn(self.session, message, self._emit)
            self.final_response = result.text
            self.stream_queue.put({
                "type": "done",
                "content": result.text,
                "states": [state.value for state in result.states],
                "truncated": result.truncated,
            })
        except Exception as e:
            logger.exception("Session %s turn crashed", self.id)
            self.stream_queue.put({"type": "error", "content": str(e)})
        finally:
            self.is_running = False
