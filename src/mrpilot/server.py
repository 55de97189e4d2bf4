from __future__ import annotations

from collections.abc import Callable
import logging
import threading
from typing import Protocol

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request

from mrpilot import __version__
from mrpilot.config import AppConfig
from mrpilot.models import InboundEvent, UnsupportedEventError
from mrpilot.observability import log_event
from mrpilot.orchestrator import Orchestrator, Services
from mrpilot.signature import AuthenticationError


LOGGER = logging.getLogger("mrpilot.server")


class Dispatcher(Protocol):
    def dispatch(self, event: InboundEvent) -> str | None: ...


class RunDispatcher:
    """Start every accepted event as an independent run on its own thread."""

    def __init__(
        self,
        services: Services,
        *,
        orchestrator_factory: Callable[[Services, InboundEvent], Orchestrator] = Orchestrator,
    ) -> None:
        self._services = services
        self._orchestrator_factory = orchestrator_factory
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def dispatch(self, event: InboundEvent) -> str | None:
        try:
            orchestrator = self._orchestrator_factory(self._services, event)
            thread = threading.Thread(
                target=orchestrator.run,
                name=f"run-{orchestrator.run_id}",
                daemon=True,
            )
            thread.start()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "run_dispatch_failed",
                event_kind=event.kind,
                error_type=type(exc).__name__,
            )
            return None
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        log_event(LOGGER, "run_dispatched", run_id=orchestrator.run_id, event_kind=event.kind)
        return orchestrator.run_id

    def active_runs(self) -> int:
        with self._lock:
            return sum(1 for thread in self._threads if thread.is_alive())

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)


def create_app(config: AppConfig, dispatcher: Dispatcher) -> FastAPI:
    app = FastAPI(title="mrpilot", version=__version__)

    @app.post("/webhook")
    async def webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_gitlab_token: str | None = Header(default=None),
    ) -> dict[str, str]:
        raw_body = await request.body()
        try:
            event = Orchestrator.accept(
                raw_body, x_gitlab_token, secret=config.server.webhook_secret
            )
        except AuthenticationError as exc:
            log_event(LOGGER, "webhook_rejected", reason="authentication")
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except UnsupportedEventError as exc:
            log_event(LOGGER, "webhook_ignored", reason=str(exc))
            return {"status": "ignored", "reason": str(exc)}
        except ValueError as exc:
            log_event(LOGGER, "webhook_rejected", reason="malformed_payload")
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        background_tasks.add_task(dispatcher.dispatch, event)
        log_event(
            LOGGER,
            "webhook_accepted",
            event_kind=event.kind,
            project=event.project.name,
            action=event.action,
        )
        return {"status": "accepted"}

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/")
    async def index() -> dict[str, object]:
        return {
            "service": "mrpilot",
            "version": __version__,
            "endpoints": ["POST /webhook", "GET /health"],
            "providers": [
                name
                for name, enabled in (
                    ("claude", config.claude.enabled),
                    ("codex", config.codex.enabled),
                )
                if enabled
            ],
        }

    return app
