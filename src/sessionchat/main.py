import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .exceptions import ChatRequestError, CompletionError, SessionStoreUnavailable
from .orchestrator import ChatOrchestrator, parse_chat_request, parse_reset_request
from .services.completion import CompletionClient, OpenAICompletionClient, UnconfiguredCompletionClient
from .services.retrieval import build_retriever
from .services.session_store import build_session_store
from .settings import Settings, get_settings

STATIC_DIR = Path(__file__).resolve().parent / "static"

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET,POST,OPTIONS",
    "access-control-allow-headers": "content-type,authorization",
}


def setup_server_logging(logs_dir: Path = Path("logs"), level: str = "INFO") -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("sessionchat")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


settings = get_settings()
setup_server_logging(settings.log_dir, settings.log_level)
LOGGER = logging.getLogger("sessionchat.server")


def _build_completion(settings: Settings) -> CompletionClient:
    try:
        return OpenAICompletionClient.from_settings(settings)
    except CompletionError as e:
        LOGGER.warning("Completion client not configured: %s", e)
        return UnconfiguredCompletionClient(str(e))


async def build_orchestrator(settings: Settings) -> ChatOrchestrator:
    """Wire the session store, completion client and optional retriever from settings."""
    store = await build_session_store(settings)

    try:
        retriever = build_retriever(settings)
    except Exception as e:
        LOGGER.warning("Retrieval unavailable, continuing without context: %s", e)
        retriever = None

    return ChatOrchestrator(
        store=store,
        completion=_build_completion(settings),
        system_prompt=settings.system_prompt,
        retriever=retriever,
        max_turns=settings.max_turns,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator at startup unless one was injected; close the store on shutdown."""
    owned = app.state.orchestrator is None
    if owned:
        LOGGER.info("Building chat orchestrator...")
        try:
            app.state.orchestrator = await build_orchestrator(settings)
        except (RedisError, OSError) as e:
            LOGGER.exception("Session store unavailable at startup: %s", e)
            raise
        LOGGER.info("Chat orchestrator ready")

    yield

    LOGGER.info("Shutting down...")
    if owned and app.state.orchestrator is not None:
        await app.state.orchestrator.store.close()
        app.state.orchestrator = None


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise SessionStoreUnavailable("chat orchestrator is not initialised")
    return orchestrator


async def _read_json(request: Request) -> Any:
    """Parse the request body as JSON; an unparseable body reads as empty."""
    try:
        return await request.json()
    except ValueError:
        return {}


def create_app(orchestrator: ChatOrchestrator | None = None) -> FastAPI:
    app = FastAPI(
        title="Session Chat",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def cors(request: Request, call_next) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(ChatRequestError)
    async def on_bad_request(request: Request, exc: ChatRequestError) -> JSONResponse:
        return JSONResponse(exc.payload, status_code=400)

    @app.exception_handler(CompletionError)
    async def on_completion_error(request: Request, exc: CompletionError) -> JSONResponse:
        LOGGER.error("Completion failed for %s: %s", request.url.path, exc)
        return JSONResponse({"error": "completion failed"}, status_code=502)

    @app.exception_handler(SessionStoreUnavailable)
    async def on_store_unavailable(request: Request, exc: SessionStoreUnavailable) -> JSONResponse:
        LOGGER.error("Session store unavailable for %s: %s", request.url.path, exc)
        return JSONResponse({"error": "session store unavailable"}, status_code=503)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Unknown path or a known path with the wrong method
        if exc.status_code in (404, 405):
            return JSONResponse({"error": "Not Found"}, status_code=404)
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.get("/", response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        """Serve the browser display client."""
        return HTMLResponse((STATIC_DIR / "index.html").read_text(encoding="utf-8"))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    @app.post("/api/chat")
    async def chat(
        request: Request,
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        """Run one chat turn: ``{sessionId?, message}`` -> ``{reply}``."""
        session_id, message = parse_chat_request(await _read_json(request))
        reply = await orchestrator.chat(session_id, message)
        return {"reply": reply}

    @app.post("/api/reset")
    async def reset(
        request: Request,
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        """Erase a session's history: ``{sessionId}`` -> ``{ok: true}``."""
        session_id = parse_reset_request(await _read_json(request))
        await orchestrator.reset(session_id)
        return {"ok": True}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("sessionchat.main:app", host=settings.host, port=settings.port)
