"""
FastAPI application entry point for chatrelay.

Startup: load config, configure logging, then build the read-only shared
objects (conversation store, tool registry, path validator, provider
factory, stream handler) once and hang them on app.state. Request
handlers only read from app.state.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Config, get_config
from .logging_config import configure_logging

log = logging.getLogger("chatrelay.server")


def init_state(app: FastAPI, config: Config) -> None:
    from .core.session import FileConversationStore
    from .core.stream_handler import ConversationStreamHandler
    from .providers.registry import ProviderFactory
    from .tools import builtin_tools
    from .tools.paths import PathValidator
    from .tools.registry import ToolRegistry

    store = FileConversationStore(config.conversations_dir)
    tools = ToolRegistry.from_names(config.enabled_tools, builtin_tools())
    validator = PathValidator(config.allowed_paths)
    providers = ProviderFactory(config, tools=tools)

    app.state.config = config
    app.state.store = store
    app.state.tools = tools
    app.state.providers = providers
    app.state.stream_handler = ConversationStreamHandler(
        store,
        tools,
        validator,
        max_tool_rounds=config.max_tool_rounds,
        tool_timeout=config.tool_timeout,
        max_output_length=config.max_output_length,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = getattr(app.state, "config", None) or get_config()
    log_file = configure_logging(config)
    init_state(app, config)

    log.info("Started  log=%s debug=%s", log_file.name, config.debug)
    log.info("Tools enabled  names=%s", ",".join(app.state.tools.names))
    log.info(
        "Providers  default=%s available=%s",
        config.default_provider, ",".join(app.state.providers.available_types()) or "-",
    )
    if config.allowed_paths:
        log.info("Allowed paths  roots=%s", ",".join(str(p) for p in config.allowed_paths))

    yield

    log.info("Shutdown complete")


def create_app(config: Config | None = None) -> FastAPI:
    app = FastAPI(title="chatrelay", version="0.1.0", lifespan=lifespan)
    if config is not None:
        app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    from .api.routes import router
    app.include_router(router, prefix="/api")

    return app


def main() -> None:
    import uvicorn

    config = get_config()
    uvicorn.run(
        create_app(config),
        host=config.get("server.host", "127.0.0.1"),
        port=int(config.get("server.port", 8000)),
        log_config=None,
    )


if __name__ == "__main__":
    main()
