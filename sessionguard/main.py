"""
SessionGuard -- Application Entry Point

FastAPI application hosting a session guard and its diagnostics router.

`uvicorn sessionguard.main:app`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI

# Load .env file before any configuration is loaded
load_dotenv()

from sessionguard.api.routers.diagnostics import router as diagnostics_router
from sessionguard.clients.oracle import (
    HttpSessionOracle,
    StoredTokenSource,
    create_session_oracle,
)
from sessionguard.clients.storage import (
    CredentialJar,
    HttpxCookieJar,
    InMemoryCredentialJar,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
)
from sessionguard.config import SessionGuardConfig, load_config
from sessionguard.guard.cascade import ReloadHook
from sessionguard.guard.context import GuardContext
from sessionguard.guard.service import SessionGuard
from sessionguard.telemetry.logging import setup_logging

logger = structlog.get_logger("sessionguard.main")


def build_guard(
    config: SessionGuardConfig,
    reload_hook: ReloadHook | None = None,
) -> SessionGuard:
    """Compose a guard over the configured oracle and local persistence layers."""
    ephemeral = InMemoryKeyValueStore(name="ephemeral")
    durable = JsonFileKeyValueStore(config.storage.durable_path, name="durable")
    oracle = create_session_oracle(
        config.oracle,
        token_source=StoredTokenSource(durable, config.oracle.storage_key),
    )
    # The HTTP oracle's cookie jar is where ambient credentials actually live
    ambient: CredentialJar
    if isinstance(oracle, HttpSessionOracle):
        ambient = HttpxCookieJar(oracle.cookies)
    else:
        ambient = InMemoryCredentialJar()

    return SessionGuard(
        oracle=oracle,
        ephemeral=ephemeral,
        durable=durable,
        ambient=ambient,
        context=GuardContext(config=config),
        reload_hook=reload_hook,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown sequence."""
    config_path = os.environ.get("SESSIONGUARD_CONFIG_PATH", "config/default.yaml")
    config = load_config(config_path)
    app.state.config = config

    setup_logging(config.logging, client_class=config.validation.client_class)
    logger.info(
        "sessionguard_starting",
        config_path=config_path,
        oracle_strategy=config.oracle.strategy,
        client_class=config.validation.client_class,
        interval_s=config.validation.effective_interval_s,
    )

    guard = build_guard(config)
    app.state.session_guard = guard
    try:
        yield
    finally:
        await guard.close()
        logger.info("sessionguard_stopped")


app = FastAPI(
    title="SessionGuard",
    description="Session consistency watchdog diagnostics",
    lifespan=lifespan,
)

app.include_router(diagnostics_router)
