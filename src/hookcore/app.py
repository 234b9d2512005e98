"""FastAPI admin application for hook status and toggles."""

from __future__ import annotations

import logging
from typing import Any

from . import __version__
from .core import HookCore
from .hooks.errors import LoadError

logger = logging.getLogger("hookcore.app")


def create_app(core: HookCore | None = None):
    try:
        from fastapi import FastAPI, HTTPException
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 fastapi：pip install -e .") from exc

    app = FastAPI(title="hookcore admin", version=__version__)
    runtime = core or HookCore().start()
    app.state.core = runtime

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok" if runtime.running else "stopped",
            "service": "hookcore",
            "version": __version__,
        }

    @app.get("/status")
    def status() -> dict[str, Any]:
        return runtime.status()

    @app.get("/hooks")
    def list_hooks() -> dict[str, Any]:
        return {"hooks": [hook.describe() for hook in runtime.list_hooks()]}

    def _toggle(hook_id: str, enabled: bool) -> dict[str, Any]:
        try:
            hook = runtime.set_hook_enabled(hook_id, enabled)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"unknown hook: {hook_id}") from exc
        return hook.describe()

    @app.post("/hooks/{hook_id}/enable")
    def enable_hook(hook_id: str) -> dict[str, Any]:
        return _toggle(hook_id, True)

    @app.post("/hooks/{hook_id}/disable")
    def disable_hook(hook_id: str) -> dict[str, Any]:
        return _toggle(hook_id, False)

    @app.post("/reload")
    def reload_hooks() -> dict[str, Any]:
        try:
            count = runtime.reload()
        except LoadError as exc:
            raise HTTPException(status_code=400, detail={"message": "reload rejected", "errors": exc.errors}) from exc
        return {"status": "ok", "hooks": count}

    @app.get("/sessions/{session_id}")
    def session_snapshot(session_id: str) -> dict[str, Any]:
        snapshot = runtime.get_session_snapshot(session_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"unknown session: {session_id}")
        return snapshot.to_dict()

    return app


def serve(core: HookCore, host: str, port: int) -> None:
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 uvicorn：pip install -e .") from exc

    app = create_app(core)
    # uvicorn owns SIGINT/SIGTERM while serving; shutdown runs once it returns.
    try:
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:  # noqa: BLE001
        logger.exception("admin app 啟動失敗")
        raise RuntimeError(f"admin app 啟動失敗：{exc}") from exc
    finally:
        core.shutdown(reason="server_exit")
