import asyncio
import logging
import os
from typing import Callable, Mapping, Optional

import websockets
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api.bridge import bridge
from apps.api.config import GatewayConfig, load_gateway_config, load_sandbox_config
from apps.api.docker_sandbox import DockerSandbox
from apps.api.env import desired_env
from apps.api.reconciler import GatewayReconciler
from apps.api.registry import classify_command, find_gateway_process
from apps.api.sandbox import Sandbox


log = logging.getLogger("clawbox_gateway")


def _extract_token(ws: WebSocket) -> Optional[str]:
    auth = ws.headers.get("authorization") or ws.headers.get("Authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip() or None
        return auth.strip() or None
    return ws.query_params.get("token")


def _extract_token_http(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip() or None
        return auth.strip() or None
    return request.query_params.get("token")


def create_app(
    *,
    sandbox: Optional[Sandbox] = None,
    gateway_cfg: Optional[GatewayConfig] = None,
    env_provider: Callable[[], Mapping[str, str]] = desired_env,
) -> FastAPI:
    app = FastAPI(title="Clawbox gateway", version="0.1.0")

    origins_raw = os.getenv("CLAWBOX_CORS_ORIGINS") or ""
    cors_origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup():
        cfg = gateway_cfg or load_gateway_config()
        sb = sandbox if sandbox is not None else DockerSandbox(load_sandbox_config())
        app.state.gateway_cfg = cfg
        app.state.sandbox = sb
        app.state.reconciler = GatewayReconciler(sb, cfg)
        app.state.env_provider = env_provider
        app.state.background_tasks = set()
        if not cfg.gateway_token:
            log.warning("CLAWBOX_GATEWAY_TOKEN is not set; bridged sessions will not be authenticated")

    @app.on_event("shutdown")
    async def _shutdown():
        for task in list(getattr(app.state, "background_tasks", set())):
            task.cancel()

    def _http_require_token(request: Request):
        expected = app.state.gateway_cfg.admin_token
        if expected is None:
            return
        provided = _extract_token_http(request)
        if provided != expected:
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/sandbox-health")
    async def sandbox_health():
        return {"status": "ok", "service": "clawbox-sandbox", "gateway_port": app.state.gateway_cfg.port}

    @app.get("/api/status")
    async def gateway_status(request: Request):
        cfg: GatewayConfig = app.state.gateway_cfg
        reconciler: GatewayReconciler = app.state.reconciler

        reset_token = request.query_params.get("reset")
        if reset_token:
            if not cfg.gateway_token or reset_token != cfg.gateway_token:
                log.info("Sandbox reset rejected: invalid token")
                return JSONResponse({"ok": False, "status": "error", "error": "Invalid reset token"}, status_code=401)
            log.info("Sandbox reset requested with valid token")
            try:
                await app.state.sandbox.destroy()
            except Exception:
                log.exception("Failed to destroy sandbox")
                return JSONResponse({"ok": False, "status": "error", "error": "Failed to reset sandbox"}, status_code=500)
            reconciler.cooldown.reset()
            return {"ok": True, "status": "reset", "message": "Sandbox destroyed. Next request will create a fresh one."}

        report = await reconciler.poll_status(app.state.env_provider())
        return {"ok": report.ok, "status": report.status}

    @app.post("/api/admin/gateway/ensure")
    async def ensure_gateway(request: Request):
        _http_require_token(request)
        cfg: GatewayConfig = app.state.gateway_cfg
        try:
            result = await app.state.reconciler.ensure_gateway(app.state.env_provider(), cfg.gateway_token)
        except Exception as e:
            log.exception("Failed to ensure gateway")
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {"ok": True, "decision": result.decision.value, "processId": result.process.id}

    @app.post("/api/admin/gateway/restart")
    async def restart_gateway(request: Request):
        _http_require_token(request)
        cfg: GatewayConfig = app.state.gateway_cfg
        reconciler: GatewayReconciler = app.state.reconciler

        try:
            processes = await app.state.sandbox.list_processes()
        except Exception as e:
            log.exception("Failed to list sandbox processes")
            raise HTTPException(status_code=500, detail=str(e)) from e

        existing = find_gateway_process(processes, cfg)
        if existing is not None:
            log.info("Killing existing gateway process %s", existing.id)
            try:
                await existing.kill()
            except Exception:
                log.exception("Error killing gateway process %s", existing.id)

        async def _boot() -> None:
            try:
                await reconciler.ensure_gateway(app.state.env_provider(), cfg.gateway_token)
            except Exception:
                log.exception("Gateway restart failed")

        task = asyncio.create_task(_boot())
        app.state.background_tasks.add(task)
        task.add_done_callback(app.state.background_tasks.discard)

        return {
            "ok": True,
            "message": (
                "Gateway process killed, new instance starting..."
                if existing is not None
                else "No existing process found, starting new instance..."
            ),
            "previousProcessId": existing.id if existing is not None else None,
        }

    @app.get("/api/admin/processes")
    async def list_processes(request: Request):
        _http_require_token(request)
        cfg: GatewayConfig = app.state.gateway_cfg
        try:
            processes = await app.state.sandbox.list_processes()
        except Exception as e:
            log.exception("Failed to list sandbox processes")
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {
            "processes": [
                {
                    "id": p.id,
                    "command": p.command,
                    "status": p.status,
                    "role": classify_command(p.command, cfg).value,
                }
                for p in processes
            ]
        }

    @app.websocket("/ws")
    async def ws_proxy(ws: WebSocket):
        cfg: GatewayConfig = app.state.gateway_cfg
        provided = _extract_token(ws)
        if cfg.access_token and provided != cfg.access_token:
            await ws.accept()
            await ws.close(code=1008, reason="Unauthorized")
            return

        await ws.accept()

        reconciler: GatewayReconciler = app.state.reconciler
        try:
            await reconciler.ensure_gateway(app.state.env_provider(), cfg.gateway_token)
            host = await app.state.sandbox.resolve_host()
        except Exception:
            log.exception("Failed to ensure gateway for websocket session")
            await ws.close(code=1011, reason="Gateway unavailable")
            return

        try:
            upstream = await websockets.connect(f"ws://{host}:{cfg.port}", max_size=None)
        except Exception:
            log.exception("Failed to connect to gateway at %s:%s", host, cfg.port)
            await ws.close(code=1011, reason="Failed to connect to gateway")
            return

        await bridge(ws, upstream, cfg.gateway_token)

    return app


app = create_app()
