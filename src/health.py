#!/usr/bin/env python3
"""
存活检查HTTP服务
"""

import uvicorn
from fastapi import FastAPI


def create_app(registry) -> FastAPI:
    """创建只有 /healthz 的应用"""
    app = FastAPI(title="docker-port-forwarder", docs_url=None, redoc_url=None)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "containers": len(registry)}

    return app


def serve(registry, port: int, log_level: str = "info"):
    """阻塞运行HTTP服务，直到收到SIGINT/SIGTERM"""
    uvicorn.run(create_app(registry), host="0.0.0.0", port=port, log_level=log_level.lower())
