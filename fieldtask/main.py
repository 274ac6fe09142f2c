from __future__ import annotations

from fastapi import FastAPI, HTTPException

from fieldtask.api.routers import clockings, identity, projects, tasks
from fieldtask.infra.audit import AuditMiddleware
from fieldtask.infra.db import check_db_ready
from fieldtask.infra.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="fieldtask",
    description="Task lifecycle, geofenced preconditions and visibility for field operations.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(clockings.router, prefix="/api/clockings", tags=["clockings"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
