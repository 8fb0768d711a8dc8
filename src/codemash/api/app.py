"""
HTTP front end over the Engine. Serve it through the factory, e.g.
``uvicorn --factory codemash.api.app:create_app``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import UnknownSession
from ..core.models import SourceUnit
from ..services.engine import Engine


# --------- Schemas ---------
class UnitReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    text: str
    is_entry_point: bool = Field(default=False, alias="isEntryPoint")


class SubmitReq(BaseModel):
    units: List[UnitReq]
    deadline_ms: Optional[int] = None
    arguments: List[Any] = []


class SubmitRes(BaseModel):
    session_id: str
    state: str


class SessionRes(BaseModel):
    id: str
    state: str
    units: List[str]
    deadline_ms: int
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    verdict: Optional[Dict[str, Any]] = None


class CancelRes(BaseModel):
    cancelled: bool
    state: str


def _not_found(session_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"session_not_found:{session_id}")


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    owned = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owned:
            app.state.engine.close(wait=False)

    app = FastAPI(title="codemash", lifespan=lifespan)
    app.state.engine = engine or Engine()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def svc() -> Engine:
        return app.state.engine

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return {"ok": True, **svc().stats()}

    @app.post("/sessions", response_model=SubmitRes)
    def submit(req: SubmitReq):
        units = [SourceUnit(u.name, u.text, u.is_entry_point) for u in req.units]
        try:
            sid = svc().submit(units, deadline_ms=req.deadline_ms, arguments=req.arguments)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return SubmitRes(session_id=sid, state=svc().poll(sid).value)

    @app.get("/sessions/{session_id}", response_model=SessionRes)
    def get_session(session_id: str):
        try:
            data = svc().describe(session_id)
        except UnknownSession:
            raise _not_found(session_id)
        return SessionRes(**data)

    @app.get("/sessions/{session_id}/verdict")
    def get_verdict(session_id: str, timeout: Optional[float] = Query(default=None, ge=0)):
        try:
            verdict = svc().await_result(session_id, timeout)
        except UnknownSession:
            raise _not_found(session_id)
        except TimeoutError:
            raise HTTPException(status_code=408, detail="verdict_pending")
        return verdict.to_dict()

    @app.get("/sessions/{session_id}/source", response_class=PlainTextResponse)
    def get_source(session_id: str):
        try:
            code = svc().source(session_id)
        except UnknownSession:
            raise _not_found(session_id)
        if code is None:
            raise HTTPException(status_code=404, detail="source_not_available")
        return PlainTextResponse(code, headers={"Cache-Control": "no-cache"})

    @app.get("/source", response_class=PlainTextResponse)
    def last_source():
        code = svc().last_source
        if code is None:
            raise HTTPException(status_code=404, detail="no_source_yet")
        return PlainTextResponse(code, headers={"Cache-Control": "no-cache"})

    @app.post("/sessions/{session_id}/cancel", response_model=CancelRes)
    def cancel(session_id: str):
        try:
            cancelled = svc().cancel(session_id)
            state = svc().poll(session_id)
        except UnknownSession:
            raise _not_found(session_id)
        return CancelRes(cancelled=cancelled, state=state.value)

    return app

