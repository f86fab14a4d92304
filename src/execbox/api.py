from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .core.errors import ExecboxError
from .core.languages import supported_languages
from .core.utils import new_session_id
from .executor.docker import DockerBackend
from .logging import setup_logging
from .services.session_service import ExecutionSession, SessionService, build_start_spec
from .services.storage import LocalFSLibraryStore
from .settings import Settings, load_settings

STATUS_BY_CODE = {
    "validation_error": 400,
    "unsupported_language": 400,
    "not_found": 404,
    "stream_error": 409,
    "timeout": 504,
}


# --------- Schemas ---------
class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FileIn(_Camel):
    path: Optional[str] = None
    name: Optional[str] = None
    content: str = ""


class LibraryRef(_Camel):
    file_name: str = Field(alias="fileName")


class StartReq(_Camel):
    session_id: Optional[str] = Field(None, alias="sessionId")
    language: str
    code: Optional[str] = None
    files: List[FileIn] = []
    main_file: Optional[str] = Field(None, alias="mainFile")
    main_class: Optional[str] = Field(None, alias="mainClass")
    dependencies: Dict[str, str] = {}
    project_id: Optional[str] = Field(None, alias="projectId")
    custom_libraries: List[LibraryRef] = Field([], alias="customLibraries")


class StartRes(BaseModel):
    ok: bool = True
    session_id: str


class InputReq(BaseModel):
    input: str


class OkRes(BaseModel):
    ok: bool = True


class SessionRes(BaseModel):
    session_id: str
    language: str
    state: Optional[str] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    container: Optional[str] = None
    created_at: float
    finished_at: Optional[float] = None


class ExecuteRes(BaseModel):
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    status: str
    error: Optional[str] = None


def _error(status: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": code, "detail": detail})


async def sse_events(svc: SessionService, session: ExecutionSession) -> AsyncIterator[str]:
    """SSE frames of one session. Closing it before the terminal event stops the session."""
    finished = False
    try:
        async for event in session.channel.events():
            yield event.to_sse()
        finished = True
    finally:
        if not finished:
            # the client went away: nobody can read or type any more
            svc.stop_soon(session, "client_disconnected")


def _spec_from(svc: SessionService, settings: Settings, req: StartReq):
    files = [((f.path or f.name or ""), f.content) for f in req.files]
    libraries = svc.load_libraries(req.project_id, [r.file_name for r in req.custom_libraries])
    return build_start_spec(
        settings,
        session_id=req.session_id or new_session_id(),
        language=req.language,
        code=req.code,
        files=files,
        main_file=req.main_file,
        main_class=req.main_class,
        dependencies=req.dependencies,
        libraries=libraries,
    )


def create_app(service: Optional[SessionService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    log = setup_logging(settings.log_level)
    svc = service or SessionService(
        DockerBackend(settings),
        settings,
        LocalFSLibraryStore(settings.libraries_dir),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        log.info("execbox_started", languages=list(supported_languages()))
        yield
        await svc.shutdown()

    app = FastAPI(title="execbox", lifespan=lifespan)
    app.state.sessions = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExecboxError)
    async def execbox_error(_request: Request, exc: ExecboxError):
        status = STATUS_BY_CODE.get(exc.code, 500)
        if status >= 500:
            log.error("request_failed", error=exc.code, message=exc.message)
        return _error(status, exc.code if status != 500 else "internal_error", exc.message or exc.code)

    @app.exception_handler(RequestValidationError)
    async def request_invalid(_request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _error(400, "validation_error", f"{where}: {first.get('msg', 'invalid request')}".strip(": "))

    # --------- Endpoints ---------

    @app.get("/health")
    async def health():
        return {"ok": True, "engine": await svc.backend.ping(), "sessions": len(svc.registry)}

    @app.post("/sessions", response_model=StartRes, status_code=202)
    async def start_session(req: StartReq):
        spec = _spec_from(svc, settings, req)
        session = await svc.start(spec)
        return StartRes(session_id=session.id)

    @app.get("/sessions/{session_id}/events")
    async def session_events(session_id: str):
        session = svc.get(session_id)
        if session.channel.consumed:
            return _error(409, "stream_error", f"session {session_id} already has a listener")

        return StreamingResponse(
            sse_events(svc, session),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/sessions/{session_id}/input", response_model=OkRes)
    async def session_input(session_id: str, req: InputReq):
        await svc.send_input(session_id, req.input)
        return OkRes()

    @app.post("/sessions/{session_id}/stop", response_model=OkRes)
    async def session_stop(session_id: str):
        await svc.stop(session_id)
        return OkRes()

    @app.get("/sessions/{session_id}", response_model=SessionRes)
    async def session_status(session_id: str):
        return SessionRes(**svc.status(session_id))

    @app.post("/execute", response_model=ExecuteRes)
    async def execute(req: StartReq):
        spec = _spec_from(svc, settings, req)
        return ExecuteRes(**await svc.run_to_completion(spec))

    return app


app = create_app()
