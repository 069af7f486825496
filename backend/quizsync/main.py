from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .catalog import InMemoryQuizCatalog, build_catalog
from .db import InMemorySessionStore, Settings, get_settings
from .errors import NotFound, QuizSyncError
from .host import HostController
from .leaderboard import project_leaderboard
from .logging_config import configure_logging
from .models import Quiz, Session
from .player import PlayerAgent
from .runtime import SessionRuntime
from .schemas import (
    AnswerIn,
    CreateSessionIn,
    EventsOut,
    FeedbackOut,
    HostStateOut,
    JoinIn,
    PlayerStateOut,
    TimeUpIn,
)


def get_runtime(request: Request) -> SessionRuntime:
    return request.app.state.runtime


def host_state(host: HostController) -> HostStateOut:
    session = host.session
    if session is None:
        raise NotFound(f"Session {host.session_id} not found")
    question = session.current_question
    return HostStateOut(
        session_id=session.id,
        status=session.status,
        current_question_index=session.current_question_index,
        total_questions=session.total_questions,
        player_count=session.player_count,
        response_count=len(session.responses_for(question.id)) if question else 0,
        is_last_question=session.current_question_index >= session.total_questions - 1,
        last_error=host.last_error,
    )


def player_state(agent: PlayerAgent) -> PlayerStateOut:
    state = agent.state
    feedback = state.last_feedback
    return PlayerStateOut(
        player_id=agent.player_id,
        phase=state.phase,
        score=state.player.score if state.player else 0,
        streak=state.player.streak if state.player else 0,
        adjusted_time_limit=state.adjusted_time_limit,
        seconds_remaining=agent.seconds_remaining(),
        feedback=FeedbackOut(**asdict(feedback)) if feedback else None,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        runtime = SessionRuntime(InMemorySessionStore(), build_catalog(settings), settings)
        app.state.runtime = runtime
        yield
        await runtime.shutdown()

    app = FastAPI(title="QuizSync API", lifespan=lifespan)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizSyncError)
    async def quizsync_error(_request: Request, exc: QuizSyncError):
        status_code = 404 if isinstance(exc, NotFound) else 400
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    def require_admin(x_admin_key: Optional[str] = Header(default=None)):
        if x_admin_key != settings.ADMIN_KEY:
            raise HTTPException(status_code=401, detail="Invalid admin key")

    @app.post("/api/admin/quiz")
    async def upsert_quiz(quiz: Quiz, runtime: SessionRuntime = Depends(get_runtime), _: None = Depends(require_admin)):
        if not isinstance(runtime.catalog, InMemoryQuizCatalog):
            raise HTTPException(status_code=400, detail="Quiz catalog is read-only")
        await runtime.catalog.add(quiz)
        return {"ok": True, "quiz_id": quiz.id, "questions": len(quiz.questions)}

    @app.post("/api/session", response_model=HostStateOut)
    async def create_session(
        payload: CreateSessionIn,
        runtime: SessionRuntime = Depends(get_runtime),
        _: None = Depends(require_admin),
    ):
        host = await runtime.create_session(payload.quiz_id, payload.host_id)
        return host_state(host)

    @app.get("/api/session/{session_id}")
    async def get_session(session_id: str, runtime: SessionRuntime = Depends(get_runtime)):
        data = await runtime.store.get(f"sessions/{session_id}")
        if data is None:
            raise HTTPException(404, "Session not found")
        return Session.from_snapshot(session_id, data).model_dump(by_alias=True)

    @app.get("/api/session/{session_id}/leaderboard")
    async def leaderboard(
        session_id: str,
        player_id: Optional[str] = None,
        top_n: Optional[int] = None,
        runtime: SessionRuntime = Depends(get_runtime),
    ):
        data = await runtime.store.get(f"sessions/{session_id}")
        if data is None:
            raise HTTPException(404, "Session not found")
        session = Session.from_snapshot(session_id, data)
        projection = project_leaderboard(session.players, player_id, top_n or settings.LEADERBOARD_TOP_N)
        return projection.as_dict()

    @app.get("/api/session/{session_id}/events", response_model=EventsOut)
    async def list_events(
        session_id: str,
        after: Optional[int] = None,
        limit: int = 200,
        runtime: SessionRuntime = Depends(get_runtime),
    ):
        events = await runtime.events.list(session_id, after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return EventsOut(events=events, latest_seq=latest_seq)

    @app.get("/api/admin/session/{session_id}", response_model=HostStateOut)
    async def get_host_state(
        session_id: str,
        runtime: SessionRuntime = Depends(get_runtime),
        _: None = Depends(require_admin),
    ):
        host = await runtime.host(session_id)
        return host_state(host)

    @app.post("/api/admin/session/{session_id}/{action}", response_model=HostStateOut)
    async def host_action(
        session_id: str,
        action: str,
        runtime: SessionRuntime = Depends(get_runtime),
        _: None = Depends(require_admin),
    ):
        host = await runtime.host(session_id)
        actions = {
            "start": host.start,
            "advance": host.advance,
            "reveal": host.reveal_results,
            "leaderboard": host.show_leaderboard,
            "finish": host.finish,
        }
        if action not in actions:
            raise HTTPException(404, f"Unknown action {action}")
        await actions[action]()
        await runtime.store.drain()
        return host_state(host)

    @app.post("/api/session/{session_id}/join", response_model=PlayerStateOut)
    async def join(session_id: str, payload: JoinIn, runtime: SessionRuntime = Depends(get_runtime)):
        agent = await runtime.join(session_id, payload.nickname, payload.badge)
        return player_state(agent)

    @app.get("/api/session/{session_id}/player/{player_id}", response_model=PlayerStateOut)
    async def get_player_state(session_id: str, player_id: str, runtime: SessionRuntime = Depends(get_runtime)):
        return player_state(runtime.player(session_id, player_id))

    @app.post("/api/session/{session_id}/answer")
    async def answer(session_id: str, payload: AnswerIn, runtime: SessionRuntime = Depends(get_runtime)):
        agent = runtime.player(session_id, payload.player_id)
        accepted = await agent.submit_response(payload.option_id, device=payload.device)
        await runtime.store.drain()
        return {"accepted": accepted}

    @app.post("/api/session/{session_id}/time-up")
    async def time_up(session_id: str, payload: TimeUpIn, runtime: SessionRuntime = Depends(get_runtime)):
        agent = runtime.player(session_id, payload.player_id)
        return {"accepted": agent.on_time_up()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.quizsync.main:app", host="0.0.0.0", port=8000)
