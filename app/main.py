import os
import logging
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from bughunt.config import GameSettings
from bughunt.engine import SessionEngine
from bughunt.errors import InvalidStateError, SessionError
from bughunt.persistence import InMemoryPersistence, FirestorePersistence
from bughunt.states import valid_actions

load_dotenv(dotenv_path=Path('.env.local'))

API_BASE = "/api/bughunt"


def choose_persistence():
    use_inmem = os.getenv("USE_INMEMORY", "0").lower() in ("1", "true", "yes")
    if use_inmem:
        return InMemoryPersistence()
    try:
        return FirestorePersistence()
    except Exception:
        # Fallback to in-memory if firestore client not available
        logging.getLogger("uvicorn.error").warning("[bughunt] firestore unavailable, using in-memory persistence")
        return InMemoryPersistence()


class ClickBody(BaseModel):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


def create_app(engine: SessionEngine | None = None, persistence=None) -> FastAPI:
    app = FastAPI(title="Bug Hunt Session Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    if engine is None:
        engine = SessionEngine(
            settings=GameSettings.from_env(),
            persistence=persistence or choose_persistence(),
        )
    app.state.engine = engine

    @app.on_event("startup")
    async def _log_engine():
        klass = app.state.engine.persistence.__class__.__name__
        settings = app.state.engine.settings
        logging.getLogger("uvicorn.error").info(
            f"[bughunt] Persistence={klass} levels_per_round={settings.levels_per_round} "
            f"max_rounds={settings.max_rounds} FIRESTORE_EMULATOR_HOST={os.getenv('FIRESTORE_EMULATOR_HOST') or '-'}"
        )

    @app.on_event("shutdown")
    async def _stop_engine():
        app.state.engine.shutdown()

    @app.exception_handler(SessionError)
    async def _session_error(_req: Request, exc: SessionError):
        body = exc.to_dict()
        if isinstance(exc, InvalidStateError):
            body["valid_actions"] = valid_actions(exc.current_state)
        logging.getLogger("uvicorn.error").info(f"[bughunt] rejected code={exc.code} detail={exc}")
        return JSONResponse(status_code=exc.status_code, content=body)

    def get_user_id(req: Request) -> str:
        is_cloud_run = bool(os.getenv("K_SERVICE") or os.getenv("K_REVISION"))
        trust_x_user_id = os.getenv("TRUST_X_USER_ID", "0" if is_cloud_run else "1").lower() in ("1", "true", "yes")
        logger = logging.getLogger("uvicorn.error")

        # 1) Proxy-authenticated identity (production)
        iap_email = req.headers.get("X-Goog-Authenticated-User-Email") or req.headers.get("X-Forwarded-Email")
        if iap_email:
            # Format often: "accounts.google.com:email@example.com"
            if ":" in iap_email:
                iap_email = iap_email.split(":", 1)[1]
            return iap_email
        forwarded_user = req.headers.get("X-Forwarded-User")
        if forwarded_user:
            return forwarded_user

        # 2) Wallet address or guest token sent by the client
        uid = req.headers.get("X-User-Id")
        if uid and trust_x_user_id:
            return uid

        logger.warning(
            f"[bughunt] get_user_id missing user id is_cloud_run={int(is_cloud_run)} trust_x_user_id={int(trust_x_user_id)}"
        )
        raise HTTPException(status_code=401, detail="missing user id")

    def eng() -> SessionEngine:
        return app.state.engine

    @app.post(f"{API_BASE}/sessions")
    async def create_session(user_id: str = Depends(get_user_id)):
        session_id = eng().create_session(user_id)
        return {"session_id": session_id}

    @app.post(f"{API_BASE}/sessions/{{session_id}}/start-level")
    async def start_level(session_id: str, user_id: str = Depends(get_user_id)):
        return await eng().start_level(session_id, user_id)

    @app.post(f"{API_BASE}/sessions/{{session_id}}/click")
    async def click(session_id: str, body: ClickBody, user_id: str = Depends(get_user_id)):
        return await eng().handle_click(session_id, (body.x, body.y), user_id)

    def _already_gone(session_id: str) -> dict:
        return {"success": True, "session_id": session_id, "result": None}

    @app.post(f"{API_BASE}/sessions/{{session_id}}/end-level")
    async def end_level(session_id: str, user_id: str = Depends(get_user_id)):
        if not eng().owns_if_present(session_id, user_id):
            return _already_gone(session_id)
        outcome = await eng().end_level(session_id, "manual")
        return {
            "success": True,
            "session_id": session_id,
            "result": outcome.to_dict() if outcome else None,
        }

    @app.post(f"{API_BASE}/sessions/{{session_id}}/end-game")
    async def end_game(session_id: str, user_id: str = Depends(get_user_id)):
        if not eng().owns_if_present(session_id, user_id):
            return _already_gone(session_id)
        result = await eng().end_game(session_id, "manual")
        return {
            "success": True,
            "session_id": session_id,
            "result": result.to_dict() if result else None,
        }

    @app.post(f"{API_BASE}/sessions/{{session_id}}/end-game/full")
    async def end_game_full(session_id: str, user_id: str = Depends(get_user_id)):
        if not eng().owns_if_present(session_id, user_id):
            return _already_gone(session_id)
        result = await eng().end_game_with_full_verification(session_id, "manual")
        return {
            "success": True,
            "session_id": session_id,
            "result": result.to_dict() if result else None,
        }

    @app.get(f"{API_BASE}/sessions/{{session_id}}")
    async def get_state(session_id: str, user_id: str = Depends(get_user_id)):
        return eng().get_state(session_id, user_id)

    @app.get(f"{API_BASE}/sessions/{{session_id}}/result")
    async def get_result(session_id: str, user_id: str = Depends(get_user_id)):
        eng().owns_if_present(session_id, user_id)
        return eng().get_result(session_id).to_dict()

    @app.delete(f"{API_BASE}/sessions/{{session_id}}")
    async def terminate(session_id: str, user_id: str = Depends(get_user_id)):
        return await eng().terminate_session(session_id, user_id)

    @app.get(f"{API_BASE}/active-session")
    async def active_session(user_id: str = Depends(get_user_id)):
        return eng().get_active_session(user_id)

    @app.get(f"{API_BASE}/valid-actions/{{state}}")
    async def get_valid_actions(state: str):
        return {"state": state.upper(), "valid_actions": eng().get_valid_actions(state)}

    @app.get(f"{API_BASE}/stats")
    async def get_stats(user_id: str = Depends(get_user_id)):
        return eng().get_player_stats(user_id)

    return app


app = create_app()
