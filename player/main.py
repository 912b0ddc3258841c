import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Callable, List, Optional, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator

import config
config.setup_logging()

from protocol import ActionRejected
from session import PlayerSession

logger = logging.getLogger(__name__)

AnswerValue = Union[int, float, str]


def _clean_text(v: str) -> str:
    # Strip control characters and HTML tags before anything reaches the host
    v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v)
    v = re.sub(r'<[^>]+>', '', v)
    return v.strip()


class TeamRequest(BaseModel):
    team_name: str
    team_photo: Optional[str] = None

    @field_validator('team_name')
    @classmethod
    def validate_team_name(cls, v: str) -> str:
        v = _clean_text(v)
        if not v or len(v) > config.MAX_TEAM_NAME_LENGTH:
            raise ValueError(f'Team name must be 1-{config.MAX_TEAM_NAME_LENGTH} characters')
        return v

    @field_validator('team_photo')
    @classmethod
    def validate_team_photo(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _check_photo(v)
        return v


class PhotoRequest(BaseModel):
    photo_data: str

    @field_validator('photo_data')
    @classmethod
    def validate_photo_data(cls, v: str) -> str:
        _check_photo(v)
        return v


def _check_photo(v: str):
    if not v.startswith('data:image/'):
        raise ValueError('Photo must be an image data URL')
    if len(v) > config.MAX_PHOTO_BYTES:
        raise ValueError('Photo is too large')


class BuzzerRequest(BaseModel):
    buzzer_sound: str

    @field_validator('buzzer_sound')
    @classmethod
    def validate_buzzer_sound(cls, v: str) -> str:
        v = _clean_text(v)
        if not v or len(v) > 64:
            raise ValueError('Buzzer sound must be 1-64 characters')
        return v


class AnswerRequest(BaseModel):
    answer: Union[AnswerValue, List[AnswerValue]]


class PresenceRequest(BaseModel):
    visible: Optional[bool] = None
    focused: Optional[bool] = None


def _cors_origins() -> List[str]:
    if config.ALLOWED_ORIGINS:
        return [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    return [
        "http://localhost:5174",
        "http://127.0.0.1:5174",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


def create_app(session_factory: Optional[Callable[[], PlayerSession]] = None) -> FastAPI:
    """Build the local rendering API around one player session."""
    factory = session_factory or PlayerSession

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting player agent")
        session = factory()
        app.state.session = session
        await session.start()
        yield
        logger.info("Shutting down player agent")
        await session.stop()

    app = FastAPI(title="Quiz Player Agent", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    @app.get("/")
    async def root():
        return {"message": "Quiz player agent is running"}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/state")
    async def get_state(request: Request):
        return request.app.state.session.snapshot()

    @app.post("/team")
    async def submit_team(req: TeamRequest, request: Request):
        session = request.app.state.session
        try:
            sent = await session.submit_team_name(req.team_name, req.team_photo)
        except ActionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"phase": session.machine.phase, "delivered": sent}

    @app.post("/team/retry")
    async def retry_team(request: Request):
        session = request.app.state.session
        try:
            session.retry_team_entry()
        except ActionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"phase": session.machine.phase}

    @app.post("/team/photo")
    async def update_photo(req: PhotoRequest, request: Request):
        try:
            sent = await request.app.state.session.update_team_photo(req.photo_data)
        except ActionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"delivered": sent}

    @app.post("/buzzer")
    async def select_buzzer(req: BuzzerRequest, request: Request):
        sent = await request.app.state.session.select_buzzer(req.buzzer_sound)
        return {"delivered": sent}

    @app.post("/answer")
    async def submit_answer(req: AnswerRequest, request: Request):
        session = request.app.state.session
        try:
            submission = await session.submit_answer(req.answer)
        except ActionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {
            "accepted": True,
            "delivered": session.machine.answer_delivered,
            "submission": submission.to_dict(),
        }

    @app.post("/presence")
    async def report_presence(req: PresenceRequest, request: Request):
        session = request.app.state.session
        session.report_presence(visible=req.visible, focused=req.focused)
        return {"away": session.presence.away}

    @app.websocket("/ui")
    async def ui_socket(websocket: WebSocket):
        session = websocket.app.state.session
        await websocket.accept()
        changed = asyncio.Event()
        session.listeners.append(changed.set)
        receiver = asyncio.create_task(_drain(websocket))
        try:
            await websocket.send_json(session.snapshot())
            while not receiver.done():
                waiter = asyncio.create_task(changed.wait())
                done, _ = await asyncio.wait({waiter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if waiter not in done:
                    waiter.cancel()
                    break
                changed.clear()
                await websocket.send_json(session.snapshot())
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("UI socket error")
        finally:
            session.listeners.remove(changed.set)
            receiver.cancel()

    return app


async def _drain(websocket: WebSocket):
    """Read until the UI disconnects; the UI socket is push-only."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("UI client disconnected")


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.API_HOST, port=config.API_PORT)
