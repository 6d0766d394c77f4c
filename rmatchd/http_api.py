"""HTTP API: interest storage and online matching."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from . import __version__
from .errors import DependencyError, ValidationError

if TYPE_CHECKING:
    from .service import HubService

log = logging.getLogger("rmatchd.http")


class InterestsRequest(BaseModel):
    # Older clients send ``userId``.
    identity: Any = Field(default=None, validation_alias=AliasChoices("identity", "userId"))
    interests: Any = None


class MatchOut(BaseModel):
    identity: str
    interests: str
    score: float


class FindMatchResponse(BaseModel):
    matches: list[MatchOut]
    message: str | None = None


def create_app(hub: HubService) -> FastAPI:
    app = FastAPI(title="rmatchd", version=__version__)

    origins = list(hub.config.http_cors_origins)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": "invalid request body"})

    def _run(what: str, fn):
        try:
            return fn()
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DependencyError as e:
            hub.stats_manager.inc("dependency_failures")
            log.error("%s failed: %s", what, e)
            raise HTTPException(status_code=502, detail=f"Failed to {what}")
        except Exception:
            log.exception("%s crashed", what)
            raise HTTPException(status_code=500, detail=f"Failed to {what}")

    @app.post("/store-interests")
    def store_interests(req: InterestsRequest) -> dict[str, str]:
        _run("store interests", lambda: hub.matcher.store_interests(req.identity, req.interests))
        hub.stats_manager.inc("interests_stored")
        return {"message": "Interests stored successfully"}

    @app.post("/find-match", response_model=FindMatchResponse, response_model_exclude_none=True)
    def find_match(req: InterestsRequest) -> FindMatchResponse:
        hub.stats_manager.inc("match_requests")
        matches = _run("find match", lambda: hub.matcher.find_match(req.identity, req.interests))
        hub.stats_manager.inc("matches_returned", len(matches))
        out = [MatchOut(**m.to_dict()) for m in matches]
        if not out:
            return FindMatchResponse(matches=[], message="No online matches found")
        return FindMatchResponse(matches=out)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "online": hub.presence.counts()["identities"],
        }

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        return hub.stats_manager.snapshot()

    return app


class HttpServer:
    """Runs uvicorn on a daemon thread next to the Reticulum callbacks."""

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        config = uvicorn.Config(app, host=host, port=int(port), log_config=None)
        self._server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        # uvicorn only installs signal handlers on the main thread, so the hub
        # keeps ownership of SIGINT/SIGTERM.
        self._thread = threading.Thread(
            target=self._server.run, name="rmatchd-http", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
