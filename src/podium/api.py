"""HTTP surface — FastAPI app exposing finalize, lifecycle and proof routes.

Routes:
    POST /api/v1/internal/rounds/{round_id}/finalize   Bearer PODIUM_FINALIZE_SECRET
    POST /api/v1/admin/lifecycle                        Bearer PODIUM_OPERATOR_TOKEN
    GET  /api/v1/rounds/{round_id}
    GET  /api/v1/rounds/{round_id}/proof?recipient=0x...

Every error body is {"success": false, "error": <code>, "message": ...}.
Routes are plain (sync) functions; FastAPI runs them in its threadpool,
so concurrent finalize triggers reach the ledger's claim concurrently.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from podium.config import Settings
from podium.engine.state_machine import LifecycleAction
from podium.errors import (
    CommitmentFailure,
    ExternalSubmissionFailure,
    InvalidPhaseTransition,
    NotFound,
    PodiumError,
    ValidationError,
)
from podium.service import SettlementService

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[PodiumError], int] = {
    NotFound: 404,
    InvalidPhaseTransition: 409,
    ValidationError: 400,
    CommitmentFailure: 422,
    ExternalSubmissionFailure: 502,
}


class Unauthorized(Exception):
    """Missing or wrong bearer token."""


class LifecycleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: LifecycleAction
    round_id: str = Field(alias="roundId", min_length=1)


def _error_body(code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": code, "message": message}


def _check_bearer(authorization: Optional[str], expected: Optional[str]) -> None:
    """Constant-time bearer check. An unset secret rejects every request."""
    if not expected:
        raise Unauthorized("Endpoint is disabled: no secret configured")
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Missing bearer token")
    token = authorization[len("Bearer "):].strip()
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("Invalid bearer token")


def create_app(service: SettlementService, settings: Settings) -> FastAPI:
    """Build the FastAPI application around a service instance."""
    app = FastAPI(title="Podium settlement engine", version="0.4.0")

    def require_finalize_secret(authorization: Optional[str] = Header(default=None)) -> None:
        _check_bearer(authorization, settings.finalize_secret)

    def require_operator(authorization: Optional[str] = Header(default=None)) -> None:
        _check_bearer(authorization, settings.operator_token)

    @app.exception_handler(PodiumError)
    async def podium_error_handler(request: Request, exc: PodiumError):
        status = next(
            (code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)),
            500,
        )
        log = logger.error if status >= 500 else logger.warning
        log("%s on %s: %s", exc.code, request.url.path, exc)
        return JSONResponse(status_code=status, content=_error_body(exc.code, str(exc)))

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(request: Request, exc: Unauthorized):
        logger.warning("Unauthorized request to %s", request.url.path)
        return JSONResponse(status_code=401, content=_error_body("unauthorized", str(exc)))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        message = "; ".join(
            f"{'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content=_error_body(ValidationError.code, message),
        )

    @app.post(
        "/api/v1/internal/rounds/{round_id}/finalize",
        dependencies=[Depends(require_finalize_secret)],
    )
    def finalize_round(round_id: str) -> dict[str, Any]:
        return service.finalize(round_id, actor_id="finalize-trigger")

    @app.post("/api/v1/admin/lifecycle", dependencies=[Depends(require_operator)])
    def lifecycle(request: LifecycleRequest) -> dict[str, Any]:
        result = service.dispatch(request.action, request.round_id, actor_id="operator")
        body: dict[str, Any] = {"success": result.success, **result.data}
        if result.warnings:
            body["warnings"] = result.warnings
        return body

    @app.get("/api/v1/rounds/{round_id}")
    def round_status(round_id: str) -> dict[str, Any]:
        return {"success": True, **service.round_status(round_id)}

    @app.get("/api/v1/rounds/{round_id}/proof")
    def claim_proof(round_id: str, recipient: str = Query(..., min_length=1)) -> dict[str, Any]:
        return {"success": True, **service.proof(round_id, recipient).to_dict()}

    return app


def create_app_from_env() -> FastAPI:
    """uvicorn factory: `uvicorn podium.api:create_app_from_env --factory`."""
    settings = Settings.from_env()
    return create_app(SettlementService.from_settings(settings), settings)
