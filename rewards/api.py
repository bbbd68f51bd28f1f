import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import InitDataVerifier
from .config import RewardsConfig
from .errors import InvalidInputError, RewardsError, UnauthenticatedError
from .models import ActionRequest
from .service import RewardsService
from .tokens import TokenReaper

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[RewardsService] = None,
    config: Optional[RewardsConfig] = None,
    verifier: Optional[InitDataVerifier] = None,
    root_path: str = "",
) -> FastAPI:
    config = config or (service.config if service else RewardsConfig.from_env())
    service = service or RewardsService.from_config(config)
    verifier = verifier or InitDataVerifier(config.bot_token, config.init_data_max_age_seconds)
    reaper = TokenReaper(service.tokens, interval=config.reaper_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper.start()
        yield
        reaper.stop()
        service.close()

    app = FastAPI(
        title="Rewards Ledger API",
        description="Ad, spin, task and referral rewards with single-use action tokens, cooldowns and quotas",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.reaper = reaper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RewardsError)
    async def rewards_error_handler(request: Request, exc: RewardsError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.code.value}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request body.") if errors else "Invalid request body."
        error = InvalidInputError(f"Invalid request: {detail}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "rewards-ledger", "pending_tokens": len(service.tokens)}

    @app.post("/", status_code=status.HTTP_200_OK, tags=["Actions"])
    def handle_action(request: ActionRequest) -> dict:
        user_id = verifier.verify(request.init_data)
        if request.user_id is not None and request.user_id != user_id:
            logger.warning(f"user_id {request.user_id} does not match signed launch data for {user_id}")
            raise UnauthenticatedError("user_id does not match launch data.")

        result = service.handle(request, user_id)
        data = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
        return {"ok": True, "data": data}

    return app


if __name__ == "__main__":
    import uvicorn

    config = RewardsConfig.from_env()
    logging.basicConfig(level=config.log_level)
    uvicorn.run(create_app(config=config), host="0.0.0.0", port=8000)
