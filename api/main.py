from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import settings_dict
from shared.errors import (
    ExternalServiceError,
    InsufficientCredits,
    InvalidTransition,
    PermissionDenied,
    RunNotFound,
    StorageError,
    ValidationError,
)
from shared.pipeline import LANGUAGES, RUN_STAGES
from shared.recipes import RECIPE_LABELS
from shared.run_state import ALLOWED_RUN_STATUS_TRANSITIONS

from .routes import auth, billing, logs, runs


description = """
Image Localizer API.

Turns one marketing image into localized variants:
1. Upload the source image with its extracted text **regions**.
2. Credits are **estimated** and charged when the run is created.
3. Each target language is **translated**, checked for overflow and **rendered**.
4. Runs with overflowing copy stop in **needs_review** for manual edits.
"""

app = FastAPI(
    title="Image Localizer API",
    description=description,
    version="0.1.0",
    openapi_tags=[
        {"name": "auth", "description": "Authentication"},
        {"name": "runs", "description": "Localization runs"},
        {"name": "logs", "description": "Streaming run logs"},
        {"name": "billing", "description": "Credit balances and grants"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(runs.router)
app.include_router(logs.router)
app.include_router(billing.router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(InsufficientCredits)
async def insufficient_credits_handler(request: Request, exc: InsufficientCredits) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={"detail": "Insufficient credits", **exc.to_dict()},
    )


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid status transition",
            "current": getattr(exc.current, "value", exc.current),
            "target": getattr(exc.target, "value", exc.target),
        },
    )


@app.exception_handler(RunNotFound)
async def run_not_found_handler(request: Request, exc: RunNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Run not found"})


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": "Forbidden"})


@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)}
    )


@app.get("/health", tags=["meta"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/settings", tags=["meta"])
def settings() -> dict:
    return settings_dict()


@app.get("/pipeline", tags=["meta"])
def pipeline_flow() -> dict:
    return {
        "stages": RUN_STAGES,
        "languages": LANGUAGES,
        "recipes": {recipe.value: label for recipe, label in RECIPE_LABELS.items()},
        "transitions": {
            current.value: sorted(target.value for target in targets)
            for current, targets in ALLOWED_RUN_STATUS_TRANSITIONS.items()
        },
    }
