from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from advisor.routers import chat
from advisor.services.errors import ChatServiceError
from advisor.services.turns import MISSING_FIELDS_MESSAGE

logger = logging.getLogger(__name__)

app = FastAPI(title="Tina Insurance Advisor")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(chat.router)


@app.exception_handler(ChatServiceError)
async def handle_chat_service_error(request: Request, exc: ChatServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.client_message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.info("Rejected malformed request body on %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": MISSING_FIELDS_MESSAGE})


@app.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
