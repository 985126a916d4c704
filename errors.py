import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_SERVER_ERROR",
}

ERROR_TITLES = {
    "BAD_REQUEST": "Richiesta non valida",
    "UNAUTHORIZED": "Non autenticato",
    "FORBIDDEN": "Accesso negato",
    "NOT_FOUND": "Non trovato",
    "CONFLICT": "Conflitto",
    "VALIDATION_ERROR": "Dati non validi",
    "TOO_MANY_REQUESTS": "Troppe richieste",
    "INTERNAL_SERVER_ERROR": "Errore del server",
}


def error_payload(status_code: int, detail) -> dict:
    code = ERROR_CODES.get(status_code)
    if code is None:
        code = "BAD_REQUEST" if status_code < 500 else "INTERNAL_SERVER_ERROR"
    return {"code": code, "title": ERROR_TITLES[code], "detail": detail}


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    payload = error_payload(422, "Controlla i campi evidenziati")
    payload["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=payload)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
