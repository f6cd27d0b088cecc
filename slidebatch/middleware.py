from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging
import traceback

logger = logging.getLogger(__name__)

def add_error_handling_middleware(app: FastAPI):
    """Add error handling middleware to FastAPI app"""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with proper error format"""
        logger.error(f"HTTP error {exc.status_code} on {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.detail,
                "hint": _hint_for(exc.status_code),
                "retryable": exc.status_code >= 500
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request bodies and query parameters that fail validation are client errors"""
        logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={
                "code": 400,
                "message": "Invalid request",
                "hint": "Check the request parameters and try again",
                "retryable": False,
                "errors": jsonable_errors(exc)
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "hint": "Please try again later or contact support",
                "retryable": True
            }
        )


def _hint_for(status_code: int) -> str:
    if status_code == 404:
        return "Check the job id; finished jobs are purged after the retention window"
    if status_code == 409:
        return "The job is not in a state that allows this operation"
    if status_code == 503:
        return "The orchestrator is starting up or shutting down, try again shortly"
    return "Check the request parameters and try again"


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
