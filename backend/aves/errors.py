"""Exception handlers shared by every router.

Validation failures are reported as 400 with a ``details`` list, and any
exception that escapes a handler is logged with an id the client can quote.
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def _format_validation_errors(exc: RequestValidationError) -> list[dict]:
	details = []
	for err in exc.errors():
		# Drop the leading "body"/"query"/"path" marker
		loc = [str(part) for part in err.get("loc", ())][1:]
		details.append({"field": ".".join(loc), "message": err.get("msg", "invalid value")})
	return details


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
	details = _format_validation_errors(exc)
	logger.info("Validation failed for %s %s: %s", request.method, request.url.path, details)
	return JSONResponse(status_code=400, content={"error": "Invalid data", "details": details})


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
	error_id = uuid.uuid4().hex[:12]
	logger.error(
		"Unhandled exception [%s] in %s %s: %s",
		error_id,
		request.method,
		request.url.path,
		exc,
		exc_info=exc,
	)
	return JSONResponse(
		status_code=500,
		content={"error": "Internal server error", "error_id": error_id},
	)


def setup_exception_handlers(app: FastAPI) -> None:
	app.add_exception_handler(RequestValidationError, validation_exception_handler)
	app.add_exception_handler(Exception, global_exception_handler)
