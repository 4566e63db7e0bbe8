import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .db import Base, engine
from .errors import SynqError
from .settings import settings
from .routers import health
from .routers import auth
from .routers import xp
from .routers import activity
from .routers import stream
from .routers import features
from .routers import exchange
from .routers import content
from .routers import groups
from .routers import gym_buddy

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(xp.router)
app.include_router(activity.router)
app.include_router(stream.router)
app.include_router(features.router)
app.include_router(exchange.router)
app.include_router(content.router)
app.include_router(groups.router)
app.include_router(gym_buddy.router)


@app.exception_handler(SynqError)
async def synq_error_handler(request: Request, exc: SynqError):
	if exc.status_code >= 500:
		logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
	return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
	details = []
	for err in exc.errors():
		loc = [str(part) for part in err.get("loc", ()) if part != "body"]
		details.append({"field": ".".join(loc), "message": err.get("msg", "invalid")})
	return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.get("/info")
def root():
	return {
		"status": "ok",
		"llm_configured": bool(settings.llm_api_key),
		"privileged_xp_credit": bool(settings.service_role_key),
		"xp_per_level": settings.xp_per_level,
	}


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
