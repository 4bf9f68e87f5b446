import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from storefront import config
from storefront.database import Base, engine
from storefront.errors import PaymentGatewayUnavailable, StorefrontError
from storefront.gateway import build_gateway
from storefront.routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.gateway = build_gateway()
        logger.info("payment gateway initialised")
    except PaymentGatewayUnavailable:
        app.state.gateway = None
        logger.warning("payment gateway credentials not configured, payment routes will return 503")
    yield
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        gateway.close()


app = FastAPI(title="Storefront", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Internal server error"}
    if config.is_development():
        content["detail"] = repr(exc)
    return JSONResponse(status_code=500, content=content)


@app.get("/health")
def health():
    return {"ok": True}
