from fastapi import FastAPI, HTTPException, Request, Depends, Path
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import re
import structlog
import time
from contextlib import asynccontextmanager

from models import UserPoint, PointHistory, ErrorResponse, HealthResponse
from services import PointService, get_point_service
from repositories import get_user_point_repository, get_point_history_repository
from locks import get_lock_registry
from dispatch import PointDispatcher, get_dispatcher, shutdown_dispatcher
from exceptions import PointError
from config import get_settings

settings = get_settings()

# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def mutation_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Point Service API", version=settings.app_version)
    get_dispatcher()
    yield
    # Shutdown: wake lock waiters, then drain the pool
    logger.info("Shutting down Point Service API")
    get_lock_registry().interrupt()
    shutdown_dispatcher(wait=True)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-user point balances with serialized charge/use and an audit history",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    user_point_repo=Depends(get_user_point_repository),
    history_repo=Depends(get_point_history_repository),
    lock_registry=Depends(get_lock_registry)
) -> PointService:
    return get_point_service(user_point_repo, history_repo, lock_registry)


# ASCII digits only; int() alone also takes "1_000" and non-ASCII digits
AMOUNT_PATTERN = re.compile(r"[+-]?[0-9]+")


async def read_amount(request: Request) -> int:
    """Parse the request body as a bare integer amount."""
    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    if not AMOUNT_PATTERN.fullmatch(raw):
        raise HTTPException(status_code=400, detail="Amount must be an integer")
    return int(raw)


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Rejected by point policy"},
    429: {"description": "Rate limit exceeded"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get store statistics"
)
async def health_check(
    user_point_repo=Depends(get_user_point_repository),
    history_repo=Depends(get_point_history_repository)
):
    try:
        return HealthResponse(
            status="healthy",
            users_count=user_point_repo.count(),
            histories_count=history_repo.count()
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


@app.get("/point/{id}", response_model=UserPoint, summary="Get point balance")
async def point(
    id: int = Path(..., ge=0),
    service: PointService = Depends(get_service),
    dispatcher: PointDispatcher = Depends(get_dispatcher)
):
    return await dispatcher.run(service.get_balance, id)


@app.get("/point/{id}/histories", response_model=List[PointHistory], summary="Get point history")
async def history(
    id: int = Path(..., ge=0),
    service: PointService = Depends(get_service),
    dispatcher: PointDispatcher = Depends(get_dispatcher)
):
    return await dispatcher.run(service.get_histories, id)


@app.patch("/point/{id}/charge", response_model=UserPoint, summary="Charge points", responses=ERROR_RESPONSES)
@limiter.limit(mutation_rate_limit)
async def charge(
    request: Request,
    id: int = Path(..., ge=0),
    amount: int = Depends(read_amount),
    service: PointService = Depends(get_service),
    dispatcher: PointDispatcher = Depends(get_dispatcher)
):
    logger.info("Charge request received", user_id=id, amount=amount)
    result = await dispatcher.run(service.charge, id, amount)
    logger.info("Charge request completed", user_id=id, point=result.point)
    return result


@app.patch("/point/{id}/use", response_model=UserPoint, summary="Use points", responses=ERROR_RESPONSES)
@limiter.limit(mutation_rate_limit)
async def use(
    request: Request,
    id: int = Path(..., ge=0),
    amount: int = Depends(read_amount),
    service: PointService = Depends(get_service),
    dispatcher: PointDispatcher = Depends(get_dispatcher)
):
    logger.info("Use request received", user_id=id, amount=amount)
    result = await dispatcher.run(service.use, id, amount)
    logger.info("Use request completed", user_id=id, point=result.point)
    return result

# Global exception handlers
@app.exception_handler(PointError)
async def point_exception_handler(request: Request, exc: PointError):
    if exc.status_code >= 500:
        logger.error(
            "Point request failed",
            error=exc.kind,
            detail=exc.message,
            url=str(request.url),
            method=request.method
        )
        message = "Internal server error"
    else:
        message = exc.message

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=exc.code, message=message).model_dump()
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            code=str(exc.status_code),
            message=str(exc.detail)
        ).model_dump()
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            code="422",
            message=message or "Invalid request"
        ).model_dump()
    )

@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(
        "Rate limit exceeded",
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            code="429",
            message=f"Rate limit exceeded: {exc.detail}"
        ).model_dump()
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            code="500",
            message="Internal server error"
        ).model_dump()
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
