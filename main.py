import os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from core.config import settings
from core.db import init_db
from core.exceptions import OrderError
from core.log import configure_logging
from routes.orders import router as orders_router
from routes.realtime import router as realtime_router

load_dotenv()
configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    headers = {"Retry-After": "0"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": exc.retryable},
        headers=headers,
    )


# Ensure tables exist (for dev/test; schema evolution is managed outside this service)
init_db()

app.include_router(orders_router)
app.include_router(realtime_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
