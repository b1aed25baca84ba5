import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.database import async_session, create_tables, ping_database
from app.dependencies import get_counter_store, memory_store
from app.routers import otp
from app.services.cleanup_service import CleanupService
from app.services.record_store import ResilientRecordStore, SqlRecordStore
from app.utils.exceptions import ErrorCode, StoreUnavailableError
from app.utils.logger import get_logger

logger = get_logger(__name__)


async def cleanup_otps_task():
    while True:
        try:
            async with async_session() as db:
                store = ResilientRecordStore(SqlRecordStore(db), memory_store)
                count = await CleanupService(store).cleanup_expired_otps()
                logger.info(f"Cleaned up {count} expired OTPs")
        except StoreUnavailableError as e:
            logger.error(f"Error in OTP cleanup: {e}")
        except Exception:
            logger.exception("Unexpected error in OTP cleanup, retrying next interval")

        await asyncio.sleep(settings.OTP_CLEANUP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await create_tables()
    except (SQLAlchemyError, OSError) as e:
        # Serve from the in-process store until the database comes back
        logger.warning(f"Could not create tables, database unreachable: {e}")

    cleanup_task = asyncio.create_task(cleanup_otps_task())
    yield
    cleanup_task.cancel()
    await get_counter_store().close()


app = FastAPI(
    title="OTP Service API",
    description="API for multi-channel OTP delivery and verification",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact domains
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "code": ErrorCode.VALIDATION_ERROR.value,
            "message": "Invalid request",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


# Include routers
app.include_router(otp.router, prefix="/otp", tags=["otp"])


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "database": "up" if await ping_database() else "unavailable",
        "in_memory_records": len(memory_store),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8001, reload=True)
