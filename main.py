# src/main.py
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings
from auth.routes import router as auth_router
from subscription.routes import router as subscription_router
from payment.routes import router as payment_router
from payme.routes import router as payme_router
from admin.routes import router as admin_router
from scheduler.tasks import start_scheduler, cancel_timed_out_transactions
from subscription.catalog import seed_catalog
from database import SessionLocal

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Minutes Billing Backend",
    description="Plans, minute packages and Payme payments for transcription minutes",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(subscription_router)
app.include_router(payment_router)
app.include_router(payme_router)
app.include_router(admin_router)

@app.on_event("startup")
async def startup_event():
    """Run initial tasks on startup."""
    db = SessionLocal()
    try:
        seed_catalog(db)
    finally:
        db.close()

    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled")
        return
    cancel_timed_out_transactions()
    start_scheduler()

@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Welcome to Minutes Billing Backend!"}
