# src/scheduler/tasks.py
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session
from database import SessionLocal
from payment.services import PaymentService
from payme.services import PaymeService

logger = logging.getLogger(__name__)

def cancel_timed_out_transactions():
    """Cancel Payme transactions left in CREATED past the timeout."""
    logger.info("Starting cancel_timed_out_transactions task")
    db: Session = SessionLocal()
    try:
        cancelled = PaymeService().cancel_timed_out_transactions(db)
        logger.info(f"Cancelled {cancelled} timed out Payme transactions")
    except Exception as e:
        db.rollback()
        logger.error(f"Error in cancel_timed_out_transactions: {str(e)}", exc_info=True)
    finally:
        db.close()
    logger.info("Finished cancel_timed_out_transactions task")

def expire_stale_payments():
    """Fail pending payments nobody completed within the expiry window."""
    logger.info("Starting expire_stale_payments task")
    db: Session = SessionLocal()
    try:
        PaymentService().expire_stale_payments(db)
    except Exception as e:
        db.rollback()
        logger.error(f"Error in expire_stale_payments: {str(e)}", exc_info=True)
    finally:
        db.close()
    logger.info("Finished expire_stale_payments task")

def start_scheduler() -> BackgroundScheduler:
    """Start the background scheduler."""
    scheduler = BackgroundScheduler()
    scheduler.add_job(cancel_timed_out_transactions, 'interval', minutes=10)
    scheduler.add_job(expire_stale_payments, 'interval', hours=1)
    scheduler.start()
    return scheduler
