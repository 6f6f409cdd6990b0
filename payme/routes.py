# src/payme/routes.py
import base64
import binascii
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from notification.services import NotificationService
from payme import errors
from payme.schemas import PaymeRequest
from payme.services import PaymeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payme", tags=["payme"])


def get_client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def is_ip_allowed(ip: Optional[str]) -> bool:
    if not ip:
        return False
    if settings.PAYME_TEST_MODE and ip in settings.PAYME_TEST_IPS:
        return True
    return ip.replace("::ffff:", "") in settings.PAYME_ALLOWED_IPS


def verify_basic_auth(auth_header: Optional[str]) -> bool:
    """Payme authenticates as "Paycom:<merchant key>"."""
    if not auth_header or not auth_header.startswith("Basic "):
        return False
    if not settings.PAYME_SECRET_KEY:
        logger.error("PAYME_SECRET_KEY not configured")
        return False
    try:
        credentials = base64.b64decode(auth_header[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Malformed Basic auth header")
        return False

    login, _, password = credentials.partition(":")
    if login == "Paycom" and hmac.compare_digest(password.encode("utf-8"), settings.PAYME_SECRET_KEY.encode("utf-8")):
        return True
    logger.warning(f"Invalid Payme credentials for login {login}")
    return False


@router.post("")
async def handle_payme(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Payme Merchant API endpoint. Always answers HTTP 200 with a JSON-RPC envelope."""
    raw = await request.body()
    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        body = None
    request_id = body.get("id") if isinstance(body, dict) else None

    client_ip = get_client_ip(request)
    logger.info(f"Received Payme request: ip={client_ip}, has_auth={'authorization' in request.headers}")

    if not settings.PAYME_TEST_MODE and not is_ip_allowed(client_ip):
        logger.warning(f"Payme request from non-whitelisted IP {client_ip}")
        return errors.error_response(request_id, errors.INSUFFICIENT_PRIVILEGE)

    if not verify_basic_auth(request.headers.get("authorization")):
        return errors.error_response(request_id, errors.INSUFFICIENT_PRIVILEGE)

    if body is None:
        return errors.error_response(None, errors.INVALID_JSON)
    if not isinstance(body, dict) or not isinstance(body.get("method"), str) or not isinstance(body.get("params"), dict):
        logger.warning("Invalid Payme request format")
        return errors.error_response(request_id, errors.INVALID_REQUEST)

    rpc = PaymeRequest(**body)
    notifications = NotificationService()
    service = PaymeService(
        notifier=lambda payload: background_tasks.add_task(notifications.send_payment_notification, payload),
    )
    response = service.handle_request(rpc.method, rpc.params, rpc.id, db)
    logger.info(f"Payme request processed: method={rpc.method}, error={'error' in response}")
    return response
