# src/payme/errors.py
from typing import Any, Dict, Optional

# JSON-RPC level
INVALID_JSON = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32400
INSUFFICIENT_PRIVILEGE = -32504

# Merchant level
INVALID_AMOUNT = -31001
TRANSACTION_NOT_FOUND = -31003
UNABLE_TO_CANCEL = -31007
UNABLE_TO_PERFORM = -31008

# Account level (-31050 .. -31099)
USER_NOT_FOUND = -31050
ORDER_NOT_FOUND = -31051
INVALID_ORDER_TYPE = -31052
PLAN_NOT_FOUND = -31053
PACKAGE_NOT_FOUND = -31054
ORDER_ALREADY_PAID = -31055
ORDER_CANCELLED = -31056
ORDER_IN_PROGRESS = -31057

MESSAGES: Dict[int, Dict[str, str]] = {
    INVALID_JSON: {"ru": "Ошибка парсинга JSON", "uz": "JSON tahlil qilishda xatolik", "en": "JSON parsing error"},
    INVALID_REQUEST: {"ru": "Неверный запрос", "uz": "Noto'g'ri so'rov", "en": "Invalid request"},
    METHOD_NOT_FOUND: {"ru": "Метод не найден", "uz": "Metod topilmadi", "en": "Method not found"},
    INTERNAL_ERROR: {"ru": "Внутренняя ошибка сервера", "uz": "Server ichki xatosi", "en": "Internal server error"},
    INSUFFICIENT_PRIVILEGE: {"ru": "Недостаточно прав", "uz": "Ruxsat etilmagan", "en": "Insufficient privilege"},
    INVALID_AMOUNT: {"ru": "Неверная сумма", "uz": "Noto'g'ri summa", "en": "Invalid amount"},
    TRANSACTION_NOT_FOUND: {"ru": "Транзакция не найдена", "uz": "Tranzaksiya topilmadi", "en": "Transaction not found"},
    UNABLE_TO_CANCEL: {
        "ru": "Невозможно отменить транзакцию",
        "uz": "Tranzaksiyani bekor qilib bo'lmaydi",
        "en": "Unable to cancel transaction",
    },
    UNABLE_TO_PERFORM: {
        "ru": "Невозможно выполнить операцию",
        "uz": "Operatsiyani bajarib bo'lmaydi",
        "en": "Unable to perform operation",
    },
    USER_NOT_FOUND: {"ru": "Пользователь не найден", "uz": "Foydalanuvchi topilmadi", "en": "User not found"},
    ORDER_NOT_FOUND: {"ru": "Заказ не найден", "uz": "Buyurtma topilmadi", "en": "Order not found"},
    INVALID_ORDER_TYPE: {"ru": "Неверный тип заказа", "uz": "Noto'g'ri buyurtma turi", "en": "Invalid order type"},
    PLAN_NOT_FOUND: {"ru": "Тариф не найден", "uz": "Tarif topilmadi", "en": "Plan not found"},
    PACKAGE_NOT_FOUND: {"ru": "Пакет не найден", "uz": "Paket topilmadi", "en": "Package not found"},
    ORDER_ALREADY_PAID: {"ru": "Заказ уже оплачен", "uz": "Buyurtma allaqachon to'langan", "en": "Order already paid"},
    ORDER_CANCELLED: {"ru": "Заказ отменен", "uz": "Buyurtma bekor qilingan", "en": "Order cancelled"},
    ORDER_IN_PROGRESS: {
        "ru": "Заказ уже обрабатывается другой транзакцией",
        "uz": "Buyurtma boshqa tranzaksiya tomonidan qayta ishlanmoqda",
        "en": "Order is already being processed by another transaction",
    },
}

UNKNOWN_MESSAGE = {"ru": "Неизвестная ошибка", "uz": "Noma'lum xatolik", "en": "Unknown error"}


class PaymeError(Exception):
    """A gateway-visible failure, rendered as the JSON-RPC error object."""

    def __init__(self, code: int, data: Optional[str] = None, message: Optional[Dict[str, str]] = None):
        self.code = code
        self.data = data
        self.message = message or MESSAGES.get(code, UNKNOWN_MESSAGE)
        super().__init__(f"{code}: {self.message['en']}")

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def error_response(request_id: Any, code: int, data: Optional[str] = None) -> Dict[str, Any]:
    return {"error": PaymeError(code, data).to_dict(), "id": request_id}


def success_response(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"result": result, "id": request_id}
