from payrecon.models.callback_event import CallbackEvent
from payrecon.models.payment import Payment, PaymentStatus
from payrecon.models.payment_log import PaymentLog

__all__ = ["CallbackEvent", "Payment", "PaymentLog", "PaymentStatus"]
