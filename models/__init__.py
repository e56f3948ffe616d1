from models.users import User
from models.orders import Order, OrderStatus, PaymentMethod
from models.order_items import OrderItem
from models.payments import Payment, PaymentStatus
from models.prescriptions import Prescription, PrescriptionStatus
from models.order_tracking import OrderTracking
from models.notifications import Notification, NotificationType

__all__ = ["User", "Order", "OrderStatus", "PaymentMethod", "OrderItem", "Payment", "PaymentStatus",
           "Prescription", "PrescriptionStatus", "OrderTracking", "Notification", "NotificationType"]
