from app.models.company import Company
from app.models.subscription_plan import SubscriptionPlan
from app.models.company_payment_settings import CompanyPaymentSettings
from app.models.customer import Customer
from app.models.coupon import Coupon
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.pending_payment import PendingPayment
from app.models.integration_event import IntegrationEvent
from app.models.notification import Notification
