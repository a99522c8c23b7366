from backoffice.models.customer import Customer
from backoffice.models.product import Product, ProductVariant
from backoffice.models.inventory import InventoryLevel, InventoryReconciliation, ReconciliationStatus
from backoffice.models.cart import CartItem, AppliedDiscount
from backoffice.models.discount import Discount, DiscountUsage, DiscountStatus, DiscountValueType
from backoffice.models.credit import CreditBalance, CreditTransaction, CreditTransactionType
from backoffice.models.order import Order, OrderItem, OrderStatus
from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.models.payment import PaymentTransaction, PaymentStatus, SavedPaymentMethod
from backoffice.models.waitlist import WaitlistEntry, WaitlistStatus
from backoffice.models.favorite import Favorite
from backoffice.models.plugin import Plugin, PluginEvent, PluginStatus, PluginEventStatus
from backoffice.models.feature_flag import FeatureFlag
