from storefront.models.user import User, UserRole
from storefront.models.product import Product, ProductVariant
from storefront.models.cart import Cart, CartItem
from storefront.models.discount import Discount
from storefront.models.order import Order, OrderItem, PaymentStatus, FulfillmentStatus, PaymentMethod
from storefront.models.payment import Payment, PaymentRecordStatus, PaymentIncident
from storefront.models.order_status_history import OrderStatusHistory
