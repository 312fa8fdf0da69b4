from storefront.db.base_class import Base


# IMPORT ALL MODELS HERE (THIS REGISTERS THEM WITH Base.metadata)
from storefront.models.user import User
from storefront.models.product import Product, ProductVariant
from storefront.models.cart import Cart, CartItem
from storefront.models.discount import Discount
from storefront.models.order import Order, OrderItem
from storefront.models.payment import Payment, PaymentIncident
from storefront.models.order_status_history import OrderStatusHistory
