from html import escape

from storefront.core.config import settings

_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background: #1f1f1f; color: white; padding: 20px; text-align: center; }
        table { width: 100%; border-collapse: collapse; margin: 20px 0; }
        th, td { padding: 10px; text-align: left; border-bottom: 1px solid #ddd; }
        .total { font-size: 18px; font-weight: bold; }
        .button { display: inline-block; padding: 12px 24px; background: #1f1f1f; color: white; text-decoration: none; }
"""


def format_vnd(amount: int) -> str:
    return f"{amount:,}".replace(",", ".") + " ₫"


def order_lookup_url(order) -> str:
    return f"{settings.FRONTEND_URL}{settings.ORDER_LOOKUP_PATH}?token={order.access_token}"


def _recipient_name(order) -> str:
    if order.user is not None:
        return order.user.full_name
    return order.guest_name or order.recipient_name


def order_confirmation_template(order):
    """HTML email template for order confirmation"""
    items_html = ""
    for item in order.items:
        items_html += f"""
        <tr>
            <td>{escape(item.product_name)} ({item.variant_volume_ml}ml)</td>
            <td>{item.quantity}</td>
            <td>{format_vnd(item.unit_price_at_order)}</td>
            <td>{format_vnd(item.line_total)}</td>
        </tr>
        """

    discount_row = ""
    if order.discount_amount:
        discount_row = f"""
                <tr>
                    <td>Discount ({escape(order.discount_code or "")}):</td>
                    <td>-{format_vnd(order.discount_amount)}</td>
                </tr>"""

    lookup_html = ""
    if order.user_id is None:
        lookup_html = f"""
            <p>You checked out as a guest. Keep this link to follow your order:</p>
            <p><a class="button" href="{order_lookup_url(order)}">View your order</a></p>"""

    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>{_STYLE}</style>
    </head>
    <body>
        <div class="container">
            <div class="header">
                <h1>{escape(settings.EMAILS_FROM_NAME)}</h1>
                <p>Order Confirmation</p>
            </div>

            <p>Dear {escape(_recipient_name(order))},</p>
            <p>Thank you for your order! Your order <strong>#{order.id}</strong> has been confirmed.</p>

            <h3>Order Details:</h3>
            <table>
                <thead>
                    <tr>
                        <th>Item</th>
                        <th>Qty</th>
                        <th>Price</th>
                        <th>Total</th>
                    </tr>
                </thead>
                <tbody>
                    {items_html}
                </tbody>
            </table>

            <table>
                <tr>
                    <td>Subtotal:</td>
                    <td>{format_vnd(order.subtotal_amount)}</td>
                </tr>{discount_row}
                <tr>
                    <td>Shipping:</td>
                    <td>{format_vnd(order.shipping_fee)}</td>
                </tr>
                <tr class="total">
                    <td>Total:</td>
                    <td>{format_vnd(order.total_amount)}</td>
                </tr>
            </table>

            <h3>Shipping to:</h3>
            <p>
                {escape(order.recipient_name)} - {escape(order.recipient_phone)}<br>
                {escape(order.street_address)}, {escape(order.ward)}, {escape(order.district)}, {escape(order.province_city)}
            </p>
            {lookup_html}
        </div>
    </body>
    </html>
    """


def order_access_token_template(order):
    """HTML email carrying a guest order's lookup link"""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>{_STYLE}</style>
    </head>
    <body>
        <div class="container">
            <div class="header">
                <h1>{escape(settings.EMAILS_FROM_NAME)}</h1>
                <p>Your order link</p>
            </div>

            <p>Dear {escape(_recipient_name(order))},</p>
            <p>Use the link below to check the status of order <strong>#{order.id}</strong>
            ({format_vnd(order.total_amount)}). Anyone with this link can view the order, so do not share it.</p>
            <p><a class="button" href="{order_lookup_url(order)}">View your order</a></p>
        </div>
    </body>
    </html>
    """
