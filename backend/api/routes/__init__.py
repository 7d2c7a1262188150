from api.routes import admin_orders, cart, orders, payments, user_orders, vendor_orders

ROUTERS = [
    payments.router,
    orders.router,
    user_orders.router,
    vendor_orders.router,
    admin_orders.router,
    cart.router,
]
