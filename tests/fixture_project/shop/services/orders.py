from shop.models import Order
from shop.storage import save


def create_order(customer, items):
    order = Order(customer, items)
    save(order)
    return order


def cancel_order(order_id):
    save({"cancelled": order_id})
