"""Request-scoped accessors for the services wired in create_app."""

from fastapi import Request

from services.cart_service import CartService
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine
from services.payment_gateway import KhaltiGateway


def get_gateway(request: Request) -> KhaltiGateway:
    return request.app.state.gateway


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_state_machine(request: Request) -> OrderStateMachine:
    return request.app.state.state_machine


def get_cart_service(request: Request) -> CartService:
    return request.app.state.cart_service
