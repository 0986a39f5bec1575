from api.server import (
    CheckoutServices,
    app,
    build_services,
    create_app,
)

__all__ = [
    "CheckoutServices",
    "app",
    "build_services",
    "create_app",
]
