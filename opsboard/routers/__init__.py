from .billing import router as billing_router
from .identity import router as identity_router

__all__ = [
    "billing_router",
    "identity_router",
]
