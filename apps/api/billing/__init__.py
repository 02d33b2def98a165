from .router import router
from .scheduler import init_billing_scheduler

__all__ = ["router", "init_billing_scheduler"]
