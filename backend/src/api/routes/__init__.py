# API routes
from src.api.routes import plans
from src.api.routes import tenants

__all__ = ["plans", "tenants"]
