"""HTTP routers."""
from .metrics import create_metrics_router  # noqa: F401
