"""Utility helpers."""
from .ip import UNKNOWN_IP, get_client_ip, is_internal_request  # noqa: F401
from .paths import path_prefix  # noqa: F401
