"""
Concord Route Blueprints
Modular Flask blueprints for better code organization.
"""

from .health import health_bp
from .queue import queue_bp

__all__ = [
    "health_bp",
    "queue_bp",
]
