"""
Route blueprints for the lab server API.
"""

from .health import health_bp
from .labs import labs_bp
from .jobs import jobs_bp

__all__ = ['health_bp', 'labs_bp', 'jobs_bp']
