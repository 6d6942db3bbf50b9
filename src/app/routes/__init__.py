"""
FastAPI Routes.

API 라우트 (REST)
"""

from . import compose

__all__ = ["compose"]
