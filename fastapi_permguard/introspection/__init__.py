"""Introspection of declared endpoint requirements and the loaded permission hierarchy."""

from fastapi_permguard.introspection.routes import create_introspection_router
from fastapi_permguard.introspection.schema import build_introspection_schema

__all__ = [
    "create_introspection_router",
    "build_introspection_schema",
]
