# API routes package

from . import auth, containers

__all__ = [
    "auth",
    "containers",
]
