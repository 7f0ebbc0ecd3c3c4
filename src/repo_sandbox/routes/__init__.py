from .sandboxes import create_repository_sandbox_router

__all__ = ["create_repository_sandbox_router"]
