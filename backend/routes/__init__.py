"""
Procurement Workflow Hub - Routes Package

API routers for the workflow core.
"""

from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .config import router as config_router, set_dependencies as set_config_deps
from .integrity import router as integrity_router, set_repository as set_integrity_repository

__all__ = [
    'workflows_router', 'set_workflows_deps',
    'config_router', 'set_config_deps',
    'integrity_router', 'set_integrity_repository',
]
