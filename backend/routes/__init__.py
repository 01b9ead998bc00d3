"""
Knowledge Hub - Routes Package

Modular API routers for the Knowledge Hub.
"""

from .knowledge import router as knowledge_router, set_dependencies as set_knowledge_deps
from .migrations import router as migrations_router, set_dependencies as set_migrations_deps

__all__ = [
    'knowledge_router', 'set_knowledge_deps',
    'migrations_router', 'set_migrations_deps',
]
