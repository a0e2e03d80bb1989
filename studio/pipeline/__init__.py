"""
Project Lifecycle Pipeline

  Image flow: charge → upload inputs → Gemini composite → ready
  Video flow: charge → claim → Veo long-running operation → complete
  Ledger: atomic credit charge / refund with an audit trail
"""

from .project_service import ProjectService
from .routes import project_router, user_router
from .models import ProjectStatus

__all__ = [
    "ProjectService",
    "project_router",
    "user_router",
    "ProjectStatus",
]
